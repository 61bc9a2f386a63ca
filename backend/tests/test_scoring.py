"""Tests for similarity and lexical scoring."""

import math

import pytest

from christy.knowledge.models import SourceKind
from christy.knowledge.scoring import (
    MIN_SIMILARITY,
    build_embedding_matrix,
    cosine_similarity,
    is_pricing_query,
    lexical_score,
    metadata_boost,
    rank,
    semantic_scores,
    tokenize,
)

from tests.fakes import basis_vector, make_entry


class TestCosineSimilarity:
    def test_self_similarity_is_one(self):
        vector = [0.3, -1.2, 4.0, 0.01]

        assert cosine_similarity(vector, vector) == pytest.approx(1.0)

    def test_orthogonal_vectors(self):
        assert cosine_similarity([1.0, 0.0], [0.0, 1.0]) == pytest.approx(0.0)

    def test_opposite_vectors(self):
        assert cosine_similarity([1.0, 2.0], [-1.0, -2.0]) == pytest.approx(-1.0)

    def test_zero_vectors_are_finite(self):
        score = cosine_similarity([0.0, 0.0, 0.0], [0.0, 0.0, 0.0])

        assert math.isfinite(score)
        assert score == 0.0

    def test_mismatched_or_empty(self):
        assert cosine_similarity([1.0, 2.0], [1.0, 2.0, 3.0]) == 0.0
        assert cosine_similarity([], []) == 0.0


class TestSemanticScores:
    def test_unmatchable_entries_get_minimum(self):
        entries = [
            make_entry("a", "a", basis_vector(0)),
            make_entry("b", "b", []),
            make_entry("c", "c", [1.0, 2.0]),
            make_entry("d", "d", [0.0] * 16),
            make_entry("e", "e", basis_vector(1)),
        ]
        matrix = build_embedding_matrix(entries)

        scores = semantic_scores(basis_vector(0), matrix, len(entries))

        assert matrix.dimension == 16
        assert matrix.size == 2
        assert scores[0] == pytest.approx(1.0)
        assert scores[1:4] == [MIN_SIMILARITY] * 3
        assert scores[4] == pytest.approx(0.0)

    def test_no_embeddings(self):
        assert build_embedding_matrix([make_entry("a", "a")]) is None

    def test_query_dimension_mismatch(self):
        matrix = build_embedding_matrix([make_entry("a", "a", basis_vector(0))])

        assert semantic_scores([1.0, 0.0], matrix, 1) == [MIN_SIMILARITY]


class TestMetadataBoost:
    boosts = {"model_name": 0.04, "product_id": 0.02, "category": 0.01}

    def test_literal_matches_add_up(self):
        metadata = {"model_name": "Antminer S19 XP", "product_id": "S19XP-141", "category": "miner"}
        query = "is the antminer s19 xp a good miner?"

        assert metadata_boost(metadata, query, self.boosts) == pytest.approx(0.05)

    def test_missing_and_empty_values(self):
        metadata = {"model_name": "", "category": None}

        assert metadata_boost(metadata, "anything", self.boosts) == 0.0


class TestLexicalScoring:
    def test_tokenize(self):
        assert tokenize("What's the S19 price? S19 a b") == ["what", "the", "s19", "price"]

    def test_pricing_query_detection(self):
        assert is_pricing_query("How much is the S21?")
        assert is_pricing_query("is it in stock")
        assert not is_pricing_query("tell me about hosting")

    def test_counts_terms_in_text_and_metadata(self):
        entry = make_entry(
            "catalog_row:S21",
            "Model: Antminer S21",
            source=SourceKind.CATALOG_ROW,
            metadata={"product_id": "S21-200"},
        )

        assert lexical_score(entry, ["antminer", "200", "hosting"], False, 2.0) == 2.0

    def test_source_tag_is_searchable(self):
        entry = make_entry("transcript:0", "User: hi", source=SourceKind.TRANSCRIPT)

        assert lexical_score(entry, ["transcript"], False, 2.0) == 1.0

    def test_pricing_bonus_only_for_catalog_rows(self):
        row = make_entry("catalog_row:1", "Price: $100", source=SourceKind.CATALOG_ROW)
        doc = make_entry("marketing_document:0", "Price: $100")

        assert lexical_score(row, ["price"], True, 2.0) == 3.0
        assert lexical_score(doc, ["price"], True, 2.0) == 1.0


class TestRank:
    def test_descending_and_stable(self):
        a, b, c, d = (make_entry(i, i) for i in "abcd")

        ranked = rank([(a, 0.5), (b, 0.9), (c, 0.5), (d, 0.1)], top_k=3)

        assert [(e.id, s) for e, s in ranked] == [("b", 0.9), ("a", 0.5), ("c", 0.5)]

    def test_non_positive_top_k(self):
        assert rank([(make_entry("a", "a"), 1.0)], top_k=0) == []
