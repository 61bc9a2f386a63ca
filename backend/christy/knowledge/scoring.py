"""Scoring functions for semantic and lexical retrieval."""

import json
import logging
import math
import re
from dataclasses import dataclass
from typing import Mapping, Sequence

import numpy as np

from christy.knowledge.models import KnowledgeEntry, SourceKind

logger = logging.getLogger(__name__)

# Score given to entries that cannot be compared with the query vector
MIN_SIMILARITY = -1.0

PRICING_SOURCES = frozenset({SourceKind.CATALOG_ROW})

PRICING_QUERY_RE = re.compile(
    r"\b(price[sd]?|pricing|cost[s]?|how much|quote|cheap(?:est)?|stock|in stock|"
    r"available|availability|inventory|doa|warranty|rma)\b",
    re.IGNORECASE,
)

_TOKEN_RE = re.compile(r"[a-z0-9]+")


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity with a zero denominator replaced by 1.

    Vectors of different length, or empty vectors, score 0.0.
    """
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    if va.size == 0 or va.shape != vb.shape:
        return 0.0

    denom = float(np.linalg.norm(va) * np.linalg.norm(vb)) or 1.0
    score = float(np.dot(va, vb)) / denom
    return score if math.isfinite(score) else 0.0


@dataclass(frozen=True)
class EmbeddingMatrix:
    """Stacked embeddings of the entries that can be matched semantically."""

    dimension: int
    indexes: np.ndarray  # positions in the knowledge base
    matrix: np.ndarray  # shape (len(indexes), dimension)
    norms: np.ndarray

    @property
    def size(self) -> int:
        return int(self.indexes.shape[0])


def build_embedding_matrix(entries: Sequence[KnowledgeEntry]) -> EmbeddingMatrix | None:
    """Stack matchable embeddings into a matrix.

    The first non-empty embedding fixes the dimension; entries of any other
    length, and all-zero vectors, stay unmatchable.
    """
    dimension = next((len(e.embedding) for e in entries if e.embedding), 0)
    if dimension == 0:
        return None

    indexes: list[int] = []
    rows: list[list[float]] = []
    mismatched = 0
    for i, entry in enumerate(entries):
        if not entry.embedding:
            continue
        if len(entry.embedding) != dimension:
            mismatched += 1
            continue
        indexes.append(i)
        rows.append(entry.embedding)

    if mismatched:
        logger.warning(
            f"{mismatched} knowledge entries have embeddings that are not {dimension}-dim; "
            "they are excluded from semantic scoring."
        )

    matrix = np.asarray(rows, dtype=np.float64)
    norms = np.linalg.norm(matrix, axis=1)
    nonzero = norms > 0
    return EmbeddingMatrix(
        dimension=dimension,
        indexes=np.asarray(indexes, dtype=np.int64)[nonzero],
        matrix=matrix[nonzero],
        norms=norms[nonzero],
    )


def semantic_scores(query_vector: Sequence[float], embeddings: EmbeddingMatrix, total: int) -> list[float]:
    """Cosine similarity of every entry against the query.

    Unmatchable entries get ``MIN_SIMILARITY``.
    """
    scores = np.full(total, MIN_SIMILARITY, dtype=np.float64)
    query = np.asarray(query_vector, dtype=np.float64)
    if embeddings.size == 0 or query.shape != (embeddings.dimension,):
        return scores.tolist()

    denom = embeddings.norms * float(np.linalg.norm(query))
    denom[denom == 0] = 1.0
    similarities = (embeddings.matrix @ query) / denom
    scores[embeddings.indexes] = np.nan_to_num(
        similarities, nan=MIN_SIMILARITY, posinf=MIN_SIMILARITY, neginf=MIN_SIMILARITY
    )
    return scores.tolist()


def metadata_boost(
    metadata: Mapping[str, object],
    query_lower: str,
    boosts: Mapping[str, float],
) -> float:
    """Additive bonus for metadata values that literally appear in the query."""
    total = 0.0
    for key, amount in boosts.items():
        value = metadata.get(key)
        if value is None:
            continue
        needle = str(value).strip().lower()
        if needle and needle in query_lower:
            total += amount
    return total


def tokenize(query: str) -> list[str]:
    """Distinct lowercase alphanumeric terms of at least two characters."""
    seen: dict[str, None] = {}
    for token in _TOKEN_RE.findall((query or "").lower()):
        if len(token) >= 2:
            seen.setdefault(token, None)
    return list(seen)


def is_pricing_query(query: str) -> bool:
    return bool(PRICING_QUERY_RE.search(query or ""))


def lexical_score(
    entry: KnowledgeEntry,
    terms: Sequence[str],
    pricing_query: bool,
    pricing_bonus: float,
) -> float:
    """Count query terms found in the entry's source tag, text and metadata."""
    haystack = " ".join(
        (
            entry.source.value,
            entry.text,
            json.dumps(entry.metadata, ensure_ascii=False, default=str),
        )
    ).lower()

    score = float(sum(1 for term in terms if term in haystack))
    if pricing_query and entry.source in PRICING_SOURCES:
        score += pricing_bonus
    return score


def rank(
    scored: Sequence[tuple[KnowledgeEntry, float]],
    top_k: int,
) -> list[tuple[KnowledgeEntry, float]]:
    """Sort by descending score, keeping knowledge base order on ties."""
    if top_k <= 0:
        return []
    return sorted(scored, key=lambda pair: -pair[1])[:top_k]
