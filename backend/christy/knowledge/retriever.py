"""Knowledge retriever for RAG.

Scores every knowledge entry against a query by cosine similarity plus
small metadata boosts, and degrades to lexical term scoring whenever the
query cannot be embedded. Provider failures never reach the caller.
"""

import asyncio
import logging
import time
from pathlib import Path
from typing import Mapping

from christy.core.config import Settings
from christy.knowledge.cache import QueryEmbeddingCache
from christy.knowledge.embeddings import TASK_RETRIEVAL_QUERY, EmbeddingClient
from christy.knowledge.errors import ProviderError
from christy.knowledge.models import (
    KnowledgeBase,
    KnowledgeEntry,
    RetrievalMode,
    RetrievalOutcome,
    RetrievalResult,
)
from christy.knowledge.providers import create_embedding_provider
from christy.knowledge.scoring import (
    EmbeddingMatrix,
    MIN_SIMILARITY,
    build_embedding_matrix,
    is_pricing_query,
    lexical_score,
    metadata_boost,
    rank,
    semantic_scores,
    tokenize,
)
from christy.knowledge.store import KnowledgeBaseStore
from christy.observability import get_metrics_backend

logger = logging.getLogger(__name__)

DEFAULT_TOP_K = 8
DEFAULT_CONTEXT_MAX_CHARS = 7000
DEFAULT_METADATA_BOOSTS = {"model_name": 0.04, "product_id": 0.02, "category": 0.01}
DEFAULT_PRICING_BONUS = 2.0


class KnowledgeRetriever:
    """Retrieves the most relevant knowledge entries for a query.

    Owns the knowledge base store and the query embedding cache; both live
    as long as the retriever.
    """

    def __init__(
        self,
        store: KnowledgeBaseStore,
        client: EmbeddingClient | None = None,
        cache: QueryEmbeddingCache | None = None,
        default_top_k: int = DEFAULT_TOP_K,
        metadata_boosts: Mapping[str, float] | None = None,
        pricing_bonus: float = DEFAULT_PRICING_BONUS,
        query_timeout: float | None = None,
        context_max_chars: int = DEFAULT_CONTEXT_MAX_CHARS,
    ) -> None:
        self.store = store
        self.client = client
        self.cache = cache if cache is not None else QueryEmbeddingCache()
        self.default_top_k = default_top_k
        self.metadata_boosts = dict(
            DEFAULT_METADATA_BOOSTS if metadata_boosts is None else metadata_boosts
        )
        self.pricing_bonus = pricing_bonus
        self.query_timeout = query_timeout
        self.context_max_chars = context_max_chars
        self._matrix: EmbeddingMatrix | None = None
        self._matrix_source: KnowledgeBase | None = None
        self._metrics = get_metrics_backend()

    @property
    def embedding_enabled(self) -> bool:
        return self.client is not None

    async def knowledge_base(self) -> KnowledgeBase:
        return await self.store.get()

    def reload(self) -> None:
        """Invalidate the loaded knowledge base and cached query vectors."""
        self.store.invalidate()
        self.cache.clear()
        self._matrix = None
        self._matrix_source = None

    async def retrieve(self, query: str, top_k: int | None = None) -> RetrievalOutcome:
        """Rank knowledge entries for ``query``.

        Never raises for provider failures; cancellation propagates.

        Args:
            query: Free-text query.
            top_k: Maximum number of results (defaults to the configured value).

        Returns:
            RetrievalOutcome with the ranked results and the path taken.
        """
        start = time.perf_counter()
        outcome = await self._retrieve(query, self.default_top_k if top_k is None else top_k)
        duration_ms = (time.perf_counter() - start) * 1000
        self._metrics.observe_retrieval(outcome.mode.value, outcome.reason, duration_ms)
        logger.debug(
            f"Retrieval mode={outcome.mode.value} reason={outcome.reason} "
            f"results={len(outcome.results)} in {duration_ms:.1f}ms"
        )
        return outcome

    async def retrieve_relevant_context(
        self,
        query: str,
        top_k: int | None = None,
    ) -> list[KnowledgeEntry]:
        """Return the top-K most relevant knowledge entries for ``query``."""
        outcome = await self.retrieve(query, top_k)
        return outcome.entries

    async def _retrieve(self, query: str, top_k: int) -> RetrievalOutcome:
        knowledge_base = await self.store.get()
        if not knowledge_base.entries:
            return RetrievalOutcome(mode=RetrievalMode.EMPTY, reason=knowledge_base.status.value)
        if not (query or "").strip():
            return RetrievalOutcome(mode=RetrievalMode.EMPTY, reason="empty_query")

        if self.client is None:
            return self._lexical(knowledge_base, query, top_k, "embeddings_disabled")

        matrix = self._embedding_matrix(knowledge_base)
        if matrix is None or matrix.size == 0:
            return self._lexical(knowledge_base, query, top_k, "no_embeddings")

        try:
            if self.query_timeout:
                query_vector = await asyncio.wait_for(
                    self._embed_query(query), timeout=self.query_timeout
                )
            else:
                query_vector = await self._embed_query(query)
        except asyncio.TimeoutError:
            logger.warning(f"Query embedding timed out after {self.query_timeout}s; using lexical scoring")
            return self._lexical(knowledge_base, query, top_k, "timeout")
        except ProviderError as e:
            logger.warning(f"Query embedding failed; using lexical scoring: {e}")
            return self._lexical(knowledge_base, query, top_k, "provider_unavailable")

        if len(query_vector) != matrix.dimension:
            logger.warning(
                f"Query embedding is {len(query_vector)}-dim but the knowledge base is "
                f"{matrix.dimension}-dim; using lexical scoring. Rebuild the knowledge base."
            )
            return self._lexical(knowledge_base, query, top_k, "dimension_mismatch")

        return self._semantic(knowledge_base, matrix, query, query_vector, top_k)

    async def _embed_query(self, query: str) -> list[float]:
        assert self.client is not None
        cached = self.cache.get(query)
        if cached is not None:
            return cached

        text = query.strip()[: self.cache.max_key_chars]
        vector = await self.client.embed(text, TASK_RETRIEVAL_QUERY)
        self.cache.put(query, vector)
        return vector

    def _embedding_matrix(self, knowledge_base: KnowledgeBase) -> EmbeddingMatrix | None:
        if self._matrix_source is not knowledge_base:
            self._matrix = build_embedding_matrix(knowledge_base.entries)
            self._matrix_source = knowledge_base
        return self._matrix

    def _semantic(
        self,
        knowledge_base: KnowledgeBase,
        matrix: EmbeddingMatrix,
        query: str,
        query_vector: list[float],
        top_k: int,
    ) -> RetrievalOutcome:
        query_lower = query.lower()
        similarities = semantic_scores(query_vector, matrix, len(knowledge_base.entries))

        scored: list[tuple[KnowledgeEntry, float]] = []
        for entry, similarity in zip(knowledge_base.entries, similarities):
            score = similarity
            if similarity > MIN_SIMILARITY:
                score += metadata_boost(entry.metadata, query_lower, self.metadata_boosts)
            scored.append((entry, score))

        return RetrievalOutcome(
            results=[RetrievalResult(entry=e, score=s) for e, s in rank(scored, top_k)],
            mode=RetrievalMode.SEMANTIC,
        )

    def _lexical(
        self,
        knowledge_base: KnowledgeBase,
        query: str,
        top_k: int,
        reason: str,
    ) -> RetrievalOutcome:
        terms = tokenize(query)
        pricing_query = is_pricing_query(query)
        scored = [
            (entry, lexical_score(entry, terms, pricing_query, self.pricing_bonus))
            for entry in knowledge_base.entries
        ]
        return RetrievalOutcome(
            results=[RetrievalResult(entry=e, score=s) for e, s in rank(scored, top_k)],
            mode=RetrievalMode.LEXICAL,
            reason=reason,
        )

    def format_context(
        self,
        entries: list[KnowledgeEntry],
        max_length: int | None = None,
    ) -> str:
        """Format retrieved entries as prompt context.

        Args:
            entries: Ranked knowledge entries.
            max_length: Maximum total character length (defaults to the configured limit).

        Returns:
            Context string, truncated with an ellipsis when too long.
        """
        if not entries:
            return ""

        limit = self.context_max_chars if max_length is None else max_length
        context = "\n\n---\n\n".join(f"Source: {e.source.value}\n{e.text}" for e in entries)
        if len(context) <= limit:
            return context
        return context[:limit] + "…"


def build_knowledge_retriever(settings: Settings) -> KnowledgeRetriever:
    """Construct a retriever and its collaborators from settings.

    Should be called once at application startup.

    Raises:
        ConfigurationError: Embedding is enabled but misconfigured.
    """
    provider = create_embedding_provider(settings)
    client = EmbeddingClient.from_settings(provider, settings) if provider is not None else None
    if client is None:
        logger.info("Embedding disabled; retrieval runs in lexical-only mode.")

    return KnowledgeRetriever(
        store=KnowledgeBaseStore(Path(settings.knowledge_base_path)),
        client=client,
        cache=QueryEmbeddingCache(
            capacity=settings.query_cache_size,
            max_key_chars=settings.query_cache_max_chars,
            casefold=settings.query_cache_casefold,
        ),
        default_top_k=settings.rag_top_k,
        metadata_boosts=settings.metadata_boosts,
        pricing_bonus=settings.lexical_pricing_bonus,
        query_timeout=settings.rag_query_timeout_seconds,
        context_max_chars=settings.context_max_chars,
    )
