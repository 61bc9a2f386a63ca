"""Offline knowledge base compiler.

Loads every source, embeds each text unit through the embedding client in
throttled batches and writes the full, ordered knowledge base as a single
artifact. A unit whose embedding fails is kept with an empty vector (never
matched semantically, still available for lexical scoring and audits) and
reported in the build summary. Only configuration errors abort the build.
"""

import asyncio
import logging
from pathlib import Path
from typing import Any, Awaitable, Callable, Sequence

from christy.core.config import Settings
from christy.knowledge.embeddings import TASK_RETRIEVAL_DOCUMENT, EmbeddingClient
from christy.knowledge.errors import ProviderError
from christy.knowledge.loader import DEFAULT_CHUNK_SIZE, TextUnit, collect_units
from christy.knowledge.models import BuildReport, KnowledgeEntry
from christy.knowledge.store import write_artifact

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 16
DEFAULT_BATCH_DELAY_MS = 350

# Short pause inside a batch to avoid burst throttling
INTRA_BATCH_PAUSE_EVERY = 8
INTRA_BATCH_PAUSE_MS = 120


class KnowledgeBaseCompiler:
    """Builds the knowledge base artifact from raw sources."""

    def __init__(
        self,
        client: EmbeddingClient | None,
        batch_size: int = DEFAULT_BATCH_SIZE,
        batch_delay_ms: int = DEFAULT_BATCH_DELAY_MS,
        chunk_max_chars: int = DEFAULT_CHUNK_SIZE,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        """Initialize the compiler.

        Args:
            client: Embedding client, or None to build a lexical-only
                knowledge base with empty vectors.
            batch_size: Units per batch.
            batch_delay_ms: Delay between batches.
            chunk_max_chars: Paragraph packing budget for free text.
            sleep: Awaitable sleep, injectable for tests.
        """
        self.client = client
        self.batch_size = max(1, batch_size)
        self.batch_delay_ms = max(0, batch_delay_ms)
        self.chunk_max_chars = chunk_max_chars
        self._sleep = sleep

    @classmethod
    def from_settings(
        cls,
        client: EmbeddingClient | None,
        settings: Settings,
    ) -> "KnowledgeBaseCompiler":
        return cls(
            client,
            batch_size=settings.embed_batch_size,
            batch_delay_ms=settings.embed_batch_delay_ms,
            chunk_max_chars=settings.chunk_max_chars,
        )

    async def compile(self, data_dir: Path, output_path: Path) -> BuildReport:
        """Build the knowledge base from ``data_dir`` and write it to ``output_path``.

        Previous artifacts are fully replaced.

        Raises:
            ConfigurationError: Provider misconfiguration; nothing is written.
        """
        report = BuildReport(output_path=str(output_path))

        units, skipped = collect_units(Path(data_dir), self.chunk_max_chars)
        report.skipped_sources = skipped

        embeddings: list[list[float]] | None = None
        if self.client is not None and units:
            try:
                report.embedding_model = await self.client.select_model()
                logger.info(f"Embedding model selected: {report.embedding_model}")
            except ProviderError as e:
                logger.error(f"No embedding model available; entries will be unmatchable: {e}")
                report.failures = [f"{unit.id}: {e}" for unit in units]
                embeddings = [[] for _ in units]

        if embeddings is None:
            logger.info(
                f"Embed tuning: batchSize={self.batch_size}, "
                f"batchDelay={self.batch_delay_ms}ms, units={len(units)}"
            )
            embeddings = await self.embed_all(units, report)

        entries = [
            KnowledgeEntry(
                id=unit.id,
                text=unit.text,
                source=unit.source,
                metadata=unit.metadata,
                embedding=vector,
            )
            for unit, vector in zip(units, embeddings)
        ]
        for entry in entries:
            key = entry.source.value
            report.counts[key] = report.counts.get(key, 0) + 1

        write_artifact(Path(output_path), entries, embedding_model=report.embedding_model)
        logger.info(
            f"Knowledge base saved to {output_path} with {len(entries)} entries "
            f"({len(report.failures)} without embeddings)."
        )
        return report

    async def embed_all(self, units: Sequence[TextUnit], report: BuildReport) -> list[list[float]]:
        """Embed every unit in throttled batches, one provider call per unit."""
        vectors: list[list[float]] = []
        if self.client is None:
            return [[] for _ in units]

        total = len(units)
        for start in range(0, total, self.batch_size):
            end = min(total, start + self.batch_size)
            logger.info(f"Embedding {start + 1}-{end} of {total}...")

            vectors.extend(await self._embed_batch(units[start:end], report))

            if end < total:
                await self._sleep(self.batch_delay_ms / 1000)

        return vectors

    async def _embed_batch(self, batch: Sequence[TextUnit], report: BuildReport) -> list[list[float]]:
        assert self.client is not None
        vectors: list[list[float]] = []
        for i, unit in enumerate(batch):
            try:
                vectors.append(await self.client.embed(unit.text, TASK_RETRIEVAL_DOCUMENT))
            except ProviderError as e:
                logger.warning(f"Embedding failed for {unit.id}; storing empty vector: {e}")
                report.failures.append(f"{unit.id}: {e}")
                vectors.append([])

            if (i + 1) % INTRA_BATCH_PAUSE_EVERY == 0 and i + 1 < len(batch):
                await self._sleep(INTRA_BATCH_PAUSE_MS / 1000)
        return vectors
