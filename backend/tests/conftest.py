"""Pytest configuration and fixtures for backend tests."""

import json
from pathlib import Path
from typing import Any, Callable

import pytest

from christy import observability
from christy.knowledge.cache import QueryEmbeddingCache
from christy.knowledge.embeddings import EmbeddingClient
from christy.knowledge.models import KnowledgeEntry
from christy.knowledge.retriever import KnowledgeRetriever
from christy.knowledge.store import KnowledgeBaseStore, write_artifact

from tests.fakes import FakeEmbeddingProvider, RecordingSleep


@pytest.fixture(autouse=True)
def fresh_metrics_backend():
    """Give every test its own in-memory metrics collector."""
    observability._metrics_backend = observability.MetricsCollector()
    yield observability._metrics_backend
    observability._metrics_backend = None


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def make_client(recording_sleep: RecordingSleep) -> Callable[..., EmbeddingClient]:
    """Factory for embedding clients backed by a fake provider."""

    def _make(
        provider: FakeEmbeddingProvider,
        candidates: list[str] | None = None,
        model_override: str | None = None,
        max_retries: int = 3,
        **kwargs: Any,
    ) -> EmbeddingClient:
        return EmbeddingClient(
            provider,
            candidates=candidates or ["fake-embedding-a", "fake-embedding-b"],
            model_override=model_override,
            max_retries=max_retries,
            sleep=recording_sleep,
            **kwargs,
        )

    return _make


@pytest.fixture
def kb_path(tmp_path: Path) -> Path:
    return tmp_path / "rag" / "knowledge_base.json"


@pytest.fixture
def write_kb(kb_path: Path) -> Callable[..., Path]:
    def _write(entries: list[KnowledgeEntry], model: str | None = "fake-embedding-a") -> Path:
        write_artifact(kb_path, entries, embedding_model=model)
        return kb_path

    return _write


@pytest.fixture
def make_retriever(kb_path: Path) -> Callable[..., KnowledgeRetriever]:
    def _make(
        client: EmbeddingClient | None = None,
        cache: QueryEmbeddingCache | None = None,
        **kwargs: Any,
    ) -> KnowledgeRetriever:
        return KnowledgeRetriever(
            store=KnowledgeBaseStore(kb_path),
            client=client,
            cache=cache,
            **kwargs,
        )

    return _make


@pytest.fixture
def rag_data_dir(tmp_path: Path) -> Path:
    """A data directory with the three compiler inputs."""
    data_dir = tmp_path / "data"
    data_dir.mkdir()

    (data_dir / "marketing_book.txt").write_text(
        "We sell new and used Bitcoin miners.\n\n"
        "Hosting is available in Texas at competitive power rates.\n\n"
        "All miners are tested before shipping.",
        encoding="utf-8",
    )
    (data_dir / "chats.json").write_text(
        json.dumps(
            [
                {"role": "user", "content": "Do you have S19 XP?", "timestamp": "2024-01-01T10:00:00Z"},
                {"role": "agent", "content": "Yes, 12 units in stock.", "timestamp": "2024-01-01T10:01:00Z"},
                {"role": "agent", "content": "Anything else?", "timestamp": "2024-01-01T10:02:00Z"},
            ]
        ),
        encoding="utf-8",
    )
    (data_dir / "price_sheet.csv").write_text(
        "product_id,category,model_name,condition,hashrate_ths,efficiency_j_th,price_usd,stock,doa_terms,notes\n"
        "S19XP-141,miner,Antminer S19 XP,new,141,21.5,2450,12,30-day DOA,\n"
        "HOST-TX,hosting,Texas Hosting,,,,,,,Per kWh billing\n",
        encoding="utf-8",
    )
    return data_dir
