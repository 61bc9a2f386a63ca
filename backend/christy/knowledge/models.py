"""Data models for knowledge base entries and retrieval results."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class SourceKind(str, Enum):
    """Origin of a knowledge entry."""

    MARKETING_DOCUMENT = "marketing_document"
    TRANSCRIPT = "transcript"
    CATALOG_ROW = "catalog_row"
    OPERATIONAL_LOG = "operational_log"


# Source tags written by older knowledge base builds
LEGACY_SOURCE_TAGS = {
    "marketing_book": SourceKind.MARKETING_DOCUMENT,
    "chat": SourceKind.TRANSCRIPT,
    "price_sheet": SourceKind.CATALOG_ROW,
    "log": SourceKind.OPERATIONAL_LOG,
}


class KnowledgeEntry(BaseModel):
    """A single retrievable unit of the knowledge base.

    ``text`` is exactly what was embedded. An empty ``embedding`` means the
    entry could not be embedded at build time and never matches semantically.
    """

    model_config = ConfigDict(frozen=True, use_enum_values=False)

    id: str = Field(..., description="Identifier namespaced by source (e.g. 'catalog_row:S19-XP')")
    text: str = Field(..., description="Normalized descriptive text")
    source: SourceKind = Field(..., description="Origin of the entry")
    metadata: dict[str, Any] = Field(
        default_factory=dict,
        description="Scalar attributes used for scoring boosts",
    )
    embedding: list[float] = Field(default_factory=list)

    @field_validator("source", mode="before")
    @classmethod
    def _map_legacy_source(cls, value: Any) -> Any:
        if isinstance(value, str) and value in LEGACY_SOURCE_TAGS:
            return LEGACY_SOURCE_TAGS[value]
        return value

    @property
    def is_matchable(self) -> bool:
        return bool(self.embedding)


class LoadStatus(str, Enum):
    """How the in-memory knowledge base came to be."""

    LOADED = "loaded"
    MISSING = "missing"
    INVALID = "invalid"


@dataclass(frozen=True)
class KnowledgeBase:
    """Read-only, ordered collection of knowledge entries."""

    entries: tuple[KnowledgeEntry, ...] = ()
    status: LoadStatus = LoadStatus.MISSING
    embedding_model: str | None = None
    path: str | None = None

    def __len__(self) -> int:
        return len(self.entries)

    @property
    def has_embeddings(self) -> bool:
        return any(entry.is_matchable for entry in self.entries)


class RetrievalMode(str, Enum):
    """Which scoring path produced a retrieval result."""

    SEMANTIC = "semantic"
    LEXICAL = "lexical"
    EMPTY = "empty"


class RetrievalResult(BaseModel):
    """A ranked knowledge entry with its score."""

    entry: KnowledgeEntry
    score: float = Field(..., description="Similarity plus boosts, or lexical term count")


class RetrievalOutcome(BaseModel):
    """Ranked results together with the path that produced them.

    Distinguishes "no relevant context" from "provider was down and the
    engine degraded to lexical scoring".
    """

    results: list[RetrievalResult] = Field(default_factory=list)
    mode: RetrievalMode
    reason: str | None = None

    @property
    def entries(self) -> list[KnowledgeEntry]:
        return [result.entry for result in self.results]

    @property
    def degraded(self) -> bool:
        return self.mode == RetrievalMode.LEXICAL and self.reason in {
            "provider_unavailable",
            "timeout",
            "dimension_mismatch",
        }


@dataclass
class BuildReport:
    """Summary of a knowledge base compilation run."""

    output_path: str
    embedding_model: str | None = None
    counts: dict[str, int] = field(default_factory=dict)
    skipped_sources: list[str] = field(default_factory=list)
    failures: list[str] = field(default_factory=list)

    @property
    def total_entries(self) -> int:
        return sum(self.counts.values())
