"""Knowledge base artifact persistence.

The artifact is a JSON document. Current builds write an envelope::

    {"version": 1, "embedding_model": "...", "built_at": "...", "entries": [...]}

Older builds wrote a bare list of entries; both are accepted on read.
"""

import asyncio
import json
import logging
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Sequence

from pydantic import ValidationError

from christy.knowledge.errors import ArtifactMissing
from christy.knowledge.models import KnowledgeBase, KnowledgeEntry, LoadStatus

logger = logging.getLogger(__name__)

ARTIFACT_VERSION = 1


def read_artifact(path: Path) -> KnowledgeBase:
    """Read and validate a knowledge base artifact.

    Raises:
        ArtifactMissing: The file does not exist.
        ValueError: The file is not a valid artifact.
    """
    if not path.exists():
        raise ArtifactMissing(f"Knowledge base not found at {path}")

    with open(path, encoding="utf-8") as f:
        data = json.load(f)

    embedding_model = None
    if isinstance(data, dict):
        embedding_model = data.get("embedding_model")
        data = data.get("entries")
    if not isinstance(data, list):
        raise ValueError(f"Knowledge base {path} has no entry list")

    try:
        entries = tuple(KnowledgeEntry.model_validate(item) for item in data)
    except ValidationError as e:
        raise ValueError(f"Invalid knowledge entry in {path}: {e}") from e

    return KnowledgeBase(
        entries=entries,
        status=LoadStatus.LOADED,
        embedding_model=embedding_model,
        path=str(path),
    )


def write_artifact(
    path: Path,
    entries: Sequence[KnowledgeEntry],
    embedding_model: str | None = None,
) -> None:
    """Write the artifact through a temporary file and atomically replace the target."""
    path.parent.mkdir(parents=True, exist_ok=True)
    payload = {
        "version": ARTIFACT_VERSION,
        "embedding_model": embedding_model,
        "built_at": datetime.now(timezone.utc).isoformat(),
        "entries": [entry.model_dump(mode="json") for entry in entries],
    }

    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(payload, f, ensure_ascii=False, indent=2)
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


class KnowledgeBaseStore:
    """Loads the knowledge base once and serves it read-only.

    A missing artifact yields an empty knowledge base; a corrupt one is
    logged and also yields an empty knowledge base.
    """

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self._knowledge_base: KnowledgeBase | None = None
        self._lock = asyncio.Lock()

    async def get(self) -> KnowledgeBase:
        if self._knowledge_base is not None:
            return self._knowledge_base

        async with self._lock:
            if self._knowledge_base is None:
                self._knowledge_base = await asyncio.to_thread(self._load)
        return self._knowledge_base

    def invalidate(self) -> None:
        """Drop the loaded knowledge base; the next ``get`` reads the file again."""
        self._knowledge_base = None

    def _load(self) -> KnowledgeBase:
        try:
            knowledge_base = read_artifact(self.path)
        except ArtifactMissing:
            logger.warning(
                f"Knowledge base not found at {self.path}. "
                "Retrieval will return empty context. Run build_knowledge_index.py to create it."
            )
            return KnowledgeBase(status=LoadStatus.MISSING, path=str(self.path))
        except (ValueError, OSError) as e:
            logger.error(f"Failed to load knowledge base {self.path}: {e}")
            return KnowledgeBase(status=LoadStatus.INVALID, path=str(self.path))

        logger.info(
            f"Knowledge base loaded: {len(knowledge_base)} entries "
            f"(model={knowledge_base.embedding_model or 'unknown'})"
        )
        return knowledge_base
