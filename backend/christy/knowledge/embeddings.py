"""Embedding client with model selection and retries.

The client probes candidate models in order on first use and commits to the
first that returns a usable vector. An explicit model override is probed
alone, never combined with the candidate list. When probing fails only for
transient reasons, further calls fail fast until a cool-down has passed or
the selection is reset.
"""

import asyncio
import logging
import math
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable

from christy.core.config import Settings
from christy.knowledge.errors import InvalidResponse, ProviderError, ProviderUnavailable
from christy.knowledge.providers import EmbeddingProvider
from christy.knowledge.retry import DEFAULT_MAX_RETRIES, with_retry

logger = logging.getLogger(__name__)

PROBE_TEXT = "ping"
DEFAULT_MIN_DIMENSIONS = 10
DEFAULT_PROBE_COOLDOWN_SECONDS = 300.0

# Google task types; other providers ignore them
TASK_RETRIEVAL_DOCUMENT = "retrieval_document"
TASK_RETRIEVAL_QUERY = "retrieval_query"


class SelectionState(str, Enum):
    """Lifecycle of embedding model selection."""

    UNPROBED = "unprobed"
    PROBING = "probing"
    COMMITTED = "committed"
    EXHAUSTED = "exhausted"


@dataclass
class ModelSelection:
    """Current model selection, kept as an explicit resettable value."""

    state: SelectionState = SelectionState.UNPROBED
    model: str | None = None
    tried: list[str] = field(default_factory=list)
    # Monotonic time before which an unprobed selection must not probe again
    retry_at: float | None = None

    def cooling_down(self, now: float) -> bool:
        return (
            self.state == SelectionState.UNPROBED
            and self.retry_at is not None
            and now < self.retry_at
        )

    def probing(self) -> "ModelSelection":
        return ModelSelection(SelectionState.PROBING, None, [])

    def committed(self, model: str, tried: list[str]) -> "ModelSelection":
        return ModelSelection(SelectionState.COMMITTED, model, tried)

    def exhausted(self, tried: list[str]) -> "ModelSelection":
        return ModelSelection(SelectionState.EXHAUSTED, None, tried)


class EmbeddingClient:
    """Produces embeddings through an external provider, resilient to transient failure."""

    def __init__(
        self,
        provider: EmbeddingProvider,
        candidates: list[str],
        model_override: str | None = None,
        max_retries: int = DEFAULT_MAX_RETRIES,
        min_dimensions: int = DEFAULT_MIN_DIMENSIONS,
        probe_cooldown_seconds: float = DEFAULT_PROBE_COOLDOWN_SECONDS,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.provider = provider
        self.candidates = list(candidates)
        self.model_override = (model_override or "").strip() or None
        self.max_retries = max_retries
        self.min_dimensions = min_dimensions
        self.probe_cooldown_seconds = max(0.0, probe_cooldown_seconds)
        self._sleep = sleep
        self._clock = clock
        self._selection = ModelSelection()
        self._selection_lock = asyncio.Lock()

    @classmethod
    def from_settings(
        cls,
        provider: EmbeddingProvider,
        settings: Settings,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> "EmbeddingClient":
        return cls(
            provider,
            candidates=settings.model_candidates(),
            model_override=settings.embedding_model,
            max_retries=settings.embed_max_retries,
            min_dimensions=settings.embed_min_dimensions,
            probe_cooldown_seconds=settings.embed_probe_cooldown_seconds,
            sleep=sleep,
        )

    @property
    def selection(self) -> ModelSelection:
        return self._selection

    @property
    def model(self) -> str | None:
        return self._selection.model

    def reset(self) -> None:
        """Forget the selection (and any cool-down) so the next call probes again."""
        self._selection = ModelSelection()

    async def select_model(self) -> str:
        """Return the committed model, probing candidates on first use.

        Raises:
            ProviderUnavailable: No candidate produced a usable embedding, or
                the last probe failed transiently and the cool-down has not
                passed yet.
            ProviderError: The override failed with a non-retryable error.
        """
        if self._selection.state == SelectionState.COMMITTED and self._selection.model:
            return self._selection.model

        async with self._selection_lock:
            # Another task may have committed while this one waited
            if self._selection.state == SelectionState.COMMITTED and self._selection.model:
                return self._selection.model
            if self._selection.state == SelectionState.EXHAUSTED:
                raise ProviderUnavailable(
                    f"No embedding model worked. Tried: {', '.join(self._selection.tried)}"
                )
            now = self._clock()
            if self._selection.cooling_down(now):
                remaining = self._selection.retry_at - now
                raise ProviderUnavailable(
                    f"Embedding provider unavailable; next probe in {remaining:.0f}s"
                )

            self._selection = self._selection.probing()
            if self.model_override:
                return await self._probe_override(self.model_override)
            return await self._probe_candidates()

    async def _probe_override(self, model: str) -> str:
        try:
            await self._probe(model)
        except ProviderUnavailable:
            # Transient exhaustion or invalid vector; probe again after the cool-down
            self._selection = self._cooling_down([model])
            raise
        except ProviderError:
            self._selection = self._selection.exhausted([model])
            raise

        self._selection = self._selection.committed(model, [model])
        logger.info(f"Embedding model selected (override): {model}")
        return model

    async def _probe_candidates(self) -> str:
        tried: list[str] = []
        transient_failure = False

        for model in self.candidates:
            tried.append(model)
            try:
                await self._probe(model)
            except ProviderError as e:
                if isinstance(e, ProviderUnavailable) and not isinstance(e, InvalidResponse):
                    transient_failure = True
                logger.warning(f"Embedding model {model} unavailable: {e}")
                continue

            self._selection = self._selection.committed(model, tried)
            logger.info(f"Embedding model selected: {model}")
            return model

        if transient_failure:
            self._selection = self._cooling_down(tried)
            logger.warning(
                f"Embedding provider unavailable; next probe in {self.probe_cooldown_seconds:.0f}s"
            )
        else:
            self._selection = self._selection.exhausted(tried)
        raise ProviderUnavailable(f"No embedding model worked. Tried: {', '.join(tried)}")

    def _cooling_down(self, tried: list[str]) -> ModelSelection:
        return ModelSelection(tried=tried, retry_at=self._clock() + self.probe_cooldown_seconds)

    async def _probe(self, model: str) -> None:
        await self._embed_with_model(model, PROBE_TEXT, None, label=f"embed probe ({model})")

    async def embed(self, text: str, task_type: str | None = None) -> list[float]:
        """Embed a single text with the committed model.

        Raises:
            ProviderUnavailable: Retries exhausted or no model available.
            InvalidResponse: Vector shorter than the sanity threshold.
            ProviderError: Non-retryable provider failure.
        """
        model = await self.select_model()
        return await self._embed_with_model(model, text, task_type, label="embed_content")

    async def _embed_with_model(
        self,
        model: str,
        text: str,
        task_type: str | None,
        label: str,
    ) -> list[float]:
        vector = await with_retry(
            lambda: self.provider.embed(model, text, task_type),
            label=label,
            max_retries=self.max_retries,
            provider=getattr(self.provider, "name", "embedding"),
            sleep=self._sleep,
        )
        if not all(
            isinstance(v, (int, float)) and not isinstance(v, bool) and math.isfinite(v)
            for v in vector
        ):
            raise InvalidResponse(f"Embedding vector from {model} contains non-numeric values")
        if len(vector) < self.min_dimensions:
            raise InvalidResponse(
                f"Embedding vector from {model} has {len(vector)} dimensions "
                f"(minimum {self.min_dimensions})"
            )
        return vector
