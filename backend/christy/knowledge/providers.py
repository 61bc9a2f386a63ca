"""Embedding provider adapters.

Each adapter performs exactly one provider call per ``embed`` and translates
SDK exceptions into the engine's error taxonomy so the retry policy can
treat every provider the same way. Supports Google (google-generativeai) and
OpenAI embedding models.
"""

import asyncio
import logging
import time
from typing import Any, Protocol

from christy.core.config import Settings
from christy.knowledge.errors import (
    ConfigurationError,
    InvalidResponse,
    ProviderError,
    ProviderRateLimited,
    ProviderTransient,
)
from christy.knowledge.retry import parse_retry_delay_seconds, parse_retry_hint_from_message
from christy.observability import get_metrics_backend

logger = logging.getLogger(__name__)

RATE_LIMIT_STATUS = 429
TRANSIENT_STATUSES = frozenset({500, 503})


class EmbeddingProvider(Protocol):
    """Protocol defining the embedding provider interface."""

    name: str

    async def embed(self, model: str, text: str, task_type: str | None = None) -> list[float]:
        """Embed a single text with the given model."""
        ...

    async def list_models(self) -> list[str]:
        """List model identifiers that support embedding."""
        ...


def classify_provider_error(
    status_code: int | None,
    message: str,
    retry_after: float | None = None,
) -> ProviderError:
    """Map an HTTP-equivalent status onto the error taxonomy."""
    if status_code == RATE_LIMIT_STATUS:
        return ProviderRateLimited(message, status_code=status_code, retry_after=retry_after)
    if status_code in TRANSIENT_STATUSES:
        return ProviderTransient(message, status_code=status_code, retry_after=retry_after)
    return ProviderError(message, status_code=status_code)


class GoogleEmbeddingProvider:
    """Adapter for Google's generative AI embedding models."""

    name = "google"

    def __init__(self, api_key: str | None) -> None:
        """Initialize the adapter.

        Raises:
            ConfigurationError: If no API key is configured.
        """
        if not api_key:
            raise ConfigurationError("Missing GEMINI_API_KEY for the google embedding provider.")

        import google.generativeai as genai

        genai.configure(api_key=api_key)
        self._genai = genai
        self._metrics = get_metrics_backend()

    @staticmethod
    def qualify_model(model: str) -> str:
        return model if model.startswith("models/") else f"models/{model}"

    async def embed(self, model: str, text: str, task_type: str | None = None) -> list[float]:
        from google.api_core import exceptions as google_exceptions

        start_time = time.perf_counter()
        status_code = 500
        try:
            result = await self._genai.embed_content_async(
                model=self.qualify_model(model),
                content=text,
                task_type=task_type,
            )
            status_code = 200
        except google_exceptions.GoogleAPICallError as e:
            status_code = e.code or 500
            retry_after = parse_retry_delay_seconds(e.details) or parse_retry_hint_from_message(
                str(e)
            )
            raise classify_provider_error(status_code, str(e), retry_after) from e
        except (google_exceptions.GoogleAPIError, ConnectionError, asyncio.TimeoutError) as e:
            raise ProviderTransient(f"Google embedding call failed: {e}") from e
        finally:
            self._observe_api_call("embed_content", status_code, start_time)

        return _as_vector(result.get("embedding") if isinstance(result, dict) else None)

    async def list_models(self) -> list[str]:
        from google.api_core import exceptions as google_exceptions

        def _list() -> list[str]:
            return [
                m.name
                for m in self._genai.list_models()
                if "embedContent" in getattr(m, "supported_generation_methods", [])
            ]

        try:
            return await asyncio.to_thread(_list)
        except google_exceptions.GoogleAPICallError as e:
            raise classify_provider_error(e.code or 500, str(e)) from e

    def _observe_api_call(self, operation: str, status_code: int, start_time: float) -> None:
        duration_ms = (time.perf_counter() - start_time) * 1000
        self._metrics.observe_external_api(self.name, operation, status_code, duration_ms)


class OpenAIEmbeddingProvider:
    """Adapter for OpenAI embedding models."""

    name = "openai"

    def __init__(self, api_key: str | None) -> None:
        if not api_key:
            raise ConfigurationError("Missing OPENAI_API_KEY for the openai embedding provider.")

        from openai import AsyncOpenAI

        # Retries are handled by christy.knowledge.retry, not the SDK
        self._client = AsyncOpenAI(api_key=api_key, max_retries=0)
        self._metrics = get_metrics_backend()

    async def embed(self, model: str, text: str, task_type: str | None = None) -> list[float]:
        import openai

        start_time = time.perf_counter()
        status_code = 500
        try:
            response = await self._client.embeddings.create(model=model, input=text)
            status_code = 200
        except openai.APIStatusError as e:
            status_code = e.status_code
            raise classify_provider_error(
                status_code, str(e), _retry_after_header(e.response.headers)
            ) from e
        except (openai.APIConnectionError, openai.APITimeoutError) as e:
            raise ProviderTransient(f"OpenAI embedding call failed: {e}") from e
        finally:
            duration_ms = (time.perf_counter() - start_time) * 1000
            self._metrics.observe_external_api(self.name, "embeddings", status_code, duration_ms)

        if not response.data:
            return []
        return _as_vector(response.data[0].embedding)

    async def list_models(self) -> list[str]:
        import openai

        try:
            return [m.id async for m in self._client.models.list() if "embedding" in m.id]
        except openai.APIStatusError as e:
            raise classify_provider_error(e.status_code, str(e)) from e


def _retry_after_header(headers: Any) -> float | None:
    if headers is None:
        return None
    retry_after_ms = headers.get("retry-after-ms")
    if retry_after_ms:
        try:
            return float(retry_after_ms) / 1000
        except ValueError:
            pass
    retry_after = headers.get("retry-after")
    if retry_after:
        try:
            return float(retry_after)
        except ValueError:
            return None
    return None


def _as_vector(values: Any) -> list[float]:
    if not values:
        return []
    try:
        return [float(v) for v in values]
    except (TypeError, ValueError) as e:
        raise InvalidResponse(f"Embedding response is not a numeric vector: {e}") from e


def create_embedding_provider(settings: Settings) -> EmbeddingProvider | None:
    """Build the provider named by settings, or None for lexical-only mode.

    Raises:
        ConfigurationError: Unknown provider or missing credential.
    """
    provider = settings.embedding_provider.lower()
    if provider == "none":
        return None
    if provider == "google":
        return GoogleEmbeddingProvider(settings.gemini_api_key)
    if provider == "openai":
        return OpenAIEmbeddingProvider(settings.openai_api_key)
    raise ConfigurationError(f"Unsupported embedding provider: {settings.embedding_provider}")
