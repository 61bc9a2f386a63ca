"""Retry policy for calls into the embedding provider.

Only rate limits and transient server errors are retried. A provider-supplied
"retry after N seconds" hint waits ``N + 1`` seconds; otherwise the delay is
``min(60, 2 ** attempt)`` seconds.
"""

import asyncio
import logging
import re
from typing import Any, Awaitable, Callable, Iterable, TypeVar

from christy.knowledge.errors import RETRYABLE_ERRORS, ProviderError, ProviderUnavailable
from christy.observability import get_metrics_backend

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_RETRIES = 8
MAX_BACKOFF_SECONDS = 60.0
RETRY_HINT_BUFFER_SECONDS = 1.0

_DURATION_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*s\s*$", re.IGNORECASE)
_MESSAGE_HINT_RES = (
    re.compile(r"retry_delay\s*\{\s*seconds:\s*(\d+)", re.IGNORECASE),
    re.compile(r"retry in\s+(\d+(?:\.\d+)?)\s*s", re.IGNORECASE),
)


def parse_retry_delay_seconds(details: Iterable[Any] | None) -> float | None:
    """Extract a RetryInfo delay from structured error details.

    Accepts both REST-style dicts (``{"@type": "...RetryInfo",
    "retryDelay": "31s"}``) and protobuf ``RetryInfo`` messages exposing
    ``retry_delay.seconds``.
    """
    if not details:
        return None

    for detail in details:
        if isinstance(detail, dict):
            type_name = str(detail.get("@type", ""))
            delay = detail.get("retryDelay")
            if "RetryInfo" in type_name and isinstance(delay, str):
                match = _DURATION_RE.match(delay)
                if match:
                    return float(match.group(1))
            continue

        retry_delay = getattr(detail, "retry_delay", None)
        seconds = getattr(retry_delay, "seconds", None)
        if isinstance(seconds, (int, float)):
            nanos = getattr(retry_delay, "nanos", 0) or 0
            return float(seconds) + nanos / 1e9

    return None


def parse_retry_hint_from_message(message: str) -> float | None:
    """Fallback for SDKs that only expose the hint inside the error text."""
    for pattern in _MESSAGE_HINT_RES:
        match = pattern.search(message or "")
        if match:
            return float(match.group(1))
    return None


def compute_backoff(attempt: int, retry_after: float | None = None) -> float:
    """Delay in seconds before the next attempt.

    Args:
        attempt: 1-based number of the failed attempt.
        retry_after: Provider hint in seconds, if any.
    """
    if retry_after is not None:
        return retry_after + RETRY_HINT_BUFFER_SECONDS
    return min(MAX_BACKOFF_SECONDS, 2.0**attempt)


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    label: str = "request",
    max_retries: int = DEFAULT_MAX_RETRIES,
    provider: str = "embedding",
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> T:
    """Run ``operation`` and retry it on rate limits and transient errors.

    Args:
        operation: Zero-argument coroutine factory performing one provider call.
        label: Operation name used in logs and metrics.
        max_retries: Maximum number of retries after the first attempt.
        provider: Provider name used in metrics.
        sleep: Awaitable sleep, injectable for tests.

    Returns:
        The result of the first successful attempt.

    Raises:
        ProviderUnavailable: Retries exhausted; chained from the last error.
        ProviderError: Non-retryable provider error, raised immediately.
    """
    metrics = get_metrics_backend()
    attempt = 0

    while True:
        try:
            return await operation()
        except RETRYABLE_ERRORS as e:
            attempt += 1
            if attempt > max_retries:
                logger.error(f"{label} failed after {attempt} attempts: {e}")
                raise ProviderUnavailable(
                    f"{label} failed after {max_retries} retries: {e}",
                    status_code=e.status_code,
                ) from e

            delay = compute_backoff(attempt, e.retry_after)
            logger.warning(
                f"Provider error ({e.status_code or 'n/a'}) on {label}. "
                f"Retry attempt {attempt}/{max_retries} in {delay:.0f}s",
                extra={"retry_attempt": attempt, "retry_delay_seconds": delay},
            )
            metrics.observe_provider_retry(provider, label, attempt, delay)

            await sleep(delay)
        except ProviderError as e:
            logger.error(f"{label} failed with non-retryable error: {e}")
            raise
