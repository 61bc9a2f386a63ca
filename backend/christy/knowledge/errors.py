"""Exceptions raised by the knowledge engine."""


class KnowledgeError(Exception):
    """Base exception for knowledge engine errors."""

    pass


class ConfigurationError(KnowledgeError):
    """Missing or invalid configuration (e.g. no provider credential)."""

    pass


class ArtifactMissing(KnowledgeError):
    """The compiled knowledge base file does not exist."""

    pass


class ProviderError(KnowledgeError):
    """Error returned by the embedding provider.

    Plain ``ProviderError`` instances are not retried.
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.retry_after = retry_after


class ProviderRateLimited(ProviderError):
    """Provider rejected the call with a rate limit (HTTP 429)."""

    pass


class ProviderTransient(ProviderError):
    """Transient provider failure (HTTP 500/503, connection loss, timeout)."""

    pass


class ProviderUnavailable(ProviderError):
    """Provider could not serve the call after all retries."""

    pass


class InvalidResponse(ProviderUnavailable):
    """Provider returned a malformed or undersized embedding."""

    pass


RETRYABLE_ERRORS = (ProviderRateLimited, ProviderTransient)
