"""LLM provider errors."""

from __future__ import annotations


class LLMError(RuntimeError):
    """Raised when a provider cannot complete a request.

    The optional attributes mirror what backends report so the agent loop can
    classify failures without backend-specific logic.
    """

    def __init__(
        self,
        message: str,
        *,
        status: int | None = None,
        code: str | None = None,
        type: str | None = None,  # noqa: A002
        param: str | None = None,
        request_id: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status = status
        self.code = code
        self.type = type
        self.param = param
        self.request_id = request_id


class ProviderConnectionError(LLMError, ConnectionError):
    """Raised when a backend cannot be reached."""

    def __init__(self, message: str, *, provider: str | None = None, endpoint: str | None = None) -> None:
        super().__init__(message)
        self.provider = provider
        self.endpoint = endpoint


class ProviderTimeoutError(LLMError, TimeoutError):
    """Raised when a backend request times out before a response arrives."""


class PrematureCloseError(LLMError):
    """Raised when a response stream ends before the backend finished it."""


class RateLimitError(LLMError):
    """Raised for HTTP 429 / rate_limit_exceeded responses."""


class ContextLengthExceededError(LLMError):
    """Raised when the request exceeds the model context window."""


class UnsupportedProviderError(LLMError):
    """Raised when the configured provider type has no adapter."""


class ProviderNotInitializedError(LLMError):
    """Raised when an adapter is used before `initialize()` completed."""


__all__ = [
    "ContextLengthExceededError",
    "LLMError",
    "PrematureCloseError",
    "ProviderConnectionError",
    "ProviderNotInitializedError",
    "ProviderTimeoutError",
    "RateLimitError",
    "UnsupportedProviderError",
]
