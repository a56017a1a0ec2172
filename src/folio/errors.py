"""Error taxonomy shared by the registry, adapters, orchestrator and handler.

Failures are tagged where they are detected. Each exception carries an
``ErrorKind`` and the HTTP mapping is a lookup on that kind, so nothing
downstream has to read error text to decide what happened.
"""

from __future__ import annotations

from enum import Enum
from typing import ClassVar


class ErrorKind(str, Enum):
    INVALID_INPUT = "invalid_input"
    INVALID_FALLBACK_INDEX = "invalid_fallback_index"
    CONVERSATION_FORMAT = "conversation_format_error"
    AUTHENTICATION = "authentication_error"
    RATE_LIMITED = "rate_limited"
    PROVIDER_UNAVAILABLE = "provider_unavailable"
    ALL_PROVIDERS_EXHAUSTED = "all_providers_exhausted"
    NO_PROVIDER_CONFIGURED = "no_provider_configured"
    MISCONFIGURED_PROVIDER = "misconfigured_provider"

    @classmethod
    def from_code(cls, code: object) -> "ErrorKind | None":
        if not isinstance(code, str):
            return None
        try:
            return cls(code)
        except ValueError:
            return None


class FolioError(Exception):
    kind: ClassVar[ErrorKind]

    def __init__(
        self,
        message: str,
        *,
        provider: str | None = None,
        retry_after: int | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.provider = provider
        self.retry_after = retry_after


class InvalidInput(FolioError):
    kind = ErrorKind.INVALID_INPUT


class InvalidFallbackIndex(FolioError):
    kind = ErrorKind.INVALID_FALLBACK_INDEX


class ConversationFormatError(FolioError):
    """A backend rejected the role sequence of the conversation."""

    kind = ErrorKind.CONVERSATION_FORMAT


class AuthenticationError(FolioError):
    kind = ErrorKind.AUTHENTICATION


class RateLimited(FolioError):
    kind = ErrorKind.RATE_LIMITED


class ProviderUnavailable(FolioError):
    kind = ErrorKind.PROVIDER_UNAVAILABLE

    def __init__(
        self,
        message: str,
        *,
        provider: str | None = None,
        retry_after: int | None = None,
        status_code: int | None = None,
        malformed: bool = False,
    ) -> None:
        super().__init__(message, provider=provider, retry_after=retry_after)
        self.status_code = status_code
        self.malformed = malformed


class AllProvidersExhausted(FolioError):
    kind = ErrorKind.ALL_PROVIDERS_EXHAUSTED

    def __init__(
        self,
        last_provider: str | None,
        last_error: str | None,
        *,
        attempts: int = 0,
    ) -> None:
        detail = last_error or "no provider produced a response"
        message = f"All AI providers failed. Last error ({last_provider or 'unknown'}): {detail}"
        super().__init__(message, provider=last_provider)
        self.last_provider = last_provider
        self.last_error = last_error
        self.attempts = attempts


class NoProviderConfigured(FolioError):
    kind = ErrorKind.NO_PROVIDER_CONFIGURED


class MisconfiguredProvider(FolioError):
    kind = ErrorKind.MISCONFIGURED_PROVIDER


# Kinds that end a generation immediately instead of moving down the chain.
TERMINAL_KINDS: frozenset[ErrorKind] = frozenset(
    {
        ErrorKind.AUTHENTICATION,
        ErrorKind.CONVERSATION_FORMAT,
    }
)

STATUS_BY_KIND: dict[ErrorKind, int] = {
    ErrorKind.INVALID_INPUT: 400,
    ErrorKind.INVALID_FALLBACK_INDEX: 400,
    ErrorKind.CONVERSATION_FORMAT: 422,
    ErrorKind.AUTHENTICATION: 503,
    ErrorKind.RATE_LIMITED: 429,
    ErrorKind.PROVIDER_UNAVAILABLE: 503,
    ErrorKind.ALL_PROVIDERS_EXHAUSTED: 503,
    ErrorKind.NO_PROVIDER_CONFIGURED: 503,
    ErrorKind.MISCONFIGURED_PROVIDER: 503,
}

FALLBACK_AVAILABLE_KINDS: frozenset[ErrorKind] = frozenset(
    {
        ErrorKind.PROVIDER_UNAVAILABLE,
        ErrorKind.ALL_PROVIDERS_EXHAUSTED,
        ErrorKind.MISCONFIGURED_PROVIDER,
    }
)

USER_MESSAGES: dict[ErrorKind, str] = {
    ErrorKind.INVALID_INPUT: "Your message could not be read. Please try again.",
    ErrorKind.INVALID_FALLBACK_INDEX: "No further backup AI service is configured.",
    ErrorKind.CONVERSATION_FORMAT: "There was an issue with the conversation format. Starting fresh...",
    ErrorKind.AUTHENTICATION: "AI service configuration issue. Please contact support if this persists.",
    ErrorKind.RATE_LIMITED: "Too many requests. Please wait a moment before trying again.",
    ErrorKind.PROVIDER_UNAVAILABLE: "AI services are temporarily unavailable. Please try again in a moment.",
    ErrorKind.ALL_PROVIDERS_EXHAUSTED: "AI services are temporarily unavailable. Please try again in a moment.",
    ErrorKind.NO_PROVIDER_CONFIGURED: "The assistant is not configured yet. Please check back later.",
    ErrorKind.MISCONFIGURED_PROVIDER: "AI services are temporarily unavailable. Please try again in a moment.",
}

INTERNAL_ERROR_STATUS = 500
