"""Custom exception classes for structured API error handling."""

from __future__ import annotations


class AppError(Exception):
    """Base application error with an associated HTTP status code."""

    status_code: int = 500

    def __init__(self, message: str = "Internal server error") -> None:
        super().__init__(message)


class NotFoundError(AppError):
    status_code = 404


class ValidationError(AppError):
    status_code = 400


class ConflictError(AppError):
    status_code = 409


# ---------------------------------------------------------------------------
# Remote platform failures
# ---------------------------------------------------------------------------


class ShopifySyncError(AppError):
    """Any failure talking to the Shopify Admin API."""

    status_code = 502
    retryable: bool = False


class ShopifyTransportError(ShopifySyncError):
    """Network failure or 5xx response. Safe to retry with backoff."""

    retryable = True


class ShopifyRateLimitError(ShopifySyncError):
    """Query budget exhausted; retry no sooner than ``retry_after`` seconds."""

    status_code = 429
    retryable = True

    def __init__(self, retry_after: int, message: str | None = None) -> None:
        self.retry_after = retry_after
        super().__init__(message or f"Shopify rate limit hit, retry after {retry_after}s")


class ShopifyGraphQLError(ShopifySyncError):
    """Errors returned inside a 200 response. Terminal for that call."""

    def __init__(self, message: str, errors: list | None = None) -> None:
        self.errors = errors or []
        super().__init__(message)


# ---------------------------------------------------------------------------
# Sync preconditions
# ---------------------------------------------------------------------------


class PreconditionError(AppError):
    """A sync run cannot start. Never retried."""

    status_code = 409


class ConnectionNotFoundError(PreconditionError):
    status_code = 404


class UnsupportedPlatformError(PreconditionError):
    status_code = 400


class SetupIncompleteError(PreconditionError):
    status_code = 409


class SyncInProgressError(ConflictError):
    pass


# ---------------------------------------------------------------------------
# Boundary validation
# ---------------------------------------------------------------------------


class InvalidSignatureError(AppError):
    status_code = 401


class InvalidOAuthStateError(AppError):
    status_code = 403


class TokenExpiredError(AppError):
    status_code = 410


class AlreadyProcessedError(AppError):
    status_code = 409
