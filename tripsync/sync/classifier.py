"""Error classification and read retry policy."""

import httpx
from pydantic import ValidationError

from tripsync.sync.errors import (
    ERROR_TYPES,
    ErrorCategory,
    RemoteStoreError,
    SyncError,
    ValidationFailure,
)

# Client errors that still indicate a transient condition
_TRANSIENT_4XX = {408, 429}


def classify_status(status: int | None) -> ErrorCategory:
    """Map an HTTP-like status to an error category."""
    if status is None:
        return ErrorCategory.TRANSIENT
    if status in (401, 403):
        return ErrorCategory.AUTHORIZATION
    if status == 409:
        return ErrorCategory.CONFLICT
    if status in _TRANSIENT_4XX or status >= 500:
        return ErrorCategory.TRANSIENT
    if 400 <= status < 500:
        return ErrorCategory.VALIDATION
    return ErrorCategory.TRANSIENT


def classify(exc: BaseException) -> ErrorCategory:
    """Categorize a failure from the remote call or local validation."""
    if isinstance(exc, SyncError):
        return exc.category
    if isinstance(exc, RemoteStoreError):
        return classify_status(exc.status)
    if isinstance(exc, ValidationError):
        return ErrorCategory.VALIDATION
    if isinstance(exc, httpx.HTTPStatusError):
        return classify_status(exc.response.status_code)
    # Transport errors, timeouts, dropped connections and anything unexpected
    return ErrorCategory.TRANSIENT


def _from_validation_error(exc: ValidationError) -> ValidationFailure:
    first = exc.errors()[0]
    ctx = first.get("ctx") or {}
    field = ctx.get("field") or ".".join(str(part) for part in first.get("loc", ())) or None
    return ValidationFailure(
        first.get("msg", str(exc)),
        field=field,
        max_length=ctx.get("max_length"),
        current_length=ctx.get("current_length"),
    )


def to_sync_error(exc: BaseException) -> SyncError:
    """Wrap any failure in the SyncError subclass of its category."""
    if isinstance(exc, SyncError):
        return exc
    if isinstance(exc, ValidationError):
        error: SyncError = _from_validation_error(exc)
    elif isinstance(exc, RemoteStoreError):
        error = ERROR_TYPES[classify(exc)](
            exc.message,
            status=exc.status,
            field=exc.field,
            max_length=exc.max_length,
            current_length=exc.current_length,
        )
    elif isinstance(exc, httpx.HTTPStatusError):
        error = ERROR_TYPES[classify(exc)](str(exc), status=exc.response.status_code)
    else:
        error = ERROR_TYPES[classify(exc)](str(exc) or type(exc).__name__)
    error.__cause__ = exc
    return error


def should_retry(category: ErrorCategory, attempt: int, max_retries: int, *, is_read: bool) -> bool:
    """Decide whether a failed attempt (0-based) gets another try.

    Only transient read failures retry. Mutations are never retried because a
    repeated create or delete is not safe without a dedupe token.
    """
    if not is_read or category != ErrorCategory.TRANSIENT:
        return False
    return attempt < max_retries


def backoff_seconds(attempt: int, base_ms: int, max_ms: int) -> float:
    """Exponential backoff delay before retry number attempt + 1."""
    return min(base_ms * (2**attempt), max_ms) / 1000
