"""Exception types for the sync layer."""

from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """How a failure is handled."""

    VALIDATION = "validation"
    AUTHORIZATION = "authorization"
    TRANSIENT = "transient"
    CONFLICT = "conflict"


class RemoteStoreError(Exception):
    """Failure reported by the remote store.

    Carries an HTTP-like status plus optional field/limit metadata for
    validation failures, and the existing entity for duplicate creates.
    """

    def __init__(
        self,
        message: str,
        *,
        status: int | None = None,
        field: str | None = None,
        max_length: int | None = None,
        current_length: int | None = None,
        existing: Any = None,
    ) -> None:
        self.message = message
        self.status = status
        self.field = field
        self.max_length = max_length
        self.current_length = current_length
        self.existing = existing
        super().__init__(message)

    @property
    def status_class(self) -> int | None:
        """Hundreds digit of the status (4 for 4xx, 5 for 5xx)."""
        return self.status // 100 if self.status is not None else None


class SyncError(Exception):
    """Classified failure surfaced to callers of the sync layer."""

    category: ErrorCategory = ErrorCategory.TRANSIENT

    def __init__(
        self,
        message: str,
        *,
        status: int | None = None,
        field: str | None = None,
        max_length: int | None = None,
        current_length: int | None = None,
    ) -> None:
        self.message = message
        self.status = status
        self.field = field
        self.max_length = max_length
        self.current_length = current_length
        super().__init__(message)

    @property
    def retryable(self) -> bool:
        return self.category == ErrorCategory.TRANSIENT

    def describe(self) -> str:
        """User-facing message including field and limit when known."""
        if self.field and self.max_length is not None:
            return f"{self.message} (Field: {self.field}, Limit: {self.max_length} characters)"
        return self.message


class ValidationFailure(SyncError):
    """Input rejected locally or by the remote store. Never retried."""

    category = ErrorCategory.VALIDATION


class AuthorizationFailure(SyncError):
    """Missing or rejected credentials. Never retried."""

    category = ErrorCategory.AUTHORIZATION


class TransientFailure(SyncError):
    """Network or server failure. Reads retry, mutations do not."""

    category = ErrorCategory.TRANSIENT


class ConflictFailure(SyncError):
    """Create matched an existing entity."""

    category = ErrorCategory.CONFLICT


ERROR_TYPES: dict[ErrorCategory, type[SyncError]] = {
    ErrorCategory.VALIDATION: ValidationFailure,
    ErrorCategory.AUTHORIZATION: AuthorizationFailure,
    ErrorCategory.TRANSIENT: TransientFailure,
    ErrorCategory.CONFLICT: ConflictFailure,
}
