"""Error taxonomy raised by the tabular store and the metrics cache."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Mapping, Optional

if TYPE_CHECKING:
    from .store import BatchResult

__all__ = [
    "NOT_FOUND",
    "LOCK_TIMEOUT",
    "CACHE_WRITE_FAILURE",
    "DECODE_FAILURE",
    "VALIDATION_ERROR",
    "StoreError",
    "RecordNotFound",
    "LockTimeout",
    "CacheWriteFailure",
    "DecodeFailure",
    "ValidationError",
    "error_payload",
]

NOT_FOUND = "NOT_FOUND"
LOCK_TIMEOUT = "LOCK_TIMEOUT"
CACHE_WRITE_FAILURE = "CACHE_WRITE_FAILURE"
DECODE_FAILURE = "DECODE_FAILURE"
VALIDATION_ERROR = "VALIDATION_ERROR"


class StoreError(Exception):
    """Base class for every error surfaced by the data-access layer."""

    code = "STORE_ERROR"
    retryable = False

    def __init__(self, message: str, *, details: Optional[Mapping[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = dict(details) if details else None

    def to_dict(self) -> dict[str, Any]:
        return error_payload(self.code, self.message, details=self.details)


class RecordNotFound(StoreError):
    """Raised when an update or removal targets an identifier that is absent."""

    code = NOT_FOUND


class LockTimeout(StoreError):
    """Raised when a batch mutation cannot obtain the lock in time.

    Chunks processed before the timeout stay applied. They are reported on
    :attr:`partial` so the caller can retry only what is left.
    """

    code = LOCK_TIMEOUT
    retryable = True

    def __init__(
        self,
        message: str,
        *,
        details: Optional[Mapping[str, Any]] = None,
        partial: Optional["BatchResult"] = None,
    ) -> None:
        super().__init__(message, details=details)
        self.partial = partial


class CacheWriteFailure(StoreError):
    """Raised by the process cache when a value cannot be stored."""

    code = CACHE_WRITE_FAILURE


class DecodeFailure(StoreError):
    """Raised when a stored structured value cannot be decoded."""

    code = DECODE_FAILURE


class ValidationError(StoreError):
    """Raised for schema violations and identifier generation edge cases."""

    code = VALIDATION_ERROR


def error_payload(code: str, message: str, *, details: Optional[Mapping[str, Any]] = None) -> dict[str, Any]:
    """Build a structured error payload suitable for batch reports and logs."""

    payload: dict[str, Any] = {
        "code": code,
        "message": message,
    }
    if details:
        payload["details"] = dict(details)
    return payload
