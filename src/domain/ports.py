"""Domain Ports - Abstract Contracts for Encrypted Record Persistence.

This module defines the Port interfaces (abstract contracts) that storage
adapters must implement, the Result type used by the pure domain helpers, and
the error taxonomy shared by every layer.

Security Impact:
    - Ports only ever see opaque, already-encrypted values
    - Errors carry a stable code so callers never have to parse free text
    - Crypto failures are surfaced without secret material

Architecture:
    - Pure abstract interfaces with zero infrastructure dependencies
    - Adapters (DuckDB, in-memory, ...) implement KeyValuePort
    - The RecordStore orchestrator depends only on these contracts
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Generic, Optional, TypeVar, Union

# Type variable for Result generic
T = TypeVar('T')


# ============================================================================
# Result Type for Success/Failure Communication
# ============================================================================

@dataclass(frozen=True)
class Result(Generic[T]):
    """Result type for communicating success or failure without exceptions.

    Pure helpers (validators, parsers) return a Result so the caller decides
    whether a failure is fatal. The RecordStore converts failures into the
    matching exception; batch operations collect them instead.

    Attributes:
        success: True if the operation succeeded, False otherwise
        value: The successful result value (only present if success=True)
        error: Error information (only present if success=False)
        error_type: Type of error (ValidationError, DataCorruptionError, etc.)
        error_details: Additional error context (reason, record_id, etc.)
        exception: The originating exception, when one exists

    Example:
        ```python
        result = validate_for_write(record)
        if result.is_failure():
            raise result.exception
        ```
    """

    success: bool
    value: Optional[T] = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    error_details: Optional[dict] = None
    exception: Optional[Exception] = None

    @classmethod
    def success_result(cls, value: T) -> 'Result[T]':
        """Create a successful result.

        Parameters:
            value: The successful result value

        Returns:
            Result: Success result with the value
        """
        return cls(success=True, value=value)

    @classmethod
    def failure_result(
        cls,
        error: Union[str, Exception],
        error_type: Optional[str] = None,
        error_details: Optional[dict] = None
    ) -> 'Result[T]':
        """Create a failure result.

        Parameters:
            error: Error message or exception
            error_type: Type of error (e.g., "ValidationError")
            error_details: Additional context (reason, record_id, etc.)

        Returns:
            Result: Failure result with error information
        """
        error_message = str(error) if isinstance(error, Exception) else error
        error_type_name = error_type or (type(error).__name__ if isinstance(error, Exception) else "UnknownError")
        details = error_details
        if details is None and isinstance(error, RecordStoreError):
            details = dict(error.details)

        return cls(
            success=False,
            value=None,
            error=error_message,
            error_type=error_type_name,
            error_details=details or {},
            exception=error if isinstance(error, Exception) else None,
        )

    def is_success(self) -> bool:
        """Check if result is successful."""
        return self.success

    def is_failure(self) -> bool:
        """Check if result is a failure."""
        return not self.success


# ============================================================================
# Custom Exception Hierarchy
# ============================================================================

class RecordStoreError(Exception):
    """Base exception for all record store errors.

    Every error carries a stable machine-readable ``code`` and the UTC
    ``timestamp`` at which it was raised, so callers can branch on the code
    and never need to interpret the message.

    Attributes:
        code: Stable error code (class-level)
        timestamp: When the error was created
        details: Additional error context (record_id, reason, ...)
    """

    code = "RECORD_STORE_ERROR"

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.timestamp = datetime.now(timezone.utc)

    def to_dict(self) -> dict:
        """Serialize the error for logging or API responses."""
        return {
            "code": self.code,
            "message": self.message,
            "timestamp": self.timestamp.isoformat(),
            "details": self.details,
        }


class ValidationError(RecordStoreError):
    """Raised when a record fails write-side validation.

    Deterministic for a given input, so it is never retried.

    Attributes:
        reason: Stable reason code (missingId, invalidIdFormat, ...)
        record_id: Identifier of the offending record, if known
    """

    code = "VALIDATION_ERROR"

    def __init__(
        self,
        message: str,
        reason: str = "invalidFormat",
        record_id: Optional[str] = None,
        details: Optional[dict] = None
    ):
        merged = {"reason": reason, "record_id": record_id}
        merged.update(details or {})
        super().__init__(message, merged)
        self.reason = reason
        self.record_id = record_id


class DataCorruptionError(RecordStoreError):
    """Raised when a stored value fails the read-side shape check."""

    code = "DATA_CORRUPTION"


class CryptoError(RecordStoreError):
    """Raised when key derivation, encryption or authentication fails.

    A wrong key and a tampered ciphertext are reported identically. Never
    retried and never carries key or plaintext material.
    """

    code = "CRYPTO_ERROR"


class StorageError(RecordStoreError):
    """Raised when a backend operation fails.

    Plain StorageErrors are considered transient and are retried by the
    store's retry policy.

    Attributes:
        operation: Backend operation that failed (get, set, delete, ...)
    """

    code = "STORAGE_ERROR"

    def __init__(self, message: str, operation: Optional[str] = None, details: Optional[dict] = None):
        merged = {"operation": operation}
        merged.update(details or {})
        super().__init__(message, merged)
        self.operation = operation


class QuotaExceededError(StorageError):
    """Raised when the backend (or the quota pre-check) reports storage full."""

    code = "QUOTA_EXCEEDED"


class BackendUnavailableError(StorageError):
    """Raised when the backend cannot be reached; triggers the fallback path."""

    code = "BACKEND_UNAVAILABLE"


class MigrationError(RecordStoreError):
    """Raised when a bulk legacy import cannot be completed."""

    code = "MIGRATION_ERROR"


class NotFoundError(RecordStoreError):
    """Raised when update/delete targets an absent record."""

    code = "NOT_FOUND"

    def __init__(self, message: str, record_id: Optional[str] = None):
        super().__init__(message, {"record_id": record_id})
        self.record_id = record_id


class PayloadTooLargeError(RecordStoreError):
    """Raised when an export or import payload exceeds the size ceiling.

    Attributes:
        size_mb: Measured payload size in megabytes
        limit_mb: Configured ceiling in megabytes
    """

    code = "PAYLOAD_TOO_LARGE"

    def __init__(self, message: str, size_mb: float, limit_mb: float):
        super().__init__(message, {"size_mb": round(size_mb, 2), "limit_mb": limit_mb})
        self.size_mb = size_mb
        self.limit_mb = limit_mb


# ============================================================================
# Storage Port
# ============================================================================

@dataclass(frozen=True)
class StorageEstimate:
    """Best-effort storage usage report.

    Attributes:
        usage: Bytes currently used
        quota: Bytes available in total
    """

    usage: int
    quota: int

    @property
    def ratio(self) -> float:
        """Fraction of the quota in use (0.0 when quota is unknown)."""
        if self.quota <= 0:
            return 0.0
        return self.usage / self.quota


class KeyValuePort(ABC):
    """Abstract contract for asynchronous key-value backends.

    The RecordStore is the sole writer to a backend. Values are opaque
    strings (serialized encrypted envelopes); the backend never interprets
    them.

    Key Principles:
        - Async: every operation may suspend at the I/O boundary
        - Opaque: backends store and return strings verbatim
        - Typed failures: QuotaExceededError and BackendUnavailableError
          are the signals that activate the fallback backend

    Example Usage:
        ```python
        backend = DuckDBKeyValueAdapter(db_path="data/vault.duckdb")
        await backend.set("patient-abc123", envelope_json)
        value = await backend.get("patient-abc123")
        keys = await backend.list_keys("patient-")
        ```
    """

    name: str = "backend"

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        """Return the stored value, or None if the key is absent.

        Raises:
            BackendUnavailableError: If the backend cannot be reached
            StorageError: For other (transient) failures
        """
        pass

    @abstractmethod
    async def set(self, key: str, value: str) -> None:
        """Store ``value`` under ``key``, replacing any previous value.

        Raises:
            QuotaExceededError: If the write would exceed the storage quota
            BackendUnavailableError: If the backend cannot be reached
            StorageError: For other (transient) failures
        """
        pass

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """Delete ``key``. Returns True if a value was removed."""
        pass

    @abstractmethod
    async def list_keys(self, prefix: str = "") -> list[str]:
        """List all keys starting with ``prefix``."""
        pass

    async def clear(self, prefix: str = "") -> int:
        """Delete every key starting with ``prefix``. Returns count deleted."""
        removed = 0
        for key in await self.list_keys(prefix):
            if await self.delete(key):
                removed += 1
        return removed

    async def estimate(self) -> Optional[StorageEstimate]:
        """Return storage usage, or None when the backend cannot tell.

        Note:
            This is a default implementation that returns None.
            Adapters with a quota override it.
        """
        return None

    async def close(self) -> None:
        """Release backend resources (default: nothing to release)."""
        return None


def is_fallback_trigger(error: BaseException) -> bool:
    """Return True if ``error`` should activate the fallback backend."""
    return isinstance(error, (QuotaExceededError, BackendUnavailableError))


def utc_now_iso() -> str:
    """Current UTC time as an ISO-8601 string with a ``Z`` suffix."""
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def parse_iso_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 string, returning None if it is not one."""
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
