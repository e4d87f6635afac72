"""Error taxonomy shared by the cache, registry and orchestrator.

Services raise the exceptions defined here internally and convert them into
:class:`OperationError` values at their public boundary, so callers receive a
structured failure instead of a traceback.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Generic, TypeVar

T = TypeVar("T")


class ErrorKind(str, Enum):
    """Broad category of a failure, independent of the concrete error code."""

    NOT_FOUND = "NotFound"
    NOT_CACHED = "NotCached"
    CORRUPTION = "Corruption"
    STAGING_FAILURE = "StagingFailure"
    COMPATIBILITY_BLOCKED = "CompatibilityBlocked"
    TRANSACTION_ABORTED = "TransactionAborted"
    CONFLICT = "Conflict"
    PERMISSION_DENIED = "PermissionDenied"
    IO_FAILURE = "IOFailure"
    VALIDATION = "Validation"


class PlugctlError(Exception):
    """Base class for all plugctl errors."""

    kind: ErrorKind = ErrorKind.IO_FAILURE
    default_code: str = "ERR-UNKNOWN"

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}
        super().__init__(message)

    def to_operation_error(self, phase: str | None = None) -> OperationError:
        """Convert to the structured form returned across service boundaries."""
        return OperationError(
            kind=self.kind,
            code=self.code,
            message=self.message,
            phase=phase,
            details=dict(self.details),
        )


class NotFoundError(PlugctlError):
    """A plugin or version is absent from the registry or source."""

    kind = ErrorKind.NOT_FOUND
    default_code = "PLUGIN_NOT_FOUND"


class NotCachedError(PlugctlError):
    """A requested version has no cache entry."""

    kind = ErrorKind.NOT_CACHED
    default_code = "VERSION_NOT_CACHED"


class CorruptionError(PlugctlError):
    """Checksum mismatch or an inconsistent index/registry document."""

    kind = ErrorKind.CORRUPTION
    default_code = "CACHE_CORRUPTED"


class StagingError(PlugctlError):
    """Workspace provisioning or staged content verification failed."""

    kind = ErrorKind.STAGING_FAILURE
    default_code = "STAGING_FAILED"


class CompatibilityBlockedError(PlugctlError):
    kind = ErrorKind.COMPATIBILITY_BLOCKED
    default_code = "COMPATIBILITY_BLOCKED"


class TransactionAbortedError(PlugctlError):
    kind = ErrorKind.TRANSACTION_ABORTED
    default_code = "TRANSACTION_ABORTED"


class LifecycleError(TransactionAbortedError):
    """A lifecycle script was refused, failed, or timed out."""

    default_code = "LIFECYCLE_SCRIPT_FAILED"

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
        script: str | None = None,
    ):
        self.script = script
        super().__init__(message, code, details)


class ConflictError(PlugctlError):
    """Concurrent writer detected, or the target already exists."""

    kind = ErrorKind.CONFLICT
    default_code = "CONFLICT"


class PermissionDeniedError(PlugctlError):
    kind = ErrorKind.PERMISSION_DENIED
    default_code = "PERMISSION_DENIED"

    def __init__(self, message: str, path: str | None = None, code: str | None = None):
        self.path = path
        super().__init__(message, code, {"path": path} if path else None)


class IOFailureError(PlugctlError):
    kind = ErrorKind.IO_FAILURE
    default_code = "IO_FAILURE"

    def __init__(self, message: str, path: str | None = None, code: str | None = None):
        self.path = path
        super().__init__(message, code, {"path": path} if path else None)


class ValidationError(PlugctlError):
    kind = ErrorKind.VALIDATION
    default_code = "VALIDATION_FAILED"


@dataclass
class OperationError:
    """Structured error carried by failed results."""

    kind: ErrorKind
    code: str
    message: str
    phase: str | None = None
    details: dict[str, Any] = field(default_factory=dict)

    def __str__(self) -> str:
        prefix = f"[{self.phase}] " if self.phase else ""
        return f"{prefix}{self.code}: {self.message}"


@dataclass
class OperationResult(Generic[T]):
    """Outcome of a public service operation."""

    success: bool
    data: T | None = None
    error: OperationError | None = None

    @classmethod
    def ok(cls, data: T | None = None) -> OperationResult[T]:
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, error: PlugctlError | OperationError) -> OperationResult[T]:
        if isinstance(error, PlugctlError):
            error = error.to_operation_error()
        return cls(success=False, error=error)

    def unwrap(self) -> T:
        """Return ``data`` or raise the carried error.

        Raises:
            PlugctlError: If the result is a failure
        """
        if not self.success:
            assert self.error is not None
            raise error_from(self.error)
        return self.data  # type: ignore[return-value]


_KIND_TO_ERROR: dict[ErrorKind, type[PlugctlError]] = {
    ErrorKind.NOT_FOUND: NotFoundError,
    ErrorKind.NOT_CACHED: NotCachedError,
    ErrorKind.CORRUPTION: CorruptionError,
    ErrorKind.STAGING_FAILURE: StagingError,
    ErrorKind.COMPATIBILITY_BLOCKED: CompatibilityBlockedError,
    ErrorKind.TRANSACTION_ABORTED: TransactionAbortedError,
    ErrorKind.CONFLICT: ConflictError,
    ErrorKind.VALIDATION: ValidationError,
}


def error_from(error: OperationError) -> PlugctlError:
    """Rebuild an exception from a structured error."""
    if error.kind == ErrorKind.PERMISSION_DENIED:
        return PermissionDeniedError(error.message, error.details.get("path"), error.code)
    if error.kind == ErrorKind.IO_FAILURE:
        return IOFailureError(error.message, error.details.get("path"), error.code)
    cls = _KIND_TO_ERROR[error.kind]
    return cls(error.message, error.code, error.details)
