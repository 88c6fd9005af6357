"""
Error Taxonomy for Tool Execution

This module defines the structured error hierarchy used by every stage of
the tool execution pipeline. Each error carries a kind, a severity, a
retryability flag and a correlation identifier so that a single failing
request can be traced across log records, audit records and the response
returned to the caller.

Error Kinds:
- validation: malformed tool parameters (never retried)
- not_found: unknown tool name (never retried)
- security: path traversal, blocked path, bad extension, oversize content
- rate_limit: too many calls in a window (carries retry_after)
- file_system: missing file, permission denied (never retried)
- network: transient connectivity failure (retried)
- external_service: upstream API failure (retried for 5xx and 429)
- configuration: invalid policy or config at startup (fatal)
- cancelled: cooperative cancellation of an invocation
- internal: unexpected exception (wrapped, always logged)

Caller-facing messages produced by user_message() never include stack
traces, and security errors never echo canonical filesystem paths.
"""

import asyncio
import time
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping


class ErrorKind(str, Enum):
    """Classification of pipeline failures."""

    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    SECURITY = "security"
    RATE_LIMIT = "rate_limit"
    FILE_SYSTEM = "file_system"
    NETWORK = "network"
    EXTERNAL_SERVICE = "external_service"
    CONFIGURATION = "configuration"
    CANCELLED = "cancelled"
    INTERNAL = "internal"


class ErrorSeverity(str, Enum):
    """Severity levels, ordered from least to most severe."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


def generate_correlation_id() -> str:
    """Generate an opaque identifier for cross-log tracing."""
    return f"err_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


@dataclass(frozen=True)
class ErrorRecord:
    """
    Immutable snapshot of an error taken at the point of failure.

    Records are what the audit trail and the executor keep; the live
    exception object may be discarded once the record exists.
    """

    kind: ErrorKind
    severity: ErrorSeverity
    retryable: bool
    correlation_id: str
    message: str
    timestamp: str
    context: Mapping[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "severity": self.severity.value,
            "retryable": self.retryable,
            "correlation_id": self.correlation_id,
            "message": self.message,
            "timestamp": self.timestamp,
            "context": dict(self.context),
        }


class ToolGateError(Exception):
    """
    Base class for all classified pipeline errors.

    Subclasses set the class-level kind, severity and retryable defaults.
    The context mapping is frozen at construction and cannot be mutated
    afterwards.
    """

    kind: ErrorKind = ErrorKind.INTERNAL
    severity: ErrorSeverity = ErrorSeverity.MEDIUM
    retryable: bool = False
    always_log: bool = False

    def __init__(
        self,
        message: str,
        context: Mapping[str, Any] | None = None,
        cause: BaseException | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.context: Mapping[str, Any] = MappingProxyType(dict(context or {}))
        self.correlation_id = generate_correlation_id()
        self.timestamp = datetime.now(UTC)
        if cause is not None:
            self.__cause__ = cause

    def user_message(self) -> str:
        """Message that is safe to show to the caller."""
        return self.message

    def should_log(self) -> bool:
        return self.always_log or self.severity != ErrorSeverity.LOW

    def to_record(self) -> ErrorRecord:
        return ErrorRecord(
            kind=self.kind,
            severity=self.severity,
            retryable=self.retryable,
            correlation_id=self.correlation_id,
            message=self.user_message(),
            timestamp=self.timestamp.isoformat(),
            context=self.context,
        )

    def to_dict(self) -> dict[str, Any]:
        data = self.to_record().to_dict()
        data["name"] = type(self).__name__
        return data

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(kind={self.kind.value!r}, "
            f"message={self.message!r}, correlation_id={self.correlation_id!r})"
        )


class ValidationError(ToolGateError):
    """Raised when tool parameters or a tool call fail validation."""

    kind = ErrorKind.VALIDATION
    severity = ErrorSeverity.LOW

    def __init__(
        self,
        message: str,
        field_name: str | None = None,
        constraint: str | None = None,
        context: Mapping[str, Any] | None = None,
        cause: BaseException | None = None,
    ):
        merged = dict(context or {})
        if field_name is not None:
            merged["field"] = field_name
        if constraint is not None:
            merged["constraint"] = constraint
        super().__init__(message, merged, cause)
        self.field_name = field_name
        self.constraint = constraint

    def user_message(self) -> str:
        if self.field_name:
            return f"Invalid {self.field_name}: {self.message}"
        return f"Validation failed: {self.message}"


class NotFoundError(ToolGateError):
    """Raised when a tool call names a tool that is not registered."""

    kind = ErrorKind.NOT_FOUND
    severity = ErrorSeverity.LOW

    def __init__(self, message: str, available: list[str] | None = None):
        super().__init__(message, {"available_tools": list(available or [])})
        self.available = list(available or [])

    def user_message(self) -> str:
        if self.available:
            return f"{self.message}. Available tools: {', '.join(self.available)}"
        return self.message


class SecurityError(ToolGateError):
    """
    Raised when the security validator refuses an operation.

    The violation attribute holds the machine-readable reason code
    (path_traversal, blocked_path, invalid_extension, ...).
    """

    kind = ErrorKind.SECURITY
    severity = ErrorSeverity.HIGH
    always_log = True

    def __init__(
        self,
        message: str,
        violation: str,
        context: Mapping[str, Any] | None = None,
        cause: BaseException | None = None,
    ):
        merged = dict(context or {})
        merged["violation"] = violation
        super().__init__(message, merged, cause)
        self.violation = violation

    def user_message(self) -> str:
        return f"Access denied by security policy: {self.message}"


class RateLimitError(ToolGateError):
    """Raised when the rate limiter rejects a request."""

    kind = ErrorKind.RATE_LIMIT
    severity = ErrorSeverity.MEDIUM

    def __init__(
        self,
        message: str,
        retry_after: int,
        key: str = "",
        context: Mapping[str, Any] | None = None,
    ):
        merged = dict(context or {})
        merged.update({"retry_after": retry_after, "key": key})
        super().__init__(message, merged)
        self.retry_after = retry_after
        self.key = key

    def user_message(self) -> str:
        unit = "second" if self.retry_after == 1 else "seconds"
        return f"{self.message}. Retry after {self.retry_after} {unit}."


class FileSystemError(ToolGateError):
    """Raised when a filesystem operation fails."""

    kind = ErrorKind.FILE_SYSTEM
    severity = ErrorSeverity.MEDIUM

    def __init__(
        self,
        message: str,
        operation: str,
        path: str,
        context: Mapping[str, Any] | None = None,
        cause: BaseException | None = None,
    ):
        merged = dict(context or {})
        merged.update({"operation": operation, "path": path})
        super().__init__(message, merged, cause)
        self.operation = operation
        self.path = path


class NetworkError(ToolGateError):
    """Raised for transient network failures; always retryable."""

    kind = ErrorKind.NETWORK
    severity = ErrorSeverity.MEDIUM
    retryable = True

    def __init__(
        self,
        message: str,
        operation: str = "request",
        context: Mapping[str, Any] | None = None,
        cause: BaseException | None = None,
    ):
        merged = dict(context or {})
        merged["operation"] = operation
        super().__init__(message, merged, cause)
        self.operation = operation

    def user_message(self) -> str:
        return f"Network error during {self.operation}: {self.message}"


class ApiError(ToolGateError):
    """
    Raised when an upstream API answers with an error status.

    5xx answers are external-service failures; 4xx answers are treated as
    validation failures of the request. Only 5xx and 429 are retryable.
    """

    def __init__(
        self,
        message: str,
        status_code: int,
        api_name: str,
        context: Mapping[str, Any] | None = None,
        cause: BaseException | None = None,
    ):
        merged = dict(context or {})
        merged.update({"status_code": status_code, "api_name": api_name})
        super().__init__(message, merged, cause)
        self.status_code = status_code
        self.api_name = api_name
        if status_code >= 500:
            self.kind = ErrorKind.EXTERNAL_SERVICE
            self.severity = ErrorSeverity.HIGH
        elif status_code == 429:
            self.kind = ErrorKind.EXTERNAL_SERVICE
            self.severity = ErrorSeverity.MEDIUM
        else:
            self.kind = ErrorKind.VALIDATION
            self.severity = ErrorSeverity.MEDIUM
        self.retryable = status_code >= 500 or status_code == 429

    def user_message(self) -> str:
        if self.status_code == 401:
            return f"Authentication failed for {self.api_name}. Please check your API key."
        if self.status_code == 403:
            return f"Access denied to {self.api_name}. Check your permissions."
        if self.status_code == 429:
            return f"Rate limit exceeded for {self.api_name}. Please try again later."
        if self.status_code >= 500:
            return f"{self.api_name} service is currently unavailable. Please try again later."
        return f"Request to {self.api_name} failed: {self.message}"


class ConfigurationError(ToolGateError):
    """Raised for invalid configuration; fatal at startup."""

    kind = ErrorKind.CONFIGURATION
    severity = ErrorSeverity.CRITICAL

    def __init__(
        self,
        message: str,
        config_key: str = "",
        context: Mapping[str, Any] | None = None,
        cause: BaseException | None = None,
    ):
        merged = dict(context or {})
        merged["config_key"] = config_key
        super().__init__(message, merged, cause)
        self.config_key = config_key

    def user_message(self) -> str:
        return f"Configuration error: {self.message}"


class CancelledError(ToolGateError):
    """Raised when an invocation observes its cancellation token."""

    kind = ErrorKind.CANCELLED
    severity = ErrorSeverity.LOW


class InternalError(ToolGateError):
    """Wraps unexpected exceptions."""

    kind = ErrorKind.INTERNAL
    severity = ErrorSeverity.HIGH
    always_log = True

    def user_message(self) -> str:
        return "An internal error occurred while executing the tool"


def classify_error(
    error: BaseException, operation: str = "unknown", path: str = ""
) -> ToolGateError:
    """
    Map an arbitrary exception onto the error taxonomy.

    Args:
        error: The caught exception
        operation: Operation name used for filesystem context
        path: Path supplied by the caller, used for filesystem context

    Returns:
        ToolGateError: The error itself if already classified, otherwise a
        new classified error chained to the original
    """
    if isinstance(error, ToolGateError):
        return error

    if isinstance(error, (ConnectionError, TimeoutError, asyncio.TimeoutError)):
        return NetworkError(str(error) or type(error).__name__, operation, cause=error)

    if isinstance(error, OSError):
        if isinstance(error, FileNotFoundError):
            message = f"File not found: {path}" if path else "File not found"
        elif isinstance(error, PermissionError):
            message = f"Permission denied: {path}" if path else "Permission denied"
        else:
            message = f"Filesystem operation '{operation}' failed"
        return FileSystemError(
            message, operation, path, {"errno": error.errno}, cause=error
        )

    return InternalError(
        f"Unexpected {type(error).__name__}: {error}",
        {"exception_type": type(error).__name__},
        cause=error,
    )
