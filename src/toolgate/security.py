"""
Security Validator for Filesystem Containment

Every filesystem location a tool invocation touches is authorized here
before any I/O happens. The validator resolves the requested path to its
canonical (absolute, symlink-free) form and runs a fixed sequence of
checks against the active SecurityPolicy.

Check Order:
1. Malicious pattern: empty input, null bytes, control characters, overlong paths
2. Canonicalization: relative paths are joined to the root, then resolved
3. Containment: canonical path must equal the root or live beneath it
4. Blocked paths: per-segment prefix match against the blocked list
5. Extension allowlist (not applied to directory listings)
6. Size limits: file size for read/stat, content length for write

Every check, pass or fail, is appended to a bounded access log that backs
the security statistics. Denial reasons returned to callers reference only
the path the caller supplied, never the canonical root.
"""

import asyncio
import logging
import os
import threading
from collections import Counter, deque
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from .errors import ConfigurationError, SecurityError

logger = logging.getLogger(__name__)

MAX_PATH_LENGTH = 4096
ACCESS_LOG_SIZE = 1000

DEFAULT_MAX_FILE_SIZE = 10 * 1024 * 1024
DEFAULT_MAX_REQUEST_SIZE = 1024 * 1024


class FileOperation(str, Enum):
    """Filesystem operations that can be authorized."""

    READ = "read"
    WRITE = "write"
    LIST = "list"
    DELETE = "delete"
    STAT = "stat"


class SecurityViolation(str, Enum):
    """Machine-readable denial reasons."""

    MALICIOUS_PATTERN = "malicious_pattern"
    PATH_TRAVERSAL = "path_traversal"
    BLOCKED_PATH = "blocked_path"
    INVALID_EXTENSION = "invalid_extension"
    SIZE_LIMIT_EXCEEDED = "size_limit_exceeded"
    VALIDATION_ERROR = "validation_error"


@dataclass(frozen=True)
class SecurityPolicy:
    """
    Static security policy, loaded once at startup.

    Attributes:
        root_directory: Directory all operations are confined to
        allowed_extensions: Extension allowlist (e.g. {".py", ".md"}); None allows any
        blocked_paths: Root-relative prefixes that may never be accessed
        max_file_size: Largest file that may be read, in bytes
        max_request_size: Largest content buffer that may be written, in bytes
    """

    root_directory: str
    allowed_extensions: frozenset[str] | None = None
    blocked_paths: tuple[str, ...] = ()
    max_file_size: int = DEFAULT_MAX_FILE_SIZE
    max_request_size: int = DEFAULT_MAX_REQUEST_SIZE


@dataclass
class ValidationResult:
    """Outcome of a single security check."""

    allowed: bool
    reason: str | None = None
    violation: SecurityViolation | None = None
    canonical_path: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def allow(cls, canonical_path: str, **metadata: Any) -> "ValidationResult":
        return cls(allowed=True, canonical_path=canonical_path, metadata=metadata)

    @classmethod
    def deny(
        cls, violation: SecurityViolation, reason: str, **metadata: Any
    ) -> "ValidationResult":
        return cls(allowed=False, reason=reason, violation=violation, metadata=metadata)

    def to_error(self) -> SecurityError:
        """Convert a denial into the SecurityError raised by the pipeline."""
        violation = self.violation.value if self.violation else "unknown"
        return SecurityError(self.reason or "Access denied", violation)


@dataclass(frozen=True)
class AccessLogEntry:
    timestamp: str
    operation: str
    requested_path: str
    allowed: bool
    violation: str | None = None
    reason: str | None = None


def _normalize_extension(ext: str) -> str:
    ext = ext.strip().lower()
    if ext and not ext.startswith("."):
        ext = "." + ext
    return ext


def _split_segments(path: str) -> tuple[str, ...]:
    normalized = os.path.normpath(path.replace("\\", "/")).replace(os.sep, "/")
    return tuple(part for part in normalized.split("/") if part and part != ".")


class SecurityValidator:
    """
    Canonicalizing path validator bound to one SecurityPolicy.

    The canonical root is resolved once at construction. The access log is
    the only mutable state and is guarded by a lock so the validator can be
    shared across threads.
    """

    def __init__(self, policy: SecurityPolicy, audit_logger=None):
        """
        Args:
            policy: Active security policy
            audit_logger: Optional AuditLogger receiving security violations

        Raises:
            ConfigurationError: If the root directory is missing or not a directory
        """
        if not policy.root_directory:
            raise ConfigurationError("Root directory must be configured", "root_directory")

        canonical_root = os.path.realpath(os.path.expanduser(policy.root_directory))
        if not os.path.isdir(canonical_root):
            raise ConfigurationError(
                f"Root directory does not exist or is not a directory: {policy.root_directory}",
                "root_directory",
            )

        self.policy = policy
        self.canonical_root = canonical_root
        self.audit_logger = audit_logger

        self._allowed_extensions = (
            frozenset(_normalize_extension(e) for e in policy.allowed_extensions)
            if policy.allowed_extensions is not None
            else None
        )
        self._blocked = self._compile_blocked_paths(policy.blocked_paths)

        self._access_log: deque[AccessLogEntry] = deque(maxlen=ACCESS_LOG_SIZE)
        self._lock = threading.Lock()

        logger.info(
            f"Security validator initialized: {len(self._blocked)} blocked paths, "
            f"extensions={'any' if self._allowed_extensions is None else sorted(self._allowed_extensions)}"
        )

    def _compile_blocked_paths(self, blocked_paths) -> list[tuple[str, ...]]:
        compiled = []
        for entry in blocked_paths:
            if not entry or not entry.strip():
                continue
            entry = entry.strip()
            if os.path.isabs(entry):
                absolute = os.path.realpath(entry)
                if absolute != self.canonical_root and not absolute.startswith(
                    self.canonical_root + os.sep
                ):
                    # Outside the root; containment already rejects it
                    continue
                entry = os.path.relpath(absolute, self.canonical_root)
            segments = _split_segments(entry)
            if segments:
                compiled.append(segments)
        return compiled

    async def validate_file_path(
        self,
        path: str,
        operation: FileOperation | str,
        content: str | bytes | None = None,
    ) -> ValidationResult:
        """
        Decide whether an operation on a path is permitted.

        Args:
            path: Path exactly as supplied by the caller
            operation: One of read, write, list, delete, stat
            content: Content buffer for write operations

        Returns:
            ValidationResult: allowed with canonical_path, or denied with reason
        """
        operation = FileOperation(operation)
        result = await asyncio.to_thread(self._check, path, operation, content)
        self._record(path, operation, result)
        return result

    async def authorize(
        self,
        path: str,
        operation: FileOperation | str,
        content: str | bytes | None = None,
    ) -> str:
        """
        Validate a path and return its canonical form.

        Raises:
            SecurityError: If the validator denies the operation
        """
        result = await self.validate_file_path(path, operation, content)
        if not result.allowed:
            raise result.to_error()
        return result.canonical_path

    def validate_content_size(self, content: str | bytes) -> ValidationResult:
        """Check a content buffer against max_request_size."""
        size = len(content.encode("utf-8")) if isinstance(content, str) else len(content)
        if size > self.policy.max_request_size:
            return ValidationResult.deny(
                SecurityViolation.SIZE_LIMIT_EXCEEDED,
                f"Content size ({size} bytes) exceeds maximum allowed size "
                f"({self.policy.max_request_size} bytes)",
                size=size,
            )
        return ValidationResult(allowed=True, metadata={"size": size})

    def is_blocked(self, canonical_path: str) -> bool:
        """Return True if a canonical path falls under a blocked prefix."""
        if canonical_path == self.canonical_root:
            relative: tuple[str, ...] = ()
        elif canonical_path.startswith(self.canonical_root + os.sep):
            relative = _split_segments(os.path.relpath(canonical_path, self.canonical_root))
        else:
            return False
        return any(relative[: len(blocked)] == blocked for blocked in self._blocked)

    def is_within_root(self, canonical_path: str) -> bool:
        return canonical_path == self.canonical_root or canonical_path.startswith(
            self.canonical_root + os.sep
        )

    def _check(
        self, path: str, operation: FileOperation, content: str | bytes | None
    ) -> ValidationResult:
        pattern_result = self._check_pattern(path)
        if pattern_result is not None:
            return pattern_result

        expanded = os.path.expanduser(path) if path.startswith("~") else path
        if os.path.isabs(expanded):
            candidate = os.path.normpath(expanded)
        else:
            candidate = os.path.normpath(os.path.join(self.canonical_root, expanded))

        # realpath resolves the deepest existing ancestor, so a file that
        # does not exist yet keeps its name under its canonical parent
        try:
            canonical = os.path.realpath(candidate)
        except (OSError, ValueError) as e:
            return ValidationResult.deny(
                SecurityViolation.VALIDATION_ERROR,
                f"Path '{path}' could not be resolved",
                error=type(e).__name__,
            )

        if not self.is_within_root(canonical):
            self._log_violation(
                SecurityViolation.PATH_TRAVERSAL, operation, path, canonical
            )
            return ValidationResult.deny(
                SecurityViolation.PATH_TRAVERSAL,
                f"Path '{path}' resolves outside allowed root directory",
            )

        if self.is_blocked(canonical):
            self._log_violation(SecurityViolation.BLOCKED_PATH, operation, path, canonical)
            return ValidationResult.deny(
                SecurityViolation.BLOCKED_PATH,
                f"Access to '{path}' is blocked by security policy",
            )

        if self._allowed_extensions is not None and operation != FileOperation.LIST:
            extension = os.path.splitext(canonical)[1].lower()
            if extension not in self._allowed_extensions:
                self._log_violation(
                    SecurityViolation.INVALID_EXTENSION, operation, path, canonical
                )
                shown = extension or "(none)"
                return ValidationResult.deny(
                    SecurityViolation.INVALID_EXTENSION,
                    f"File extension '{shown}' is not allowed",
                    extension=extension,
                )

        size_result = self._check_size(path, canonical, operation, content)
        if size_result is not None:
            self._log_violation(
                SecurityViolation.SIZE_LIMIT_EXCEEDED, operation, path, canonical
            )
            return size_result

        logger.debug(f"Path validation passed for {operation.value}: {path} -> {canonical}")
        return ValidationResult.allow(canonical, operation=operation.value)

    def _check_pattern(self, path: str) -> ValidationResult | None:
        if not isinstance(path, str) or not path:
            return ValidationResult.deny(
                SecurityViolation.MALICIOUS_PATTERN, "Path must be a non-empty string"
            )

        if "\x00" in path:
            self._log_violation(SecurityViolation.MALICIOUS_PATTERN, None, repr(path), None)
            return ValidationResult.deny(
                SecurityViolation.MALICIOUS_PATTERN, "Path contains a null byte"
            )

        if any(ord(ch) < 32 or ord(ch) == 127 for ch in path):
            self._log_violation(SecurityViolation.MALICIOUS_PATTERN, None, repr(path), None)
            return ValidationResult.deny(
                SecurityViolation.MALICIOUS_PATTERN, "Path contains control characters"
            )

        if len(path) > MAX_PATH_LENGTH:
            return ValidationResult.deny(
                SecurityViolation.MALICIOUS_PATTERN,
                f"Path too long (>{MAX_PATH_LENGTH} characters)",
            )

        return None

    def _check_size(
        self,
        path: str,
        canonical: str,
        operation: FileOperation,
        content: str | bytes | None,
    ) -> ValidationResult | None:
        if operation == FileOperation.WRITE:
            if content is None:
                return None
            size_result = self.validate_content_size(content)
            return None if size_result.allowed else size_result

        if operation in (FileOperation.READ, FileOperation.STAT) and os.path.isfile(canonical):
            size = os.path.getsize(canonical)
            if size > self.policy.max_file_size:
                return ValidationResult.deny(
                    SecurityViolation.SIZE_LIMIT_EXCEEDED,
                    f"File '{path}' is too large ({size} bytes, maximum "
                    f"{self.policy.max_file_size} bytes)",
                    size=size,
                )
        return None

    def _log_violation(
        self,
        violation: SecurityViolation,
        operation: FileOperation | None,
        attempted_path: str,
        canonical_path: str | None,
    ) -> None:
        violation_data = {
            "violation_type": violation.value,
            "operation": operation.value if operation else "unknown",
            "attempted_path": attempted_path,
            "resolved_path": canonical_path,
            "root_directory": self.canonical_root,
        }
        logger.warning(
            f"SECURITY VIOLATION: {violation.value} in {violation_data['operation']}",
            extra=violation_data,
        )
        if self.audit_logger is not None:
            self.audit_logger.log_security_violation(violation_data)

    def _record(
        self, path: str, operation: FileOperation, result: ValidationResult
    ) -> None:
        entry = AccessLogEntry(
            timestamp=datetime.now(UTC).isoformat(),
            operation=operation.value,
            requested_path=path if isinstance(path, str) else repr(path),
            allowed=result.allowed,
            violation=result.violation.value if result.violation else None,
            reason=result.reason,
        )
        with self._lock:
            self._access_log.append(entry)

    def get_access_log(self, limit: int | None = None) -> list[AccessLogEntry]:
        """Return access log entries, oldest first."""
        with self._lock:
            entries = list(self._access_log)
        return entries[-limit:] if limit else entries

    def clear_access_log(self) -> None:
        with self._lock:
            self._access_log.clear()

    def get_security_stats(self) -> dict[str, Any]:
        """
        Summarize the access log.

        Returns:
            dict: total_checks, allowed, blocked, block_rate,
            common_block_reasons and most_common_reason
        """
        with self._lock:
            entries = list(self._access_log)

        blocked = [e for e in entries if not e.allowed]
        reasons = Counter(e.violation for e in blocked if e.violation)
        total = len(entries)
        most_common = reasons.most_common(1)

        return {
            "total_checks": total,
            "allowed": total - len(blocked),
            "blocked": len(blocked),
            "block_rate": len(blocked) / total if total else 0.0,
            "common_block_reasons": dict(reasons.most_common()),
            "most_common_reason": most_common[0][0] if most_common else None,
        }
