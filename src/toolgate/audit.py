"""
Audit Logging for Tool Invocations

This module writes a JSON Lines audit trail of every tool invocation that
reaches a terminal state and of every security violation. Arguments are
never written; each record carries a SHA-256 hash of the sanitized
arguments instead.

Audit Record Format:
- ts: ISO-8601 UTC timestamp
- tool: Name of the invoked tool (SECURITY_VIOLATION for violations)
- call_id: Identifier of the tool call
- args_hash: SHA-256 hash of sanitized arguments
- destructive: Whether the tool is flagged destructive
- status: ok|fail|aborted|security_violation
- state: Final invocation state
- confirmation: approved|denied|cancelled|auto|null
- error_kind: Error kind for failed invocations
- correlation_id: Error correlation identifier, if any
- elapsed_ms: Execution time in milliseconds
- caller: Identifier for the calling context

Write failures are logged and never propagate into the pipeline.
"""

import hashlib
import json
import logging
import os
import threading
from dataclasses import asdict, dataclass
from datetime import UTC, datetime
from typing import Any

logger = logging.getLogger(__name__)

SENSITIVE_KEY_PARTS = ("password", "token", "secret", "key", "auth")
MAX_HASHED_STRING = 256


@dataclass
class AuditRecord:
    """Structured audit record for one invocation or violation."""

    ts: str
    tool: str
    call_id: str
    args_hash: str
    destructive: bool
    status: str
    state: str
    confirmation: str | None
    error_kind: str | None
    correlation_id: str | None
    elapsed_ms: int
    caller: str


class AuditLogger:
    """
    JSON Lines audit logger.

    Args:
        log_file_path: Path to the audit log file
        enabled: When False, records are dropped
    """

    def __init__(self, log_file_path: str, enabled: bool = True):
        self.log_file_path = os.path.expanduser(log_file_path)
        self.enabled = enabled
        self._lock = threading.Lock()

        if enabled:
            log_dir = os.path.dirname(self.log_file_path)
            if log_dir:
                os.makedirs(log_dir, exist_ok=True)
            logger.info(f"Audit logger initialized: {self.log_file_path}")

    def log_invocation(
        self,
        tool_name: str,
        call_id: str,
        args: Any,
        destructive: bool,
        status: str,
        state: str,
        elapsed_ms: int,
        confirmation: str | None = None,
        error_kind: str | None = None,
        correlation_id: str | None = None,
        caller: str = "model",
    ) -> None:
        """
        Log a terminal invocation.

        Args:
            tool_name: Name of the invoked tool
            call_id: Tool call identifier
            args: Tool arguments (hashed after sanitizing)
            destructive: Destructive flag of the tool definition
            status: ok|fail|aborted
            state: Final invocation state
            elapsed_ms: Execution time in milliseconds
            confirmation: Confirmation outcome, "auto" or None
            error_kind: Error kind for failures
            correlation_id: Error correlation identifier
            caller: Identifier for the calling context
        """
        if not self.enabled:
            return
        try:
            record = AuditRecord(
                ts=datetime.now(UTC).isoformat(),
                tool=tool_name,
                call_id=call_id,
                args_hash=self._hash_sanitized_args(args),
                destructive=destructive,
                status=status,
                state=state,
                confirmation=confirmation,
                error_kind=error_kind,
                correlation_id=correlation_id,
                elapsed_ms=elapsed_ms,
                caller=caller,
            )
            self._write_audit_record(record)
            logger.debug(f"Audit record logged: {tool_name} -> {status}")
        except Exception as e:
            logger.error(f"Failed to log audit record for {tool_name}: {str(e)}")

    def log_security_violation(self, violation_data: dict[str, Any]) -> None:
        """
        Log a security violation event.

        Args:
            violation_data: Details about the security violation
        """
        if not self.enabled:
            return
        try:
            record = AuditRecord(
                ts=datetime.now(UTC).isoformat(),
                tool="SECURITY_VIOLATION",
                call_id="",
                args_hash=self._hash_sanitized_args(violation_data),
                destructive=False,
                status="security_violation",
                state=str(violation_data.get("operation", "unknown")),
                confirmation=None,
                error_kind=str(violation_data.get("violation_type", "unknown")),
                correlation_id=None,
                elapsed_ms=0,
                caller="security_monitor",
            )
            self._write_audit_record(record)
        except Exception as e:
            logger.error(f"Failed to log security violation: {str(e)}")

    def _write_audit_record(self, record: AuditRecord) -> None:
        json_line = json.dumps(asdict(record), separators=(",", ":"))
        with self._lock:
            with open(self.log_file_path, "a", encoding="utf-8") as f:
                f.write(json_line + "\n")
                f.flush()

    def _hash_sanitized_args(self, args: Any) -> str:
        """
        Create a SHA-256 hash of sanitized arguments.

        Returns:
            str: Hex digest, or "hash_error" if the arguments cannot be encoded
        """
        try:
            sanitized = self._sanitize_args(args)
            args_json = json.dumps(
                sanitized, sort_keys=True, separators=(",", ":"), default=str
            )
            return hashlib.sha256(args_json.encode("utf-8")).hexdigest()
        except (TypeError, ValueError) as e:
            logger.warning(f"Failed to hash arguments: {str(e)}")
            return "hash_error"

    def _sanitize_args(self, args: Any) -> Any:
        if isinstance(args, dict):
            sanitized: dict[str, Any] = {}
            for key, value in args.items():
                if any(part in str(key).lower() for part in SENSITIVE_KEY_PARTS):
                    sanitized[key] = "[REDACTED]"
                else:
                    sanitized[key] = self._sanitize_args(value)
            return sanitized
        if isinstance(args, list):
            return [self._sanitize_args(item) for item in args]
        if isinstance(args, str) and len(args) > MAX_HASHED_STRING:
            return f"[{len(args)} chars]"
        return args

    def get_audit_stats(self, hours: int = 24) -> dict[str, Any]:
        """
        Get audit statistics for the specified time period.

        Args:
            hours: Number of hours to look back

        Returns:
            dict: Counts by status and the tools used
        """
        if not os.path.exists(self.log_file_path):
            return {"error": "audit_log_not_found"}

        stats: dict[str, Any] = {
            "total_operations": 0,
            "successful_operations": 0,
            "failed_operations": 0,
            "aborted_operations": 0,
            "security_violations": 0,
            "tools_used": set(),
            "time_period_hours": hours,
        }
        cutoff_time = datetime.now(UTC).timestamp() - (hours * 3600)

        try:
            with open(self.log_file_path, encoding="utf-8") as f:
                for line in f:
                    try:
                        record = json.loads(line.strip())
                        record_time = datetime.fromisoformat(
                            record["ts"].replace("Z", "+00:00")
                        ).timestamp()
                    except (json.JSONDecodeError, KeyError, ValueError):
                        continue

                    if record_time < cutoff_time:
                        continue

                    stats["total_operations"] += 1
                    status = record.get("status")
                    if status == "ok":
                        stats["successful_operations"] += 1
                    elif status == "fail":
                        stats["failed_operations"] += 1
                    elif status == "aborted":
                        stats["aborted_operations"] += 1
                    elif status == "security_violation":
                        stats["security_violations"] += 1

                    if record.get("tool") != "SECURITY_VIOLATION":
                        stats["tools_used"].add(record.get("tool"))
        except OSError as e:
            logger.error(f"Failed to get audit stats: {str(e)}")
            return {"error": str(e)}

        stats["tools_used"] = sorted(stats["tools_used"])
        return stats
