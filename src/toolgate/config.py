"""Configuration management for toolgate."""

import os
from pathlib import Path
from typing import Any

from .errors import ConfigurationError
from .policy.engine import Policy
from .rate_limiter import RateLimitAlgorithm, RateLimitConfig
from .retry import RetryConfig
from .security import DEFAULT_MAX_FILE_SIZE, DEFAULT_MAX_REQUEST_SIZE, SecurityPolicy

_TRUE_VALUES = ("true", "1", "yes", "on")
_FALSE_VALUES = ("false", "0", "no", "off")


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None or value == "":
        return default
    if value.lower() in _TRUE_VALUES:
        return True
    if value.lower() in _FALSE_VALUES:
        return False
    raise ConfigurationError(f"Invalid boolean value for {name}: {value}", name)


def _env_int(name: str, default: int) -> int:
    value = os.environ.get(name)
    if value is None or value == "":
        return default
    try:
        return int(value)
    except ValueError:
        raise ConfigurationError(f"Invalid integer value for {name}: {value}", name)


def _env_float(name: str, default: float) -> float:
    value = os.environ.get(name)
    if value is None or value == "":
        return default
    try:
        return float(value)
    except ValueError:
        raise ConfigurationError(f"Invalid number value for {name}: {value}", name)


def _env_list(name: str) -> list[str] | None:
    value = os.environ.get(name)
    if value is None:
        return None
    return [item.strip() for item in value.split(",") if item.strip()]


class Config:
    """Environment-driven runtime configuration, immutable after construction."""

    def __init__(self, root_directory: str | None = None):
        """Initialize configuration.

        Args:
            root_directory: Workspace root; overrides TOOLGATE_ROOT

        Raises:
            ConfigurationError: If an environment variable is malformed
        """
        log_dir = os.environ.get("LOG_DIR", os.path.expanduser("~/.toolgate/logs"))

        self.policy_file = Path(os.environ.get("POLICY_FILE", "config/policy.yaml"))

        self._defaults = {
            # Core paths
            "root_directory": root_directory or os.environ.get("TOOLGATE_ROOT", os.getcwd()),
            "policy_file": str(self.policy_file),
            "log_dir": log_dir,
            "log_level": os.environ.get("LOG_LEVEL", "INFO").upper(),
            "audit_enabled": _env_bool("AUDIT_ENABLED", True),
            "audit_log_path": os.environ.get(
                "AUDIT_LOG_PATH", os.path.join(log_dir, "audit.jsonl")
            ),

            # Security policy
            "max_file_size": _env_int("MAX_FILE_SIZE", DEFAULT_MAX_FILE_SIZE),
            "max_request_size": _env_int("MAX_REQUEST_SIZE", DEFAULT_MAX_REQUEST_SIZE),
            "allowed_extensions": _env_list("ALLOWED_EXTENSIONS"),
            "blocked_paths": _env_list("BLOCKED_PATHS") or [],

            # Rate limiting
            "rate_limit_enabled": _env_bool("RATE_LIMIT_ENABLED", True),
            "rate_limit_algorithm": os.environ.get(
                "RATE_LIMIT_ALGORITHM", RateLimitAlgorithm.SLIDING_WINDOW.value
            ).lower(),
            "requests_per_minute": _env_int("REQUESTS_PER_MINUTE", 60),
            "burst_limit": _env_int("BURST_LIMIT", 10),
            "rate_limit_window_ms": _env_int("RATE_LIMIT_WINDOW_MS", 60000),

            # Confirmation
            "confirmations_enabled": _env_bool("CONFIRMATIONS_ENABLED", True),
            "confirmation_timeout_sec": _env_float("CONFIRMATION_TIMEOUT_SEC", 30.0),

            # Retry
            "max_retries": _env_int("MAX_RETRIES", 3),
            "retry_delay_ms": _env_int("RETRY_DELAY_MS", 1000),
            "max_retry_delay_ms": _env_int("MAX_RETRY_DELAY_MS", 30000),
            "retry_backoff_multiplier": _env_float("RETRY_BACKOFF_MULTIPLIER", 2.0),

            # Server
            "max_tool_iterations": _env_int("MAX_TOOL_ITERATIONS", 10),
            "server_name": os.environ.get("SERVER_NAME", "toolgate"),
            "server_version": os.environ.get("SERVER_VERSION", "1.0.0"),
        }

    def __getattr__(self, name: str) -> Any:
        """Get configuration value."""
        try:
            defaults = object.__getattribute__(self, "_defaults")
        except AttributeError:
            raise AttributeError(name)
        if name in defaults:
            return defaults[name]
        raise AttributeError(f"'{self.__class__.__name__}' object has no attribute '{name}'")

    def __setattr__(self, name: str, value: Any) -> None:
        """Prevent modification of configuration after initialization."""
        try:
            defaults = object.__getattribute__(self, "_defaults")
        except AttributeError:
            defaults = {}
        if name in defaults:
            raise AttributeError(f"Configuration is immutable: cannot set '{name}'")
        super().__setattr__(name, value)

    def get(self, key: str, default: Any = None) -> Any:
        """Get configuration value with optional default."""
        return self._defaults.get(key, default)

    def validate(self) -> list[str]:
        """Validate configuration and return list of errors.

        Returns:
            List of validation error messages. Empty list means valid.
        """
        errors = []

        root = Path(self.root_directory).expanduser()
        if not root.is_dir():
            errors.append(f"Root directory not found: {root}")

        if self.rate_limit_algorithm not in {a.value for a in RateLimitAlgorithm}:
            errors.append(
                f"Unknown RATE_LIMIT_ALGORITHM: {self.rate_limit_algorithm} "
                f"(expected one of {', '.join(a.value for a in RateLimitAlgorithm)})"
            )

        for key in (
            "max_file_size",
            "max_request_size",
            "requests_per_minute",
            "burst_limit",
            "rate_limit_window_ms",
            "max_retries",
            "max_tool_iterations",
        ):
            if self._defaults[key] < 1:
                errors.append(f"{key.upper()} must be at least 1")

        if self.retry_delay_ms < 0 or self.max_retry_delay_ms < 0:
            errors.append("Retry delays must not be negative")
        if self.retry_backoff_multiplier < 1:
            errors.append("RETRY_BACKOFF_MULTIPLIER must be at least 1")
        if self.confirmation_timeout_sec <= 0:
            errors.append("CONFIRMATION_TIMEOUT_SEC must be positive")

        if self.audit_enabled:
            audit_dir = Path(self.audit_log_path).expanduser().parent
            if not audit_dir.exists():
                try:
                    audit_dir.mkdir(parents=True, exist_ok=True)
                except OSError as e:
                    errors.append(f"Cannot create audit log directory {audit_dir}: {e}")
            elif not os.access(audit_dir, os.W_OK):
                errors.append(f"Audit log directory not writable: {audit_dir}")

        return errors

    def to_security_policy(self, policy: Policy | None = None) -> SecurityPolicy:
        """Build the SecurityPolicy, with policy file overrides applied."""
        values = {
            "root_directory": self.root_directory,
            "max_file_size": self.max_file_size,
            "max_request_size": self.max_request_size,
            "allowed_extensions": self.allowed_extensions,
            "blocked_paths": self.blocked_paths,
        }
        if policy is not None:
            values.update(policy.security)

        extensions = values["allowed_extensions"]
        return SecurityPolicy(
            root_directory=values["root_directory"],
            allowed_extensions=frozenset(extensions) if extensions is not None else None,
            blocked_paths=tuple(values["blocked_paths"]),
            max_file_size=int(values["max_file_size"]),
            max_request_size=int(values["max_request_size"]),
        )

    def to_rate_limit_config(
        self, policy: Policy | None = None
    ) -> tuple[RateLimitConfig, RateLimitAlgorithm]:
        """Build the rate limiter settings and algorithm, with policy overrides."""
        values = {
            "enabled": self.rate_limit_enabled,
            "algorithm": self.rate_limit_algorithm,
            "requests_per_minute": self.requests_per_minute,
            "burst_limit": self.burst_limit,
            "window_size_ms": self.rate_limit_window_ms,
        }
        if policy is not None:
            values.update(policy.rate_limit)

        try:
            algorithm = RateLimitAlgorithm(values.pop("algorithm"))
            return RateLimitConfig(**values), algorithm
        except ValueError as e:
            raise ConfigurationError(str(e), "rate_limit", cause=e)

    def to_retry_config(self) -> RetryConfig:
        try:
            return RetryConfig(
                max_attempts=self.max_retries,
                base_delay=self.retry_delay_ms / 1000.0,
                max_delay=self.max_retry_delay_ms / 1000.0,
                multiplier=self.retry_backoff_multiplier,
            )
        except ValueError as e:
            raise ConfigurationError(str(e), "retry", cause=e)

    def confirmation_settings(self, policy: Policy | None = None) -> tuple[bool, float]:
        """Return (enabled, timeout_sec) with policy overrides applied."""
        enabled = self.confirmations_enabled
        timeout = self.confirmation_timeout_sec
        if policy is not None:
            enabled = policy.confirmation.get("enabled", enabled)
            timeout = policy.confirmation.get("timeout_sec", timeout)
        return enabled, float(timeout)

    def to_dict(self) -> dict[str, Any]:
        """Convert configuration to dictionary."""
        return self._defaults.copy()

    def __str__(self) -> str:
        return f"Config(root_directory={self.root_directory})"

    def __repr__(self) -> str:
        return f"Config(root_directory={self.root_directory}, policy_file={self.policy_file})"

    def get_startup_summary(self) -> dict[str, Any]:
        """Get startup configuration summary for logging (without secrets).

        Returns:
            Dictionary with key configuration values for startup logging
        """
        return {
            "server_name": self.server_name,
            "server_version": self.server_version,
            "root_directory": self.root_directory,
            "policy_file": str(self.policy_file),
            "audit_enabled": self.audit_enabled,
            "audit_log_path": self.audit_log_path if self.audit_enabled else "disabled",
            "allowed_extensions": self.allowed_extensions or "any",
            "blocked_paths": len(self.blocked_paths),
            "rate_limit": (
                f"{self.rate_limit_algorithm} {self.requests_per_minute}/"
                f"{self.rate_limit_window_ms}ms"
                if self.rate_limit_enabled
                else "disabled"
            ),
            "confirmations_enabled": self.confirmations_enabled,
            "max_retries": self.max_retries,
            "log_level": self.log_level,
        }

    @classmethod
    def load_runtime_config(cls) -> "Config":
        """Load runtime configuration from the environment.

        Returns:
            Configured Config instance
        """
        return cls()
