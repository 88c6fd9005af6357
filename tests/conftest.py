"""
Pytest configuration and shared fixtures for toolgate tests.

This module provides common test fixtures and configuration for both
unit and integration tests.
"""

import tempfile
from pathlib import Path
from unittest.mock import Mock

import pytest

from toolgate.audit import AuditLogger
from toolgate.confirmation import AutoApproveHandler, ConfirmationManager
from toolgate.executor import InvocationExecutor
from toolgate.rate_limiter import RateLimitConfig, RateLimiter
from toolgate.retry import RetryConfig
from toolgate.security import SecurityPolicy, SecurityValidator
from toolgate.tools import ToolRegistry, builtin_tools


class FakeClock:
    """Manually advanced clock in seconds."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def temp_dir():
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def workspace(temp_dir):
    """Workspace root with a few files, a subdirectory and a .git directory."""
    root = temp_dir / "project"
    root.mkdir()
    (root / "README.md").write_text("# Project\n")
    (root / "config.json").write_text('{"debug": false}\n')
    (root / "src").mkdir()
    (root / "src" / "main.py").write_text("print('hello')\n")
    (root / ".git").mkdir()
    (root / ".git" / "config").write_text("[core]\n")
    (root / ".gitignore").write_text("*.pyc\n")
    return root


@pytest.fixture
def mock_env_vars(temp_dir, workspace):
    """Provide environment variables for a test configuration."""
    log_dir = temp_dir / "logs"
    return {
        "TOOLGATE_ROOT": str(workspace),
        "LOG_LEVEL": "DEBUG",
        "LOG_DIR": str(log_dir),
        "AUDIT_LOG_PATH": str(log_dir / "audit.jsonl"),
        "POLICY_FILE": str(temp_dir / "policy.yaml"),
        "SERVER_NAME": "test-toolgate",
        "SERVER_VERSION": "0.0.1-test",
    }


@pytest.fixture
def mock_config(mock_env_vars, monkeypatch):
    """Set up environment variables for testing."""
    for key, value in mock_env_vars.items():
        monkeypatch.setenv(key, value)
    return mock_env_vars


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def security_policy(workspace):
    return SecurityPolicy(root_directory=str(workspace), blocked_paths=(".git",))


@pytest.fixture
def security_validator(security_policy):
    return SecurityValidator(security_policy)


@pytest.fixture
def rate_limiter():
    limiter = RateLimiter(RateLimitConfig(requests_per_minute=100), auto_sweep=False)
    yield limiter
    limiter.shutdown()


@pytest.fixture
def registry():
    registry = ToolRegistry()
    for tool in builtin_tools():
        registry.register(tool)
    return registry


@pytest.fixture
def mock_audit_logger():
    """Mock audit logger for testing."""
    return Mock(spec=AuditLogger)


@pytest.fixture
def audit_logger(temp_dir):
    return AuditLogger(str(temp_dir / "audit" / "audit.jsonl"))


@pytest.fixture
def no_sleep_retry():
    return RetryConfig(max_attempts=3, base_delay=0.0, max_delay=0.0)


@pytest.fixture
def make_executor(registry, security_validator, rate_limiter, no_sleep_retry):
    """Factory building an executor around the shared components."""

    def _make(handler=None, audit_logger=None, enabled=True, timeout=5.0, **kwargs):
        manager = ConfirmationManager(
            handler or AutoApproveHandler(), enabled=enabled, timeout=timeout
        )
        return InvocationExecutor(
            kwargs.pop("registry", registry),
            kwargs.pop("security_validator", security_validator),
            kwargs.pop("rate_limiter", rate_limiter),
            manager,
            audit_logger=audit_logger,
            retry_config=kwargs.pop("retry_config", no_sleep_retry),
            **kwargs,
        )

    return _make


def pytest_collection_modifyitems(config, items):
    """Automatically mark tests based on their location."""
    for item in items:
        if "unit" in str(item.fspath):
            item.add_marker(pytest.mark.unit)
        elif "integration" in str(item.fspath):
            item.add_marker(pytest.mark.integration)
            item.add_marker(pytest.mark.slow)
