"""
Unit tests for the toolgate security validator.
"""

import os

import pytest

from toolgate.errors import ConfigurationError, SecurityError
from toolgate.security import (
    FileOperation,
    SecurityPolicy,
    SecurityValidator,
    SecurityViolation,
)


class TestSecurityValidatorInit:
    """Test validator construction."""

    def test_canonical_root_is_resolved(self, workspace):
        validator = SecurityValidator(SecurityPolicy(root_directory=str(workspace)))
        assert validator.canonical_root == os.path.realpath(workspace)

    def test_missing_root_is_configuration_error(self, temp_dir):
        with pytest.raises(ConfigurationError):
            SecurityValidator(SecurityPolicy(root_directory=str(temp_dir / "missing")))

    def test_empty_root_is_configuration_error(self):
        with pytest.raises(ConfigurationError):
            SecurityValidator(SecurityPolicy(root_directory=""))


class TestPathValidation:
    """Test containment, blocked paths and pattern checks."""

    @pytest.mark.asyncio
    async def test_relative_path_allowed(self, security_validator, workspace):
        result = await security_validator.validate_file_path("README.md", "read")
        assert result.allowed is True
        assert result.canonical_path == os.path.realpath(workspace / "README.md")

    @pytest.mark.asyncio
    async def test_root_itself_allowed_for_listing(self, security_validator):
        result = await security_validator.validate_file_path(".", FileOperation.LIST)
        assert result.allowed is True
        assert result.canonical_path == security_validator.canonical_root

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "path",
        [
            "../../etc/passwd",
            "../outside.txt",
            "src/../../outside.txt",
            "src/../../../../../../../../etc/shadow",
            "a/b/c/../../../../x",
            "/etc/passwd",
        ],
    )
    async def test_escapes_are_denied(self, security_validator, path):
        result = await security_validator.validate_file_path(path, "read")
        assert result.allowed is False
        assert result.violation == SecurityViolation.PATH_TRAVERSAL
        assert "outside allowed root" in result.reason

    @pytest.mark.asyncio
    async def test_dotdot_that_stays_inside_is_allowed(self, security_validator):
        result = await security_validator.validate_file_path("src/../README.md", "read")
        assert result.allowed is True

    @pytest.mark.asyncio
    async def test_absolute_path_inside_root_allowed(self, security_validator, workspace):
        result = await security_validator.validate_file_path(
            str(workspace / "src" / "main.py"), "read"
        )
        assert result.allowed is True

    @pytest.mark.asyncio
    async def test_symlink_escape_is_denied(self, security_validator, workspace, temp_dir):
        outside = temp_dir / "secret.txt"
        outside.write_text("secret")
        os.symlink(outside, workspace / "link.txt")

        result = await security_validator.validate_file_path("link.txt", "read")
        assert result.allowed is False
        assert result.violation == SecurityViolation.PATH_TRAVERSAL

    @pytest.mark.asyncio
    async def test_nonexistent_leaf_keeps_name(self, security_validator, workspace):
        result = await security_validator.validate_file_path("src/new_file.py", "write")
        assert result.allowed is True
        assert result.canonical_path == os.path.join(
            os.path.realpath(workspace), "src", "new_file.py"
        )

    @pytest.mark.asyncio
    async def test_blocked_path_prefix(self, security_validator):
        result = await security_validator.validate_file_path(".git/config", "read")
        assert result.allowed is False
        assert result.violation == SecurityViolation.BLOCKED_PATH
        assert "blocked by security policy" in result.reason

    @pytest.mark.asyncio
    async def test_blocked_match_is_per_segment(self, security_validator):
        result = await security_validator.validate_file_path(".gitignore", "read")
        assert result.allowed is True

    @pytest.mark.asyncio
    @pytest.mark.parametrize("path", ["", "a\x00b", "a\nb", "x" * 5000])
    async def test_malicious_patterns(self, security_validator, path):
        result = await security_validator.validate_file_path(path, "read")
        assert result.allowed is False
        assert result.violation == SecurityViolation.MALICIOUS_PATTERN

    @pytest.mark.asyncio
    async def test_denial_reason_does_not_leak_root(self, security_validator):
        result = await security_validator.validate_file_path("../../etc/passwd", "read")
        assert security_validator.canonical_root not in result.reason


class TestExtensionAndSize:
    """Test the extension allowlist and size limits."""

    @pytest.mark.asyncio
    async def test_extension_allowlist(self, workspace):
        validator = SecurityValidator(
            SecurityPolicy(root_directory=str(workspace), allowed_extensions=frozenset({"md", ".py"}))
        )
        assert (await validator.validate_file_path("README.md", "read")).allowed
        assert (await validator.validate_file_path("src/main.py", "read")).allowed

        denied = await validator.validate_file_path("config.json", "read")
        assert denied.allowed is False
        assert denied.violation == SecurityViolation.INVALID_EXTENSION

    @pytest.mark.asyncio
    async def test_extension_allowlist_skips_listing(self, workspace):
        validator = SecurityValidator(
            SecurityPolicy(root_directory=str(workspace), allowed_extensions=frozenset({".md"}))
        )
        assert (await validator.validate_file_path("src", "list")).allowed

    @pytest.mark.asyncio
    async def test_read_size_limit(self, workspace):
        (workspace / "big.txt").write_text("x" * 200)
        validator = SecurityValidator(
            SecurityPolicy(root_directory=str(workspace), max_file_size=100)
        )
        result = await validator.validate_file_path("big.txt", "read")
        assert result.allowed is False
        assert result.violation == SecurityViolation.SIZE_LIMIT_EXCEEDED

    @pytest.mark.asyncio
    async def test_write_content_size_limit(self, workspace):
        validator = SecurityValidator(
            SecurityPolicy(root_directory=str(workspace), max_request_size=10)
        )
        result = await validator.validate_file_path("out.txt", "write", content="x" * 11)
        assert result.allowed is False
        assert result.violation == SecurityViolation.SIZE_LIMIT_EXCEEDED

        ok = await validator.validate_file_path("out.txt", "write", content="x" * 10)
        assert ok.allowed is True

    def test_content_size_counts_utf8_bytes(self, workspace):
        validator = SecurityValidator(
            SecurityPolicy(root_directory=str(workspace), max_request_size=4)
        )
        assert validator.validate_content_size("ab").allowed is True
        assert validator.validate_content_size("ééé").allowed is False


class TestAuthorizeAndStats:
    """Test authorize(), violation logging and statistics."""

    @pytest.mark.asyncio
    async def test_authorize_returns_canonical_path(self, security_validator, workspace):
        canonical = await security_validator.authorize("README.md", "read")
        assert canonical == os.path.realpath(workspace / "README.md")

    @pytest.mark.asyncio
    async def test_authorize_raises_security_error(self, security_validator):
        with pytest.raises(SecurityError) as exc_info:
            await security_validator.authorize("../../etc/passwd", "read")
        assert exc_info.value.violation == "path_traversal"

    @pytest.mark.asyncio
    async def test_violation_reported_to_audit_logger(self, security_policy, mock_audit_logger):
        validator = SecurityValidator(security_policy, audit_logger=mock_audit_logger)
        await validator.validate_file_path("../escape.txt", "read")

        mock_audit_logger.log_security_violation.assert_called_once()
        data = mock_audit_logger.log_security_violation.call_args.args[0]
        assert data["violation_type"] == "path_traversal"
        assert data["operation"] == "read"
        assert data["attempted_path"] == "../escape.txt"

    @pytest.mark.asyncio
    async def test_violation_logged_as_warning(self, security_validator, caplog):
        with caplog.at_level("WARNING", logger="toolgate.security"):
            await security_validator.validate_file_path(".git/config", "read")
        assert "SECURITY VIOLATION: blocked_path" in caplog.text

    @pytest.mark.asyncio
    async def test_security_stats(self, security_validator):
        await security_validator.validate_file_path("README.md", "read")
        await security_validator.validate_file_path("../a", "read")
        await security_validator.validate_file_path("../b", "read")
        await security_validator.validate_file_path(".git/config", "read")

        stats = security_validator.get_security_stats()
        assert stats["total_checks"] == 4
        assert stats["allowed"] == 1
        assert stats["blocked"] == 3
        assert stats["block_rate"] == 0.75
        assert stats["most_common_reason"] == "path_traversal"
        assert stats["common_block_reasons"] == {"path_traversal": 2, "blocked_path": 1}

    @pytest.mark.asyncio
    async def test_access_log_limit_and_clear(self, security_validator):
        for name in ("README.md", "config.json", "src/main.py"):
            await security_validator.validate_file_path(name, "read")

        recent = security_validator.get_access_log(limit=2)
        assert [entry.requested_path for entry in recent] == ["config.json", "src/main.py"]

        security_validator.clear_access_log()
        assert security_validator.get_access_log() == []
        assert security_validator.get_security_stats()["block_rate"] == 0.0

    def test_is_blocked_ignores_paths_outside_root(self, security_validator):
        assert security_validator.is_blocked("/somewhere/else/.git") is False
