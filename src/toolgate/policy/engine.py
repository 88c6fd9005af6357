"""
Policy engine for toolgate.

This module provides the parameter validator used by the tool registry and
the YAML policy loader that overrides environment configuration. Tool
parameter schemas are JSON Schema Draft 2020-12 documents; every
invocation's parameters are validated against them before the invocation
is created.
"""

import logging
import os
import re
from dataclasses import dataclass, field
from typing import Any

import jsonschema
import yaml

from ..errors import ConfigurationError, ValidationError

logger = logging.getLogger(__name__)

MAX_POLICY_FILE_SIZE = 1024 * 1024
TOOL_NAME_PATTERN = re.compile(r"^[a-zA-Z0-9_-]{1,100}$")


class PolicyLoadError(ConfigurationError):
    """Raised when policy file cannot be loaded or is invalid."""

    pass


class PolicyValidationError(ConfigurationError):
    """Raised when policy content fails validation."""

    pass


POLICY_SCHEMA: dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "type": "object",
    "additionalProperties": False,
    "properties": {
        "security": {
            "type": "object",
            "additionalProperties": False,
            "properties": {
                "root_directory": {"type": "string", "minLength": 1},
                "max_file_size": {"type": "integer", "minimum": 1},
                "max_request_size": {"type": "integer", "minimum": 1},
                "allowed_extensions": {
                    "type": "array",
                    "items": {"type": "string", "minLength": 1},
                },
                "blocked_paths": {
                    "type": "array",
                    "items": {"type": "string", "minLength": 1},
                },
            },
        },
        "rate_limit": {
            "type": "object",
            "additionalProperties": False,
            "properties": {
                "enabled": {"type": "boolean"},
                "algorithm": {
                    "enum": ["token_bucket", "sliding_window", "fixed_window"]
                },
                "requests_per_minute": {"type": "integer", "minimum": 1},
                "burst_limit": {"type": "integer", "minimum": 1},
                "window_size_ms": {"type": "integer", "minimum": 1},
            },
        },
        "confirmation": {
            "type": "object",
            "additionalProperties": False,
            "properties": {
                "enabled": {"type": "boolean"},
                "timeout_sec": {"type": "number", "exclusiveMinimum": 0},
            },
        },
        "tools": {
            "type": "object",
            "propertyNames": {"pattern": TOOL_NAME_PATTERN.pattern},
            "additionalProperties": {
                "type": "object",
                "additionalProperties": False,
                "properties": {
                    "enabled": {"type": "boolean"},
                    "destructive": {"type": "boolean"},
                },
            },
        },
    },
}


@dataclass(frozen=True)
class ToolPolicy:
    """Per-tool overrides from the policy file."""

    enabled: bool = True
    destructive: bool | None = None


@dataclass
class Policy:
    """Parsed policy document; sections left out of the file stay empty."""

    security: dict[str, Any] = field(default_factory=dict)
    rate_limit: dict[str, Any] = field(default_factory=dict)
    confirmation: dict[str, Any] = field(default_factory=dict)
    tools: dict[str, ToolPolicy] = field(default_factory=dict)
    source: str | None = None

    def tool_policy(self, tool_name: str) -> ToolPolicy:
        return self.tools.get(tool_name, ToolPolicy())


class PolicyLoader:
    """
    Loads and validates the YAML policy file.

    The PolicyLoader is responsible for:
    - Reading the YAML file with a size cap and safe_load
    - Validating the document against POLICY_SCHEMA
    - Producing a Policy with security, rate limit, confirmation and
      per-tool overrides

    A missing file is not an error: the returned Policy is empty and the
    environment configuration applies unchanged.
    """

    def __init__(self, policy_file_path: str = "config/policy.yaml"):
        """
        Initialize PolicyLoader with path to policy file.

        Args:
            policy_file_path: Path to the YAML policy file
        """
        self.policy_file_path = policy_file_path
        self._policy: Policy | None = None

    def load_policy(self) -> Policy:
        """
        Load and validate policy from YAML file.

        Returns:
            Policy: Parsed overrides

        Raises:
            PolicyLoadError: If file cannot be read or parsed
            PolicyValidationError: If policy content is invalid
        """
        canonical_path = os.path.realpath(os.path.expanduser(self.policy_file_path))

        if not os.path.exists(canonical_path):
            logger.info(
                "Policy file not found at %s; continuing with environment configuration only",
                canonical_path,
            )
            self._policy = Policy()
            return self._policy

        try:
            file_size = os.path.getsize(canonical_path)
            if file_size > MAX_POLICY_FILE_SIZE:
                raise PolicyLoadError(
                    "Policy file exceeds maximum size limit", "POLICY_FILE"
                )

            with open(canonical_path, encoding="utf-8") as f:
                content = f.read(MAX_POLICY_FILE_SIZE)
        except OSError as e:
            raise PolicyLoadError(
                "Failed to read policy file: access denied or file not found",
                "POLICY_FILE",
                cause=e,
            )

        try:
            parsed = yaml.safe_load(content)
        except yaml.YAMLError as e:
            raise PolicyLoadError(
                "Policy file contains invalid YAML syntax", "POLICY_FILE", cause=e
            )

        if parsed is None:
            parsed = {}
        if not isinstance(parsed, dict):
            raise PolicyLoadError("Policy file must contain a YAML object", "POLICY_FILE")

        self._validate_policy_structure(parsed)

        tools = {
            name: ToolPolicy(
                enabled=settings.get("enabled", True),
                destructive=settings.get("destructive"),
            )
            for name, settings in (parsed.get("tools") or {}).items()
        }

        self._policy = Policy(
            security=dict(parsed.get("security") or {}),
            rate_limit=dict(parsed.get("rate_limit") or {}),
            confirmation=dict(parsed.get("confirmation") or {}),
            tools=tools,
            source=canonical_path,
        )

        disabled = sorted(name for name, tool in tools.items() if not tool.enabled)
        if disabled:
            logger.info("Policy tools disabled via configuration: %s", ", ".join(disabled))
        logger.info("Policy loaded from %s (%d tool overrides)", canonical_path, len(tools))
        return self._policy

    def _validate_policy_structure(self, policy_data: dict[str, Any]) -> None:
        validator = jsonschema.Draft202012Validator(POLICY_SCHEMA)
        errors = sorted(
            validator.iter_errors(policy_data),
            key=lambda e: [str(p) for p in e.absolute_path],
        )
        if errors:
            messages = []
            for error in errors:
                location = ".".join(str(p) for p in error.absolute_path) or "root"
                messages.append(f"{location}: {error.message}")
            raise PolicyValidationError(
                f"Policy file is invalid: {'; '.join(messages)}", "POLICY_FILE"
            )

    def get_policy(self) -> Policy:
        """
        Get the loaded policy.

        Raises:
            RuntimeError: If policy has not been loaded
        """
        if self._policy is None:
            raise RuntimeError("Policy must be loaded before accessing it")
        return self._policy

    def is_loaded(self) -> bool:
        return self._policy is not None


class SchemaValidator:
    """
    Validates tool parameters against JSON Schema definitions.

    The SchemaValidator provides JSON Schema 2020-12 validation for tool
    parameters, ensuring that all inputs conform to the expected structure
    and types before an invocation is created.
    """

    def __init__(self) -> None:
        self._validator_class = jsonschema.Draft202012Validator

    def validate_tool_name(self, tool_name: Any) -> None:
        """
        Raises:
            ValidationError: If the name is not a string matching TOOL_NAME_PATTERN
        """
        if not isinstance(tool_name, str) or not TOOL_NAME_PATTERN.match(tool_name):
            raise ValidationError(
                "Tool name must be 1-100 characters of letters, digits, '_' or '-'",
                field_name="name",
                constraint="pattern",
            )

    def validate_params(
        self, params: Any, schema: dict[str, Any], tool_name: str
    ) -> dict[str, Any]:
        """
        Validate tool parameters against a JSON schema.

        Args:
            params: Parameters to validate
            schema: JSON schema to validate against
            tool_name: Name of the tool (for error messages)

        Returns:
            dict: The validated parameters

        Raises:
            ValidationError: If validation fails; field and constraint
                describe the first failure, the message lists all of them
        """
        if not isinstance(params, dict):
            raise ValidationError(
                f"Tool '{tool_name}' parameters must be an object, "
                f"got {type(params).__name__}",
                field_name="parameters",
                constraint="type",
            )

        validator = self._validator_class(schema)
        errors = sorted(
            validator.iter_errors(params),
            key=lambda e: ([str(p) for p in e.absolute_path], str(e.validator)),
        )
        if not errors:
            return params

        error_messages = [self._describe(error) for error in errors]
        first = errors[0]
        raise ValidationError(
            f"Tool '{tool_name}' parameter validation failed: {'; '.join(error_messages)}",
            field_name=self._field_of(first),
            constraint=str(first.validator),
            context={"tool": tool_name, "error_count": len(errors)},
        )

    @staticmethod
    def _field_of(error: jsonschema.ValidationError) -> str:
        if error.validator == "required":
            missing = error.message.split("'")[1] if "'" in error.message else "unknown"
            prefix = ".".join(str(p) for p in error.absolute_path)
            return f"{prefix}.{missing}" if prefix else missing
        return ".".join(str(p) for p in error.absolute_path) or "root"

    def _describe(self, error: jsonschema.ValidationError) -> str:
        field_path = self._field_of(error)

        if error.validator == "required":
            return f"Missing required field: {field_path}"
        if error.validator == "type":
            expected_type = error.schema.get("type", "unknown")
            return (
                f"Field '{field_path}' has invalid type. "
                f"Expected {expected_type}, got {type(error.instance).__name__}"
            )
        if error.validator == "pattern":
            pattern = error.schema.get("pattern", "unknown")
            return f"Field '{field_path}' does not match required pattern '{pattern}'"
        if error.validator in ("minimum", "maximum"):
            bound = error.schema.get(error.validator)
            word = "at least" if error.validator == "minimum" else "at most"
            return f"Field '{field_path}' must be {word} {bound}. Got {error.instance}"
        if error.validator in ("minLength", "maxLength"):
            limit = error.schema.get(error.validator, 0)
            actual_length = len(error.instance) if hasattr(error.instance, "__len__") else 0
            word = "at least" if error.validator == "minLength" else "at most"
            return (
                f"Field '{field_path}' must be {word} {limit} characters. "
                f"Got {actual_length} characters"
            )
        if error.validator == "additionalProperties":
            return (
                f"Field '{field_path}' contains unexpected properties. "
                f"Only defined properties are allowed"
            )
        return f"Field '{field_path}': {error.message}"

    def check_schema(self, schema: dict[str, Any], tool_name: str) -> None:
        """
        Validate that a parameter schema is well-formed and not too complex.

        Raises:
            ConfigurationError: If the schema is invalid
        """
        if not isinstance(schema, dict):
            raise ConfigurationError(
                f"Tool '{tool_name}' parameter schema must be an object", tool_name
            )
        self._validate_schema_complexity(schema, tool_name)
        try:
            self._validator_class.check_schema(schema)
        except jsonschema.SchemaError as e:
            raise ConfigurationError(
                f"Tool '{tool_name}' has invalid JSON schema: {e.message}",
                tool_name,
                cause=e,
            )

    def _validate_schema_complexity(
        self, schema: dict[str, Any], tool_name: str
    ) -> None:
        def count_schema_nodes(obj: Any, depth: int = 0) -> int:
            if depth > 20:
                raise ConfigurationError(
                    f"Tool '{tool_name}' schema too deeply nested", tool_name
                )

            count = 1
            if isinstance(obj, dict):
                if len(obj) > 100:
                    raise ConfigurationError(f"Tool '{tool_name}' schema too complex", tool_name)
                for value in obj.values():
                    count += count_schema_nodes(value, depth + 1)
            elif isinstance(obj, list):
                if len(obj) > 50:
                    raise ConfigurationError(
                        f"Tool '{tool_name}' schema array too large", tool_name
                    )
                for item in obj:
                    count += count_schema_nodes(item, depth + 1)

            return count

        total_nodes = count_schema_nodes(schema)
        if total_nodes > 1000:
            raise ConfigurationError(f"Tool '{tool_name}' schema too complex", tool_name)

    def get_schema_errors(self, params: Any, schema: dict[str, Any]) -> list[str]:
        """
        Get list of validation errors without raising an exception.

        Returns:
            List of error messages, empty if validation passes
        """
        validator = self._validator_class(schema)
        return [
            f"{'.'.join(str(p) for p in error.absolute_path) or 'root'}: {error.message}"
            for error in validator.iter_errors(params)
        ]
