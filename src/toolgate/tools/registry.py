"""
Tool Registry

Owns the set of available tools for one orchestrator. Names are unique;
parameter schemas are checked once at registration and every call's
parameters are validated before an invocation is created.
"""

import logging
from typing import Any

from ..errors import ConfigurationError, NotFoundError, ValidationError
from ..policy.engine import SchemaValidator
from .base import Tool, ToolCall, ToolDefinition, ToolInvocation

logger = logging.getLogger(__name__)


class ToolRegistry:
    """
    Registry of tools keyed by name.

    Args:
        schema_validator: Validator used for schemas and call parameters
    """

    def __init__(self, schema_validator: SchemaValidator | None = None):
        self.schema_validator = schema_validator or SchemaValidator()
        self._tools: dict[str, Tool] = {}

    def register(self, tool: Tool) -> None:
        """
        Register a tool.

        Raises:
            ConfigurationError: If the name is invalid, already registered,
                or the parameter schema is malformed
        """
        definition = tool.definition
        try:
            self.schema_validator.validate_tool_name(definition.name)
        except ValidationError as e:
            raise ConfigurationError(
                f"Invalid tool name: {definition.name!r}", "tools", cause=e
            )

        if definition.name in self._tools:
            raise ConfigurationError(
                f"Tool '{definition.name}' is already registered", "tools"
            )

        self.schema_validator.check_schema(definition.parameter_schema, definition.name)
        self._tools[definition.name] = tool
        logger.info(
            f"Registered tool {definition.name} (destructive={definition.destructive})"
        )

    def unregister(self, tool_name: str) -> bool:
        removed = self._tools.pop(tool_name, None) is not None
        if removed:
            logger.info(f"Unregistered tool {tool_name}")
        return removed

    def get_tool(self, tool_name: str) -> Tool | None:
        return self._tools.get(tool_name)

    def get_definition(self, tool_name: str) -> ToolDefinition | None:
        tool = self._tools.get(tool_name)
        return tool.definition if tool else None

    def has_tool(self, tool_name: str) -> bool:
        return tool_name in self._tools

    def get_tool_names(self) -> list[str]:
        """Registered tool names in registration order."""
        return list(self._tools)

    def get_all_schemas(self) -> list[dict[str, Any]]:
        return [tool.schema() for tool in self._tools.values()]

    def create_invocation(self, call: ToolCall) -> ToolInvocation:
        """
        Look up the tool for a call and bind its validated parameters.

        Args:
            call: Untrusted tool call

        Returns:
            ToolInvocation: Invocation ready for the executor

        Raises:
            ValidationError: If the tool name or parameters are invalid
            NotFoundError: If no tool with that name is registered
        """
        self.schema_validator.validate_tool_name(call.name)

        tool = self._tools.get(call.name)
        if tool is None:
            raise NotFoundError(
                f"Tool '{call.name}' not found", available=self.get_tool_names()
            )

        params = self.schema_validator.validate_params(
            call.parameters, tool.definition.parameter_schema, call.name
        )
        return tool.bind(params)
