"""
Tool Abstractions

A Tool owns an immutable ToolDefinition and turns validated parameters
into a ToolInvocation. Invocations describe themselves (description,
filesystem locations, whether confirmation is needed) before they run, so
the executor can authorize every location and obtain approval before any
side effect happens.
"""

import asyncio
import copy
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from typing import Any

from ..confirmation import ConfirmationDetails
from ..errors import CancelledError, InternalError, ValidationError
from ..security import FileOperation


@dataclass(frozen=True)
class ToolDefinition:
    """
    Registered description of a tool.

    Attributes:
        name: Unique registry key
        display_name: User-facing name
        description: Text shown to the model
        parameter_schema: JSON Schema (Draft 2020-12) for the parameters
        destructive: Whether invocations may destroy existing state
    """

    name: str
    display_name: str
    description: str
    parameter_schema: dict[str, Any]
    destructive: bool = False

    def to_schema(self) -> dict[str, Any]:
        """Schema exposed to the model client."""
        return {
            "name": self.name,
            "description": self.description,
            "parameters": copy.deepcopy(self.parameter_schema),
        }


@dataclass(frozen=True)
class ToolCall:
    """Untrusted tool call taken from a model response."""

    id: str
    name: str
    parameters: Any = field(default_factory=dict)
    confirmed: bool = False

    @classmethod
    def from_dict(cls, data: Any) -> "ToolCall":
        """
        Build a ToolCall from a decoded model response entry.

        Raises:
            ValidationError: If the entry is not an object or lacks a name
        """
        if not isinstance(data, dict):
            raise ValidationError("Tool call must be an object", "call", "type")
        name = data.get("name")
        if not isinstance(name, str) or not name:
            raise ValidationError("Tool call is missing a tool name", "name", "required")
        call_id = data.get("id")
        return cls(
            id=str(call_id) if call_id is not None else "",
            name=name,
            parameters=data.get("parameters", data.get("args", {})),
        )


@dataclass(frozen=True)
class ToolResult:
    """Result returned to the model and the UI."""

    llm_content: str
    return_display: str

    def to_dict(self) -> dict[str, str]:
        return {"llmContent": self.llm_content, "returnDisplay": self.return_display}


@dataclass(frozen=True)
class ToolLocation:
    """A filesystem location an invocation will touch."""

    path: str
    operation: FileOperation
    description: str = ""
    content: str | None = None


@dataclass
class ExecutionContext:
    """
    State handed to an invocation once it has cleared security.

    canonical_paths maps each requested location path to the canonical
    path the security validator authorized for it.
    """

    canonical_paths: dict[str, str] = field(default_factory=dict)
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    security: Any = None

    def canonical(self, path: str) -> str:
        try:
            return self.canonical_paths[path]
        except KeyError:
            raise InternalError(f"Location '{path}' was not authorized before execution")

    def check_cancelled(self) -> None:
        """
        Raises:
            CancelledError: If cancellation has been requested
        """
        if self.cancel_event.is_set():
            raise CancelledError("Tool execution was cancelled")


class ToolInvocation(ABC):
    """Validated parameters bound to one ToolDefinition."""

    def __init__(self, definition: ToolDefinition, params: dict[str, Any]):
        self.definition = definition
        self.params = params

    @abstractmethod
    def get_description(self) -> str:
        """Human-readable description of what the invocation will do."""

    def get_locations(self) -> list[ToolLocation]:
        return []

    async def should_confirm_execute(
        self, context: ExecutionContext
    ) -> ConfirmationDetails | None:
        """
        Report what needs approving, or None if nothing destructive will happen.

        Called after security has authorized every location, so
        context.canonical_paths is populated.
        """
        return None

    @abstractmethod
    async def execute(self, context: ExecutionContext) -> ToolResult:
        """Perform the operation. Only this stage may have side effects."""


class Tool(ABC):
    """
    Base class for tools.

    Subclasses set the class attributes and implement bind().
    """

    name: str = ""
    display_name: str = ""
    description: str = ""
    parameter_schema: dict[str, Any] = {}
    destructive: bool = False

    def __init__(self) -> None:
        self.definition = ToolDefinition(
            name=self.name,
            display_name=self.display_name or self.name,
            description=self.description,
            parameter_schema=self.parameter_schema,
            destructive=self.destructive,
        )

    def schema(self) -> dict[str, Any]:
        return self.definition.to_schema()

    @abstractmethod
    def bind(self, params: dict[str, Any]) -> ToolInvocation:
        """Create an invocation from parameters that already passed validation."""

    def with_overrides(self, destructive: bool | None = None) -> "Tool":
        """Return a copy of this tool with policy overrides applied."""
        if destructive is None or destructive == self.definition.destructive:
            return self
        clone = copy.copy(self)
        clone.definition = replace(self.definition, destructive=destructive)
        return clone
