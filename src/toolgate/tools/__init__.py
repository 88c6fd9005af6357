"""
toolgate Tools Module

This module contains the tool abstractions, the tool registry and the
built-in filesystem tools.
"""

from .base import (
    ExecutionContext,
    Tool,
    ToolCall,
    ToolDefinition,
    ToolInvocation,
    ToolLocation,
    ToolResult,
)
from .filesystem import ListDirectoryTool, ReadFileTool, WriteFileTool, builtin_tools
from .registry import ToolRegistry

__all__ = [
    "ExecutionContext",
    "ListDirectoryTool",
    "ReadFileTool",
    "Tool",
    "ToolCall",
    "ToolDefinition",
    "ToolInvocation",
    "ToolLocation",
    "ToolRegistry",
    "ToolResult",
    "WriteFileTool",
    "builtin_tools",
]
