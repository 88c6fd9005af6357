"""
toolgate - Secure tool execution for AI model tool calls

This package validates, authorizes, rate-limits, confirms and executes
tool calls requested by a language model against a local workspace, with
structured error reporting and an audit trail.
"""

__version__ = "1.0.0"
__author__ = "Toolgate Team"
__description__ = "Secure tool execution pipeline for AI model tool calls"

from .confirmation import ConfirmationManager
from .errors import ToolGateError
from .executor import InvocationExecutor
from .orchestrator import ToolOrchestrator
from .policy import PolicyLoader, SchemaValidator
from .rate_limiter import RateLimiter
from .security import SecurityValidator
from .server.main import main
from .tools import ToolRegistry

__all__ = [
    "main",
    "ConfirmationManager",
    "InvocationExecutor",
    "PolicyLoader",
    "RateLimiter",
    "SchemaValidator",
    "SecurityValidator",
    "ToolGateError",
    "ToolOrchestrator",
    "ToolRegistry",
    "__version__",
    "__author__",
    "__description__",
]
