"""
toolgate Policy Module

This module contains the parameter validator and the policy loader that
enforce tool parameter schemas and per-tool access controls.
"""

from .engine import (
    Policy,
    PolicyLoader,
    PolicyLoadError,
    PolicyValidationError,
    SchemaValidator,
    ToolPolicy,
)

__all__ = [
    "Policy",
    "PolicyLoader",
    "PolicyLoadError",
    "PolicyValidationError",
    "SchemaValidator",
    "ToolPolicy",
]
