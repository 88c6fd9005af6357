"""
toolgate Server Module

This module contains the JSON-lines request protocol and the server entry
point.
"""

from .main import main
from .protocol import ProtocolHandler

__all__ = [
    "main",
    "ProtocolHandler",
]
