"""MCP tool handlers for Archivist sync operations.

This package contains MCP tool implementations that wrap the sync core
with async handlers, report formatting, and structured error responses.
"""

from .errors import build_error_response, translate_api_error
from .registry import ToolRegistry, ToolSpec
from .sync import SYNC_SPECS
from .worlds import WORLD_SPECS

ALL_SPECS: list[ToolSpec] = WORLD_SPECS + SYNC_SPECS

__all__ = [
    "build_error_response",
    "translate_api_error",
    "ToolSpec",
    "ToolRegistry",
    "ALL_SPECS",
    "SYNC_SPECS",
    "WORLD_SPECS",
]
