"""Tool server access for Hobbes."""

from hobbes.tools.manager import MCPToolManager, ToolService
from hobbes.tools.schema import (
    UNSUPPORTED_SCHEMA_KEYS,
    sanitize_tool_declaration,
    strip_unsupported_keys,
)

__all__ = [
    "MCPToolManager",
    "ToolService",
    "UNSUPPORTED_SCHEMA_KEYS",
    "sanitize_tool_declaration",
    "strip_unsupported_keys",
]
