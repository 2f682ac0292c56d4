"""Normalize externally declared tool schemas for the model endpoint."""

from typing import Any

UNSUPPORTED_SCHEMA_KEYS = frozenset(
    {
        "exclusiveMaximum",
        "exclusiveMinimum",
        "$schema",
        "additionalProperties",
        "outputSchema",
    }
)


def strip_unsupported_keys(value: Any, keys: frozenset[str] = UNSUPPORTED_SCHEMA_KEYS) -> Any:
    """Return a copy of ``value`` with ``keys`` removed at every nesting level.

    Objects nested inside arrays are cleaned too. Surviving keys keep their order.
    """
    if isinstance(value, dict):
        return {
            key: strip_unsupported_keys(item, keys)
            for key, item in value.items()
            if key not in keys
        }
    if isinstance(value, list):
        return [strip_unsupported_keys(item, keys) for item in value]
    return value


def sanitize_tool_declaration(tool: dict[str, Any]) -> dict[str, Any]:
    """Rename ``inputSchema`` to ``parameters`` and strip unsupported keys.

    Already-sanitized declarations pass through unchanged.
    """
    renamed: dict[str, Any] = {}
    for key, value in tool.items():
        if key == "inputSchema":
            if "parameters" not in tool:
                renamed["parameters"] = value
            continue
        renamed[key] = value
    return strip_unsupported_keys(renamed)
