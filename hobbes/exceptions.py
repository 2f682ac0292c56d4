"""Custom exceptions for Hobbes."""

from typing import Any


class HobbesError(Exception):
    """Base exception for Hobbes."""

    pass


class ConfigurationError(HobbesError):
    """Configuration-related errors."""

    pass


class LLMError(HobbesError):
    """Model endpoint errors."""

    pass


class LLMAPIError(LLMError):
    """Model endpoint transport errors (HTTP status, timeout, connection)."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class StreamProtocolError(LLMError):
    """A streamed chunk could not be parsed."""

    def __init__(self, message: str, payload: str = ""):
        super().__init__(message)
        self.payload = payload


class ToolError(HobbesError):
    """Tool execution errors."""

    pass


class ToolExecutionError(ToolError):
    """Tool execution failed."""

    def __init__(self, tool_name: str, message: str):
        super().__init__(f"Tool '{tool_name}' failed: {message}")
        self.tool_name = tool_name


class ToolNotFoundError(ToolError):
    """Tool or tool server not found."""

    def __init__(self, tool_name: str, server_name: str | None = None):
        if server_name:
            message = f"Tool not found: {tool_name} (server: {server_name})"
        else:
            message = f"Tool not found: {tool_name}"
        super().__init__(message)
        self.tool_name = tool_name
        self.server_name = server_name


class ApprovalRequiredError(ToolError):
    """The tool server requires explicit user approval before running the call."""

    def __init__(self, tool_name: str, payload: dict[str, Any] | None = None):
        super().__init__(f"Tool '{tool_name}' requires approval")
        self.tool_name = tool_name
        self.payload = dict(payload or {})


class PermissionDeniedError(ToolError):
    """The permission gate refused the call."""

    def __init__(self, tool_name: str, reason: str):
        super().__init__(reason)
        self.tool_name = tool_name
        self.reason = reason


class SessionError(HobbesError):
    """Session-related errors."""

    pass


class SessionNotFoundError(SessionError):
    """Session not found."""

    def __init__(self, session_id: str):
        super().__init__(f"Session not found: {session_id}")
        self.session_id = session_id


class TurnInvariantError(HobbesError):
    """A turn broke an internal invariant. Never recovered from."""

    pass
