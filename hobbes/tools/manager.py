"""MCP tool servers: connection management and tool invocation."""

import json
import os
import sys
from abc import ABC, abstractmethod
from contextlib import AsyncExitStack
from dataclasses import dataclass, field
from typing import Any, TextIO

from mcp import ClientSession, StdioServerParameters
from mcp.client.stdio import stdio_client
from mcp.types import Implementation

from hobbes import __version__
from hobbes.config import ToolServerConfig
from hobbes.exceptions import ApprovalRequiredError, ToolExecutionError, ToolNotFoundError
from hobbes.logging import get_logger
from hobbes.models import ToolCatalog, ToolServerContext, ToolSpec

log = get_logger(__name__)

_CLIENT_INFO = Implementation(name="hobbes", version=__version__)

FILESYSTEM_SERVER = "filesystem"


class ToolService(ABC):
    """Interface the turn engine uses to reach tool servers."""

    @abstractmethod
    async def list_tools(self, server_name: str) -> list[ToolSpec]:
        pass

    @abstractmethod
    async def invoke(
        self,
        server_name: str,
        tool_name: str,
        arguments: dict[str, Any],
        pre_approved: bool = False,
    ) -> Any:
        """Run a tool and return its JSON-compatible result.

        Raises:
            ApprovalRequiredError: The server wants explicit user approval first
            ToolError: Any other tool failure
        """
        pass

    @abstractmethod
    def catalog(self) -> ToolCatalog:
        pass

    async def close(self) -> None:
        return None


def server_params(config: ToolServerConfig, project_folder: str | None = None) -> StdioServerParameters:
    """Build stdio launch parameters for a configured server.

    The filesystem server is scoped to the project folder when one is set.
    """
    args = list(config.args)
    if config.name == FILESYSTEM_SERVER and project_folder:
        args.append(project_folder)
    return StdioServerParameters(
        command=config.command,
        args=args,
        env={**os.environ, **config.env},
    )


def tool_spec_from_mcp(tool: Any) -> ToolSpec:
    """Convert an ``mcp.types.Tool`` into a ToolSpec, keeping unknown keys in ``extra``."""
    return ToolSpec.from_dict(tool.model_dump(mode="json", by_alias=True, exclude_none=True))


def interpret_call_result(tool_name: str, data: dict[str, Any]) -> list[dict[str, Any]]:
    """Turn a dumped ``CallToolResult`` into content blocks or a typed error."""
    content = list(data.get("content") or [])
    if not data.get("isError"):
        return content

    text = "\n".join(
        str(block.get("text", "")) for block in content if block.get("type") == "text"
    ).strip()
    try:
        payload = json.loads(text) if text else None
    except json.JSONDecodeError:
        payload = None
    if isinstance(payload, dict) and payload.get("approval_required") is True:
        raise ApprovalRequiredError(tool_name, payload)
    raise ToolExecutionError(tool_name, text or "tool reported an error")


@dataclass
class ServerConnection:
    """An initialized session with one tool server."""

    config: ToolServerConfig
    session: ClientSession
    tools: list[ToolSpec] = field(default_factory=list)

    async def refresh_tools(self) -> list[ToolSpec]:
        result = await self.session.list_tools()
        self.tools = [tool_spec_from_mcp(tool) for tool in result.tools]
        return self.tools

    def has_tool(self, tool_name: str) -> bool:
        return any(tool.name == tool_name for tool in self.tools)


class MCPToolManager(ToolService):
    """Keeps stdio MCP servers running for the lifetime of a chat client."""

    def __init__(
        self,
        servers: list[ToolServerConfig] | None = None,
        project_folder: str | None = None,
        errlog: TextIO | None = None,
    ):
        self.servers = list(servers or [])
        self.project_folder = project_folder
        self._errlog = errlog if errlog is not None else sys.stderr
        self._connections: dict[str, ServerConnection] = {}
        self._stack = AsyncExitStack()

    @property
    def connected(self) -> list[str]:
        return list(self._connections)

    def get_connection(self, server_name: str) -> ServerConnection:
        connection = self._connections.get(server_name)
        if connection is None:
            raise ToolNotFoundError(server_name=server_name, tool_name="*")
        return connection

    async def connect(self, config: ToolServerConfig) -> ServerConnection:
        """Launch and initialize one server."""
        if config.name in self._connections:
            raise ValueError(f"Server '{config.name}' already connected")

        params = server_params(config, self.project_folder)
        read, write = await self._stack.enter_async_context(
            stdio_client(params, errlog=self._errlog)
        )
        session = await self._stack.enter_async_context(
            ClientSession(read, write, client_info=_CLIENT_INFO)
        )
        await session.initialize()

        connection = ServerConnection(config=config, session=session)
        await connection.refresh_tools()
        self._connections[config.name] = connection
        log.info("Tool server connected", server=config.name, tools=len(connection.tools))
        return connection

    async def connect_all(self) -> list[str]:
        """Connect every enabled server; a server that fails to start is skipped."""
        for config in self.servers:
            if config.disabled:
                log.debug("Tool server disabled", server=config.name)
                continue
            try:
                await self.connect(config)
            except Exception as e:
                log.error("Tool server failed to start", server=config.name, error=str(e))
        return self.connected

    async def list_tools(self, server_name: str) -> list[ToolSpec]:
        return list(await self.get_connection(server_name).refresh_tools())

    def catalog(self) -> ToolCatalog:
        return ToolCatalog(
            servers=[
                ToolServerContext(
                    name=name,
                    description=connection.config.description,
                    tools=list(connection.tools),
                )
                for name, connection in self._connections.items()
            ]
        )

    async def invoke(
        self,
        server_name: str,
        tool_name: str,
        arguments: dict[str, Any],
        pre_approved: bool = False,
    ) -> Any:
        connection = self._connections.get(server_name)
        if connection is None or not connection.has_tool(tool_name):
            raise ToolNotFoundError(tool_name, server_name)

        if connection.config.require_approval and not pre_approved:
            raise ApprovalRequiredError(
                tool_name,
                {"approval_required": True, "server_name": server_name},
            )

        log.info("Calling tool", server=server_name, tool=tool_name)
        result = await connection.session.call_tool(tool_name, arguments or {})
        return interpret_call_result(
            tool_name, result.model_dump(mode="json", by_alias=True, exclude_none=True)
        )

    async def close(self) -> None:
        """Shut down every server session and process."""
        await self._stack.aclose()
        self._stack = AsyncExitStack()
        self._connections.clear()
