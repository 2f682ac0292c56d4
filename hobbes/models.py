"""Conversation data model shared by the turn engine."""

import uuid
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import Enum
from typing import Any, ClassVar


def _utcnow_iso() -> str:
    """Return current UTC timestamp in ISO format."""
    return datetime.now(UTC).isoformat()


def _new_id() -> str:
    return str(uuid.uuid4())


class Author(str, Enum):
    """Who produced a message."""

    USER = "User"
    AGENT = "Agent"


class ToolCallStatus(str, Enum):
    """Lifecycle of a dispatched tool call."""

    RUNNING = "Running"
    COMPLETED = "Completed"
    ERROR = "Error"

    def __str__(self) -> str:
        return self.value


@dataclass
class ToolCallState:
    """A model-requested tool invocation and its current outcome."""

    server_name: str
    tool_name: str
    arguments: dict[str, Any] = field(default_factory=dict)
    execution_id: str = field(default_factory=_new_id)
    status: ToolCallStatus = ToolCallStatus.RUNNING
    response: str = ""

    @property
    def is_running(self) -> bool:
        return self.status is ToolCallStatus.RUNNING

    def resolve(self, status: ToolCallStatus, response: str) -> None:
        """Move the call to a terminal status. Status never goes back to Running."""
        if status is ToolCallStatus.RUNNING:
            raise ValueError("A tool call can only be resolved to Completed or Error")
        if not self.is_running:
            raise ValueError(
                f"Tool call {self.execution_id} already resolved as {self.status}"
            )
        self.status = status
        self.response = response

    def snapshot(self) -> "ToolCallState":
        return replace(self, arguments=dict(self.arguments))

    def to_dict(self) -> dict[str, Any]:
        return {
            "execution_id": self.execution_id,
            "server_name": self.server_name,
            "tool_name": self.tool_name,
            "arguments": self.arguments,
            "status": self.status.value,
            "response": self.response,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ToolCallState":
        return cls(
            execution_id=data.get("execution_id") or _new_id(),
            server_name=data.get("server_name", ""),
            tool_name=data.get("tool_name", ""),
            arguments=dict(data.get("arguments") or {}),
            status=ToolCallStatus(data.get("status", ToolCallStatus.RUNNING.value)),
            response=data.get("response", ""),
        )


@dataclass(frozen=True)
class ToolCallResult:
    """Final status and response of a resolved tool call."""

    status: ToolCallStatus
    response: str

    def to_dict(self) -> dict[str, Any]:
        return {"status": self.status.value, "response": self.response}


@dataclass(frozen=True)
class ToolCallRecord:
    """Audit entry appended to the tool call history once a call resolves."""

    call: ToolCallState
    result: ToolCallResult

    @property
    def failed(self) -> bool:
        return self.result.status is ToolCallStatus.ERROR

    def to_dict(self) -> dict[str, Any]:
        return {"call": self.call.to_dict(), "result": self.result.to_dict()}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ToolCallRecord":
        result = data.get("result") or {}
        return cls(
            call=ToolCallState.from_dict(data.get("call") or {}),
            result=ToolCallResult(
                status=ToolCallStatus(result.get("status", ToolCallStatus.ERROR.value)),
                response=result.get("response", ""),
            ),
        )


@dataclass
class TextContent:
    """Plain text; also the streaming placeholder."""

    text: str = ""
    kind: ClassVar[str] = "text"

    def rendered_text(self) -> str:
        return self.text


@dataclass
class ToolCallContent:
    """A tool call shown in the transcript."""

    call: ToolCallState
    kind: ClassVar[str] = "tool_call"

    def rendered_text(self) -> str:
        return ""


@dataclass
class PermissionRequestContent:
    """A tool call waiting for (or decided by) explicit user approval."""

    call: ToolCallState
    kind: ClassVar[str] = "permission_request"

    def rendered_text(self) -> str:
        return ""


MessageContent = TextContent | ToolCallContent | PermissionRequestContent


def content_to_dict(content: MessageContent) -> dict[str, Any]:
    """Serialize a message content variant."""
    if isinstance(content, TextContent):
        return {"type": content.kind, "text": content.text}
    return {"type": content.kind, "call": content.call.to_dict()}


def content_from_dict(data: dict[str, Any]) -> MessageContent:
    """Deserialize a message content variant."""
    kind = data.get("type", TextContent.kind)
    if kind == ToolCallContent.kind:
        return ToolCallContent(call=ToolCallState.from_dict(data.get("call") or {}))
    if kind == PermissionRequestContent.kind:
        return PermissionRequestContent(call=ToolCallState.from_dict(data.get("call") or {}))
    return TextContent(text=str(data.get("text", "")))


@dataclass
class Message:
    """A message in the transcript."""

    author: Author
    content: MessageContent
    visible: bool = True
    id: str = field(default_factory=_new_id)
    created_at: str = field(default_factory=_utcnow_iso)

    @classmethod
    def user(cls, text: str, visible: bool = True) -> "Message":
        return cls(author=Author.USER, content=TextContent(text), visible=visible)

    @classmethod
    def agent(cls, content: MessageContent | str = "", visible: bool = True) -> "Message":
        if isinstance(content, str):
            content = TextContent(content)
        return cls(author=Author.AGENT, content=content, visible=visible)

    @property
    def tool_call(self) -> ToolCallState | None:
        """The tool call carried by this message, whatever its variant."""
        if isinstance(self.content, (ToolCallContent, PermissionRequestContent)):
            return self.content.call
        return None

    def rendered_text(self) -> str:
        return self.content.rendered_text()

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "author": self.author.value,
            "content": content_to_dict(self.content),
            "visible": self.visible,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Message":
        return cls(
            id=data.get("id") or _new_id(),
            author=Author(data.get("author", Author.USER.value)),
            content=content_from_dict(data.get("content") or {}),
            visible=bool(data.get("visible", True)),
            created_at=data.get("created_at") or _utcnow_iso(),
        )


_TOOL_SPEC_KEYS = {"name", "description", "inputSchema"}


@dataclass
class ToolSpec:
    """One tool as declared by a tool server.

    ``extra`` keeps provider-specific keys (``outputSchema``, ``annotations``,
    ``title``...) so they survive a round trip.
    """

    name: str
    description: str = ""
    input_schema: dict[str, Any] = field(default_factory=dict)
    extra: dict[str, Any] = field(default_factory=dict)

    def to_declaration(self) -> dict[str, Any]:
        """Tool-server shaped declaration (``inputSchema`` naming)."""
        declaration: dict[str, Any] = {
            "name": self.name,
            "description": self.description,
            "inputSchema": self.input_schema,
        }
        for key, value in self.extra.items():
            if key not in declaration:
                declaration[key] = value
        return declaration

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ToolSpec":
        return cls(
            name=str(data.get("name", "")),
            description=str(data.get("description") or ""),
            input_schema=dict(data.get("inputSchema") or {}),
            extra={k: v for k, v in data.items() if k not in _TOOL_SPEC_KEYS},
        )


@dataclass
class ToolServerContext:
    """Tools offered by one connected tool server."""

    name: str
    description: str = ""
    tools: list[ToolSpec] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "tools": [tool.to_declaration() for tool in self.tools],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ToolServerContext":
        return cls(
            name=str(data.get("name", "")),
            description=str(data.get("description") or ""),
            tools=[ToolSpec.from_dict(item) for item in data.get("tools") or []],
        )


@dataclass
class ToolCatalog:
    """All tools currently offered by connected tool servers."""

    servers: list[ToolServerContext] = field(default_factory=list)

    def find(self, tool_name: str) -> tuple[str, ToolSpec] | None:
        """Return ``(server_name, tool)`` for the first server offering the tool."""
        for server in self.servers:
            for tool in server.tools:
                if tool.name == tool_name:
                    return server.name, tool
        return None

    def tool_names(self) -> list[str]:
        return [tool.name for server in self.servers for tool in server.tools]

    def to_dict(self) -> dict[str, Any]:
        return {"servers": [server.to_dict() for server in self.servers]}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ToolCatalog":
        return cls(
            servers=[ToolServerContext.from_dict(item) for item in data.get("servers") or []]
        )


@dataclass
class ConversationSummaryEntities:
    user_name: str = ""
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {}
        if self.user_name:
            data["user_name"] = self.user_name
        data.update({k: v for k, v in self.extra.items() if k != "user_name"})
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ConversationSummaryEntities":
        data = dict(data or {})
        user_name = data.pop("user_name", "") or ""
        return cls(user_name=str(user_name), extra=data)


@dataclass
class ConversationSummary:
    """Running summary maintained between turns."""

    summary: str = ""
    sentiment: str = ""
    entities: ConversationSummaryEntities = field(default_factory=ConversationSummaryEntities)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {}
        if self.summary:
            data["summary"] = self.summary
        if self.sentiment:
            data["sentiment"] = self.sentiment
        data["entities"] = self.entities.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ConversationSummary":
        data = data or {}
        return cls(
            summary=str(data.get("summary") or ""),
            sentiment=str(data.get("sentiment") or ""),
            entities=ConversationSummaryEntities.from_dict(data.get("entities") or {}),
        )


_ACTIVE_CONTEXT_KEYS = {"system_persona", "user_instruction", "conversation_summary", "tool_catalog"}


@dataclass
class ActiveContext:
    """Context carried on the session and rendered into the system instruction."""

    system_persona: str | None = None
    user_instruction: str | None = None
    conversation_summary: ConversationSummary = field(default_factory=ConversationSummary)
    tool_catalog: ToolCatalog | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self, include_catalog: bool = True) -> dict[str, Any]:
        data: dict[str, Any] = {}
        if self.system_persona is not None:
            data["system_persona"] = self.system_persona
        if self.user_instruction is not None:
            data["user_instruction"] = self.user_instruction
        data["conversation_summary"] = self.conversation_summary.to_dict()
        if include_catalog and self.tool_catalog is not None:
            data["tool_catalog"] = self.tool_catalog.to_dict()
        for key, value in self.extra.items():
            if key not in data:
                data[key] = value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ActiveContext":
        data = data or {}
        catalog = data.get("tool_catalog")
        return cls(
            system_persona=data.get("system_persona"),
            user_instruction=data.get("user_instruction"),
            conversation_summary=ConversationSummary.from_dict(data.get("conversation_summary") or {}),
            tool_catalog=ToolCatalog.from_dict(catalog) if catalog else None,
            extra={k: v for k, v in data.items() if k not in _ACTIVE_CONTEXT_KEYS},
        )


@dataclass
class Session:
    """A conversation session."""

    id: str
    name: str
    messages: list[Message] = field(default_factory=list)
    active_context: ActiveContext = field(default_factory=ActiveContext)
    tool_call_history: list[ToolCallRecord] = field(default_factory=list)
    created_at: str = field(default_factory=_utcnow_iso)
    updated_at: str = field(default_factory=_utcnow_iso)

    def find_message(self, message_id: str) -> Message | None:
        for message in self.messages:
            if message.id == message_id:
                return message
        return None

    def first_user_message(self) -> Message | None:
        for message in self.messages:
            if message.author is Author.USER:
                return message
        return None

    def visible_messages(self) -> list[Message]:
        return [message for message in self.messages if message.visible]

    def touch(self) -> None:
        self.updated_at = _utcnow_iso()

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "name": self.name,
            "messages": [message.to_dict() for message in self.messages],
            "active_context": self.active_context.to_dict(),
            "tool_call_history": [record.to_dict() for record in self.tool_call_history],
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Session":
        """Create from dictionary."""
        return cls(
            id=data["id"],
            name=data["name"],
            messages=[Message.from_dict(item) for item in data.get("messages", [])],
            active_context=ActiveContext.from_dict(data.get("active_context") or {}),
            tool_call_history=[
                ToolCallRecord.from_dict(item) for item in data.get("tool_call_history", [])
            ],
            created_at=data.get("created_at", _utcnow_iso()),
            updated_at=data.get("updated_at", _utcnow_iso()),
        )
