"""Single-owner conversation actor.

Every read and write of the live Session goes through one worker task that
processes commands in order, so concurrent tool dispatches and the stream
decode loop never interleave inside a mutation.
"""

import asyncio
import copy
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, TypeVar

from hobbes.exceptions import TurnInvariantError
from hobbes.logging import log
from hobbes.models import (
    Message,
    MessageContent,
    PermissionRequestContent,
    Session,
    TextContent,
    ToolCallContent,
    ToolCallRecord,
    ToolCallState,
    ToolCallStatus,
    ToolCatalog,
)
from hobbes.summarizer import ToolCallSummarizer, apply_summary

T = TypeVar("T")


@dataclass
class CommandEntry:
    name: str
    command: Callable[[Session], object]
    future: asyncio.Future[object]


class ConversationClosedError(RuntimeError):
    """Raised when a command is submitted after the actor was closed."""

    def __init__(self, session_id: str):
        super().__init__(f"Conversation {session_id} is closed")
        self.session_id = session_id


def _require_message(session: Session, message_id: str) -> Message:
    message = session.find_message(message_id)
    if message is None:
        raise TurnInvariantError(f"Message {message_id} not in session {session.id}")
    return message


class ConversationActor:
    """Owns a Session and serializes all mutations through a command queue."""

    def __init__(self, session: Session):
        self._session = session
        self._queue: asyncio.Queue[CommandEntry | None] = asyncio.Queue()
        self._worker: asyncio.Task[None] | None = None
        self._closed = False

    @property
    def session_id(self) -> str:
        return self._session.id

    @property
    def closed(self) -> bool:
        return self._closed

    def _ensure_worker(self) -> None:
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._run())

    async def _run(self) -> None:
        while True:
            entry = await self._queue.get()
            if entry is None:
                break
            try:
                result = entry.command(self._session)
            except Exception as e:
                log.debug("conversation command failed", command=entry.name, error=str(e))
                if not entry.future.done():
                    entry.future.set_exception(e)
            else:
                if not entry.future.done():
                    entry.future.set_result(result)

    async def submit(self, name: str, command: Callable[[Session], T]) -> T:
        """Run ``command`` against the session on the worker and return its result."""
        if self._closed:
            raise ConversationClosedError(self._session.id)
        self._ensure_worker()
        future: asyncio.Future[object] = asyncio.get_running_loop().create_future()
        self._queue.put_nowait(CommandEntry(name=name, command=command, future=future))
        result = await future
        return result  # type: ignore[return-value]

    async def snapshot(self) -> Session:
        """Deep copy of the session, safe to read without the actor."""
        return await self.submit("snapshot", copy.deepcopy)

    async def get_message(self, message_id: str) -> Message | None:
        def command(session: Session) -> Message | None:
            message = session.find_message(message_id)
            return copy.deepcopy(message) if message is not None else None

        return await self.submit("get_message", command)

    async def append_message(self, message: Message) -> str:
        def command(session: Session) -> str:
            session.messages.append(message)
            return message.id

        return await self.submit("append_message", command)

    async def append_text(self, message_id: str, text: str) -> str:
        """Append streamed text to a text message; returns the full text."""

        def command(session: Session) -> str:
            message = _require_message(session, message_id)
            if not isinstance(message.content, TextContent):
                raise TurnInvariantError(f"Message {message_id} is not a text message")
            message.content.text += text
            return message.content.text

        return await self.submit("append_text", command)

    async def replace_content(self, message_id: str, content: MessageContent) -> None:
        def command(session: Session) -> None:
            message = _require_message(session, message_id)
            message.content = content

        await self.submit("replace_content", command)

    async def to_permission_request(self, message_id: str) -> ToolCallState:
        """Rewrite a tool call message into a permission request."""

        def command(session: Session) -> ToolCallState:
            message = _require_message(session, message_id)
            if isinstance(message.content, PermissionRequestContent):
                return message.content.call.snapshot()
            if not isinstance(message.content, ToolCallContent):
                raise TurnInvariantError(f"Message {message_id} does not carry a tool call")
            message.content = PermissionRequestContent(call=message.content.call)
            return message.content.call.snapshot()

        return await self.submit("to_permission_request", command)

    async def resolve_tool_call(
        self,
        message_id: str,
        status: ToolCallStatus,
        response: str,
    ) -> ToolCallState:
        """Write the final outcome into the message's tool call, whatever its variant."""

        def command(session: Session) -> ToolCallState:
            message = _require_message(session, message_id)
            call = message.tool_call
            if call is None:
                raise TurnInvariantError(f"Message {message_id} does not carry a tool call")
            call.resolve(status, response)
            return call.snapshot()

        return await self.submit("resolve_tool_call", command)

    async def remove_message(self, message_id: str) -> bool:
        def command(session: Session) -> bool:
            before = len(session.messages)
            session.messages = [m for m in session.messages if m.id != message_id]
            return len(session.messages) != before

        return await self.submit("remove_message", command)

    async def extend_history(self, records: list[ToolCallRecord]) -> int:
        def command(session: Session) -> int:
            session.tool_call_history.extend(records)
            return len(session.tool_call_history)

        return await self.submit("extend_history", command)

    async def compact_tool_history(self) -> int:
        """Move tool call records into context snapshots; returns how many moved."""
        return await self.submit("compact_tool_history", ToolCallSummarizer().summarize_and_cleanup)

    async def apply_summary(self, summary: dict[str, Any]) -> None:
        await self.submit("apply_summary", lambda session: apply_summary(session, summary))

    async def set_tool_catalog(self, catalog: ToolCatalog | None) -> None:
        def command(session: Session) -> None:
            session.active_context.tool_catalog = catalog

        await self.submit("set_tool_catalog", command)

    async def touch(self) -> None:
        await self.submit("touch", lambda session: session.touch())

    async def close(self) -> Session:
        """Stop the worker after pending commands and return the final session."""
        if self._closed:
            return self._session
        self._closed = True
        if self._worker is not None and not self._worker.done():
            self._queue.put_nowait(None)
            await self._worker
        return self._session
