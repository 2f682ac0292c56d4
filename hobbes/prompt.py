"""Prompt construction from session state."""

import json
from datetime import UTC, datetime
from typing import Any

from hobbes.config import PromptConfig
from hobbes.llm import Content, Part, PromptPackage
from hobbes.models import (
    Author,
    Message,
    Session,
    TextContent,
    ToolCallRecord,
    ToolCallStatus,
    ToolCatalog,
)
from hobbes.tools.schema import sanitize_tool_declaration

RECOVERY_INSTRUCTION = (
    "\n\nCRITICAL RECOVERY INSTRUCTION: A previous tool call failed. Analyze the error "
    "message in the `<tool_response>` and attempt a different tool call to accomplish "
    "the user's goal. Do not repeat the failed tool call."
)
USER_NAME_INSTRUCTION = (
    "Your user's name is not in the current SYSTEM_CONTEXT. "
    "Please ask them what they would like to be called."
)


def _role_for(message: Message) -> str:
    return "user" if message.author is Author.USER else "model"


def _text_entry(message: Message) -> Content | None:
    """Render a text message as a content entry; other variants render empty."""
    if not isinstance(message.content, TextContent):
        return None
    text = message.content.text
    if not text:
        return None
    return Content(role=_role_for(message), parts=[Part(text=text)])


def _tool_result_value(response: str) -> Any:
    """Tool responses are stored as pretty JSON; hand the model the decoded value."""
    try:
        return json.loads(response)
    except (json.JSONDecodeError, TypeError):
        return response


def tool_record_entries(record: ToolCallRecord) -> list[Content]:
    """Function call / function response pair for one resolved tool call."""
    name = record.call.tool_name
    return [
        Content(role="model", parts=[Part.call(name, record.call.arguments)]),
        Content(role="user", parts=[Part.response(name, _tool_result_value(record.result.response))]),
    ]


def tool_declarations(catalog: ToolCatalog | None) -> list[dict[str, Any]]:
    """Sanitized function declarations for every tool of every server."""
    if catalog is None:
        return []
    return [
        sanitize_tool_declaration(tool.to_declaration())
        for server in catalog.servers
        for tool in server.tools
    ]


class PromptBuilder:
    """Builds a PromptPackage from a session without touching it.

    ``build`` does no I/O and never mutates its inputs, so it can be called
    speculatively (for a debug preview, for example).
    """

    def build(
        self,
        session: Session,
        settings: PromptConfig,
        available_tools: ToolCatalog | None = None,
        pending_user_text: str = "",
        now: datetime | None = None,
    ) -> PromptPackage:
        """Build the prompt for the next model call.

        Args:
            session: Session snapshot to read from
            settings: Prompt settings (persona, history window...)
            available_tools: Tools to offer; defaults to the session's catalog
            pending_user_text: New user text not yet in the transcript
            now: Clock override for the timestamp

        Returns:
            Provider-agnostic prompt package
        """
        catalog = available_tools if available_tools is not None else session.active_context.tool_catalog
        declarations = tool_declarations(catalog)

        return PromptPackage(
            system_instruction=self.system_instruction(session, settings, now),
            contents=self.contents(session, settings.history_window, pending_user_text),
            tools=[{"functionDeclarations": declarations}] if declarations else None,
        )

    def persona(self, session: Session, settings: PromptConfig) -> str:
        persona = settings.persona
        if settings.force_tool_use_instruction:
            persona = f"{persona}\n\nCRITICAL INSTRUCTION: {settings.force_tool_use_instruction}"
        history = session.tool_call_history
        if history and history[-1].result.status is ToolCallStatus.ERROR:
            persona += RECOVERY_INSTRUCTION
        return persona

    def system_instruction(
        self,
        session: Session,
        settings: PromptConfig,
        now: datetime | None = None,
    ) -> str:
        """Serialize the active context as the system instruction JSON object."""
        context = session.active_context
        data = context.to_dict(include_catalog=False)
        data["system_persona"] = self.persona(session, settings)

        if context.conversation_summary.entities.user_name.strip():
            data.pop("user_instruction", None)
        else:
            data["user_instruction"] = USER_NAME_INSTRUCTION

        timestamp = (now or datetime.now(UTC)).astimezone(UTC)
        data["current_time"] = {"iso_8601": timestamp.isoformat(), "timezone": "UTC"}
        return json.dumps(data, ensure_ascii=False)

    def contents(
        self,
        session: Session,
        history_window: int,
        pending_user_text: str = "",
    ) -> list[Content]:
        contents: list[Content] = []
        messages = session.messages

        # The first user message anchors the intent of long conversations.
        first = session.first_user_message()
        first_id = None
        if first is not None and isinstance(first.content, TextContent):
            first_id = first.id
            entry = _text_entry(first)
            if entry is not None:
                contents.append(entry)

        window = messages[-history_window:] if history_window > 0 else []
        for message in window:
            if message.id == first_id:
                continue
            entry = _text_entry(message)
            if entry is not None:
                contents.append(entry)

        for record in session.tool_call_history:
            contents.extend(tool_record_entries(record))

        if pending_user_text:
            contents.append(Content(role="user", parts=[Part(text=pending_user_text)]))
        return contents
