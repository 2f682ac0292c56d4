"""Between-turn context maintenance: running summary and tool history snapshots."""

from typing import Any

from hobbes.llm import ModelProvider
from hobbes.logging import get_logger
from hobbes.models import Message, Session

log = get_logger(__name__)


def render_for_summary(message: Message) -> str:
    """One ``author: text`` line; tool calls render as a short status note."""
    call = message.tool_call
    if call is not None:
        text = f"[tool call '{call.tool_name}' on '{call.server_name}': {call.status}]"
    else:
        text = message.rendered_text()
    return f"{message.author.value}: {text}"


def apply_summary(session: Session, data: dict[str, Any]) -> None:
    """Merge a summarizer reply into the session's conversation summary."""
    if not data:
        return
    current = session.active_context.conversation_summary

    summary = data.get("summary")
    if isinstance(summary, str) and summary:
        current.summary = summary
    sentiment = data.get("sentiment")
    if isinstance(sentiment, str) and sentiment:
        current.sentiment = sentiment

    entities = data.get("entities")
    if isinstance(entities, dict):
        for key, value in entities.items():
            if key == "user_name":
                if isinstance(value, str) and value.strip():
                    current.entities.user_name = value.strip()
            else:
                current.entities.extra[key] = value


class ConversationProcessor:
    """Folds the most recent messages into the running conversation summary."""

    def __init__(self, provider: ModelProvider, recent_messages: int = 5):
        self.provider = provider
        self.recent_messages = recent_messages

    def recent_history(self, session: Session) -> str:
        recent = session.messages[-self.recent_messages :] if self.recent_messages > 0 else []
        return "\n".join(render_for_summary(message) for message in recent)

    async def generate_summary(self, session: Session) -> dict[str, Any] | None:
        """Ask the summary model for an updated summary.

        Returns:
            Parsed summary object, or None when there is nothing to summarize
            or the call failed
        """
        history = self.recent_history(session)
        if not history:
            return None

        previous = session.active_context.conversation_summary.summary
        try:
            summary = await self.provider.summarize(previous, history)
        except Exception as e:
            log.error("Failed to summarize conversation", session_id=session.id, error=str(e))
            return None

        if not summary:
            log.warning("Summary model returned nothing", session_id=session.id)
            return None
        log.info("Generated conversation context", session_id=session.id, keys=sorted(summary))
        return summary


class ToolCallSummarizer:
    """Moves resolved tool call records into compact context snapshots."""

    def summarize_and_cleanup(self, session: Session) -> int:
        history = session.tool_call_history
        session.tool_call_history = []
        for record in history:
            call = record.call
            session.active_context.extra[f"tool_snapshot_{call.execution_id}"] = {
                "tool_name": call.tool_name,
                "arguments": call.arguments,
                "result_summary": (
                    f"Tool call '{call.tool_name}' on server '{call.server_name}' "
                    f"finished with status '{record.result.status}'."
                ),
                "full_result_ref": f"tool_result:{call.execution_id}",
            }
        if history:
            log.debug("Compacted tool call history", session_id=session.id, records=len(history))
        return len(history)
