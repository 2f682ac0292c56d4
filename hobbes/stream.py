"""Decode the model endpoint's SSE stream into typed turn events."""

import asyncio
import json
from contextlib import aclosing
from dataclasses import dataclass, field
from typing import Any, AsyncIterator

from hobbes.exceptions import LLMAPIError, LLMError, StreamProtocolError
from hobbes.llm import ModelProvider, PromptPackage
from hobbes.logging import get_logger
from hobbes.models import ToolCatalog

log = get_logger(__name__)

MALFORMED_FUNCTION_CALL = "MALFORMED_FUNCTION_CALL"

STREAM_ERROR_TEXT = "[Hobbes encountered a stream error. Please check the logs for details.]"
TRANSPORT_ERROR_TEXT = "[Hobbes could not reach the model endpoint. Please check the logs for details.]"
MALFORMED_RETRY_TEXT = "[Hobbes failed to process a tool call after multiple retries.]"
SAFETY_TEXT = "[Hobbes did not provide a response due to the safety filter.]"
NO_RESPONSE_TEXT = "[Hobbes did not provide a response. Finish Reason: {reason}]"
INTERNAL_ERROR_TEXT = "[Hobbes did not provide a response due to an internal error.]"


@dataclass(frozen=True)
class TextDelta:
    text: str


@dataclass(frozen=True)
class ToolCallRequested:
    server_name: str
    tool_name: str
    arguments: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class StreamDone:
    finish_reason: str | None = None


@dataclass(frozen=True)
class StreamFailed:
    reason: str  # "protocol" or "transport"
    detail: str = ""


StreamEvent = TextDelta | ToolCallRequested | StreamDone | StreamFailed


def empty_response_text(finish_reason: str | None) -> str:
    """Text shown when an attempt produced neither text nor tool calls."""
    if finish_reason == "SAFETY":
        return SAFETY_TEXT
    if finish_reason:
        return NO_RESPONSE_TEXT.format(reason=finish_reason)
    return INTERNAL_ERROR_TEXT


class SSELineBuffer:
    """Accumulates raw bytes and yields complete ``data:`` payloads.

    Lines may be split across network reads at any byte, including inside a
    multi-byte character; only complete lines are decoded.
    """

    def __init__(self):
        self._buffer = bytearray()

    def feed(self, chunk: bytes) -> list[str]:
        self._buffer.extend(chunk)
        payloads: list[str] = []
        while True:
            index = self._buffer.find(b"\n")
            if index == -1:
                break
            line = bytes(self._buffer[:index])
            del self._buffer[: index + 1]
            payload = self._payload(line)
            if payload is not None:
                payloads.append(payload)
        return payloads

    def flush(self) -> list[str]:
        """Return the payload of a trailing unterminated line, if any."""
        if not self._buffer:
            return []
        line = bytes(self._buffer)
        self._buffer.clear()
        payload = self._payload(line)
        return [payload] if payload is not None else []

    @staticmethod
    def _payload(line: bytes) -> str | None:
        text = line.decode("utf-8", errors="replace").strip()
        if not text.startswith("data:"):
            return None
        payload = text[len("data:") :].strip()
        return payload or None


@dataclass
class _AttemptState:
    emitted: bool = False
    finish_reason: str | None = None
    malformed: bool = False


class StreamDecoder:
    """Turns one model request into a typed event stream.

    Every ``decode`` run ends with exactly one ``StreamDone`` or
    ``StreamFailed``. Only a malformed function call re-issues the request.
    """

    def __init__(
        self,
        provider: ModelProvider,
        retry_limit: int = 2,
        retry_delay: float = 1.0,
    ):
        self.provider = provider
        self.retry_limit = max(1, retry_limit)
        self.retry_delay = retry_delay

    async def decode(
        self,
        prompt: PromptPackage,
        catalog: ToolCatalog | None = None,
    ) -> AsyncIterator[StreamEvent]:
        for attempt in range(1, self.retry_limit + 1):
            state = _AttemptState()
            try:
                async with aclosing(self._attempt(prompt, catalog, state)) as events:
                    async for event in events:
                        yield event
            except StreamProtocolError as e:
                log.error("Failed to parse stream chunk", error=str(e), chunk=e.payload)
                yield TextDelta(STREAM_ERROR_TEXT)
                yield StreamFailed("protocol", str(e))
                return
            except LLMError as e:
                log.error("Model stream failed", attempt=attempt, error=str(e))
                yield TextDelta(TRANSPORT_ERROR_TEXT)
                yield StreamFailed("transport", str(e))
                return

            if state.malformed:
                if attempt < self.retry_limit:
                    log.warning("Malformed function call, retrying", attempt=attempt)
                    await asyncio.sleep(self.retry_delay)
                    continue
                log.error("Malformed function call persisted", attempts=self.retry_limit)
                yield TextDelta(MALFORMED_RETRY_TEXT)
                yield StreamDone(MALFORMED_FUNCTION_CALL)
                return

            if not state.emitted:
                yield TextDelta(empty_response_text(state.finish_reason))
            yield StreamDone(state.finish_reason)
            return

    async def _attempt(
        self,
        prompt: PromptPackage,
        catalog: ToolCatalog | None,
        state: _AttemptState,
    ) -> AsyncIterator[StreamEvent]:
        buffer = SSELineBuffer()
        async with aclosing(self.provider.stream_generate(prompt)) as chunks:
            async for chunk in chunks:
                for payload in buffer.feed(chunk):
                    for event in self._events_for(payload, catalog, state):
                        yield event
                    if state.malformed:
                        return
        for payload in buffer.flush():
            for event in self._events_for(payload, catalog, state):
                yield event

    def _events_for(
        self,
        payload: str,
        catalog: ToolCatalog | None,
        state: _AttemptState,
    ) -> list[StreamEvent]:
        try:
            data = json.loads(payload)
        except json.JSONDecodeError as e:
            if MALFORMED_FUNCTION_CALL in payload:
                state.malformed = True
                return []
            raise StreamProtocolError(f"Unparseable stream chunk: {e}", payload)

        if not isinstance(data, dict):
            raise StreamProtocolError("Stream chunk is not a JSON object", payload)

        error = data.get("error")
        if isinstance(error, dict):
            raise LLMAPIError(
                f"Gemini stream error: {error.get('message', '')}",
                status_code=error.get("code"),
            )

        candidates = data.get("candidates") or []
        if not isinstance(candidates, list):
            raise StreamProtocolError("Stream chunk candidates is not a list", payload)
        if not candidates:
            return []
        candidate = candidates[0]
        if not isinstance(candidate, dict):
            raise StreamProtocolError("Stream candidate is not a JSON object", payload)

        reason = candidate.get("finishReason")
        if reason:
            state.finish_reason = str(reason)
            if reason == MALFORMED_FUNCTION_CALL:
                state.malformed = True
                return []
            if reason != "STOP":
                log.warning("Model stream finished", finish_reason=reason)

        content = candidate.get("content") or {}
        if not isinstance(content, dict):
            raise StreamProtocolError("Stream candidate content is not a JSON object", payload)
        parts = content.get("parts") or []
        if not isinstance(parts, list):
            raise StreamProtocolError("Stream candidate parts is not a list", payload)

        events: list[StreamEvent] = []
        for part in parts:
            if not isinstance(part, dict):
                raise StreamProtocolError("Stream content part is not a JSON object", payload)
            function_call = part.get("functionCall")
            if function_call:
                if not isinstance(function_call, dict):
                    raise StreamProtocolError("functionCall is not a JSON object", payload)
                args = function_call.get("args") or {}
                if not isinstance(args, dict):
                    raise StreamProtocolError("functionCall args is not a JSON object", payload)
                name = str(function_call.get("name", ""))
                match = catalog.find(name) if catalog is not None else None
                if match is None:
                    log.error("Model requested unknown tool", tool=name)
                    continue
                server_name, _ = match
                events.append(ToolCallRequested(server_name=server_name, tool_name=name, arguments=dict(args)))
            elif part.get("text"):
                events.append(TextDelta(str(part["text"])))

        if events:
            state.emitted = True
        return events
