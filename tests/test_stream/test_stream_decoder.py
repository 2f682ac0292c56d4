import json

import pytest

from hobbes.exceptions import LLMAPIError
from hobbes.llm import ModelProvider, PromptPackage
from hobbes.models import ToolCatalog, ToolServerContext, ToolSpec
from hobbes.stream import (
    INTERNAL_ERROR_TEXT,
    MALFORMED_RETRY_TEXT,
    SAFETY_TEXT,
    STREAM_ERROR_TEXT,
    TRANSPORT_ERROR_TEXT,
    SSELineBuffer,
    StreamDecoder,
    StreamDone,
    StreamFailed,
    TextDelta,
    ToolCallRequested,
)


def data_line(payload: dict) -> bytes:
    return b"data: " + json.dumps(payload).encode("utf-8") + b"\r\n\r\n"


def candidate(parts: list[dict] | None = None, finish: str | None = None) -> dict:
    item: dict = {"content": {"role": "model", "parts": parts or []}}
    if finish:
        item["finishReason"] = finish
    return {"candidates": [item]}


class ScriptedProvider(ModelProvider):
    """Replays one list of byte chunks per request."""

    def __init__(self, attempts: list[list[bytes]], error: Exception | None = None):
        self.attempts = attempts
        self.error = error
        self.calls = 0

    async def stream_generate(self, prompt: PromptPackage):
        index = self.calls
        self.calls += 1
        if self.error is not None:
            raise self.error
        for chunk in self.attempts[min(index, len(self.attempts) - 1)]:
            yield chunk

    async def summarize(self, previous_summary: str, recent_turns: str) -> dict:
        return {}


def catalog(*names: str, server: str = "tools") -> ToolCatalog:
    return ToolCatalog(servers=[ToolServerContext(name=server, tools=[ToolSpec(name=n) for n in names])])


async def collect(decoder: StreamDecoder, tools: ToolCatalog | None = None) -> list:
    return [event async for event in decoder.decode(PromptPackage(), tools)]


def test_line_buffer_handles_split_lines_and_multibyte_characters():
    buffer = SSELineBuffer()
    line = "data: {\"text\": \"café\"}\n".encode("utf-8")
    split = line.index(b"\xa9")

    assert buffer.feed(line[:split]) == []
    assert buffer.feed(line[split:]) == ['{"text": "café"}']


def test_line_buffer_ignores_non_data_lines_and_flushes_tail():
    buffer = SSELineBuffer()

    assert buffer.feed(b": keep-alive\nevent: message\ndata:\n") == []
    assert buffer.feed(b"data: {\"a\": 1}") == []
    assert buffer.flush() == ['{"a": 1}']
    assert buffer.flush() == []


@pytest.mark.asyncio
async def test_text_deltas_in_order_then_done():
    body = data_line(candidate([{"text": "Hello"}])) + data_line(candidate([{"text": " world"}], "STOP"))
    # Split mid-line to exercise buffering across reads.
    provider = ScriptedProvider([[body[:17], body[17:40], body[40:]]])

    events = await collect(StreamDecoder(provider, retry_delay=0))

    assert events == [TextDelta("Hello"), TextDelta(" world"), StreamDone("STOP")]


@pytest.mark.asyncio
async def test_all_parts_of_a_candidate_are_processed():
    chunk = data_line(candidate([
        {"text": "Checking."},
        {"functionCall": {"name": "weather", "args": {"loc": "NYC"}}},
        {"functionCall": {"name": "time", "args": {}}},
    ], "STOP"))
    provider = ScriptedProvider([[chunk]])

    events = await collect(StreamDecoder(provider, retry_delay=0), catalog("weather", "time"))

    assert events == [
        TextDelta("Checking."),
        ToolCallRequested("tools", "weather", {"loc": "NYC"}),
        ToolCallRequested("tools", "time", {}),
        StreamDone("STOP"),
    ]


@pytest.mark.asyncio
async def test_first_server_offering_tool_wins():
    tools = ToolCatalog(servers=[
        ToolServerContext(name="first", tools=[ToolSpec(name="weather")]),
        ToolServerContext(name="second", tools=[ToolSpec(name="weather")]),
    ])
    provider = ScriptedProvider([[data_line(candidate([{"functionCall": {"name": "weather", "args": {}}}]))]])

    events = await collect(StreamDecoder(provider, retry_delay=0), tools)

    assert events[0] == ToolCallRequested("first", "weather", {})


@pytest.mark.asyncio
async def test_unknown_tool_is_dropped():
    chunk = data_line(candidate([{"functionCall": {"name": "rm_rf", "args": {}}}], "STOP"))
    provider = ScriptedProvider([[chunk]])

    events = await collect(StreamDecoder(provider, retry_delay=0), catalog("weather"))

    # Nothing surfaced, so the empty-response text takes its place.
    assert events == [
        TextDelta("[Hobbes did not provide a response. Finish Reason: STOP]"),
        StreamDone("STOP"),
    ]


@pytest.mark.asyncio
async def test_safety_finish_without_output_yields_safety_text():
    provider = ScriptedProvider([[data_line(candidate([], "SAFETY"))]])

    events = await collect(StreamDecoder(provider, retry_delay=0))

    assert events == [TextDelta(SAFETY_TEXT), StreamDone("SAFETY")]


@pytest.mark.asyncio
async def test_empty_stream_without_reason_yields_internal_error_text():
    provider = ScriptedProvider([[]])

    events = await collect(StreamDecoder(provider, retry_delay=0))

    assert events == [TextDelta(INTERNAL_ERROR_TEXT), StreamDone(None)]


@pytest.mark.asyncio
async def test_malformed_call_retries_then_succeeds():
    malformed = [data_line(candidate([], "MALFORMED_FUNCTION_CALL"))]
    good = [data_line(candidate([{"text": "ok"}], "STOP"))]
    provider = ScriptedProvider([malformed, good])

    events = await collect(StreamDecoder(provider, retry_limit=2, retry_delay=0))

    assert provider.calls == 2
    assert events == [TextDelta("ok"), StreamDone("STOP")]


@pytest.mark.asyncio
async def test_malformed_call_exhausts_retries():
    malformed = [data_line(candidate([], "MALFORMED_FUNCTION_CALL"))]
    provider = ScriptedProvider([malformed, malformed])

    events = await collect(StreamDecoder(provider, retry_limit=2, retry_delay=0))

    assert provider.calls == 2
    assert events == [TextDelta(MALFORMED_RETRY_TEXT), StreamDone("MALFORMED_FUNCTION_CALL")]


@pytest.mark.asyncio
async def test_unparseable_chunk_mentioning_malformed_call_is_retried():
    broken = [b'data: {"candidates": [{"finishReason": "MALFORMED_FUNCTION_CALL", \n']
    good = [data_line(candidate([{"text": "fine"}], "STOP"))]
    provider = ScriptedProvider([broken, good])

    events = await collect(StreamDecoder(provider, retry_delay=0))

    assert events == [TextDelta("fine"), StreamDone("STOP")]


@pytest.mark.asyncio
async def test_unparseable_chunk_fails_the_stream():
    provider = ScriptedProvider([[data_line(candidate([{"text": "part"}])), b"data: {not json\n"]])

    events = await collect(StreamDecoder(provider, retry_delay=0))

    assert provider.calls == 1
    assert events[:2] == [TextDelta("part"), TextDelta(STREAM_ERROR_TEXT)]
    assert isinstance(events[2], StreamFailed)
    assert events[2].reason == "protocol"
    assert len(events) == 3


@pytest.mark.asyncio
async def test_wrongly_shaped_chunks_fail_the_stream():
    shapes = [
        {"candidates": ["not an object"]},
        {"candidates": {"content": {}}},
        {"candidates": [{"content": {"parts": ["not an object"]}}]},
        {"candidates": [{"content": {"parts": {"text": "x"}}}]},
        {"candidates": [{"content": {"parts": [{"functionCall": "weather"}]}}]},
        {"candidates": [{"content": {"parts": [{"functionCall": {"name": "weather", "args": [1, 2]}}]}}]},
    ]
    for shape in shapes:
        provider = ScriptedProvider([[data_line(shape)]])

        events = await collect(StreamDecoder(provider, retry_delay=0), catalog("weather"))

        assert provider.calls == 1
        assert events[0] == TextDelta(STREAM_ERROR_TEXT)
        assert isinstance(events[1], StreamFailed)
        assert events[1].reason == "protocol"
        assert len(events) == 2


@pytest.mark.asyncio
async def test_transport_error_is_reported_not_retried():
    provider = ScriptedProvider([[]], error=LLMAPIError("Gemini API error 503", status_code=503))

    events = await collect(StreamDecoder(provider, retry_delay=0))

    assert provider.calls == 1
    assert events[0] == TextDelta(TRANSPORT_ERROR_TEXT)
    assert events[1] == StreamFailed("transport", "Gemini API error 503")
