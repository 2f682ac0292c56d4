import asyncio
import json

import pytest

from hobbes.channels import TurnUpdate
from hobbes.config import PermissionConfig
from hobbes.conversation import ConversationActor
from hobbes.dispatcher import (
    APPROVAL_TIMEOUT_TEXT,
    DENIED_BY_USER_TEXT,
    ApprovalBroker,
    ToolDispatcher,
)
from hobbes.exceptions import ApprovalRequiredError, ToolExecutionError
from hobbes.models import (
    Message,
    PermissionRequestContent,
    Session,
    ToolCallContent,
    ToolCallRecord,
    ToolCallState,
    ToolCallStatus,
    ToolCatalog,
)
from hobbes.permissions import PermissionGate
from hobbes.tools.manager import ToolService

AUTO_APPROVE = PermissionConfig(auto_approval_enabled=True, granular_permissions={"mcp": True})


class FakeToolService(ToolService):
    def __init__(self, handler=None):
        self.calls: list[tuple[str, str, dict, bool]] = []
        self.handler = handler or (lambda tool, args, pre_approved: {"temp": 72})

    async def list_tools(self, server_name: str):
        return []

    def catalog(self) -> ToolCatalog:
        return ToolCatalog()

    async def invoke(self, server_name, tool_name, arguments, pre_approved=False):
        self.calls.append((server_name, tool_name, arguments, pre_approved))
        return self.handler(tool_name, arguments, pre_approved)


class RecordingStore:
    def __init__(self, fail: bool = False):
        self.records: list[ToolCallRecord] = []
        self.fail = fail

    async def upsert_tool_result(self, record: ToolCallRecord) -> None:
        if self.fail:
            raise RuntimeError("disk full")
        self.records.append(record)


def _setup(service, permissions=AUTO_APPROVE, **kwargs):
    call = ToolCallState(server_name="weather_server", tool_name="weather", arguments={"loc": "NYC"})
    message = Message.agent(ToolCallContent(call))
    conversation = ConversationActor(Session(id="s1", name="test", messages=[message]))
    dispatcher = ToolDispatcher(service, PermissionGate(permissions), conversation, **kwargs)
    return dispatcher, conversation, call.snapshot(), message.id


@pytest.mark.asyncio
async def test_allowed_call_completes_with_pretty_json():
    service = FakeToolService()
    dispatcher, conversation, call, message_id = _setup(service)
    try:
        record = await dispatcher.dispatch(call, message_id)

        assert record.result.status is ToolCallStatus.COMPLETED
        assert record.result.response == json.dumps({"temp": 72}, indent=2)
        assert record.call.status is ToolCallStatus.RUNNING
        assert service.calls == [("weather_server", "weather", {"loc": "NYC"}, False)]
        assert dispatcher.gate.request_count == 1

        message = await conversation.get_message(message_id)
        assert message.tool_call.status is ToolCallStatus.COMPLETED
        assert "72" in message.tool_call.response
    finally:
        await conversation.close()


@pytest.mark.asyncio
async def test_denied_call_never_reaches_tool_service():
    service = FakeToolService()
    dispatcher, conversation, call, message_id = _setup(
        service, PermissionConfig(auto_approval_enabled=True, granular_permissions={"mcp": True}, max_requests=0)
    )
    try:
        record = await dispatcher.dispatch(call, message_id)

        assert service.calls == []
        assert record.result.status is ToolCallStatus.ERROR
        assert record.result.response == "Request limit reached"
    finally:
        await conversation.close()


@pytest.mark.asyncio
async def test_prompted_call_runs_after_approval():
    service = FakeToolService()
    dispatcher, conversation, call, message_id = _setup(service, PermissionConfig())
    updates: list[TurnUpdate] = []
    asked = asyncio.Event()

    def publish(update: TurnUpdate) -> None:
        updates.append(update)
        if update.kind == "permission":
            asked.set()

    try:
        task = asyncio.create_task(dispatcher.dispatch(call, message_id, publish=publish))
        await asked.wait()

        pending = await conversation.get_message(message_id)
        assert isinstance(pending.content, PermissionRequestContent)
        assert service.calls == []
        assert dispatcher.approvals.pending() == [call.execution_id]

        assert dispatcher.approvals.approve(call.execution_id) is True
        record = await task

        assert record.result.status is ToolCallStatus.COMPLETED
        assert service.calls[0][3] is True
        assert [u.kind for u in updates] == ["permission", "tool_status"]
        final = await conversation.get_message(message_id)
        assert isinstance(final.content, PermissionRequestContent)
        assert final.tool_call.status is ToolCallStatus.COMPLETED
    finally:
        await conversation.close()


@pytest.mark.asyncio
async def test_prompted_call_denied_by_user():
    service = FakeToolService()
    approvals = ApprovalBroker()
    dispatcher, conversation, call, message_id = _setup(service, PermissionConfig(), approvals=approvals)
    asked = asyncio.Event()
    try:
        task = asyncio.create_task(
            dispatcher.dispatch(call, message_id, publish=lambda u: u.kind == "permission" and asked.set())
        )
        await asked.wait()
        approvals.deny(call.execution_id)
        record = await task

        assert service.calls == []
        assert record.result.status is ToolCallStatus.ERROR
        assert record.result.response == DENIED_BY_USER_TEXT
    finally:
        await conversation.close()


@pytest.mark.asyncio
async def test_approval_wait_times_out():
    service = FakeToolService()
    dispatcher, conversation, call, message_id = _setup(service, PermissionConfig(), approval_timeout=0.01)
    try:
        record = await dispatcher.dispatch(call, message_id)

        assert service.calls == []
        assert record.result.response == APPROVAL_TIMEOUT_TEXT
        assert dispatcher.approvals.pending() == []
    finally:
        await conversation.close()


@pytest.mark.asyncio
async def test_server_side_approval_request_becomes_permission_prompt():
    def handler(tool, args, pre_approved):
        if not pre_approved:
            raise ApprovalRequiredError(tool, {"approval_required": True})
        return [{"type": "text", "text": "sent"}]

    service = FakeToolService(handler)
    dispatcher, conversation, call, message_id = _setup(service)
    asked = asyncio.Event()
    try:
        task = asyncio.create_task(
            dispatcher.dispatch(call, message_id, publish=lambda u: u.kind == "permission" and asked.set())
        )
        await asked.wait()
        message = await conversation.get_message(message_id)
        assert isinstance(message.content, PermissionRequestContent)

        dispatcher.approvals.approve(call.execution_id)
        record = await task

        assert [c[3] for c in service.calls] == [False, True]
        assert record.result.status is ToolCallStatus.COMPLETED
        assert "sent" in record.result.response
    finally:
        await conversation.close()


@pytest.mark.asyncio
async def test_tool_failure_is_recorded_as_error():
    def handler(tool, args, pre_approved):
        raise ToolExecutionError(tool, "boom")

    dispatcher, conversation, call, message_id = _setup(FakeToolService(handler))
    try:
        record = await dispatcher.dispatch(call, message_id)

        assert record.result.status is ToolCallStatus.ERROR
        assert record.result.response == "Tool 'weather' failed: boom"
        message = await conversation.get_message(message_id)
        assert message.tool_call.status is ToolCallStatus.ERROR
    finally:
        await conversation.close()


@pytest.mark.asyncio
async def test_results_are_stored_in_background():
    store = RecordingStore()
    dispatcher, conversation, call, message_id = _setup(FakeToolService(), result_store=store)
    try:
        record = await dispatcher.dispatch(call, message_id)
        await dispatcher.drain_background()

        assert store.records == [record]
    finally:
        await conversation.close()


@pytest.mark.asyncio
async def test_store_failure_does_not_affect_the_call():
    dispatcher, conversation, call, message_id = _setup(FakeToolService(), result_store=RecordingStore(fail=True))
    try:
        record = await dispatcher.dispatch(call, message_id)
        await dispatcher.drain_background()

        assert record.result.status is ToolCallStatus.COMPLETED
    finally:
        await conversation.close()


@pytest.mark.asyncio
async def test_budget_is_rechecked_after_approval():
    service = FakeToolService()
    calls = [
        ToolCallState(server_name="weather_server", tool_name=name, arguments={})
        for name in ("weather", "forecast")
    ]
    messages = [Message.agent(ToolCallContent(call)) for call in calls]
    conversation = ConversationActor(Session(id="s1", name="test", messages=messages))
    dispatcher = ToolDispatcher(service, PermissionGate(PermissionConfig(max_requests=1)), conversation)
    asked: list[str] = []
    both_asked = asyncio.Event()

    def publish(update: TurnUpdate) -> None:
        if update.kind == "permission":
            asked.append(update.message_id)
            if len(asked) == len(calls):
                both_asked.set()

    try:
        tasks = [
            asyncio.create_task(dispatcher.dispatch(call.snapshot(), message.id, publish=publish))
            for call, message in zip(calls, messages)
        ]
        await both_asked.wait()
        for call in calls:
            assert dispatcher.approvals.approve(call.execution_id) is True
        records = await asyncio.gather(*tasks)

        outcomes = sorted((record.result.status.value, record.result.response) for record in records)
        assert outcomes[0] == ("Completed", json.dumps({"temp": 72}, indent=2))
        assert outcomes[1] == ("Error", "Request limit reached")
        assert len(service.calls) == 1
        assert dispatcher.gate.request_count == 1
    finally:
        await conversation.close()
