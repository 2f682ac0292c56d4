"""Executes one tool call through the permission gate and tool service."""

import asyncio
import json
from collections.abc import Callable
from typing import Any, Protocol

from hobbes.channels import TurnUpdate
from hobbes.conversation import ConversationActor
from hobbes.exceptions import ApprovalRequiredError, PermissionDeniedError
from hobbes.logging import get_logger
from hobbes.models import ToolCallRecord, ToolCallResult, ToolCallState, ToolCallStatus
from hobbes.permissions import PermissionGate, PermissionStatus
from hobbes.tools.manager import ToolService

log = get_logger(__name__)

DENIED_BY_USER_TEXT = "Denied by user."
APPROVAL_TIMEOUT_TEXT = "Approval timed out."

Publish = Callable[[TurnUpdate], object]


class ResultStore(Protocol):
    async def upsert_tool_result(self, record: ToolCallRecord) -> None: ...


class ApprovalBroker:
    """Pending user approvals, keyed by tool call execution id.

    The dispatcher awaits the future returned by ``request``; the UI resolves
    it with ``approve`` or ``deny``.
    """

    def __init__(self):
        self._pending: dict[str, asyncio.Future[bool]] = {}

    def request(self, execution_id: str) -> asyncio.Future[bool]:
        existing = self._pending.get(execution_id)
        if existing is not None and not existing.done():
            return existing
        future: asyncio.Future[bool] = asyncio.get_running_loop().create_future()
        self._pending[execution_id] = future
        return future

    def resolve(self, execution_id: str, approved: bool) -> bool:
        """Deliver a decision. Returns False when nothing was waiting."""
        future = self._pending.pop(execution_id, None)
        if future is None or future.done():
            return False
        future.set_result(approved)
        return True

    def approve(self, execution_id: str) -> bool:
        return self.resolve(execution_id, True)

    def deny(self, execution_id: str) -> bool:
        return self.resolve(execution_id, False)

    def discard(self, execution_id: str) -> None:
        self._pending.pop(execution_id, None)

    def pending(self) -> list[str]:
        return [key for key, future in self._pending.items() if not future.done()]


def _ignore_update(update: TurnUpdate) -> None:
    return None


class ToolDispatcher:
    """Runs tool calls for one conversation.

    Each ``dispatch`` is independent: a failing call never affects its
    siblings, and every call resolves to exactly one ToolCallRecord.
    """

    def __init__(
        self,
        tool_service: ToolService,
        gate: PermissionGate,
        conversation: ConversationActor,
        approvals: ApprovalBroker | None = None,
        approval_timeout: float = 300.0,
        cost_per_call: float = 0.0,
        result_store: ResultStore | None = None,
    ):
        self.tool_service = tool_service
        self.gate = gate
        self.conversation = conversation
        self.approvals = approvals or ApprovalBroker()
        self.approval_timeout = approval_timeout
        self.cost_per_call = cost_per_call
        self.result_store = result_store
        self._background: set[asyncio.Task[None]] = set()

    async def dispatch(
        self,
        call: ToolCallState,
        message_id: str,
        publish: Publish | None = None,
    ) -> ToolCallRecord:
        """Execute ``call`` (carried by message ``message_id``) and record its outcome."""
        publish = publish or _ignore_update
        requested = call.snapshot()

        status, response = await self._execute(requested, message_id, publish)

        await self.conversation.resolve_tool_call(message_id, status, response)
        message = await self.conversation.get_message(message_id)
        publish(TurnUpdate("tool_status", message_id, text=status.value, message=message))

        record = ToolCallRecord(call=requested, result=ToolCallResult(status=status, response=response))
        log.info(
            "Tool call finished",
            tool=requested.tool_name,
            server=requested.server_name,
            execution_id=requested.execution_id,
            status=status.value,
        )
        self._store_in_background(record)
        return record

    async def _execute(
        self,
        call: ToolCallState,
        message_id: str,
        publish: Publish,
    ) -> tuple[ToolCallStatus, str]:
        decision = self.gate.check(self.gate.category_for(call.server_name))
        if decision.status is PermissionStatus.DENIED:
            log.warning("Tool call denied", tool=call.tool_name, reason=decision.reason)
            return ToolCallStatus.ERROR, decision.reason

        pre_approved = False
        if decision.status is PermissionStatus.REQUIRES_PROMPT:
            refusal = await self._await_approval(call, message_id, publish)
            if refusal is not None:
                return ToolCallStatus.ERROR, refusal
            pre_approved = True

        try:
            result = await self._invoke(call, pre_approved)
        except PermissionDeniedError as e:
            log.warning("Tool call denied", tool=call.tool_name, reason=e.reason)
            return ToolCallStatus.ERROR, e.reason
        except ApprovalRequiredError as e:
            if pre_approved:
                return ToolCallStatus.ERROR, str(e)
            log.info("Tool server requested approval", tool=call.tool_name, payload=e.payload)
            refusal = await self._await_approval(call, message_id, publish)
            if refusal is not None:
                return ToolCallStatus.ERROR, refusal
            try:
                result = await self._invoke(call, pre_approved=True)
            except Exception as retry_error:
                return ToolCallStatus.ERROR, str(retry_error)
        except Exception as e:
            log.error("Tool call failed", tool=call.tool_name, error=str(e))
            return ToolCallStatus.ERROR, str(e)

        return ToolCallStatus.COMPLETED, json.dumps(result, indent=2, ensure_ascii=False, default=str)

    async def _invoke(self, call: ToolCallState, pre_approved: bool) -> Any:
        # Sibling calls may spend the budget while this one waits for approval.
        budget = self.gate.check_budget()
        if not budget.allowed:
            raise PermissionDeniedError(call.tool_name, budget.reason)
        self.gate.record_request(self.cost_per_call)
        return await self.tool_service.invoke(
            call.server_name,
            call.tool_name,
            call.arguments,
            pre_approved=pre_approved,
        )

    async def _await_approval(
        self,
        call: ToolCallState,
        message_id: str,
        publish: Publish,
    ) -> str | None:
        """Suspend until the user decides. Returns the refusal text, or None if approved."""
        future = self.approvals.request(call.execution_id)
        await self.conversation.to_permission_request(message_id)
        message = await self.conversation.get_message(message_id)
        publish(TurnUpdate("permission", message_id, text=call.tool_name, message=message))
        log.info("Waiting for tool approval", tool=call.tool_name, execution_id=call.execution_id)

        try:
            approved = await asyncio.wait_for(future, timeout=self.approval_timeout)
        except asyncio.TimeoutError:
            self.approvals.discard(call.execution_id)
            log.warning("Tool approval timed out", tool=call.tool_name)
            return APPROVAL_TIMEOUT_TEXT

        if not approved:
            return DENIED_BY_USER_TEXT
        return None

    def _store_in_background(self, record: ToolCallRecord) -> None:
        if self.result_store is None:
            return
        task = asyncio.create_task(self._store(record))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _store(self, record: ToolCallRecord) -> None:
        try:
            await self.result_store.upsert_tool_result(record)
        except Exception as e:
            log.error(
                "Failed to store tool result",
                execution_id=record.call.execution_id,
                error=str(e),
            )

    async def drain_background(self) -> None:
        """Wait for pending result-store writes."""
        if self._background:
            await asyncio.gather(*list(self._background))
