"""Turn orchestration: stream, dispatch tools, fan in, follow up."""

import asyncio
import copy
from collections.abc import Callable
from contextlib import aclosing
from dataclasses import dataclass, field
from enum import Enum
from typing import Protocol

from hobbes.channels import FanIn, FanInSender, TurnOutput, TurnUpdate
from hobbes.config import PromptConfig, TurnConfig
from hobbes.conversation import ConversationActor
from hobbes.dispatcher import ToolDispatcher
from hobbes.exceptions import HobbesError, TurnInvariantError
from hobbes.llm import PromptPackage
from hobbes.logging import bind_session, get_logger
from hobbes.models import Message, Session, ToolCallContent, ToolCallRecord, ToolCallState, ToolCatalog
from hobbes.prompt import PromptBuilder
from hobbes.stream import StreamDecoder, StreamDone, StreamFailed, TextDelta, ToolCallRequested

log = get_logger(__name__)

MAX_DEPTH_TEXT = (
    "[Hobbes stopped after too many consecutive tool calls. "
    "Please narrow down the request and try again.]"
)
UNEXPECTED_ERROR_TEXT = "[Hobbes ran into an unexpected error. Please check the logs for details.]"


class TurnState(str, Enum):
    AWAITING_MODEL = "awaiting_model"
    STREAMING_TEXT = "streaming_text"
    STREAMING_TOOL_CALLS = "streaming_tool_calls"
    AWAITING_TOOL_RESULTS = "awaiting_tool_results"
    BUILDING_FOLLOWUP = "building_followup"
    DONE = "done"


class SessionStore(Protocol):
    async def save(self, session: Session) -> None: ...


@dataclass
class TurnResult:
    """Summary of a finished turn."""

    model_calls: int = 0
    tool_calls: int = 0
    depth: int = 0
    aborted: bool = False
    depth_exceeded: bool = False
    failed: str | None = None
    error: str | None = None


class TurnHandle:
    """Caller's view of a running turn."""

    def __init__(self, events: TurnOutput, task: asyncio.Task[TurnResult]):
        self.events = events
        self.task = task

    @property
    def done(self) -> bool:
        return self.task.done()

    async def wait(self) -> TurnResult:
        """Wait for the turn; re-raises TurnInvariantError."""
        return await self.task

    def close(self) -> None:
        """Signal that nobody is listening anymore; the turn aborts."""
        self.events.close()


@dataclass
class _RoundOutcome:
    records: list[ToolCallRecord] = field(default_factory=list)
    failed: str | None = None
    aborted: bool = False


class TurnOrchestrator:
    """Drives turns for one conversation."""

    def __init__(
        self,
        conversation: ConversationActor,
        decoder: StreamDecoder,
        dispatcher: ToolDispatcher,
        store: SessionStore | None = None,
        prompt_settings: PromptConfig | None = None,
        turn_config: TurnConfig | None = None,
        prompt_builder: PromptBuilder | None = None,
    ):
        self.conversation = conversation
        self.decoder = decoder
        self.dispatcher = dispatcher
        self.store = store
        self.prompt_settings = prompt_settings or PromptConfig()
        self.turn_config = turn_config or TurnConfig()
        self.prompt_builder = prompt_builder or PromptBuilder()
        self.state = TurnState.DONE
        self._active: TurnHandle | None = None

    def _set_state(self, state: TurnState) -> None:
        if state is not self.state:
            log.debug("Turn state", state=state.value)
        self.state = state

    @property
    def busy(self) -> bool:
        return self._active is not None and not self._active.done

    def begin_turn(
        self,
        user_text: str,
        on_complete: Callable[[TurnResult], object] | None = None,
    ) -> TurnHandle:
        """Start a turn for ``user_text`` in the background.

        ``on_complete`` fires exactly once, after the final save was attempted.
        """
        if self.busy:
            raise HobbesError("A turn is already running for this conversation")
        output = TurnOutput()
        task = asyncio.create_task(self._run_turn(user_text, output, on_complete))
        self._active = TurnHandle(output, task)
        return self._active

    def approve(self, execution_id: str) -> bool:
        return self.dispatcher.approvals.approve(execution_id)

    def deny(self, execution_id: str) -> bool:
        return self.dispatcher.approvals.deny(execution_id)

    async def _run_turn(
        self,
        user_text: str,
        output: TurnOutput,
        on_complete: Callable[[TurnResult], object] | None,
    ) -> TurnResult:
        result = TurnResult()
        fatal: TurnInvariantError | None = None
        # Runs in its own task, so the binding ends with the turn.
        bind_session(self.conversation.session_id)
        self._set_state(TurnState.AWAITING_MODEL)
        try:
            snapshot = await self.conversation.snapshot()
            prompt = self.prompt_builder.build(snapshot, self.prompt_settings, None, user_text)
            catalog = snapshot.active_context.tool_catalog

            await self._append(Message.user(user_text), output)
            await self._checkpoint("user_input")

            placeholder_id: str | None = None
            while True:
                outcome = await self._run_round(prompt, catalog, placeholder_id, output, result)
                if outcome.records:
                    await self.conversation.extend_history(outcome.records)
                if outcome.aborted:
                    result.aborted = True
                    break
                if outcome.failed:
                    result.failed = outcome.failed
                    break
                if not outcome.records:
                    break
                if result.depth >= self.turn_config.max_followup_depth:
                    log.warning("Follow-up depth limit reached", depth=result.depth)
                    result.depth_exceeded = True
                    await self._append(Message.agent(MAX_DEPTH_TEXT), output)
                    break

                self._set_state(TurnState.BUILDING_FOLLOWUP)
                result.depth += 1
                placeholder = Message.agent("")
                placeholder_id = await self._append(placeholder, output)
                snapshot = await self.conversation.snapshot()
                prompt = self.prompt_builder.build(snapshot, self.prompt_settings, None, "")
        except TurnInvariantError as e:
            log.error("Turn invariant violated", error=str(e))
            result.error = str(e)
            fatal = e
        except Exception as e:
            log.error("Turn failed", error=str(e))
            result.error = str(e)
            try:
                await self._append(Message.agent(UNEXPECTED_ERROR_TEXT), output)
            except Exception as append_error:
                log.error("Failed to report turn error", error=str(append_error))
        finally:
            await self._finish(output, on_complete, result)

        if fatal is not None:
            raise fatal
        return result

    async def _run_round(
        self,
        prompt: PromptPackage,
        catalog: ToolCatalog | None,
        placeholder_id: str | None,
        output: TurnOutput,
        result: TurnResult,
    ) -> _RoundOutcome:
        """One model call plus the tool calls it requested."""
        self._set_state(TurnState.AWAITING_MODEL)
        result.model_calls += 1
        outcome = _RoundOutcome()
        fan_in: FanIn[ToolCallRecord] = FanIn()
        tasks: list[asyncio.Task[None]] = []

        # Message receiving streamed text; None means create one on the next delta.
        open_id = placeholder_id
        open_empty = placeholder_id is not None

        try:
            async with aclosing(self.decoder.decode(prompt, catalog)) as events:
                async for event in events:
                    if output.closed:
                        outcome.aborted = True
                        break

                    if isinstance(event, TextDelta):
                        self._set_state(TurnState.STREAMING_TEXT)
                        if open_id is None:
                            open_id = await self._append(Message.agent(""), output)
                        await self.conversation.append_text(open_id, event.text)
                        open_empty = False
                        output.send(TurnUpdate("text", open_id, text=event.text))

                    elif isinstance(event, ToolCallRequested):
                        self._set_state(TurnState.STREAMING_TOOL_CALLS)
                        call = ToolCallState(
                            server_name=event.server_name,
                            tool_name=event.tool_name,
                            arguments=dict(event.arguments),
                        )
                        if open_id is not None and open_empty:
                            message_id = open_id
                            await self.conversation.replace_content(message_id, ToolCallContent(call))
                            output.send(
                                TurnUpdate(
                                    "message",
                                    message_id,
                                    message=await self.conversation.get_message(message_id),
                                )
                            )
                        else:
                            message_id = await self._append(Message.agent(ToolCallContent(call)), output)
                        open_id = None
                        open_empty = False

                        sender = fan_in.sender()
                        tasks.append(
                            asyncio.create_task(self._run_dispatch(call, message_id, sender, output))
                        )
                        result.tool_calls += 1

                    elif isinstance(event, StreamFailed):
                        log.warning("Model stream failed", reason=event.reason, detail=event.detail)
                        outcome.failed = event.reason

                    elif isinstance(event, StreamDone):
                        log.debug("Model stream done", finish_reason=event.finish_reason)
        finally:
            fan_in.close()

        if outcome.aborted and open_id is not None and open_empty:
            await self.conversation.remove_message(open_id)
            output.send(TurnUpdate("removed", open_id))

        if tasks:
            self._set_state(TurnState.AWAITING_TOOL_RESULTS)
        outcome.records = [record async for record in fan_in]
        for task_result in await asyncio.gather(*tasks, return_exceptions=True):
            if isinstance(task_result, BaseException):
                log.error("Tool dispatch crashed", error=str(task_result))
        if len(outcome.records) != len(tasks):
            raise TurnInvariantError(
                f"Collected {len(outcome.records)} tool results for {len(tasks)} dispatched calls"
            )
        return outcome

    async def _run_dispatch(
        self,
        call: ToolCallState,
        message_id: str,
        sender: FanInSender[ToolCallRecord],
        output: TurnOutput,
    ) -> None:
        try:
            record = await self.dispatcher.dispatch(call, message_id, publish=output.send)
            sender.send(record)
            await self._checkpoint("tool_result")
        finally:
            sender.close()

    async def _append(self, message: Message, output: TurnOutput) -> str:
        published = copy.deepcopy(message)
        message_id = await self.conversation.append_message(message)
        output.send(TurnUpdate("message", message_id, text=published.rendered_text(), message=published))
        return message_id

    async def _checkpoint(self, reason: str) -> None:
        """Persist the current session; failures are logged, never raised."""
        if self.store is None:
            return
        try:
            snapshot = await self.conversation.snapshot()
            await self.store.save(snapshot)
        except Exception as e:
            log.error(
                "Failed to save session",
                checkpoint=reason,
                error=str(e),
            )

    async def _finish(
        self,
        output: TurnOutput,
        on_complete: Callable[[TurnResult], object] | None,
        result: TurnResult,
    ) -> None:
        self._set_state(TurnState.DONE)
        try:
            if self.turn_config.compact_tool_history:
                await self.conversation.compact_tool_history()
            await self.conversation.touch()
        except Exception as e:
            log.error("Failed to finalize turn", error=str(e))
        await self._checkpoint("turn_complete")
        output.finish()
        log.info(
            "Turn complete",
            model_calls=result.model_calls,
            tool_calls=result.tool_calls,
            depth=result.depth,
            aborted=result.aborted,
        )
        if on_complete is not None:
            try:
                on_complete(result)
            except Exception as e:
                log.error("Turn completion callback failed", error=str(e))
