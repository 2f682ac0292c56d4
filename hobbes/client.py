"""Chat client: wires configuration, storage, tools and the turn engine together."""

import asyncio
import inspect
from collections.abc import Callable
from typing import Any

from hobbes.channels import TurnUpdate
from hobbes.config import Config, get_config
from hobbes.conversation import ConversationActor
from hobbes.dispatcher import ApprovalBroker, ToolDispatcher
from hobbes.exceptions import SessionNotFoundError
from hobbes.llm import ModelProvider, create_provider
from hobbes.logging import get_logger
from hobbes.memory import ToolResultStore
from hobbes.models import Session
from hobbes.orchestrator import TurnOrchestrator, TurnResult
from hobbes.permissions import PermissionGate
from hobbes.session import SessionManager
from hobbes.stream import StreamDecoder
from hobbes.summarizer import ConversationProcessor
from hobbes.tools.manager import MCPToolManager, ToolService

log = get_logger(__name__)

UpdateCallback = Callable[[TurnUpdate], Any]


class ChatClient:
    """Handles user input for one active session at a time."""

    def __init__(
        self,
        config: Config | None = None,
        provider: ModelProvider | None = None,
        tool_service: ToolService | None = None,
        session_manager: SessionManager | None = None,
        result_store: ToolResultStore | None = None,
    ):
        self.config = config or get_config()
        cfg = self.config

        self.provider = provider or create_provider(
            provider=cfg.model.provider,
            model=cfg.model.chat_model,
            summary_model=cfg.model.summary_model,
            api_key=cfg.model.api_key or None,
            base_url=cfg.model.base_url,
            timeout=cfg.model.timeout,
        )
        self._owns_tools = tool_service is None
        self.tool_service = tool_service or MCPToolManager(
            cfg.tool_servers,
            project_folder=cfg.prompt.project_folder,
        )
        self.session_manager = session_manager or SessionManager(cfg.session.path)
        if result_store is None and cfg.memory.enabled:
            result_store = ToolResultStore(cfg.memory.path)
        self.result_store = result_store

        self.gate = PermissionGate(cfg.permissions)
        self.approvals = ApprovalBroker()
        self.processor = ConversationProcessor(self.provider, cfg.summary.recent_messages)

        self.conversation: ConversationActor | None = None
        self.dispatcher: ToolDispatcher | None = None
        self.orchestrator: TurnOrchestrator | None = None

    async def start(self, session_name: str | None = None) -> Session:
        """Connect tool servers and open (or create) the named session."""
        if self._owns_tools and isinstance(self.tool_service, MCPToolManager):
            await self.tool_service.connect_all()
        name = session_name or self.config.session.default_name
        session = await self.session_manager.get_or_create_session(name)
        await self._open(session)
        return session

    async def switch_session(self, selector: str) -> Session:
        session = await self.session_manager.select_session(selector)
        if session is None:
            raise SessionNotFoundError(selector)
        await self._open(session)
        return session

    async def new_session(self, name: str) -> Session:
        session = await self.session_manager.create_session(name=name)
        await self._open(session)
        return session

    async def _open(self, session: Session) -> None:
        if self.conversation is not None:
            await self.conversation.close()

        self.gate.reset()
        session.active_context.tool_catalog = self.tool_service.catalog()

        self.conversation = ConversationActor(session)
        self.dispatcher = ToolDispatcher(
            self.tool_service,
            self.gate,
            self.conversation,
            approvals=self.approvals,
            approval_timeout=self.config.turn.approval_timeout_seconds,
            cost_per_call=self.config.permissions.cost_per_call,
            result_store=self.result_store,
        )
        self.orchestrator = TurnOrchestrator(
            self.conversation,
            StreamDecoder(
                self.provider,
                retry_limit=self.config.turn.malformed_retry_limit,
                retry_delay=self.config.turn.retry_delay_seconds,
            ),
            self.dispatcher,
            store=self.session_manager,
            prompt_settings=self.config.prompt,
            turn_config=self.config.turn,
        )
        log.info("Session opened", session_id=session.id, name=session.name)

    def _require_orchestrator(self) -> TurnOrchestrator:
        if self.orchestrator is None:
            raise RuntimeError("ChatClient.start() must be called first")
        return self.orchestrator

    async def send(self, text: str, on_update: UpdateCallback | None = None) -> TurnResult:
        """Run one turn and wait for its completion signal.

        Args:
            text: User input
            on_update: Optional callback (sync or async) receiving transcript updates

        Returns:
            Result of the finished turn
        """
        orchestrator = self._require_orchestrator()
        completed = asyncio.Event()
        handle = orchestrator.begin_turn(text, on_complete=lambda _result: completed.set())

        async for update in handle.events:
            if on_update is None:
                continue
            outcome = on_update(update)
            if inspect.isawaitable(outcome):
                await outcome

        await completed.wait()
        result = await handle.wait()

        if self.config.summary.enabled and not result.aborted:
            await self.refresh_summary()
        return result

    async def refresh_summary(self) -> bool:
        """Fold the latest messages into the running summary and save."""
        if self.conversation is None:
            return False
        snapshot = await self.conversation.snapshot()
        summary = await self.processor.generate_summary(snapshot)
        if not summary:
            return False
        await self.conversation.apply_summary(summary)
        try:
            await self.session_manager.save(await self.conversation.snapshot())
        except Exception as e:
            log.error("Failed to save session after summary", session_id=snapshot.id, error=str(e))
        return True

    def approve(self, execution_id: str) -> bool:
        return self.approvals.approve(execution_id)

    def deny(self, execution_id: str) -> bool:
        return self.approvals.deny(execution_id)

    def pending_approvals(self) -> list[str]:
        return self.approvals.pending()

    async def snapshot(self) -> Session:
        if self.conversation is None:
            raise RuntimeError("ChatClient.start() must be called first")
        return await self.conversation.snapshot()

    async def close(self) -> None:
        """Release every resource the client opened."""
        if self.dispatcher is not None:
            await self.dispatcher.drain_background()
        if self.conversation is not None:
            await self.conversation.close()
        await self.tool_service.close()
        if self.result_store is not None:
            await self.result_store.close()
        await self.session_manager.close()
        await self.provider.close()
