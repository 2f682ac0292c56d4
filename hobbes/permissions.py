"""Tool permission policy and session request/cost budget."""

from dataclasses import dataclass
from enum import Enum

from hobbes.config import PermissionConfig
from hobbes.logging import get_logger

log = get_logger(__name__)


class ToolCategory(str, Enum):
    READ_ONLY = "read_only"
    WRITE = "write"
    EXECUTE = "execute"
    MCP = "mcp"


class PermissionStatus(str, Enum):
    ALLOWED = "allowed"
    REQUIRES_PROMPT = "requires_prompt"
    DENIED = "denied"


@dataclass(frozen=True)
class PermissionDecision:
    """Outcome of a permission check; ``reason`` is set for denials."""

    status: PermissionStatus
    reason: str = ""

    @property
    def allowed(self) -> bool:
        return self.status is PermissionStatus.ALLOWED

    @classmethod
    def allow(cls) -> "PermissionDecision":
        return cls(PermissionStatus.ALLOWED)

    @classmethod
    def prompt(cls) -> "PermissionDecision":
        return cls(PermissionStatus.REQUIRES_PROMPT)

    @classmethod
    def deny(cls, reason: str) -> "PermissionDecision":
        return cls(PermissionStatus.DENIED, reason)


class PermissionGate:
    """Decides whether a tool call may run, must be approved, or is refused.

    The budget (request count and accumulated cost) is scoped to a session;
    call ``reset()`` when a new session starts.
    """

    def __init__(self, config: PermissionConfig | None = None):
        self.config = config or PermissionConfig()
        self.request_count = 0
        self.current_cost = 0.0

    def category_for(self, server_name: str) -> ToolCategory:
        """Category configured for a tool server (``mcp`` when unset)."""
        return ToolCategory(self.config.server_categories.get(server_name, ToolCategory.MCP.value))

    def check_budget(self) -> PermissionDecision:
        """Deny once the request count or accumulated cost hits its limit."""
        if self.request_count >= self.config.max_requests:
            return PermissionDecision.deny("Request limit reached")
        if self.current_cost >= self.config.max_cost:
            return PermissionDecision.deny("Cost limit reached")
        return PermissionDecision.allow()

    def check(self, category: ToolCategory | str) -> PermissionDecision:
        category = ToolCategory(category)
        budget = self.check_budget()
        if not budget.allowed:
            return budget

        if self.config.auto_approval_enabled:
            if self.config.granular_permissions.get(category.value, False):
                return PermissionDecision.allow()
            return PermissionDecision.deny(
                f"Auto-approval is on, but permission is denied for category: {category.value}"
            )

        return PermissionDecision.prompt()

    def record_request(self, cost: float = 0.0) -> None:
        """Consume one request (and ``cost``) from the budget."""
        self.request_count += 1
        self.current_cost += cost
        log.debug(
            "Tool request recorded",
            request_count=self.request_count,
            current_cost=self.current_cost,
        )

    def reset(self) -> None:
        self.request_count = 0
        self.current_cost = 0.0
