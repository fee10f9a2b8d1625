"""Executor capability abstraction for pluggable turn backends.

A turn node names an ExecutorKind. The registry maps each kind to one
ExecutorCapability; the turn runner looks it up instead of branching on
provider strings.
"""

from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from railgraph.config import RuntimeConfig
from railgraph.errors import ExecutorError
from railgraph.schemas.graph import ExecutorKind, GraphNode
from railgraph.schemas.run import UsageStats

if TYPE_CHECKING:
    from railgraph.runtime.approval import ApprovalBroker
    from railgraph.runtime.human_queue import ProviderTurnQueue


@dataclass
class ExecutorResult:
    """Response from one executor call."""

    ok: bool
    output: Any = None
    error: str | None = None
    usage: UsageStats | None = None
    provider_id: str = ""
    cancelled: bool = False
    raw_response: Any = None


def _noop_log(message: str) -> None:
    return None


@dataclass
class ExecutionContext:
    """Run-scoped collaborators handed to an executor for one call."""

    run_id: str
    config: RuntimeConfig = field(default_factory=RuntimeConfig)
    human_queue: "ProviderTurnQueue | None" = None
    approvals: "ApprovalBroker | None" = None
    log: Callable[[str], None] = _noop_log
    on_waiting_user: Callable[[str], Awaitable[None]] | None = None
    attempt: int = 0

    async def notify_waiting_user(self, message: str) -> None:
        if self.on_waiting_user is not None:
            await self.on_waiting_user(message)


class ExecutorCapability(ABC):
    """
    One backend family for turn nodes.

    Implementations must be safe to call again with the same input (the
    schema retry loop does), and must report cancellation with
    ``cancelled=True`` rather than as an ordinary failure.
    """

    kind: ExecutorKind

    @abstractmethod
    async def execute(
        self, node: GraphNode, node_input: Any, context: ExecutionContext
    ) -> ExecutorResult:
        """
        Run the node once.

        Args:
            node: The turn node being executed
            node_input: The resolved input (question, upstream output,
                synthesis packet, or a schema-correction prompt)
            context: Run-scoped collaborators

        Returns:
            ExecutorResult with output or error, usage and provider id
        """

    async def cancel(self, node_id: str) -> None:
        """Best-effort interrupt of an in-flight call for ``node_id``."""
        return None

    def is_available(self, provider: str | None = None) -> bool:
        return True


class ExecutorRegistry:
    """Maps ExecutorKind to its capability."""

    def __init__(self, executors: list[ExecutorCapability] | None = None):
        self._executors: dict[ExecutorKind, ExecutorCapability] = {}
        for executor in executors or []:
            self.register(executor)

    def register(self, executor: ExecutorCapability) -> None:
        self._executors[executor.kind] = executor

    def get(self, kind: ExecutorKind) -> ExecutorCapability:
        try:
            return self._executors[kind]
        except KeyError:
            raise ExecutorError(f"no executor registered for kind '{kind}'") from None

    def __contains__(self, kind: object) -> bool:
        return kind in self._executors

    def provider_available(self, provider: str) -> bool:
        """Availability check used by the batch planner (provider = kind or web provider)."""
        try:
            kind = ExecutorKind(provider)
        except ValueError:
            web = self._executors.get(ExecutorKind.WEB)
            return web is not None and web.is_available(provider)
        executor = self._executors.get(kind)
        return executor is not None and executor.is_available()
