"""
DAG Scheduler - dispatches graph nodes as their sources finish.

Nodes with no incoming edges seed a FIFO ready queue. Each tick walks the
queue: a node that needs the heavy execution lock is left in place when no
slot is free, everything else is dispatched as an asyncio task. When a task
finishes its lock slot is returned and its children's indegree drops; a
child reaching zero joins the queue.

A task that raises is reported through ``on_task_error`` and its children
stay blocked. A task that returns ``NodeDisposition.REQUEUE`` (it unwound
because the run was paused) goes back to the head of the queue.
"""

import asyncio
import logging
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import StrEnum

from railgraph.schemas.graph import Graph, GraphNode

logger = logging.getLogger(__name__)


class NodeDisposition(StrEnum):
    RELEASE = "release"
    REQUEUE = "requeue"


@dataclass
class ExecutionIndex:
    node_map: dict[str, GraphNode]
    indegree: dict[str, int]
    adjacency: dict[str, list[str]]
    incoming: dict[str, list[str]]


def build_execution_index(graph: Graph) -> ExecutionIndex:
    node_map = {node.id: node for node in graph.nodes}
    indegree = {node.id: 0 for node in graph.nodes}
    adjacency: dict[str, list[str]] = {node.id: [] for node in graph.nodes}
    incoming: dict[str, list[str]] = {node.id: [] for node in graph.nodes}

    for edge in graph.edges:
        if edge.from_node_id not in node_map or edge.to_node_id not in node_map:
            continue
        if edge.to_node_id in adjacency[edge.from_node_id]:
            continue
        adjacency[edge.from_node_id].append(edge.to_node_id)
        incoming[edge.to_node_id].append(edge.from_node_id)
        indegree[edge.to_node_id] += 1

    return ExecutionIndex(node_map, indegree, adjacency, incoming)


class ExecutionLock:
    """Counted lock for heavy node executions. Never blocks; callers try and skip."""

    def __init__(self, capacity: int = 1):
        self.capacity = max(1, capacity)
        self.held = 0
        self.peak = 0

    @property
    def available(self) -> bool:
        return self.held < self.capacity

    def try_acquire(self) -> bool:
        if not self.available:
            return False
        self.held += 1
        self.peak = max(self.peak, self.held)
        return True

    def release(self) -> None:
        if self.held > 0:
            self.held -= 1


NodeRunner = Callable[[GraphNode], Awaitable[NodeDisposition | None]]
TaskErrorHandler = Callable[[str, BaseException], Awaitable[None]]
QueuedHandler = Callable[[str], Awaitable[None]]


class DagScheduler:
    """
    Runs one graph to quiescence.

    Usage:
        scheduler = DagScheduler(graph, run_node, max_concurrency=2)
        await scheduler.run()
        scheduler.pending_node_ids  # nodes never dispatched
    """

    def __init__(
        self,
        graph: Graph,
        run_node: NodeRunner,
        max_concurrency: int = 1,
        on_task_error: TaskErrorHandler | None = None,
        on_queued: QueuedHandler | None = None,
    ):
        self.index = build_execution_index(graph)
        self._run_node = run_node
        self._on_task_error = on_task_error
        self._on_queued = on_queued
        self.lock = ExecutionLock(max_concurrency)

        self._indegree = dict(self.index.indegree)
        self._ready: deque[str] = deque(
            node.id for node in graph.nodes if self._indegree[node.id] == 0
        )
        self._active: dict[asyncio.Task, str] = {}
        self._lock_holders: set[str] = set()
        self._finished: set[str] = set()
        self.dispatched: list[str] = []

        self._paused = False
        self._cancelled = False
        self._resumed = asyncio.Event()
        self._resumed.set()

    # === STATE ===

    @property
    def ready_node_ids(self) -> list[str]:
        return list(self._ready)

    @property
    def active_node_ids(self) -> list[str]:
        return list(self._active.values())

    @property
    def pending_node_ids(self) -> list[str]:
        """Nodes not finished and not running: queued or blocked behind a source."""
        active = set(self._active.values())
        return [
            node_id
            for node_id in self.index.node_map
            if node_id not in self._finished and node_id not in active
        ]

    @property
    def is_paused(self) -> bool:
        return self._paused

    # === CONTROL ===

    def pause(self) -> None:
        self._paused = True
        self._resumed.clear()

    def resume(self) -> None:
        self._paused = False
        self._resumed.set()

    def cancel(self) -> None:
        self._cancelled = True
        self._resumed.set()

    def requeue(self, node_id: str) -> None:
        if node_id not in self._ready:
            self._ready.appendleft(node_id)

    # === DISPATCH ===

    def dispatch_ready(self) -> list[str]:
        """One scheduling tick. Returns the node ids dispatched."""
        dispatched: list[str] = []
        if self._paused or self._cancelled:
            return dispatched

        waiting: deque[str] = deque()
        while self._ready:
            node_id = self._ready.popleft()
            node = self.index.node_map[node_id]
            if node.requires_execution_lock:
                if not self.lock.try_acquire():
                    waiting.append(node_id)
                    continue
                self._lock_holders.add(node_id)
            task = asyncio.create_task(self._run_node(node), name=f"node:{node_id}")
            self._active[task] = node_id
            self.dispatched.append(node_id)
            dispatched.append(node_id)
        self._ready = waiting
        return dispatched

    def release_children(self, node_id: str) -> list[str]:
        released: list[str] = []
        for child_id in self.index.adjacency.get(node_id, []):
            self._indegree[child_id] -= 1
            if self._indegree[child_id] == 0:
                self._ready.append(child_id)
                released.append(child_id)
        return released

    async def _complete(self, task: asyncio.Task) -> None:
        node_id = self._active.pop(task)
        if node_id in self._lock_holders:
            self._lock_holders.discard(node_id)
            self.lock.release()

        if task.cancelled():
            self._finished.add(node_id)
            logger.warning(f"Node task {node_id} was cancelled")
            return

        error = task.exception()
        if error is not None:
            self._finished.add(node_id)
            logger.error(f"Node task {node_id} raised: {error!r}")
            if self._on_task_error is not None:
                await self._on_task_error(node_id, error)
            return

        if task.result() == NodeDisposition.REQUEUE:
            self.requeue(node_id)
            return

        self._finished.add(node_id)
        for child_id in self.release_children(node_id):
            await self._notify_queued(child_id)

    async def _notify_queued(self, node_id: str) -> None:
        if self._on_queued is not None:
            await self._on_queued(node_id)

    async def run(self) -> None:
        """Dispatch until the queue is empty and nothing is running."""
        for node_id in list(self._ready):
            await self._notify_queued(node_id)

        while True:
            if self._cancelled:
                if not self._active:
                    return
            elif self._paused:
                if not self._active:
                    await self._resumed.wait()
                    continue
            else:
                self.dispatch_ready()
                if not self._active:
                    return

            done, _ = await asyncio.wait(
                set(self._active), return_when=asyncio.FIRST_COMPLETED
            )
            for task in done:
                await self._complete(task)
