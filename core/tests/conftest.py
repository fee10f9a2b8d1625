"""Shared fixtures: a scripted LLM executor and an orchestrator wired to it."""

import asyncio
from collections import defaultdict
from pathlib import Path
from typing import Any

import pytest

from railgraph.config import MultiAgentMode, RuntimeConfig
from railgraph.llm.provider import ExecutionContext, ExecutorCapability, ExecutorRegistry, ExecutorResult
from railgraph.llm.web import WebProviderExecutor
from railgraph.observability import clear_trace_context
from railgraph.runtime.orchestrator import RunOrchestrator
from railgraph.schemas.graph import ExecutorKind, Graph, GraphNode
from railgraph.schemas.run import UsageStats
from railgraph.storage import InMemoryRunStore


class FakeExecutor(ExecutorCapability):
    """
    Scripted stand-in for the litellm executor.

    ``responses[node_id]`` may be a string/dict output, an ExecutorResult,
    or a callable ``(node_input, attempt) -> output | ExecutorResult``.
    ``hold(node_id)`` makes the next call for that node block until the
    returned event is set or the node is cancelled.
    """

    kind = ExecutorKind.LLM

    def __init__(self, responses: dict[str, Any] | None = None, delay: float = 0.0):
        self.responses: dict[str, Any] = dict(responses or {})
        self.delay = delay
        self.calls: list[tuple[str, Any]] = []
        self.cancelled: list[str] = []
        self.started: dict[str, asyncio.Event] = defaultdict(asyncio.Event)
        self.in_flight = 0
        self.peak_in_flight = 0
        self._holds: dict[str, asyncio.Event] = {}
        self._interrupts: dict[str, asyncio.Event] = {}

    def hold(self, node_id: str) -> asyncio.Event:
        release = asyncio.Event()
        self._holds[node_id] = release
        return release

    async def execute(
        self, node: GraphNode, node_input: Any, context: ExecutionContext
    ) -> ExecutorResult:
        self.calls.append((node.id, node_input))
        self.started[node.id].set()
        self.in_flight += 1
        self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            release = self._holds.pop(node.id, None)
            if release is not None and not await self._wait_or_interrupt(node.id, release):
                return ExecutorResult(
                    ok=False, error="llm call cancelled", provider_id="fake/model", cancelled=True
                )
        finally:
            self.in_flight -= 1

        response = self.responses.get(node.id, f"{node.id} output")
        if callable(response):
            response = response(node_input, context.attempt)
        if isinstance(response, ExecutorResult):
            return response
        return ExecutorResult(
            ok=True,
            output=response,
            usage=UsageStats(input_tokens=10, output_tokens=5, total_tokens=15),
            provider_id="fake/model",
        )

    async def _wait_or_interrupt(self, node_id: str, release: asyncio.Event) -> bool:
        interrupt = asyncio.Event()
        self._interrupts[node_id] = interrupt
        waiters = [asyncio.create_task(release.wait()), asyncio.create_task(interrupt.wait())]
        try:
            await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in waiters:
                waiter.cancel()
            self._interrupts.pop(node_id, None)
        return not interrupt.is_set()

    async def cancel(self, node_id: str) -> None:
        self.cancelled.append(node_id)
        interrupt = self._interrupts.get(node_id)
        if interrupt is not None:
            interrupt.set()


# === HELPER FUNCTIONS ===


def turn(node_id: str, **config: Any) -> dict:
    return {"id": node_id, "type": "turn", "config": config}


def web_turn(node_id: str, provider: str = "gpt", **config: Any) -> dict:
    return turn(
        node_id, executor="web", provider=provider, web_result_mode="manual_paste_text", **config
    )


def make_graph(nodes: list[dict], edges: list[tuple[str, str]]) -> Graph:
    return Graph.model_validate(
        {
            "nodes": nodes,
            "edges": [{"from_node_id": src, "to_node_id": dst} for src, dst in edges],
        }
    )


async def wait_until(predicate, timeout: float = 2.0) -> None:
    """Poll ``predicate`` on the event loop until it holds."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached before timeout")
        await asyncio.sleep(0.005)


# === FIXTURES ===


@pytest.fixture(autouse=True)
def _reset_trace_context():
    clear_trace_context()
    yield
    clear_trace_context()


@pytest.fixture
def runtime_config(tmp_path: Path) -> RuntimeConfig:
    return RuntimeConfig(
        multi_agent_mode=MultiAgentMode.OFF,
        output_schema_enabled=True,
        output_schema_max_retry=1,
        require_command_approval=True,
        storage_path=tmp_path / "runs",
        api_key=None,
    )


@pytest.fixture
def fake_llm() -> FakeExecutor:
    return FakeExecutor()


@pytest.fixture
def registry(fake_llm: FakeExecutor) -> ExecutorRegistry:
    return ExecutorRegistry([fake_llm, WebProviderExecutor()])


@pytest.fixture
def run_store() -> InMemoryRunStore:
    return InMemoryRunStore()


@pytest.fixture
def orchestrator(registry, run_store, runtime_config) -> RunOrchestrator:
    return RunOrchestrator(registry=registry, store=run_store, config=runtime_config)
