"""
Run Orchestrator - owns every run from start to the persisted record.

State machine per run:

    idle -> starting -> running <-> paused -> completed | failed | cancelled

The orchestrator is the only writer of run-owned state (node states,
evidence, the provider queue, the approval queue). Every change is also
published on the EventBus so presentation layers can follow along.
"""

import asyncio
import logging
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from pydantic import BaseModel

from railgraph.config import RuntimeConfig
from railgraph.errors import (
    CANCEL_ERROR_TOKEN,
    PAUSE_ERROR_TOKEN,
    ApprovalDeniedError,
    GraphValidationError,
    LowQualityError,
    RunAlreadyPersistedError,
    RunNotFoundError,
    RunStateError,
    is_pause_signal,
)
from railgraph.graph.quality import QualityEvaluator, summarize_quality_metrics
from railgraph.graph.transform import execute_gate, execute_transform
from railgraph.graph.turn import TurnRunner
from railgraph.llm import default_registry
from railgraph.llm.provider import ExecutionContext, ExecutorRegistry
from railgraph.observability import set_trace_context
from railgraph.runtime.approval import (
    ApprovalBroker,
    build_approval_snapshot_from_transitions,
    create_approval_queue,
    summarize_approval_gate,
)
from railgraph.runtime.event_bus import EventBus, EventType
from railgraph.runtime.evidence import (
    EvidenceStore,
    build_conflict_ledger,
    compute_final_confidence,
)
from railgraph.runtime.human_queue import HumanTurnResult, ProviderTurnQueue
from railgraph.runtime.scheduler import DagScheduler, NodeDisposition
from railgraph.schemas.approval import ApprovalDecision, ApprovalRequest
from railgraph.schemas.graph import Graph, GraphNode, NodeType
from railgraph.schemas.run import (
    NodeMetric,
    NodeRunState,
    NodeStatus,
    Problem,
    ProviderTraceEntry,
    RunRecord,
    RunStatus,
    RunTransition,
    utc_now,
)
from railgraph.storage.run_store import RunStore
from railgraph.utils.values import extract_final_answer

logger = logging.getLogger(__name__)

PAUSE_REQUEUE_MESSAGE = "returned to queue: run paused by user"
CANCEL_MESSAGE = "cancelled by user"
BRANCH_SKIP_MESSAGE = "skipped by branch decision"
QUALITY_SKIPPED_MESSAGE = "quality gate skipped for intermediate node (only final nodes are checked)"


class RunStatusView(BaseModel):
    """Externally visible snapshot of one run."""

    run_id: str
    status: RunStatus
    is_paused: bool
    is_running: bool
    node_states: dict[str, NodeRunState]
    final_node_id: str | None = None
    final_answer: str | None = None
    error: str | None = None
    human_queue: dict[str, Any] | None = None
    pending_approvals: list[ApprovalRequest] = []


@dataclass
class RunContext:
    """Everything that belongs to one run. Nothing here is shared across runs."""

    record: RunRecord
    graph: Graph
    scheduler: DagScheduler | None = None
    evidence: EvidenceStore = field(default_factory=EvidenceStore)
    human_queue: ProviderTurnQueue = field(default_factory=ProviderTurnQueue)
    approvals: ApprovalBroker = field(default_factory=ApprovalBroker)
    outputs: dict[str, Any] = field(default_factory=dict)
    skip_set: set[str] = field(default_factory=set)
    interrupted: set[str] = field(default_factory=set)
    node_started: dict[str, float] = field(default_factory=dict)
    last_done_node_id: str | None = None
    pause_requested: bool = False
    cancel_requested: bool = False
    task: asyncio.Task | None = None
    finished: asyncio.Event = field(default_factory=asyncio.Event)

    @property
    def run_id(self) -> str:
        return self.record.run_id

    def state(self, node_id: str) -> NodeRunState:
        return self.record.node_states[node_id]


class RunOrchestrator:
    """
    Starts, steers and finalizes graph runs.

    Example:
        orchestrator = RunOrchestrator(registry=registry, store=FileRunStore(path))
        run_id = await orchestrator.start(graph, "Compare the three vendors")
        await orchestrator.pause(run_id)
        await orchestrator.resume(run_id)
        record = await orchestrator.wait(run_id)
    """

    def __init__(
        self,
        registry: ExecutorRegistry | None = None,
        store: RunStore | None = None,
        config: RuntimeConfig | None = None,
        event_bus: EventBus | None = None,
        quality: QualityEvaluator | None = None,
    ):
        self.config = config or RuntimeConfig()
        self.registry = registry or default_registry()
        self.store = store
        self.event_bus = event_bus or EventBus()
        self.turns = TurnRunner(self.registry, self.config)
        self.quality = quality or QualityEvaluator(self.config)
        self._runs: dict[str, RunContext] = {}
        self._finished: deque[str] = deque()

    # === LIFECYCLE ===

    async def start(
        self, graph: Graph | dict, question: str, run_id: str | None = None
    ) -> str:
        """
        Validate the graph and launch the run in the background.

        Raises:
            GraphValidationError: The graph is malformed; nothing was started
        """
        if not isinstance(graph, Graph):
            graph = Graph.model_validate(graph)
        errors = graph.validate_graph()
        if errors:
            raise GraphValidationError(errors)

        if run_id is None:
            timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
            run_id = f"run_{timestamp}_{uuid.uuid4().hex[:8]}"
        if run_id in self._runs:
            raise RunStateError(f"run {run_id} is already active")

        record = RunRecord(
            run_id=run_id,
            question=question,
            status=RunStatus.STARTING,
            graph=graph,
            multi_agent_mode=str(self.config.multi_agent_mode),
            node_states={node.id: NodeRunState(node_id=node.id) for node in graph.nodes},
        )
        ctx = RunContext(record=record, graph=graph)
        ctx.approvals = ApprovalBroker(
            on_request=lambda request: self._on_approval_request(ctx, request)
        )
        ctx.scheduler = DagScheduler(
            graph,
            run_node=lambda node: self._run_node(ctx, node),
            max_concurrency=self.config.max_concurrency,
            on_task_error=lambda node_id, error: self._on_task_error(ctx, node_id, error),
            on_queued=lambda node_id: self._set_status(ctx, node_id, NodeStatus.QUEUED),
        )
        self._runs[run_id] = ctx
        ctx.task = asyncio.create_task(self._execute(ctx), name=f"run:{run_id}")
        logger.info(f"Run {run_id} started with {len(graph.nodes)} node(s)")
        return run_id

    async def pause(self, run_id: str) -> None:
        """Stop dispatching and unwind in-flight nodes back to the queue."""
        ctx = self._get(run_id)
        if ctx.record.status not in (RunStatus.STARTING, RunStatus.RUNNING):
            raise RunStateError(f"cannot pause run {run_id} in status {ctx.record.status}")

        ctx.pause_requested = True
        ctx.scheduler.pause()
        ctx.record.status = RunStatus.PAUSED
        swept = ctx.human_queue.sweep(PAUSE_ERROR_TOKEN)
        ctx.interrupted.update(await self._interrupt_active_nodes(ctx))
        ctx.record.summary_logs.append(f"run paused ({swept} human request(s) released)")
        logger.info(f"Run {run_id} paused")
        await self.event_bus.emit_run_status(EventType.RUN_PAUSED, run_id)

    async def resume(self, run_id: str) -> None:
        ctx = self._get(run_id)
        if ctx.record.status != RunStatus.PAUSED:
            raise RunStateError(f"cannot resume run {run_id} in status {ctx.record.status}")

        ctx.pause_requested = False
        ctx.record.status = RunStatus.RUNNING
        ctx.scheduler.resume()
        ctx.record.summary_logs.append("run resumed")
        logger.info(f"Run {run_id} resumed")
        await self.event_bus.emit_run_status(EventType.RUN_RESUMED, run_id)

    async def cancel(self, run_id: str) -> None:
        """Terminal stop. Nodes that never ran end ``cancelled``."""
        ctx = self._get(run_id)
        if ctx.record.status.is_terminal:
            raise RunStateError(f"run {run_id} already finished ({ctx.record.status})")

        ctx.cancel_requested = True
        ctx.scheduler.cancel()
        ctx.human_queue.sweep(CANCEL_ERROR_TOKEN)
        ctx.approvals.cancel_pending()
        await self._interrupt_active_nodes(ctx)
        ctx.record.summary_logs.append("run cancel requested")
        logger.info(f"Run {run_id} cancel requested")

    async def wait(self, run_id: str, timeout: float | None = None) -> RunRecord:
        """Block until the run is finalized and return its record."""
        ctx = self._runs.get(run_id)
        if ctx is None:
            return await self.get_record(run_id)
        await asyncio.wait_for(ctx.finished.wait(), timeout=timeout)
        return ctx.record

    def status(self, run_id: str) -> RunStatusView:
        ctx = self._get(run_id)
        record = ctx.record
        return RunStatusView(
            run_id=run_id,
            status=record.status,
            is_paused=record.status == RunStatus.PAUSED,
            is_running=not record.status.is_terminal,
            node_states={k: v.model_copy(deep=True) for k, v in record.node_states.items()},
            final_node_id=record.final_node_id,
            final_answer=record.final_answer,
            error=record.error,
            human_queue=ctx.human_queue.snapshot(),
            pending_approvals=[r for r in ctx.approvals.queue if r.status == "pending"],
        )

    def list_runs(self) -> list[str]:
        return list(self._runs)

    async def get_record(self, run_id: str) -> RunRecord:
        """Live record for known runs, otherwise the persisted one."""
        if run_id in self._runs:
            return self._runs[run_id].record
        if self.store is not None:
            record = await self.store.load_run(run_id)
            if record is not None:
                return record
        raise RunNotFoundError(run_id)

    # === HUMAN INPUT ===

    def get_human_queue(self, run_id: str) -> ProviderTurnQueue:
        return self._get(run_id).human_queue

    def submit_human_response(
        self, run_id: str, text: str, ticket_id: str | None = None
    ) -> HumanTurnResult:
        return self._get(run_id).human_queue.submit(text, ticket_id)

    def reject_human_response(
        self, run_id: str, error: str, ticket_id: str | None = None
    ) -> bool:
        return self._get(run_id).human_queue.reject(error, ticket_id)

    def decide_approval(
        self, run_id: str, request_id: str, decision: ApprovalDecision | str
    ) -> ApprovalRequest:
        """Apply a user decision. Raises KeyError for an unknown request id."""
        ctx = self._get(run_id)
        updated = ctx.approvals.decide(request_id, decision)
        ctx.record.summary_logs.append(f"approval {request_id}: {updated.status}")
        return updated

    # === RUN TASK ===

    def _get(self, run_id: str) -> RunContext:
        ctx = self._runs.get(run_id)
        if ctx is None:
            raise RunNotFoundError(run_id)
        return ctx

    def _retire(self, ctx: RunContext) -> None:
        """Evict the oldest finished runs beyond ``finished_run_retention``."""
        self._finished.append(ctx.run_id)
        while len(self._finished) > max(0, self.config.finished_run_retention):
            evicted = self._finished.popleft()
            self._runs.pop(evicted, None)
            logger.debug(f"Evicted finished run {evicted} from memory")

    async def _execute(self, ctx: RunContext) -> None:
        set_trace_context(run_id=ctx.run_id, trace_id=uuid.uuid4().hex)
        if not ctx.pause_requested:
            ctx.record.status = RunStatus.RUNNING
        await self.event_bus.emit_run_status(
            EventType.RUN_STARTED, ctx.run_id, question=ctx.record.question
        )
        try:
            await ctx.scheduler.run()
        except Exception as e:
            logger.exception(f"Scheduler for run {ctx.run_id} crashed")
            ctx.record.problems.append(
                Problem(severity="critical", description=f"scheduler error: {e}")
            )
        finally:
            try:
                await self._finalize(ctx)
            finally:
                ctx.finished.set()
                self._retire(ctx)

    async def _run_node(self, ctx: RunContext, node: GraphNode) -> NodeDisposition:
        set_trace_context(node_id=node.id)

        if ctx.pause_requested:
            await self._requeue(ctx, node.id)
            return NodeDisposition.REQUEUE
        if ctx.cancel_requested:
            await self._terminate(ctx, node.id, NodeStatus.CANCELLED, CANCEL_MESSAGE)
            return NodeDisposition.RELEASE
        if node.id in ctx.skip_set:
            await self._terminate(ctx, node.id, NodeStatus.SKIPPED, BRANCH_SKIP_MESSAGE)
            return NodeDisposition.RELEASE

        parents = ctx.scheduler.index.incoming[node.id]
        missing = next((p for p in parents if p not in ctx.outputs), None)
        if missing is not None:
            reason = f"upstream node {missing} produced no result"
            await self._terminate(ctx, node.id, NodeStatus.SKIPPED, reason)
            ctx.record.problems.append(
                Problem(node_id=node.id, severity="warning", description=reason)
            )
            return NodeDisposition.RELEASE

        node_input = self._build_node_input(ctx, node, parents)
        await self._start_node(ctx, node.id)

        if node.type == NodeType.TURN:
            return await self._run_turn(ctx, node, node_input)

        if node.type == NodeType.TRANSFORM:
            result = execute_transform(node, node_input)
            done_message = "transform completed"
        else:
            result = execute_gate(node, node_input, ctx.graph)
            done_message = "gate completed"

        if not result.ok:
            await self._fail(ctx, node.id, result.error or f"{node.type} failed")
            return NodeDisposition.RELEASE

        if result.skip_node_ids:
            ctx.skip_set.update(result.skip_node_ids)
        await self._complete(
            ctx, node, NodeStatus.DONE, result.output, str(node.type), result.message or done_message
        )
        return NodeDisposition.RELEASE

    def _is_final_node(self, ctx: RunContext, node_id: str) -> bool:
        return not ctx.scheduler.index.adjacency.get(node_id)

    def _build_node_input(self, ctx: RunContext, node: GraphNode, parents: list[str]) -> Any:
        """
        Root nodes get the question, single-parent nodes their parent's output
        and joins a ``{parent_id: output}`` map. Turn nodes that join or end
        the graph get a synthesis packet instead.
        """
        if not parents:
            return ctx.record.question
        upstream = {parent: ctx.outputs[parent] for parent in parents}
        if node.type == NodeType.TURN and (len(parents) > 1 or self._is_final_node(ctx, node.id)):
            return ctx.evidence.build_synthesis_packet(ctx.record.question, parents, upstream)
        if len(parents) == 1:
            return upstream[parents[0]]
        return upstream

    async def _run_turn(
        self, ctx: RunContext, node: GraphNode, node_input: Any
    ) -> NodeDisposition:
        started_at = utc_now()
        provider = str(node.turn.provider or node.turn.model or node.turn.executor)

        async def on_waiting_user(message: str) -> None:
            await self._set_status(ctx, node.id, NodeStatus.WAITING_USER, message)
            await self.event_bus.emit_human_input_requested(
                ctx.run_id, node.id, ctx.human_queue.snapshot()
            )

        context = ExecutionContext(
            run_id=ctx.run_id,
            config=self.config,
            human_queue=ctx.human_queue,
            approvals=ctx.approvals,
            log=lambda message: self._append_log(ctx, node.id, message),
            on_waiting_user=on_waiting_user,
        )
        outcome = await self.turns.run(node, node_input, context)
        state = ctx.state(node.id)
        state.usage = state.usage + outcome.usage
        provider = outcome.provider_id or provider

        interrupted = outcome.cancelled or is_pause_signal(outcome.error)
        if ctx.cancel_requested:
            # Late results after a cancel are dropped.
            self._trace(ctx, node, provider, "cancelled", started_at, CANCEL_MESSAGE)
            await self._terminate(ctx, node.id, NodeStatus.CANCELLED, CANCEL_MESSAGE)
            return NodeDisposition.RELEASE
        paused_mid_turn = node.id in ctx.interrupted
        ctx.interrupted.discard(node.id)
        if not outcome.ok and interrupted and (ctx.pause_requested or paused_mid_turn):
            await self._requeue(ctx, node.id)
            return NodeDisposition.REQUEUE
        if not outcome.ok:
            error = outcome.error or "turn failed"
            self._trace(ctx, node, provider, "failed", started_at, error)
            await self._fail(ctx, node.id, error)
            return NodeDisposition.RELEASE

        output = outcome.output
        if not self._is_final_node(ctx, node.id):
            self._append_log(ctx, node.id, QUALITY_SKIPPED_MESSAGE)
            self._trace(ctx, node, provider, "done", started_at, "turn completed")
            await self._complete(ctx, node, NodeStatus.DONE, output, provider, "turn completed")
            return NodeDisposition.RELEASE

        try:
            report = await self.quality.evaluate(node, output, ctx.approvals)
        except ApprovalDeniedError as e:
            if ctx.cancel_requested:
                self._trace(ctx, node, provider, "cancelled", started_at, CANCEL_MESSAGE)
                await self._terminate(ctx, node.id, NodeStatus.CANCELLED, CANCEL_MESSAGE)
                return NodeDisposition.RELEASE
            self._trace(ctx, node, provider, "failed", started_at, e.reason)
            await self._fail(ctx, node.id, e.reason)
            return NodeDisposition.RELEASE
        state.quality = report
        ctx.record.node_metrics[node.id] = NodeMetric(
            node_id=node.id,
            profile=report.profile,
            score=report.score,
            decision=report.decision,
            threshold=report.threshold,
            failed_checks=len(report.failures),
        )
        for warning in report.warnings:
            self._append_log(ctx, node.id, f"[quality] {warning}")

        if not report.passed:
            message = str(LowQualityError(report))
            self._trace(ctx, node, provider, "done", started_at, message)
            await self._complete(ctx, node, NodeStatus.LOW_QUALITY, output, provider, message)
            return NodeDisposition.RELEASE

        message = f"quality passed ({report.score}/{report.threshold})"
        self._trace(ctx, node, provider, "done", started_at, message)
        await self._complete(ctx, node, NodeStatus.DONE, output, provider, message)
        return NodeDisposition.RELEASE

    async def _interrupt_active_nodes(self, ctx: RunContext) -> list[str]:
        interrupted = []
        for node_id in ctx.scheduler.active_node_ids:
            node = ctx.graph.get_node(node_id)
            if node is None or node.type != NodeType.TURN:
                continue
            try:
                await self.turns.cancel(node)
            except Exception as e:
                logger.warning(f"Interrupt of {node_id} failed: {e}")
                continue
            interrupted.append(node_id)
        return interrupted

    # === STATE UPDATES ===

    def _append_log(self, ctx: RunContext, node_id: str, message: str) -> None:
        ctx.state(node_id).add_log(message, self.config.node_log_limit)

    async def _set_status(
        self,
        ctx: RunContext,
        node_id: str,
        status: NodeStatus,
        message: str | None = None,
    ) -> None:
        state = ctx.state(node_id)
        state.status = status
        if message:
            self._append_log(ctx, node_id, message)
        ctx.record.transitions.append(
            RunTransition(node_id=node_id, status=status, message=message)
        )
        line = f"[{node_id}] {status}: {message}" if message else f"[{node_id}] {status}"
        ctx.record.summary_logs.append(line)
        logger.debug(line, extra={"node_id": node_id, "status": str(status)})
        await self.event_bus.emit_node_status(ctx.run_id, node_id, str(status), message)

    async def _start_node(self, ctx: RunContext, node_id: str) -> None:
        state = ctx.state(node_id)
        state.started_at = utc_now()
        state.finished_at = None
        state.duration_ms = None
        state.error = None
        ctx.node_started[node_id] = time.monotonic()
        await self._set_status(ctx, node_id, NodeStatus.RUNNING, "node started")

    def _stamp_finished(self, ctx: RunContext, node_id: str) -> None:
        state = ctx.state(node_id)
        state.finished_at = utc_now()
        started = ctx.node_started.pop(node_id, None)
        if started is not None:
            state.duration_ms = int((time.monotonic() - started) * 1000)

    async def _requeue(self, ctx: RunContext, node_id: str) -> None:
        state = ctx.state(node_id)
        state.finished_at = None
        state.duration_ms = None
        ctx.node_started.pop(node_id, None)
        await self._set_status(ctx, node_id, NodeStatus.QUEUED, PAUSE_REQUEUE_MESSAGE)

    async def _terminate(
        self, ctx: RunContext, node_id: str, status: NodeStatus, message: str
    ) -> None:
        self._stamp_finished(ctx, node_id)
        await self._set_status(ctx, node_id, status, message)

    async def _fail(self, ctx: RunContext, node_id: str, error: str) -> None:
        ctx.state(node_id).error = error
        ctx.record.problems.append(Problem(node_id=node_id, severity="critical", description=error))
        logger.warning(f"Node {node_id} failed: {error}", extra={"node_id": node_id})
        await self._terminate(ctx, node_id, NodeStatus.FAILED, error)

    async def _complete(
        self,
        ctx: RunContext,
        node: GraphNode,
        status: NodeStatus,
        output: Any,
        provider: str,
        message: str,
    ) -> None:
        state = ctx.state(node.id)
        state.output = output
        ctx.outputs[node.id] = output
        ctx.evidence.append(node, output, provider)
        ctx.last_done_node_id = node.id
        await self._terminate(ctx, node.id, status, message)

    def _trace(
        self,
        ctx: RunContext,
        node: GraphNode,
        provider: str,
        status: str,
        started_at: datetime,
        summary: str,
    ) -> None:
        ctx.record.provider_trace.append(
            ProviderTraceEntry(
                node_id=node.id,
                executor=str(node.turn.executor),
                provider=provider,
                status=status,
                started_at=started_at,
                finished_at=utc_now(),
                summary=summary,
            )
        )

    async def _on_task_error(self, ctx: RunContext, node_id: str, error: BaseException) -> None:
        message = f"{type(error).__name__}: {error}"
        await self._fail(ctx, node_id, message)

    async def _on_approval_request(self, ctx: RunContext, request: ApprovalRequest) -> None:
        await self._set_status(
            ctx, request.task_id, NodeStatus.WAITING_USER, f"approval requested: {request.preview}"
        )
        await self.event_bus.emit_approval_requested(
            ctx.run_id, request.task_id, request.model_dump(mode="json")
        )

    # === FINALIZATION ===

    def _resolve_final_node_id(self, ctx: RunContext) -> str | None:
        """Unique sink, else the sink with the latest transition, else the last completed node."""
        sinks = ctx.graph.sink_node_ids()
        if len(sinks) == 1:
            return sinks[0]
        if sinks:
            sink_set = set(sinks)
            for transition in reversed(ctx.record.transitions):
                if transition.node_id in sink_set:
                    return transition.node_id
        return ctx.last_done_node_id

    async def _finalize(self, ctx: RunContext) -> None:
        record = ctx.record

        for node_id in ctx.scheduler.pending_node_ids:
            if record.node_states[node_id].status.is_terminal:
                continue
            if ctx.cancel_requested:
                await self._terminate(ctx, node_id, NodeStatus.CANCELLED, CANCEL_MESSAGE)
            else:
                record.problems.append(
                    Problem(
                        node_id=node_id,
                        severity="warning",
                        description="node never ran: an upstream node raised",
                    )
                )

        record.node_logs = {node_id: list(s.logs) for node_id, s in record.node_states.items()}
        record.evidence_by_node = ctx.evidence.by_node_snapshot()
        record.run_memory = ctx.evidence.memory_snapshot()
        envelopes = [e for rows in record.evidence_by_node.values() for e in rows]
        record.conflict_ledger = build_conflict_ledger(envelopes)
        record.final_confidence = compute_final_confidence(envelopes, record.conflict_ledger)
        if record.node_metrics:
            record.quality_summary = summarize_quality_metrics(record.node_metrics)

        final_node_id = self._resolve_final_node_id(ctx)
        final_status = record.node_states[final_node_id].status if final_node_id else None
        record.final_node_id = final_node_id
        if (
            final_node_id is not None
            and final_status in (NodeStatus.DONE, NodeStatus.LOW_QUALITY)
            and final_node_id in ctx.outputs
        ):
            record.final_output = ctx.outputs[final_node_id]
            record.final_answer = extract_final_answer(record.final_output)
            record.status = RunStatus.COMPLETED
        else:
            if final_node_id is not None and final_status is not None:
                record.error = f"final node {final_node_id} status={final_status}"
            else:
                record.error = "could not resolve final node"
            record.status = RunStatus.FAILED
        if ctx.cancel_requested:
            record.status = RunStatus.CANCELLED
            record.error = record.error or CANCEL_MESSAGE

        record.approval_snapshot = create_approval_queue(
            [*ctx.approvals.queue, *build_approval_snapshot_from_transitions(record.transitions)]
        )
        record.approval_summary = summarize_approval_gate(record.approval_snapshot)
        record.finished_at = utc_now()
        ctx.human_queue.teardown("run finished")

        if self.store is not None:
            try:
                await self.store.save_run(record.run_id, record)
            except (RunAlreadyPersistedError, OSError, ValueError) as e:
                logger.error(f"Could not persist run {record.run_id}: {e}")
                record.problems.append(
                    Problem(severity="critical", description=f"persist failed: {e}")
                )

        event_type = {
            RunStatus.COMPLETED: EventType.RUN_COMPLETED,
            RunStatus.CANCELLED: EventType.RUN_CANCELLED,
        }.get(record.status, EventType.RUN_FAILED)
        logger.info(
            f"Run {record.run_id} {record.status}"
            + (f": {record.error}" if record.error else ""),
            extra={"status": str(record.status)},
        )
        await self.event_bus.emit_run_status(
            event_type,
            record.run_id,
            final_node_id=final_node_id,
            final_answer=record.final_answer,
            error=record.error,
        )
