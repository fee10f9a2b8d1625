"""
Run Schema - per-node state and the persisted audit trail of one run.

A RunRecord is created when a run starts, appended to while it executes,
and saved once when it finishes. Node state lives in NodeRunState and is
only mutated by the orchestrator.
"""

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field, computed_field

from railgraph.schemas.approval import ApprovalQueueSummary, ApprovalRequest
from railgraph.schemas.evidence import ConflictEntry, EvidenceEnvelope, NodeResponsibilityMemory
from railgraph.schemas.graph import Graph


def utc_now() -> datetime:
    return datetime.now(UTC)


class RunStatus(StrEnum):
    """Lifecycle of a run."""

    IDLE = "idle"
    STARTING = "starting"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED)


class NodeStatus(StrEnum):
    """Lifecycle of one node within a run."""

    IDLE = "idle"
    QUEUED = "queued"
    RUNNING = "running"
    WAITING_USER = "waiting_user"
    DONE = "done"
    LOW_QUALITY = "low_quality"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_NODE_STATUSES


TERMINAL_NODE_STATUSES = frozenset(
    {
        NodeStatus.DONE,
        NodeStatus.LOW_QUALITY,
        NodeStatus.FAILED,
        NodeStatus.SKIPPED,
        NodeStatus.CANCELLED,
    }
)


class UsageStats(BaseModel):
    """Token usage, summed across retries."""

    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0

    def __add__(self, other: "UsageStats | None") -> "UsageStats":
        if other is None:
            return self
        return UsageStats(
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
            total_tokens=self.total_tokens + other.total_tokens,
        )


class QualityCheck(BaseModel):
    id: str
    label: str
    kind: str
    required: bool
    passed: bool
    score_delta: int = 0
    detail: str | None = None


class QualityReport(BaseModel):
    """Rubric result for one node output."""

    profile: str
    threshold: int
    score: int
    decision: str  # PASS or REJECT
    checks: list[QualityCheck] = Field(default_factory=list)
    failures: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)

    @property
    def passed(self) -> bool:
        return self.decision == "PASS"


class NodeRunState(BaseModel):
    """State of one node during one run."""

    node_id: str
    status: NodeStatus = NodeStatus.IDLE
    logs: list[str] = Field(default_factory=list)
    output: Any = None
    error: str | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None
    duration_ms: int | None = None
    usage: UsageStats = Field(default_factory=UsageStats)
    quality: QualityReport | None = None

    def add_log(self, message: str, limit: int) -> None:
        self.logs.append(message)
        if len(self.logs) > limit:
            del self.logs[: len(self.logs) - limit]

    @property
    def last_log(self) -> str | None:
        return self.logs[-1] if self.logs else None


class RunTransition(BaseModel):
    at: datetime = Field(default_factory=utc_now)
    node_id: str
    status: NodeStatus
    message: str | None = None


class ProviderTraceEntry(BaseModel):
    node_id: str
    executor: str
    provider: str
    status: str
    started_at: datetime
    finished_at: datetime | None = None
    summary: str = ""


class Problem(BaseModel):
    """A problem surfaced during the run (failed node, skipped cascade, ...)."""

    node_id: str | None = None
    severity: str = Field(description="critical, warning, or minor")
    description: str
    timestamp: datetime = Field(default_factory=utc_now)

    model_config = {"extra": "allow"}


class NodeMetric(BaseModel):
    node_id: str
    profile: str
    score: int
    decision: str
    threshold: int
    failed_checks: int
    generated_at: datetime = Field(default_factory=utc_now)


class QualitySummary(BaseModel):
    avg_score: float = 0.0
    pass_rate: float = 0.0
    total_nodes: int = 0
    pass_nodes: int = 0


class RunRecord(BaseModel):
    """The audit trail of one run. Persisted once, never rewritten."""

    run_id: str
    question: str
    status: RunStatus = RunStatus.STARTING
    started_at: datetime = Field(default_factory=utc_now)
    finished_at: datetime | None = None
    graph: Graph
    multi_agent_mode: str = "off"

    transitions: list[RunTransition] = Field(default_factory=list)
    summary_logs: list[str] = Field(default_factory=list)
    node_logs: dict[str, list[str]] = Field(default_factory=dict)
    node_states: dict[str, NodeRunState] = Field(default_factory=dict)
    provider_trace: list[ProviderTraceEntry] = Field(default_factory=list)
    problems: list[Problem] = Field(default_factory=list)

    evidence_by_node: dict[str, list[EvidenceEnvelope]] = Field(default_factory=dict)
    run_memory: dict[str, NodeResponsibilityMemory] = Field(default_factory=dict)
    conflict_ledger: list[ConflictEntry] = Field(default_factory=list)
    final_confidence: float | None = None

    node_metrics: dict[str, NodeMetric] = Field(default_factory=dict)
    quality_summary: QualitySummary = Field(default_factory=QualitySummary)
    approval_snapshot: list[ApprovalRequest] = Field(default_factory=list)
    approval_summary: ApprovalQueueSummary | None = None

    final_node_id: str | None = None
    final_answer: str | None = None
    final_output: Any = None
    error: str | None = None

    model_config = {"extra": "allow"}

    @computed_field
    @property
    def duration_ms(self) -> int | None:
        if self.finished_at is None:
            return None
        return int((self.finished_at - self.started_at).total_seconds() * 1000)

    @property
    def total_usage(self) -> UsageStats:
        total = UsageStats()
        for state in self.node_states.values():
            total = total + state.usage
        return total
