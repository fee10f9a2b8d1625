"""Schema definitions for graphs, runs, evidence, approvals and batch schedules."""

from railgraph.schemas.approval import (
    ApprovalActionType,
    ApprovalDecision,
    ApprovalRequest,
    ApprovalStatus,
    GateDecision,
)
from railgraph.schemas.batch import BatchRunResult, BatchSchedule, BatchTrigger
from railgraph.schemas.evidence import ConflictEntry, EvidenceEnvelope, NodeResponsibilityMemory
from railgraph.schemas.graph import (
    ExecutorKind,
    Graph,
    GraphEdge,
    GraphNode,
    NodeType,
    TurnConfig,
)
from railgraph.schemas.run import (
    NodeRunState,
    NodeStatus,
    QualityReport,
    RunRecord,
    RunStatus,
    UsageStats,
)

__all__ = [
    "ApprovalActionType",
    "ApprovalDecision",
    "ApprovalRequest",
    "ApprovalStatus",
    "BatchRunResult",
    "BatchSchedule",
    "BatchTrigger",
    "ConflictEntry",
    "EvidenceEnvelope",
    "ExecutorKind",
    "GateDecision",
    "Graph",
    "GraphEdge",
    "GraphNode",
    "NodeResponsibilityMemory",
    "NodeRunState",
    "NodeStatus",
    "NodeType",
    "QualityReport",
    "RunRecord",
    "RunStatus",
    "TurnConfig",
    "UsageStats",
]
