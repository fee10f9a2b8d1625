"""
railgraph - run-time orchestration for multi-agent DAGs.

A graph of ``turn`` (LLM or human/web), ``transform`` and ``gate`` nodes is
executed by a bounded-concurrency scheduler. Human-in-the-loop turns wait on
a single-flight provider queue, runs can be paused, resumed and cancelled,
and every accepted output is kept as an evidence envelope that downstream
synthesis nodes read together with a conflict ledger.

Usage:
    from railgraph import Graph, RunOrchestrator

    orchestrator = RunOrchestrator(registry=registry, store=store)
    run_id = await orchestrator.start(graph, "What changed in Q3?")
    record = await orchestrator.wait(run_id)
"""

from railgraph.config import RuntimeConfig
from railgraph.errors import (
    GraphValidationError,
    RailgraphError,
    RunNotFoundError,
    SchemaValidationError,
)
from railgraph.runtime.event_bus import EventBus, EventType, RunEvent
from railgraph.runtime.orchestrator import RunOrchestrator
from railgraph.schemas.graph import Graph, GraphEdge, GraphNode, NodeType
from railgraph.schemas.run import NodeStatus, RunRecord, RunStatus

__all__ = [
    "EventBus",
    "EventType",
    "Graph",
    "GraphEdge",
    "GraphNode",
    "GraphValidationError",
    "NodeStatus",
    "NodeType",
    "RailgraphError",
    "RunEvent",
    "RunNotFoundError",
    "RunOrchestrator",
    "RunRecord",
    "RunStatus",
    "RuntimeConfig",
    "SchemaValidationError",
]
