"""
Command-line interface for railgraph.

Usage:
    railgraph validate graph.json
    railgraph run graph.json --question "Compare the vendors" [--mode balanced] [--interactive]
    railgraph runs list
    railgraph runs show run_20260101_120000_ab12cd34
    railgraph batch plan schedules.json [--now 2026-01-01T09:00:00+00:00] [--active pipeline-a]
    railgraph serve [--host 127.0.0.1] [--port 8765] [--schedules schedules.json]
"""

import argparse
import asyncio
import json
import logging
import sys
from datetime import UTC, datetime
from pathlib import Path

from pydantic import ValidationError

from railgraph.batch import BatchOutcome, BatchRunner, plan_batch_runs
from railgraph.config import MultiAgentMode, RuntimeConfig
from railgraph.errors import GraphValidationError
from railgraph.observability import configure_logging
from railgraph.runtime.event_bus import EventBus, EventType, RunEvent
from railgraph.runtime.orchestrator import RunOrchestrator
from railgraph.schemas.approval import ApprovalDecision
from railgraph.schemas.batch import BatchSchedule, BatchTrigger
from railgraph.schemas.graph import Graph
from railgraph.storage import FileRunStore

logger = logging.getLogger(__name__)


def _load_json(path: str) -> object:
    with open(path, encoding="utf-8") as f:
        return json.load(f)


def _load_graph(path: str) -> Graph:
    return Graph.model_validate(_load_json(path))


def _print_json(payload: object) -> None:
    print(json.dumps(payload, indent=2, ensure_ascii=False, default=str))


def _runtime_config(args: argparse.Namespace) -> RuntimeConfig:
    config = RuntimeConfig()
    if getattr(args, "mode", None):
        config.multi_agent_mode = MultiAgentMode(args.mode)
    return config


# === validate ===


def cmd_validate(args: argparse.Namespace) -> int:
    try:
        graph = _load_graph(args.graph)
    except (OSError, json.JSONDecodeError, ValidationError) as e:
        print(f"Could not load graph: {e}", file=sys.stderr)
        return 1
    errors = graph.validate_graph()
    if errors:
        for error in errors:
            print(f"  - {error}")
        return 1
    print(f"Graph OK: {len(graph.nodes)} node(s), {len(graph.edges)} edge(s)")
    return 0


# === run ===


async def _prompt(text: str) -> str:
    return await asyncio.to_thread(input, text)


def _attach_interactive(orchestrator: RunOrchestrator, run_id: str) -> None:
    """Answer human-input and approval requests from stdin."""

    async def on_human(event: RunEvent) -> None:
        queue = orchestrator.get_human_queue(run_id)
        ticket = queue.pending
        if ticket is None:
            return
        print(f"\n--- {ticket.turn.provider} response needed for node {ticket.turn.node_id} ---")
        print(ticket.turn.prompt)
        while True:
            text = await _prompt("Paste the response (empty line to reject): ")
            if not text.strip():
                orchestrator.reject_human_response(run_id, "rejected by user", ticket.ticket_id)
                return
            result = orchestrator.submit_human_response(run_id, text, ticket.ticket_id)
            if result.ok:
                return
            print(f"Invalid response: {result.error}")

    async def on_approval(event: RunEvent) -> None:
        request = event.data
        print(f"\n--- approval needed for node {event.node_id} ---")
        print(request.get("preview", ""))
        answer = (await _prompt("Approve? [y/N]: ")).strip().lower()
        decision = ApprovalDecision.ACCEPT if answer in ("y", "yes") else ApprovalDecision.DECLINE
        orchestrator.decide_approval(run_id, request["request_id"], decision)

    orchestrator.event_bus.subscribe([EventType.HUMAN_INPUT_REQUESTED], on_human, filter_run=run_id)
    orchestrator.event_bus.subscribe([EventType.APPROVAL_REQUESTED], on_approval, filter_run=run_id)


async def _run_graph(args: argparse.Namespace) -> int:
    config = _runtime_config(args)
    orchestrator = RunOrchestrator(
        store=FileRunStore(config.storage_path), config=config, event_bus=EventBus()
    )
    graph = _load_graph(args.graph)
    run_id = await orchestrator.start(graph, args.question)
    if args.interactive:
        _attach_interactive(orchestrator, run_id)
    print(f"Started {run_id}")

    record = await orchestrator.wait(run_id)
    _print_json(
        {
            "run_id": record.run_id,
            "status": record.status,
            "final_node_id": record.final_node_id,
            "final_answer": record.final_answer,
            "final_confidence": record.final_confidence,
            "error": record.error,
            "problems": [p.model_dump(mode="json") for p in record.problems],
        }
    )
    return 0 if record.status == "completed" else 1


def cmd_run(args: argparse.Namespace) -> int:
    try:
        return asyncio.run(_run_graph(args))
    except GraphValidationError as e:
        print(str(e), file=sys.stderr)
        return 1
    except (OSError, json.JSONDecodeError, ValidationError) as e:
        print(f"Could not load graph: {e}", file=sys.stderr)
        return 1


# === runs ===


def cmd_runs_list(args: argparse.Namespace) -> int:
    store = FileRunStore(RuntimeConfig().storage_path)
    run_ids = asyncio.run(store.list_runs())
    if not run_ids:
        print("No runs recorded")
        return 0
    for run_id in run_ids:
        print(run_id)
    return 0


def cmd_runs_show(args: argparse.Namespace) -> int:
    store = FileRunStore(RuntimeConfig().storage_path)
    try:
        record = asyncio.run(store.load_run(args.run_id))
    except ValueError as e:
        print(str(e), file=sys.stderr)
        return 1
    if record is None:
        print(f"Run not found: {args.run_id}", file=sys.stderr)
        return 1
    _print_json(record.model_dump(mode="json"))
    return 0


# === batch ===


def _load_schedules(path: str) -> list[BatchSchedule]:
    raw = _load_json(path)
    rows = raw.get("schedules", []) if isinstance(raw, dict) else raw
    return [BatchSchedule.model_validate(row) for row in rows]


def cmd_batch_plan(args: argparse.Namespace) -> int:
    now = datetime.fromisoformat(args.now) if args.now else datetime.now(UTC)
    plan = plan_batch_runs(_load_schedules(args.schedules), set(args.active or []), now=now)
    _print_json(plan.model_dump(mode="json"))
    return 0


# === serve ===


def _schedule_callback(orchestrator: RunOrchestrator):
    """Each schedule names its graph file in ``graph_path`` and its question in ``query``."""

    async def run_schedule(schedule: BatchSchedule, trigger: BatchTrigger) -> BatchOutcome:
        graph_path = getattr(schedule, "graph_path", None)
        if not graph_path:
            return BatchOutcome(ok=False, reason="schedule has no graph_path")
        graph = _load_graph(graph_path)
        run_id = await orchestrator.start(graph, schedule.query or schedule.label)
        record = await orchestrator.wait(run_id)
        return BatchOutcome(ok=record.status == "completed", reason=record.error, run_id=run_id)

    return run_schedule


async def _serve(args: argparse.Namespace) -> int:
    from railgraph.runtime.control_server import ControlServer, ControlServerConfig

    config = _runtime_config(args)
    orchestrator = RunOrchestrator(store=FileRunStore(config.storage_path), config=config)
    server = ControlServer(orchestrator, ControlServerConfig(host=args.host, port=args.port))
    batch: BatchRunner | None = None

    await server.start()
    if args.schedules:
        batch = BatchRunner(
            _schedule_callback(orchestrator),
            schedules_path=Path(args.schedules),
            provider_available=orchestrator.registry.provider_available,
        )
        await batch.start()
    print(f"Serving on http://{args.host}:{server.port} (Ctrl+C to stop)")
    try:
        await asyncio.Event().wait()
    finally:
        if batch is not None:
            await batch.stop()
        await server.stop()
    return 0


def cmd_serve(args: argparse.Namespace) -> int:
    try:
        return asyncio.run(_serve(args))
    except KeyboardInterrupt:
        return 0


# === parser ===


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="railgraph",
        description="railgraph - run multi-agent DAGs with human-in-the-loop steps",
    )
    parser.add_argument("--log-level", default="INFO", help="Log level (DEBUG, INFO, ...)")
    parser.add_argument(
        "--log-format", default="auto", choices=["auto", "json", "human"], help="Log line format"
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    validate = subparsers.add_parser("validate", help="Validate a graph file")
    validate.add_argument("graph", help="Path to graph JSON")
    validate.set_defaults(func=cmd_validate)

    run = subparsers.add_parser("run", help="Run a graph to completion")
    run.add_argument("graph", help="Path to graph JSON")
    run.add_argument("--question", "-q", required=True, help="Question fed to root nodes")
    run.add_argument(
        "--mode", choices=[m.value for m in MultiAgentMode], help="Multi-agent concurrency mode"
    )
    run.add_argument(
        "--interactive", action="store_true", help="Answer human-input and approval requests on stdin"
    )
    run.set_defaults(func=cmd_run)

    runs = subparsers.add_parser("runs", help="Inspect persisted runs")
    runs_sub = runs.add_subparsers(dest="runs_command", required=True)
    runs_list = runs_sub.add_parser("list", help="List run ids, newest first")
    runs_list.set_defaults(func=cmd_runs_list)
    runs_show = runs_sub.add_parser("show", help="Print a run record")
    runs_show.add_argument("run_id")
    runs_show.set_defaults(func=cmd_runs_show)

    batch = subparsers.add_parser("batch", help="Batch schedule tools")
    batch_sub = batch.add_subparsers(dest="batch_command", required=True)
    batch_plan = batch_sub.add_parser("plan", help="Show which schedules are due")
    batch_plan.add_argument("schedules", help="Path to schedules JSON")
    batch_plan.add_argument("--now", help="ISO timestamp to plan against (default: now)")
    batch_plan.add_argument(
        "--active", nargs="*", metavar="PIPELINE", help="Pipeline ids that are already running"
    )
    batch_plan.set_defaults(func=cmd_batch_plan)

    serve = subparsers.add_parser("serve", help="Start the HTTP control server")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8765)
    serve.add_argument("--mode", choices=[m.value for m in MultiAgentMode])
    serve.add_argument("--schedules", help="Schedules JSON to run with the batch runner")
    serve.set_defaults(func=cmd_serve)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(level=args.log_level, format=args.log_format)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
