"""Recurring batch runs: a pure planner plus a ticking runner."""

from railgraph.batch.planner import parse_cron, plan_batch_runs
from railgraph.batch.runner import BatchOutcome, BatchRunner

__all__ = ["BatchOutcome", "BatchRunner", "parse_cron", "plan_batch_runs"]
