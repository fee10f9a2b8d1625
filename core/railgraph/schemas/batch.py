"""Recurring batch schedules and the results of planning them."""

from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel, Field


class ScheduleStatus(StrEnum):
    ENABLED = "enabled"
    DISABLED = "disabled"


class BatchTrigger(StrEnum):
    SCHEDULE = "schedule"
    USER_EVENT = "user_event"
    MANUAL = "manual"


class BatchRunStatus(StrEnum):
    QUEUED = "queued"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"
    SKIPPED = "skipped"


class BatchSchedule(BaseModel):
    """A cron-like recurring run. ``pipeline_id`` is the overlap-exclusion key."""

    id: str
    pipeline_id: str
    label: str = ""
    status: ScheduleStatus = ScheduleStatus.ENABLED
    provider: str = "llm"
    query: str = ""
    cron: str = "* *"
    last_triggered_at: datetime | None = None

    model_config = {"extra": "allow"}


class BatchRunResult(BaseModel):
    id: str
    schedule_id: str
    pipeline_id: str
    trigger: BatchTrigger
    started_at: datetime
    finished_at: datetime | None = None
    status: BatchRunStatus
    reason: str | None = None
    provider: str
    run_id: str | None = None


class BatchPlan(BaseModel):
    """Output of ``plan_batch_runs``: the schedules to start and a result row per decision."""

    due_schedules: list[BatchSchedule] = Field(default_factory=list)
    results: list[BatchRunResult] = Field(default_factory=list)
