"""Batch trigger planning.

``plan_batch_runs`` is pure: it decides which schedules are due at ``now``
and returns one result row per decision. The caller starts the due
schedules and records ``last_triggered_at`` on them.
"""

from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import UTC, datetime

from railgraph.schemas.batch import (
    BatchPlan,
    BatchRunResult,
    BatchRunStatus,
    BatchSchedule,
    BatchTrigger,
    ScheduleStatus,
)

REASON_DISABLED = "schedule disabled"
REASON_ALREADY_TRIGGERED = "already triggered on this tick"
REASON_OVERLAP = "overlap skip"
REASON_PROVIDER_UNAVAILABLE = "provider unavailable"


@dataclass(frozen=True)
class CronSpec:
    """``minute hour`` with ``*`` wildcards, evaluated in UTC."""

    minute: int | None
    hour: int | None

    def is_due(self, now: datetime) -> bool:
        now = _as_utc(now)
        return (self.hour is None or self.hour == now.hour) and (
            self.minute is None or self.minute == now.minute
        )


def parse_cron(cron: str) -> CronSpec | None:
    """Parse a minimal cron expression. Returns None when it is malformed."""
    parts = str(cron).split()
    if len(parts) < 2:
        return None

    def field(raw: str, upper: int) -> int | None | bool:
        if raw == "*":
            return None
        if not raw.isdigit():
            return False
        value = int(raw)
        return value if 0 <= value <= upper else False

    minute = field(parts[0], 59)
    hour = field(parts[1], 23)
    if minute is False or hour is False:
        return None
    return CronSpec(minute=minute, hour=hour)


def is_cron_due(cron: str, now: datetime) -> bool:
    schedule_cron = parse_cron(cron)
    return schedule_cron is not None and schedule_cron.is_due(now)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def minute_key(value: datetime) -> str:
    return _as_utc(value).strftime("%Y-%m-%dT%H:%M")


def plan_batch_runs(
    schedules: Iterable[BatchSchedule],
    active_pipeline_ids: set[str],
    now: datetime,
    trigger: BatchTrigger = BatchTrigger.SCHEDULE,
    provider_available: Callable[[str], bool] | None = None,
) -> BatchPlan:
    """Decide which schedules should start a run at ``now``."""
    now = _as_utc(now)
    now_iso = now.isoformat()
    plan = BatchPlan()

    def result(schedule: BatchSchedule, suffix: str, status: BatchRunStatus, reason: str | None):
        return BatchRunResult(
            id=f"{schedule.id}:{now_iso}:{suffix}",
            schedule_id=schedule.id,
            pipeline_id=schedule.pipeline_id,
            trigger=trigger,
            started_at=now,
            finished_at=None if status == BatchRunStatus.QUEUED else now,
            status=status,
            reason=reason,
            provider=schedule.provider,
        )

    for schedule in schedules:
        if schedule.status != ScheduleStatus.ENABLED:
            plan.results.append(
                result(schedule, "disabled", BatchRunStatus.SKIPPED, REASON_DISABLED)
            )
            continue

        if not is_cron_due(schedule.cron, now):
            continue

        if schedule.last_triggered_at and minute_key(schedule.last_triggered_at) == minute_key(now):
            plan.results.append(
                result(
                    schedule, "already-triggered", BatchRunStatus.SKIPPED, REASON_ALREADY_TRIGGERED
                )
            )
            continue

        if schedule.pipeline_id in active_pipeline_ids:
            plan.results.append(result(schedule, "overlap", BatchRunStatus.SKIPPED, REASON_OVERLAP))
            continue

        if provider_available is not None and not provider_available(schedule.provider):
            plan.results.append(
                result(
                    schedule, "provider-failed", BatchRunStatus.FAILED, REASON_PROVIDER_UNAVAILABLE
                )
            )
            continue

        plan.due_schedules.append(schedule)
        plan.results.append(result(schedule, "queued", BatchRunStatus.QUEUED, None))

    return plan
