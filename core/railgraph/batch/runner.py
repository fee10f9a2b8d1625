"""
Batch Runner - periodically starts due schedules.

Wraps the pure planner with the side effects: a tick loop, the set of
active pipelines, the run history and ``last_triggered_at`` bookkeeping.
Schedules can be persisted to a JSON file between processes.
"""

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from railgraph.batch.planner import plan_batch_runs
from railgraph.schemas.batch import (
    BatchRunResult,
    BatchRunStatus,
    BatchSchedule,
    BatchTrigger,
)
from railgraph.utils.io import atomic_write

logger = logging.getLogger(__name__)

DEFAULT_TICK_SECONDS = 30.0
HISTORY_LIMIT = 200


@dataclass
class BatchOutcome:
    """What the schedule callback reports back after running a pipeline."""

    ok: bool
    reason: str | None = None
    run_id: str | None = None


RunScheduleFn = Callable[[BatchSchedule, BatchTrigger], Awaitable[BatchOutcome]]


class BatchRunner:
    """
    Executes due batch schedules one after another.

    Lifecycle:
        runner = BatchRunner(run_schedule, schedules_path=path)
        await runner.start()   # ticks every 30s
        runner.trigger_by_user_event()
        await runner.stop()
    """

    def __init__(
        self,
        run_schedule: RunScheduleFn,
        schedules: list[BatchSchedule] | None = None,
        schedules_path: Path | None = None,
        provider_available: Callable[[str], bool] | None = None,
        tick_seconds: float = DEFAULT_TICK_SECONDS,
        clock: Callable[[], datetime] | None = None,
    ):
        self._run_schedule = run_schedule
        self._schedules_path = Path(schedules_path) if schedules_path else None
        self._provider_available = provider_available
        self._tick_seconds = tick_seconds
        self._clock = clock or (lambda: datetime.now(UTC))

        self._schedules: dict[str, BatchSchedule] = {}
        for schedule in schedules if schedules is not None else self._load():
            self._schedules[schedule.id] = schedule

        self._active_pipeline_ids: set[str] = set()
        self._history: list[BatchRunResult] = []
        self._tick_lock = asyncio.Lock()
        self._task: asyncio.Task | None = None
        self._user_tasks: set[asyncio.Task] = set()

    # === SCHEDULE MANAGEMENT ===

    @property
    def schedules(self) -> list[BatchSchedule]:
        return list(self._schedules.values())

    @property
    def history(self) -> list[BatchRunResult]:
        return list(self._history)

    @property
    def active_pipeline_ids(self) -> set[str]:
        return set(self._active_pipeline_ids)

    def upsert_schedule(self, schedule: BatchSchedule) -> None:
        self._schedules[schedule.id] = schedule
        self._save()

    def remove_schedule(self, schedule_id: str) -> bool:
        removed = self._schedules.pop(schedule_id, None) is not None
        if removed:
            self._save()
        return removed

    def _load(self) -> list[BatchSchedule]:
        if self._schedules_path is None or not self._schedules_path.exists():
            return []
        try:
            rows = json.loads(self._schedules_path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError) as e:
            logger.warning(f"Could not read batch schedules from {self._schedules_path}: {e}")
            return []
        if not isinstance(rows, list):
            return []
        return [BatchSchedule.model_validate(row) for row in rows]

    def _save(self) -> None:
        if self._schedules_path is None:
            return
        self._schedules_path.parent.mkdir(parents=True, exist_ok=True)
        payload = [s.model_dump(mode="json") for s in self._schedules.values()]
        with atomic_write(self._schedules_path) as f:
            f.write(json.dumps(payload, indent=2))

    def _append_history(self, entries: list[BatchRunResult]) -> None:
        if not entries:
            return
        self._history = [*self._history, *entries][-HISTORY_LIMIT:]

    # === EXECUTION ===

    async def execute_due(
        self, trigger: BatchTrigger = BatchTrigger.SCHEDULE
    ) -> list[BatchRunResult]:
        """Plan against the current clock and run every due schedule in order."""
        async with self._tick_lock:
            plan = plan_batch_runs(
                self.schedules,
                self._active_pipeline_ids,
                now=self._clock(),
                trigger=trigger,
                provider_available=self._provider_available,
            )
            self._append_history([r for r in plan.results if r.status != BatchRunStatus.QUEUED])

            finished: list[BatchRunResult] = []
            for schedule in plan.due_schedules:
                finished.append(await self._run_one(schedule, trigger))
            return finished

    async def _run_one(self, schedule: BatchSchedule, trigger: BatchTrigger) -> BatchRunResult:
        started_at = self._clock()
        self._active_pipeline_ids.add(schedule.pipeline_id)
        logger.info(f"Batch schedule '{schedule.label or schedule.id}' started ({trigger})")
        try:
            try:
                outcome = await self._run_schedule(schedule, trigger)
            except Exception as e:
                logger.exception(f"Batch schedule '{schedule.id}' raised")
                outcome = BatchOutcome(ok=False, reason=str(e))

            finished_at = self._clock()
            result = BatchRunResult(
                id=f"{schedule.id}:{started_at.isoformat()}:result",
                schedule_id=schedule.id,
                pipeline_id=schedule.pipeline_id,
                trigger=trigger,
                started_at=started_at,
                finished_at=finished_at,
                status=BatchRunStatus.DONE if outcome.ok else BatchRunStatus.FAILED,
                reason=outcome.reason,
                provider=schedule.provider,
                run_id=outcome.run_id,
            )
            self._append_history([result])

            current = self._schedules.get(schedule.id)
            if current is not None:
                self._schedules[schedule.id] = current.model_copy(
                    update={"last_triggered_at": finished_at}
                )
                self._save()

            if outcome.ok:
                logger.info(f"Batch schedule '{schedule.label or schedule.id}' done")
            else:
                logger.warning(
                    f"Batch schedule '{schedule.label or schedule.id}' failed: {outcome.reason}"
                )
            return result
        finally:
            self._active_pipeline_ids.discard(schedule.pipeline_id)

    def trigger_by_user_event(self) -> asyncio.Task:
        """Evaluate schedules now, outside the regular tick."""
        task = asyncio.create_task(self.execute_due(BatchTrigger.USER_EVENT))
        self._user_tasks.add(task)
        task.add_done_callback(self._user_tasks.discard)
        return task

    # === LIFECYCLE ===

    async def start(self) -> None:
        if self._task is not None:
            return
        self._task = asyncio.create_task(self._loop())
        logger.info(f"Batch runner started with {len(self._schedules)} schedule(s)")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Batch runner stopped")

    @property
    def is_running(self) -> bool:
        return self._task is not None

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self._tick_seconds)
            try:
                await self.execute_due(BatchTrigger.SCHEDULE)
            except Exception:
                logger.exception("Batch tick failed")
