"""Tests for batch planning and the BatchRunner."""

import asyncio
import json
from datetime import UTC, datetime

import pytest

from railgraph.batch import BatchOutcome, BatchRunner, parse_cron, plan_batch_runs
from railgraph.batch.planner import (
    REASON_ALREADY_TRIGGERED,
    REASON_DISABLED,
    REASON_OVERLAP,
    REASON_PROVIDER_UNAVAILABLE,
)
from railgraph.schemas.batch import BatchRunStatus, BatchSchedule, BatchTrigger

NOW = datetime(2026, 3, 2, 9, 30, tzinfo=UTC)


def _schedule(schedule_id="s1", pipeline_id="p1", cron="30 9", **extra) -> BatchSchedule:
    return BatchSchedule(id=schedule_id, pipeline_id=pipeline_id, cron=cron, **extra)


class TestCron:
    @pytest.mark.parametrize(
        "cron,due",
        [("30 9", True), ("* 9", True), ("* *", True), ("31 9", False), ("30 10", False)],
    )
    def test_is_due(self, cron, due):
        cron_spec = parse_cron(cron)
        assert cron_spec is not None
        assert cron_spec.is_due(NOW) is due

    @pytest.mark.parametrize("cron", ["", "30", "61 9", "30 24", "a b"])
    def test_malformed(self, cron):
        assert parse_cron(cron) is None


class TestPlanBatchRuns:
    """The planner is pure: same inputs, same plan."""

    def test_due_schedule_is_queued(self):
        plan = plan_batch_runs([_schedule()], set(), NOW)

        assert [s.id for s in plan.due_schedules] == ["s1"]
        assert plan.results[0].status == BatchRunStatus.QUEUED
        assert plan.results[0].finished_at is None

    def test_not_due_produces_no_row(self):
        plan = plan_batch_runs([_schedule(cron="0 0")], set(), NOW)
        assert plan.due_schedules == []
        assert plan.results == []

    def test_disabled(self):
        plan = plan_batch_runs([_schedule(status="disabled")], set(), NOW)
        assert plan.results[0].reason == REASON_DISABLED
        assert plan.results[0].status == BatchRunStatus.SKIPPED

    def test_already_triggered_this_minute(self):
        schedule = _schedule(last_triggered_at=NOW.replace(second=5))
        plan = plan_batch_runs([schedule], set(), NOW)
        assert plan.results[0].reason == REASON_ALREADY_TRIGGERED

    def test_overlap_with_active_pipeline(self):
        plan = plan_batch_runs([_schedule()], {"p1"}, NOW)
        assert plan.results[0].reason == REASON_OVERLAP
        assert plan.due_schedules == []

    def test_provider_unavailable(self):
        plan = plan_batch_runs([_schedule()], set(), NOW, provider_available=lambda p: False)
        assert plan.results[0].status == BatchRunStatus.FAILED
        assert plan.results[0].reason == REASON_PROVIDER_UNAVAILABLE

    def test_idempotent(self):
        schedules = [_schedule(), _schedule("s2", "p2", status="disabled")]
        first = plan_batch_runs(schedules, set(), NOW)
        second = plan_batch_runs(schedules, set(), NOW)
        assert first == second


class TestBatchRunner:
    @pytest.mark.asyncio
    async def test_execute_due_runs_and_records(self, tmp_path):
        ran: list[str] = []

        async def run_schedule(schedule, trigger):
            ran.append(schedule.id)
            return BatchOutcome(ok=True, run_id="run_1")

        path = tmp_path / "schedules.json"
        runner = BatchRunner(run_schedule, schedules=[_schedule()], schedules_path=path, clock=lambda: NOW)

        results = await runner.execute_due()

        assert ran == ["s1"]
        assert results[0].status == BatchRunStatus.DONE
        assert results[0].run_id == "run_1"
        assert runner.schedules[0].last_triggered_at == NOW
        assert runner.active_pipeline_ids == set()
        assert json.loads(path.read_text())[0]["id"] == "s1"

        # Same minute again: skipped as already triggered.
        assert await runner.execute_due() == []
        assert runner.history[-1].reason == REASON_ALREADY_TRIGGERED

    @pytest.mark.asyncio
    async def test_failing_callback_is_recorded(self):
        async def run_schedule(schedule, trigger):
            raise RuntimeError("pipeline broke")

        runner = BatchRunner(run_schedule, schedules=[_schedule()], clock=lambda: NOW)
        results = await runner.execute_due()

        assert results[0].status == BatchRunStatus.FAILED
        assert results[0].reason == "pipeline broke"

    @pytest.mark.asyncio
    async def test_active_pipeline_blocks_overlap(self):
        release = asyncio.Event()

        async def run_schedule(schedule, trigger):
            await release.wait()
            return BatchOutcome(ok=True)

        runner = BatchRunner(
            run_schedule,
            schedules=[_schedule("s1", "shared"), _schedule("s2", "shared")],
            clock=lambda: NOW,
        )
        task = asyncio.create_task(runner.execute_due())
        await asyncio.sleep(0.01)
        assert runner.active_pipeline_ids == {"shared"}
        release.set()
        results = await asyncio.wait_for(task, timeout=1)

        # Both were due at plan time and run one after another.
        assert [r.schedule_id for r in results] == ["s1", "s2"]

    @pytest.mark.asyncio
    async def test_user_event_trigger(self):
        triggers: list[BatchTrigger] = []

        async def run_schedule(schedule, trigger):
            triggers.append(trigger)
            return BatchOutcome(ok=True)

        runner = BatchRunner(run_schedule, schedules=[_schedule()], clock=lambda: NOW)
        await runner.trigger_by_user_event()

        assert triggers == [BatchTrigger.USER_EVENT]

    @pytest.mark.asyncio
    async def test_schedules_load_from_file(self, tmp_path):
        path = tmp_path / "schedules.json"
        path.write_text(json.dumps([_schedule().model_dump(mode="json")]))

        async def run_schedule(schedule, trigger):
            return BatchOutcome(ok=True)

        runner = BatchRunner(run_schedule, schedules_path=path)
        assert [s.id for s in runner.schedules] == ["s1"]

    @pytest.mark.asyncio
    async def test_start_stop(self):
        async def run_schedule(schedule, trigger):
            return BatchOutcome(ok=True)

        runner = BatchRunner(run_schedule, schedules=[], tick_seconds=0.01)
        await runner.start()
        assert runner.is_running
        await asyncio.sleep(0.03)
        await runner.stop()
        assert not runner.is_running

    @pytest.mark.asyncio
    async def test_history_is_capped(self):
        async def run_schedule(schedule, trigger):
            return BatchOutcome(ok=True)

        schedules = [_schedule(f"s{i}", f"p{i}", status="disabled") for i in range(250)]
        runner = BatchRunner(run_schedule, schedules=schedules, clock=lambda: NOW)
        await runner.execute_due()

        assert len(runner.history) == 200
