"""Tests for EventBus subscription filtering, history and waiting."""

import asyncio

import pytest

from railgraph.runtime.event_bus import EventBus, EventType, RunEvent


class TestSubscriptions:
    @pytest.mark.asyncio
    async def test_type_and_run_filters(self):
        bus = EventBus()
        seen: list[str] = []

        async def handler(event: RunEvent) -> None:
            seen.append(f"{event.type}:{event.run_id}")

        bus.subscribe([EventType.RUN_STARTED], handler, filter_run="run_a")

        await bus.emit_run_status(EventType.RUN_STARTED, "run_a")
        await bus.emit_run_status(EventType.RUN_STARTED, "run_b")
        await bus.emit_run_status(EventType.RUN_COMPLETED, "run_a")

        assert seen == ["run_started:run_a"]

    @pytest.mark.asyncio
    async def test_node_filter(self):
        bus = EventBus()
        seen: list[str | None] = []

        async def handler(event: RunEvent) -> None:
            seen.append(event.data["status"])

        bus.subscribe([EventType.NODE_STATUS_CHANGED], handler, filter_node="b")
        await bus.emit_node_status("run_a", "a", "running")
        await bus.emit_node_status("run_a", "b", "done")

        assert seen == ["done"]

    @pytest.mark.asyncio
    async def test_handler_error_does_not_break_publish(self):
        bus = EventBus()
        seen: list[str] = []

        async def broken(event: RunEvent) -> None:
            raise RuntimeError("boom")

        async def healthy(event: RunEvent) -> None:
            seen.append(event.run_id)

        bus.subscribe([EventType.RUN_FAILED], broken)
        bus.subscribe([EventType.RUN_FAILED], healthy)
        await bus.emit_run_status(EventType.RUN_FAILED, "run_a")

        assert seen == ["run_a"]

    @pytest.mark.asyncio
    async def test_unsubscribe(self):
        bus = EventBus()
        seen: list[RunEvent] = []

        async def handler(event: RunEvent) -> None:
            seen.append(event)

        sub_id = bus.subscribe([EventType.RUN_PAUSED], handler)
        assert bus.unsubscribe(sub_id)
        assert not bus.unsubscribe(sub_id)

        await bus.emit_run_status(EventType.RUN_PAUSED, "run_a")
        assert seen == []


class TestHistory:
    @pytest.mark.asyncio
    async def test_history_is_capped_and_newest_first(self):
        bus = EventBus(max_history=3)
        for i in range(5):
            await bus.emit_node_status("run_a", "a", "running", f"line {i}")

        history = bus.get_history()
        assert [e.data["message"] for e in history] == ["line 4", "line 3", "line 2"]

    @pytest.mark.asyncio
    async def test_stats(self):
        bus = EventBus()
        await bus.emit_run_status(EventType.RUN_STARTED, "run_a")
        await bus.emit_node_status("run_a", "a", "done", "hi")

        stats = bus.get_stats()
        assert stats["total_events"] == 2
        assert stats["events_by_type"] == {"run_started": 1, "node_status_changed": 1}

    def test_event_to_dict(self):
        event = RunEvent(
            type=EventType.NODE_STATUS_CHANGED, run_id="run_a", node_id="a", data={"status": "done"}
        )
        payload = event.to_dict()
        assert payload["type"] == "node_status_changed"
        assert payload["node_id"] == "a"


class TestWaitFor:
    @pytest.mark.asyncio
    async def test_returns_matching_event(self):
        bus = EventBus()
        waiter = asyncio.create_task(bus.wait_for(EventType.RUN_COMPLETED, run_id="run_a", timeout=1))
        await asyncio.sleep(0)

        await bus.emit_run_status(EventType.RUN_COMPLETED, "run_b")
        await bus.emit_run_status(EventType.RUN_COMPLETED, "run_a")

        event = await waiter
        assert event is not None
        assert event.run_id == "run_a"
        assert bus.get_stats()["subscriptions"] == 0

    @pytest.mark.asyncio
    async def test_timeout_returns_none(self):
        assert await EventBus().wait_for(EventType.RUN_COMPLETED, timeout=0.01) is None
