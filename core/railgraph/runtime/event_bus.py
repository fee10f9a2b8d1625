"""
Event Bus - pub/sub for run and node state changes.

The orchestrator publishes every run transition, node status change and
human-input request here. Presentation layers (CLI, control server, tests)
subscribe instead of reaching into run state.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

logger = logging.getLogger(__name__)


class EventType(StrEnum):
    """Types of events that can be published."""

    # Run lifecycle
    RUN_STARTED = "run_started"
    RUN_PAUSED = "run_paused"
    RUN_RESUMED = "run_resumed"
    RUN_COMPLETED = "run_completed"
    RUN_FAILED = "run_failed"
    RUN_CANCELLED = "run_cancelled"

    # Node lifecycle
    NODE_STATUS_CHANGED = "node_status_changed"

    # Waiting on a person
    HUMAN_INPUT_REQUESTED = "human_input_requested"
    APPROVAL_REQUESTED = "approval_requested"


@dataclass
class RunEvent:
    """An event emitted while a run executes."""

    type: EventType
    run_id: str
    node_id: str | None = None
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict:
        return {
            "type": self.type.value,
            "run_id": self.run_id,
            "node_id": self.node_id,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
        }


EventHandler = Callable[[RunEvent], Awaitable[None]]


@dataclass
class Subscription:
    id: str
    event_types: set[EventType]
    handler: EventHandler
    filter_run: str | None = None
    filter_node: str | None = None


class EventBus:
    """
    Async pub/sub bus with type and run/node filtering.

    Example:
        bus = EventBus()

        async def on_done(event: RunEvent):
            print(f"Run {event.run_id} completed")

        bus.subscribe([EventType.RUN_COMPLETED], on_done)
    """

    def __init__(self, max_history: int = 1000, max_concurrent_handlers: int = 10):
        self._subscriptions: dict[str, Subscription] = {}
        self._event_history: list[RunEvent] = []
        self._max_history = max_history
        self._semaphore = asyncio.Semaphore(max_concurrent_handlers)
        self._subscription_counter = 0

    def subscribe(
        self,
        event_types: list[EventType],
        handler: EventHandler,
        filter_run: str | None = None,
        filter_node: str | None = None,
    ) -> str:
        """Register ``handler`` and return the subscription id."""
        self._subscription_counter += 1
        sub_id = f"sub_{self._subscription_counter}"
        self._subscriptions[sub_id] = Subscription(
            id=sub_id,
            event_types=set(event_types),
            handler=handler,
            filter_run=filter_run,
            filter_node=filter_node,
        )
        logger.debug(f"Subscription {sub_id} registered for {event_types}")
        return sub_id

    def unsubscribe(self, subscription_id: str) -> bool:
        return self._subscriptions.pop(subscription_id, None) is not None

    async def publish(self, event: RunEvent) -> None:
        self._event_history.append(event)
        if len(self._event_history) > self._max_history:
            self._event_history = self._event_history[-self._max_history :]

        handlers = [s.handler for s in self._subscriptions.values() if self._matches(s, event)]
        if handlers:
            await self._execute_handlers(event, handlers)

    def _matches(self, subscription: Subscription, event: RunEvent) -> bool:
        if event.type not in subscription.event_types:
            return False
        if subscription.filter_run and subscription.filter_run != event.run_id:
            return False
        if subscription.filter_node and subscription.filter_node != event.node_id:
            return False
        return True

    async def _execute_handlers(self, event: RunEvent, handlers: list[EventHandler]) -> None:
        async def run_handler(handler: EventHandler) -> None:
            async with self._semaphore:
                try:
                    await handler(event)
                except Exception as e:
                    logger.error(f"Handler error for {event.type}: {e}")

        await asyncio.gather(*[run_handler(h) for h in handlers], return_exceptions=True)

    # === CONVENIENCE PUBLISHERS ===

    async def emit_run_status(
        self, event_type: EventType, run_id: str, **data: Any
    ) -> None:
        await self.publish(RunEvent(type=event_type, run_id=run_id, data=data))

    async def emit_node_status(
        self,
        run_id: str,
        node_id: str,
        status: str,
        message: str | None = None,
    ) -> None:
        await self.publish(
            RunEvent(
                type=EventType.NODE_STATUS_CHANGED,
                run_id=run_id,
                node_id=node_id,
                data={"status": status, "message": message},
            )
        )

    async def emit_human_input_requested(
        self, run_id: str, node_id: str, ticket: dict[str, Any]
    ) -> None:
        await self.publish(
            RunEvent(
                type=EventType.HUMAN_INPUT_REQUESTED, run_id=run_id, node_id=node_id, data=ticket
            )
        )

    async def emit_approval_requested(
        self, run_id: str, node_id: str, request: dict[str, Any]
    ) -> None:
        await self.publish(
            RunEvent(
                type=EventType.APPROVAL_REQUESTED, run_id=run_id, node_id=node_id, data=request
            )
        )

    # === QUERY OPERATIONS ===

    def get_history(
        self,
        event_type: EventType | None = None,
        run_id: str | None = None,
        limit: int = 100,
    ) -> list[RunEvent]:
        """Matching events, most recent first."""
        events = self._event_history[::-1]
        if event_type:
            events = [e for e in events if e.type == event_type]
        if run_id:
            events = [e for e in events if e.run_id == run_id]
        return events[:limit]

    def get_stats(self) -> dict:
        type_counts: dict[str, int] = {}
        for event in self._event_history:
            type_counts[event.type.value] = type_counts.get(event.type.value, 0) + 1
        return {
            "total_events": len(self._event_history),
            "subscriptions": len(self._subscriptions),
            "events_by_type": type_counts,
        }

    # === WAITING OPERATIONS ===

    async def wait_for(
        self,
        event_type: EventType,
        run_id: str | None = None,
        node_id: str | None = None,
        timeout: float | None = None,
    ) -> RunEvent | None:
        """Wait for the next matching event. Returns None on timeout."""
        result: RunEvent | None = None
        received = asyncio.Event()

        async def handler(event: RunEvent) -> None:
            nonlocal result
            result = event
            received.set()

        sub_id = self.subscribe([event_type], handler, filter_run=run_id, filter_node=node_id)
        try:
            if timeout:
                try:
                    await asyncio.wait_for(received.wait(), timeout=timeout)
                except TimeoutError:
                    return None
            else:
                await received.wait()
            return result
        finally:
            self.unsubscribe(sub_id)
