"""
Human-in-the-loop Provider Queue.

When a web provider turn cannot be collected automatically, a human has to
operate the chat UI and paste the answer back. Each such request is a
ProviderTicket that owns its resolver (an asyncio Future). The queue is
single-flight per run:

- ``pending``: the ticket currently shown to the user
- ``suspended``: a ticket the user closed without answering; its resolver
  is remembered so reopening it continues the same turn
- ``queue``: FIFO of tickets that arrived while another one was pending

Resolving a ticket detaches its resolver and promotes the next queued
ticket before the result is delivered, so no await can observe two
attached resolvers.
"""

import asyncio
import json
import logging
import uuid
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from railgraph.errors import PAUSE_ERROR_TOKEN
from railgraph.schemas.graph import WebResultMode
from railgraph.utils.values import extract_final_answer, stringify

logger = logging.getLogger(__name__)


class TicketState(StrEnum):
    QUEUED = "queued"
    PENDING = "pending"
    SUSPENDED = "suspended"
    RESOLVED = "resolved"


@dataclass
class HumanTurnResult:
    ok: bool
    output: Any = None
    error: str | None = None


@dataclass
class PendingProviderTurn:
    node_id: str
    provider: str
    prompt: str
    mode: WebResultMode = WebResultMode.MANUAL_PASTE_TEXT


@dataclass
class ProviderTicket:
    """One human-response request and its resolver slot."""

    turn: PendingProviderTurn
    ticket_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    state: TicketState = TicketState.QUEUED
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    _resolver: asyncio.Future | None = field(default=None, repr=False)
    _outcome: asyncio.Future | None = field(default=None, repr=False)

    @property
    def key(self) -> tuple[str, str]:
        return (self.turn.node_id, self.turn.provider)

    @property
    def has_resolver(self) -> bool:
        return self._resolver is not None and not self._resolver.done()

    def attach(self) -> asyncio.Future:
        self.abandon("human request re-attached")
        self._resolver = asyncio.get_running_loop().create_future()
        self._outcome = self._resolver
        return self._resolver

    def detach(self) -> asyncio.Future | None:
        resolver, self._resolver = self._resolver, None
        return resolver

    def abandon(self, reason: str) -> None:
        """Fail a waiter still parked on a detached resolver."""
        outcome = self._outcome
        if outcome is not None and not outcome.done() and outcome is not self._resolver:
            outcome.set_result(HumanTurnResult(ok=False, error=reason))

    async def wait(self) -> HumanTurnResult:
        if self._outcome is None:
            raise RuntimeError(f"ticket {self.ticket_id} has no resolver attached")
        return await self._outcome

    def to_dict(self) -> dict:
        return {
            "ticket_id": self.ticket_id,
            "node_id": self.turn.node_id,
            "provider": self.turn.provider,
            "prompt": self.turn.prompt,
            "mode": str(self.turn.mode),
            "state": str(self.state),
            "created_at": self.created_at.isoformat(),
        }


def normalize_web_evidence_output(provider: str, output: Any, mode: WebResultMode) -> dict:
    """Shape a web provider answer as ``{provider, timestamp, text, raw, meta}``."""
    row = output if isinstance(output, dict) else {"text": stringify(output)}
    timestamp = str(row.get("timestamp") or datetime.now(UTC).isoformat())
    raw = row.get("raw", row.get("data", output))
    text = str(row.get("text") or extract_final_answer(raw)).strip()
    meta = row.get("meta") if isinstance(row.get("meta"), dict) else {}

    confidence = str(meta.get("confidence") or "unknown").lower()
    if confidence not in ("high", "medium", "low"):
        confidence = "unknown"
    citations = meta.get("citations") if isinstance(meta.get("citations"), list) else []

    return {
        "provider": provider,
        "timestamp": timestamp,
        "text": text,
        "raw": raw,
        "meta": {
            "source_type": "web",
            "provider": provider,
            "mode": str(mode),
            "source_url": str(meta["url"]) if meta.get("url") else None,
            "captured_at": str(meta.get("captured_at") or timestamp),
            "confidence": confidence,
            "citations": [str(c).strip() for c in citations if str(c).strip()],
            "needs_verification": mode != WebResultMode.BRIDGE_ASSISTED,
        },
    }


def normalize_manual_input(provider: str, mode: WebResultMode, raw_input: str) -> HumanTurnResult:
    """Turn pasted text into a web evidence output. JSON mode requires valid JSON."""
    trimmed = (raw_input or "").strip()
    if not trimmed:
        return HumanTurnResult(ok=False, error="web response input is empty")

    timestamp = datetime.now(UTC).isoformat()
    if mode == WebResultMode.MANUAL_PASTE_JSON:
        try:
            parsed = json.loads(trimmed)
        except json.JSONDecodeError as e:
            return HumanTurnResult(ok=False, error=f"JSON parse failed: {e}")
        row = {"timestamp": timestamp, "data": parsed, "text": extract_final_answer(parsed)}
    else:
        row = {"timestamp": timestamp, "text": trimmed}

    return HumanTurnResult(ok=True, output=normalize_web_evidence_output(provider, row, mode))


class ProviderTurnQueue:
    """Single-flight queue of human-response tickets for one run."""

    def __init__(self, on_change: Callable[["ProviderTurnQueue"], None] | None = None):
        self._pending: ProviderTicket | None = None
        self._suspended: ProviderTicket | None = None
        self._queue: deque[ProviderTicket] = deque()
        self._on_change = on_change

    # === QUERY ===

    @property
    def pending(self) -> ProviderTicket | None:
        return self._pending

    @property
    def suspended(self) -> ProviderTicket | None:
        return self._suspended

    @property
    def queued(self) -> list[ProviderTicket]:
        return list(self._queue)

    def get(self, ticket_id: str) -> ProviderTicket | None:
        for ticket in (self._pending, self._suspended, *self._queue):
            if ticket is not None and ticket.ticket_id == ticket_id:
                return ticket
        return None

    def snapshot(self) -> dict:
        return {
            "pending": self._pending.to_dict() if self._pending else None,
            "suspended": self._suspended.to_dict() if self._suspended else None,
            "queue": [t.to_dict() for t in self._queue],
        }

    # === REQUEST ===

    def request(
        self,
        node_id: str,
        provider: str,
        prompt: str,
        mode: WebResultMode = WebResultMode.MANUAL_PASTE_TEXT,
    ) -> ProviderTicket:
        """
        Register a human-response request and return its ticket.

        A pending or suspended ticket for the same ``(node_id, provider)``
        without a live resolver is re-attached instead of duplicated.
        Await ``ticket.wait()`` for the result.
        """
        key = (node_id, provider)

        pending = self._pending
        if pending is not None and pending.key == key and not pending.has_resolver:
            pending.turn.prompt = prompt
            pending.attach()
            logger.debug(f"Re-attached resolver to pending ticket {pending.ticket_id}")
            self._changed()
            return pending

        suspended = self._suspended
        if suspended is not None and suspended.key == key and not suspended.has_resolver:
            self._suspended = None
            suspended.turn.prompt = prompt
            suspended.attach()
            self._place(suspended)
            logger.debug(f"Restored suspended ticket {suspended.ticket_id}")
            self._changed()
            return suspended

        self.clear_detached("detached human request dropped")
        ticket = ProviderTicket(turn=PendingProviderTurn(node_id, provider, prompt, mode))
        ticket.attach()
        self._place(ticket)
        self._changed()
        return ticket

    def _place(self, ticket: ProviderTicket) -> None:
        if self._pending is None:
            ticket.state = TicketState.PENDING
            self._pending = ticket
        else:
            ticket.state = TicketState.QUEUED
            self._queue.append(ticket)

    def _promote_next(self) -> None:
        if self._pending is None and self._queue:
            ticket = self._queue.popleft()
            ticket.state = TicketState.PENDING
            self._pending = ticket

    # === RESOLUTION ===

    def resolve(self, result: HumanTurnResult, ticket_id: str | None = None) -> bool:
        """
        Deliver ``result`` to a ticket (the pending one by default).

        The resolver is detached and the next queued ticket promoted before
        the result is delivered. Returns False when there was nothing to resolve.
        """
        ticket = self.get(ticket_id) if ticket_id else self._pending
        if ticket is None:
            return False

        resolver = ticket.detach()
        if ticket is self._pending:
            self._pending = None
        elif ticket is self._suspended:
            self._suspended = None
        else:
            self._queue.remove(ticket)
        ticket.state = TicketState.RESOLVED
        self._promote_next()
        self._changed()

        if resolver is not None and not resolver.done():
            resolver.set_result(result)
            return True
        return False

    def submit(self, text: str, ticket_id: str | None = None) -> HumanTurnResult:
        """
        Normalize pasted input for a ticket and resolve it if valid.

        Invalid input (empty, or bad JSON in JSON mode) is returned with
        ``ok=False`` and the ticket stays open.
        """
        ticket = self.get(ticket_id) if ticket_id else self._pending
        if ticket is None:
            return HumanTurnResult(ok=False, error="no pending human request")
        result = normalize_manual_input(ticket.turn.provider, ticket.turn.mode, text)
        if result.ok:
            self.resolve(result, ticket.ticket_id)
        return result

    def reject(self, error: str, ticket_id: str | None = None) -> bool:
        return self.resolve(HumanTurnResult(ok=False, error=error), ticket_id)

    def suspend(self) -> ProviderTicket | None:
        """User closed the pending request without answering."""
        ticket = self._pending
        if ticket is None:
            return None
        if self._suspended is not None:
            self._queue.append(self._suspended)
            self._suspended.state = TicketState.QUEUED
        ticket.state = TicketState.SUSPENDED
        self._suspended = ticket
        self._pending = None
        self._promote_next()
        self._changed()
        return ticket

    def reopen(self) -> ProviderTicket | None:
        """Bring the suspended ticket back to pending (or the queue head if busy)."""
        ticket = self._suspended
        if ticket is None:
            return None
        self._suspended = None
        if self._pending is None:
            ticket.state = TicketState.PENDING
            self._pending = ticket
        else:
            ticket.state = TicketState.QUEUED
            self._queue.appendleft(ticket)
        self._changed()
        return ticket

    def clear_queued(self, reason: str) -> int:
        """Resolve every queued ticket with ``{ok: False, error: reason}``."""
        cleared = 0
        while self._queue:
            ticket = self._queue.popleft()
            ticket.state = TicketState.RESOLVED
            resolver = ticket.detach()
            if resolver is not None and not resolver.done():
                resolver.set_result(HumanTurnResult(ok=False, error=reason))
                cleared += 1
        if cleared:
            self._changed()
        return cleared

    def clear_detached(self, reason: str) -> None:
        """Drop pending/suspended tickets whose awaiting node is gone."""
        changed = False
        if self._pending is not None and not self._pending.has_resolver:
            logger.debug(f"{reason}: {self._pending.ticket_id}")
            self._pending.state = TicketState.RESOLVED
            self._pending.detach()
            self._pending.abandon(reason)
            self._pending = None
            self._promote_next()
            changed = True
        if self._suspended is not None and not self._suspended.has_resolver:
            self._suspended.state = TicketState.RESOLVED
            self._suspended.detach()
            self._suspended.abandon(reason)
            self._suspended = None
            changed = True
        if changed:
            self._changed()

    def sweep(self, reason: str = PAUSE_ERROR_TOKEN) -> int:
        """
        Pause/cancel sweep: fail every open ticket with ``reason``.

        Awaiting node executions unblock and unwind instead of hanging.
        """
        swept = self.clear_queued(reason)
        failure = HumanTurnResult(ok=False, error=reason)
        for ticket in (self._pending, self._suspended):
            if ticket is not None and self.resolve(failure, ticket.ticket_id):
                swept += 1
        return swept

    def teardown(self, reason: str) -> None:
        self.sweep(reason)
        self._pending = None
        self._suspended = None
        self._queue.clear()

    def _changed(self) -> None:
        if self._on_change is not None:
            self._on_change(self)
