"""Tests for the single-flight human provider queue."""

import asyncio

import pytest

from railgraph.errors import PAUSE_ERROR_TOKEN
from railgraph.runtime.human_queue import (
    HumanTurnResult,
    ProviderTurnQueue,
    TicketState,
    normalize_manual_input,
    normalize_web_evidence_output,
)
from railgraph.schemas.graph import WebResultMode


class TestQueueOrdering:
    """Only one ticket is pending; the rest wait in FIFO order."""

    @pytest.mark.asyncio
    async def test_second_request_is_queued_then_promoted(self):
        queue = ProviderTurnQueue()
        first = queue.request("a", "gpt", "prompt a")
        second = queue.request("b", "gemini", "prompt b")

        assert queue.pending is first
        assert [t.ticket_id for t in queue.queued] == [second.ticket_id]
        assert second.state == TicketState.QUEUED

        assert queue.resolve(HumanTurnResult(ok=True, output={"text": "A"}))
        assert queue.pending is second
        assert (await first.wait()).output == {"text": "A"}

    @pytest.mark.asyncio
    async def test_repeat_request_for_live_ticket_queues_in_arrival_order(self):
        queue = ProviderTurnQueue()
        first = queue.request("n1", "p", "prompt 1")
        repeat = queue.request("n1", "p", "prompt 1 again")
        other = queue.request("n2", "p", "prompt 2")

        assert queue.pending is first
        assert [t.ticket_id for t in queue.queued] == [repeat.ticket_id, other.ticket_id]
        assert len({first.ticket_id, repeat.ticket_id, other.ticket_id}) == 3

        queue.submit("one")
        assert queue.pending is repeat
        assert [t.ticket_id for t in queue.queued] == [other.ticket_id]

        queue.submit("two")
        assert queue.pending is other
        assert queue.queued == []

        queue.submit("three")
        assert queue.pending is None
        outputs = [(await t.wait()).output["text"] for t in (first, repeat, other)]
        assert outputs == ["one", "two", "three"]

    @pytest.mark.asyncio
    async def test_submit_normalizes_and_resolves(self):
        queue = ProviderTurnQueue()
        ticket = queue.request("a", "gpt", "prompt")

        result = queue.submit("  the answer  ")

        assert result.ok
        delivered = await ticket.wait()
        assert delivered.output["text"] == "the answer"
        assert delivered.output["provider"] == "gpt"
        assert queue.pending is None

    @pytest.mark.asyncio
    async def test_empty_submission_keeps_ticket_open(self):
        queue = ProviderTurnQueue()
        ticket = queue.request("a", "gpt", "prompt")

        result = queue.submit("   ")

        assert not result.ok
        assert queue.pending is ticket
        assert ticket.has_resolver

    def test_submit_without_pending_ticket(self):
        assert not ProviderTurnQueue().submit("text").ok

    @pytest.mark.asyncio
    async def test_on_change_called(self):
        changes: list[dict] = []
        queue = ProviderTurnQueue(on_change=lambda q: changes.append(q.snapshot()))

        queue.request("a", "gpt", "prompt")

        assert changes[-1]["pending"]["node_id"] == "a"


class TestSuspendReopen:
    @pytest.mark.asyncio
    async def test_suspended_ticket_keeps_its_resolver(self):
        queue = ProviderTurnQueue()
        ticket = queue.request("a", "gpt", "prompt")

        assert queue.suspend() is ticket
        assert queue.pending is None
        assert queue.suspended is ticket

        assert queue.reopen() is ticket
        assert queue.pending is ticket
        queue.submit("done")
        assert (await ticket.wait()).ok

    @pytest.mark.asyncio
    async def test_reopen_while_busy_goes_to_queue_head(self):
        queue = ProviderTurnQueue()
        first = queue.request("a", "gpt", "prompt a")
        queue.suspend()
        second = queue.request("b", "gpt", "prompt b")
        third = queue.request("c", "gpt", "prompt c")

        queue.reopen()

        assert queue.pending is second
        assert queue.queued == [first, third]

    @pytest.mark.asyncio
    async def test_detached_pending_ticket_is_reattached(self):
        queue = ProviderTurnQueue()
        ticket = queue.request("a", "gpt", "old prompt")
        ticket.detach()

        again = queue.request("a", "gpt", "new prompt")

        assert again is ticket
        assert again.turn.prompt == "new prompt"
        assert again.has_resolver

    @pytest.mark.asyncio
    async def test_reattach_fails_the_stale_waiter(self):
        queue = ProviderTurnQueue()
        ticket = queue.request("a", "gpt", "old prompt")
        stale = asyncio.create_task(ticket.wait())
        await asyncio.sleep(0)
        ticket.detach()

        queue.request("a", "gpt", "new prompt")

        result = await asyncio.wait_for(stale, timeout=1)
        assert not result.ok
        assert result.error == "human request re-attached"

        queue.submit("fresh answer")
        assert (await ticket.wait()).output["text"] == "fresh answer"

    @pytest.mark.asyncio
    async def test_dropping_detached_ticket_fails_its_waiter(self):
        queue = ProviderTurnQueue()
        ticket = queue.request("a", "gpt", "prompt")
        stale = asyncio.create_task(ticket.wait())
        await asyncio.sleep(0)
        ticket.detach()

        queue.clear_detached("node went away")

        result = await asyncio.wait_for(stale, timeout=1)
        assert result.error == "node went away"
        assert queue.pending is None


class TestSweep:
    @pytest.mark.asyncio
    async def test_sweep_fails_every_open_ticket(self):
        queue = ProviderTurnQueue()
        pending = queue.request("a", "gpt", "p")
        queued = queue.request("b", "gpt", "p")

        swept = queue.sweep()

        assert swept == 2
        for ticket in (pending, queued):
            result = await asyncio.wait_for(ticket.wait(), timeout=1)
            assert not result.ok
            assert result.error == PAUSE_ERROR_TOKEN
        assert queue.snapshot() == {"pending": None, "suspended": None, "queue": []}


class TestNormalization:
    def test_json_mode_rejects_invalid_json(self):
        result = normalize_manual_input("gpt", WebResultMode.MANUAL_PASTE_JSON, "{not json")
        assert not result.ok
        assert result.error.startswith("JSON parse failed")

    def test_json_mode_keeps_parsed_payload(self):
        result = normalize_manual_input(
            "gpt", WebResultMode.MANUAL_PASTE_JSON, '{"text": "hello", "score": 3}'
        )
        assert result.ok
        assert result.output["text"] == "hello"
        assert result.output["raw"] == {"text": "hello", "score": 3}

    def test_web_evidence_meta(self):
        output = normalize_web_evidence_output(
            "perplexity",
            {"text": "t", "meta": {"confidence": "HIGH", "citations": ["https://x.test", " "], "url": "u"}},
            WebResultMode.BRIDGE_ASSISTED,
        )
        meta = output["meta"]
        assert meta["confidence"] == "high"
        assert meta["citations"] == ["https://x.test"]
        assert meta["source_url"] == "u"
        assert meta["needs_verification"] is False
