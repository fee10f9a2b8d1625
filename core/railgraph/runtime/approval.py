"""
Approval Gate & Queue.

The queue is a plain list of ApprovalRequest values; every function here is
pure and returns new lists. ``evaluate_approval_gate`` must be called right
before the gated action runs, never cached.

ApprovalBroker wraps the queue for one run: executors ask it to clear an
action, it raises a pending request and waits for the user's decision.
"""

import asyncio
import logging
import uuid
from collections.abc import Awaitable, Callable, Iterable, Mapping
from datetime import UTC, datetime
from typing import Any

from railgraph.errors import ApprovalDeniedError
from railgraph.schemas.approval import (
    ApprovalActionType,
    ApprovalDecision,
    ApprovalQueueSummary,
    ApprovalRequest,
    ApprovalSource,
    ApprovalStatus,
    GateDecision,
)
from railgraph.schemas.run import NodeStatus, RunTransition
from railgraph.utils.values import normalize_whitespace

logger = logging.getLogger(__name__)

REASON_NOT_FOUND = "approval request not found"
REASON_APPROVED = "approved"


def normalize_preview(preview: str) -> str:
    return normalize_whitespace(preview)


def _approval_key(
    task_id: str, action_type: ApprovalActionType, preview: str
) -> tuple[str, str, str]:
    return (task_id, str(action_type), normalize_preview(preview))


def create_approval_queue(
    seeds: Iterable[Mapping[str, Any] | ApprovalRequest],
    now: datetime | None = None,
) -> list[ApprovalRequest]:
    """
    Build a deduplicated queue from seed requests.

    Seeds missing a task id, preview or request id are dropped. The first
    seed wins for each ``(task_id, action_type, normalized_preview)``.
    """
    now = now or datetime.now(UTC)
    queue: list[ApprovalRequest] = []
    seen: set[tuple[str, str, str]] = set()

    for seed in seeds:
        row = seed.model_dump() if isinstance(seed, ApprovalRequest) else dict(seed)
        task_id = str(row.get("task_id") or "").strip()
        preview = normalize_preview(str(row.get("preview") or ""))
        request_id = str(row.get("request_id") or "").strip()
        if not task_id or not preview or not request_id:
            continue

        try:
            action_type = ApprovalActionType(row.get("action_type") or "unknown")
        except ValueError:
            action_type = ApprovalActionType.UNKNOWN

        key = _approval_key(task_id, action_type, preview)
        if key in seen:
            continue
        seen.add(key)

        queue.append(
            ApprovalRequest(
                request_id=request_id,
                task_id=task_id,
                action_type=action_type,
                preview=preview,
                status=row.get("status") or ApprovalStatus.PENDING,
                created_at=row.get("created_at") or now,
                updated_at=row.get("updated_at"),
                source=row.get("source") or ApprovalSource.REMOTE,
                metadata=dict(row.get("metadata") or {}),
            )
        )

    return queue


def evaluate_approval_gate(
    task_id: str,
    action_type: ApprovalActionType,
    preview: str,
    queue: Iterable[ApprovalRequest],
) -> GateDecision:
    """Allow only an exact-match request in the ``approved`` state."""
    key = _approval_key(task_id, ApprovalActionType(action_type), preview)
    for request in queue:
        if _approval_key(request.task_id, request.action_type, request.preview) != key:
            continue
        if request.status == ApprovalStatus.APPROVED:
            return GateDecision(
                allowed=True, reason=REASON_APPROVED, matched_request_id=request.request_id
            )
        return GateDecision(
            allowed=False,
            reason=f"approval is {request.status}",
            matched_request_id=request.request_id,
        )
    return GateDecision(allowed=False, reason=REASON_NOT_FOUND)


def apply_approval_decision(
    queue: Iterable[ApprovalRequest],
    request_id: str,
    decision: ApprovalDecision | str,
    now: datetime | None = None,
) -> list[ApprovalRequest]:
    """Return a new queue with ``decision`` applied to the request with ``request_id``."""
    now = now or datetime.now(UTC)
    next_status = ApprovalDecision(decision).to_status()
    return [
        request
        if request.request_id != request_id
        else request.model_copy(update={"status": next_status, "updated_at": now})
        for request in queue
    ]


def build_approval_snapshot_from_transitions(
    transitions: Iterable[RunTransition],
) -> list[ApprovalRequest]:
    """Every ``waiting_user`` transition of a run becomes a pending request in the snapshot."""
    seeds = [
        {
            "request_id": f"{row.node_id}:{row.at.isoformat()}",
            "task_id": row.node_id,
            "action_type": ApprovalActionType.UNKNOWN,
            "preview": row.message or "approval requested",
            "status": ApprovalStatus.PENDING,
            "source": ApprovalSource.REMOTE,
        }
        for row in transitions
        if row.status == NodeStatus.WAITING_USER
    ]
    return create_approval_queue(seeds)


def summarize_approval_gate(
    queue: list[ApprovalRequest], decision: GateDecision | None = None
) -> ApprovalQueueSummary:
    counts = {status: 0 for status in ApprovalStatus}
    for request in queue:
        counts[request.status] += 1
    return ApprovalQueueSummary(
        total=len(queue),
        pending=counts[ApprovalStatus.PENDING],
        approved=counts[ApprovalStatus.APPROVED],
        declined=counts[ApprovalStatus.DECLINED],
        cancelled=counts[ApprovalStatus.CANCELLED],
        gate=decision,
    )


ApprovalListener = Callable[[ApprovalRequest], Awaitable[None]]


class ApprovalBroker:
    """
    Per-run owner of the approval queue.

    ``require(...)`` evaluates the gate; when no request exists yet it
    raises one, notifies the listener and waits for ``decide(...)``. A
    request that ends up anything but approved raises ApprovalDeniedError
    with the gate's reason.
    """

    def __init__(self, on_request: ApprovalListener | None = None):
        self._queue: list[ApprovalRequest] = []
        self._waiters: dict[str, asyncio.Future[ApprovalStatus]] = {}
        self._on_request = on_request

    @property
    def queue(self) -> list[ApprovalRequest]:
        return list(self._queue)

    def seed(self, seeds: Iterable[Mapping[str, Any] | ApprovalRequest]) -> None:
        self._queue = create_approval_queue([*self._queue, *seeds])

    def evaluate(
        self, task_id: str, action_type: ApprovalActionType, preview: str
    ) -> GateDecision:
        return evaluate_approval_gate(task_id, action_type, preview, self._queue)

    async def require(
        self,
        task_id: str,
        action_type: ApprovalActionType,
        preview: str,
        metadata: dict[str, Any] | None = None,
    ) -> GateDecision:
        decision = self.evaluate(task_id, action_type, preview)
        if decision.allowed:
            return decision

        if decision.matched_request_id is None:
            request_id = f"{task_id}:{uuid.uuid4().hex[:8]}"
            self.seed(
                [
                    {
                        "request_id": request_id,
                        "task_id": task_id,
                        "action_type": action_type,
                        "preview": preview,
                        "source": ApprovalSource.LOCAL,
                        "metadata": metadata or {},
                    }
                ]
            )
            request = self.get(request_id)
            waiter = asyncio.get_running_loop().create_future()
            self._waiters[request_id] = waiter
            logger.info(f"Approval requested for {task_id}: {normalize_preview(preview)[:80]}")
            if self._on_request is not None and request is not None:
                await self._on_request(request)
            try:
                await waiter
            finally:
                self._waiters.pop(request_id, None)
            decision = self.evaluate(task_id, action_type, preview)

        if not decision.allowed:
            raise ApprovalDeniedError(decision.reason, decision.matched_request_id)
        return decision

    def get(self, request_id: str) -> ApprovalRequest | None:
        for request in self._queue:
            if request.request_id == request_id:
                return request
        return None

    def decide(self, request_id: str, decision: ApprovalDecision | str) -> ApprovalRequest:
        if self.get(request_id) is None:
            raise KeyError(request_id)
        self._queue = apply_approval_decision(self._queue, request_id, decision)
        updated = self.get(request_id)
        waiter = self._waiters.get(request_id)
        if waiter is not None and not waiter.done():
            waiter.set_result(updated.status)
        return updated

    def cancel_pending(self) -> None:
        """Cancel every open request so waiting executors unwind."""
        for request in list(self._queue):
            if request.status == ApprovalStatus.PENDING and request.request_id in self._waiters:
                self.decide(request.request_id, ApprovalDecision.CANCEL)
