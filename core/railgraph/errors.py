"""Exception types raised and recorded by railgraph.

Node-level errors are caught at the scheduler's per-task boundary and
recorded on the node; only graph validation escapes ``start()``.
"""

from typing import Any

PAUSE_ERROR_TOKEN = "__PAUSED_BY_USER__"
CANCEL_ERROR_TOKEN = "__CANCELLED_BY_USER__"


class RailgraphError(Exception):
    """Base class for all railgraph errors."""


class GraphValidationError(RailgraphError):
    """The graph is malformed; the run never starts."""

    def __init__(self, errors: list[str]):
        self.errors = list(errors)
        super().__init__("invalid graph: " + "; ".join(self.errors))


class ExecutorError(RailgraphError):
    """A node's external call failed."""

    def __init__(self, message: str, provider_id: str | None = None):
        self.provider_id = provider_id
        super().__init__(message)


class ExecutorCancelledError(ExecutorError):
    """The executor observed a cancel/interrupt request."""


class SchemaValidationError(RailgraphError):
    """Output still violated the node's schema after all retries."""

    def __init__(self, errors: list[str]):
        self.errors = list(errors)
        super().__init__("output schema validation failed: " + "; ".join(self.errors))


class LowQualityError(RailgraphError):
    """Quality score fell below the node's threshold."""

    def __init__(self, report: Any):
        self.report = report
        score = getattr(report, "score", "?")
        threshold = getattr(report, "threshold", "?")
        super().__init__(f"quality score {score} below threshold {threshold}")


class ApprovalDeniedError(RailgraphError):
    """The approval gate refused a gated action. Carries the gate's reason verbatim."""

    def __init__(self, reason: str, request_id: str | None = None):
        self.reason = reason
        self.request_id = request_id
        super().__init__(reason)


class PauseSignal(RailgraphError):
    """Sentinel raised through in-flight awaits when a run is paused."""

    def __init__(self, message: str = PAUSE_ERROR_TOKEN):
        super().__init__(message)


class CancelSignal(RailgraphError):
    """Sentinel raised through in-flight awaits when a run is cancelled."""

    def __init__(self, message: str = CANCEL_ERROR_TOKEN):
        super().__init__(message)


class RunNotFoundError(RailgraphError):
    def __init__(self, run_id: str):
        self.run_id = run_id
        super().__init__(f"run not found: {run_id}")


class RunAlreadyPersistedError(RailgraphError):
    def __init__(self, run_id: str):
        self.run_id = run_id
        super().__init__(f"run already persisted: {run_id}")


class RunStateError(RailgraphError):
    """Illegal lifecycle transition (e.g. resuming a finished run)."""


def is_pause_signal(text: str | None) -> bool:
    """True for error text produced by a pause or cancel sweep."""
    lowered = str(text or "").lower()
    return (
        PAUSE_ERROR_TOKEN.lower() in lowered
        or CANCEL_ERROR_TOKEN.lower() in lowered
        or "cancelled" in lowered
        or "interrupt" in lowered
    )


def interrupt_signal(text: str | None) -> PauseSignal | CancelSignal | None:
    """The sentinel matching a sweep token in ``text``, if any."""
    lowered = str(text or "").lower()
    if CANCEL_ERROR_TOKEN.lower() in lowered:
        return CancelSignal()
    if PAUSE_ERROR_TOKEN.lower() in lowered:
        return PauseSignal()
    return None
