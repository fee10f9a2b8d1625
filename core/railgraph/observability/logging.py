"""
Structured logging with run-scoped trace context.

Every run gets a trace context (``run_id``, ``trace_id``) stored in a
ContextVar. Node tasks are spawned from inside that context, so a plain
``logger.info(...)`` anywhere below the orchestrator carries the run and
node ids without passing them around.

Context flow:
    RunOrchestrator run task -> set_trace_context(run_id=..., trace_id=...)
        (asyncio tasks copy the context when created)
    DagScheduler node task   -> set_trace_context(node_id=...)
        (only visible inside that task)
    TurnRunner / executors   -> logger.info("...") gets run_id + node_id
"""

import json
import logging
import os
import re
from contextvars import ContextVar
from datetime import UTC, datetime
from typing import Any

trace_context: ContextVar[dict[str, Any] | None] = ContextVar("trace_context", default=None)

ANSI_ESCAPE_PATTERN = re.compile(r"\x1b\[[0-9;]*m")

# Attributes passed via ``extra=`` that the JSON formatter lifts into the entry.
EXTRA_FIELDS = ("event", "latency_ms", "tokens_used", "node_id", "provider", "status")


def strip_ansi_codes(text: str) -> str:
    """Remove ANSI escape codes from text for clean JSON logging."""
    return ANSI_ESCAPE_PATTERN.sub("", text)


class StructuredFormatter(logging.Formatter):
    """
    JSON formatter for structured logging.

    Each line holds timestamp, level, logger and message, followed by the
    current trace context and any known ``extra`` fields.
    """

    def format(self, record: logging.LogRecord) -> str:
        context = trace_context.get() or {}

        log_entry: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat(),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": strip_ansi_codes(record.getMessage()),
        }
        log_entry.update(context)

        for name in EXTRA_FIELDS:
            value = getattr(record, name, None)
            if value is None:
                continue
            log_entry[name] = strip_ansi_codes(value) if isinstance(value, str) else value

        if record.exc_info:
            log_entry["exception"] = strip_ansi_codes(self.formatException(record.exc_info))

        return json.dumps(log_entry, default=str)


class HumanReadableFormatter(logging.Formatter):
    """Colorized single-line logs with a ``[run:… | node:…]`` prefix."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        context = trace_context.get() or {}
        run_id = context.get("run_id", "")
        node_id = context.get("node_id", "") or getattr(record, "node_id", "")

        prefix_parts = []
        if run_id:
            prefix_parts.append(f"run:{run_id[-8:]}")
        if node_id:
            prefix_parts.append(f"node:{node_id}")
        context_prefix = f"[{' | '.join(prefix_parts)}] " if prefix_parts else ""

        color = self.COLORS.get(record.levelname, "")
        level = f"{record.levelname:<8}"

        event = ""
        record_event = getattr(record, "event", None)
        if record_event is not None:
            event = f" [{record_event}]"

        line = f"{color}[{level}]{self.RESET} {context_prefix}{record.getMessage()}{event}"
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


def configure_logging(
    level: str = "INFO",
    format: str = "auto",  # "json", "human", or "auto"
) -> None:
    """
    Configure root logging for the process.

    Call once from an entry point (the CLI does this) or a test fixture.

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        format: "json" for machine-parseable lines, "human" for colored
            output, "auto" to pick json when LOG_FORMAT=json or
            ENV=production and human otherwise.
    """
    if format == "auto":
        log_format_env = os.getenv("LOG_FORMAT", "").lower()
        env = os.getenv("ENV", "development").lower()
        format = "json" if log_format_env == "json" or env == "production" else "human"

    if format == "json":
        formatter: logging.Formatter = StructuredFormatter()
        _disable_third_party_colors()
    else:
        formatter = HumanReadableFormatter()

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(level.upper())

    if format == "json":
        # Route chatty client libraries through the root JSON handler.
        for logger_name in ("LiteLLM", "httpcore", "httpx", "aiohttp.access"):
            third_party = logging.getLogger(logger_name)
            third_party.handlers.clear()
            third_party.propagate = True


def _disable_third_party_colors() -> None:
    os.environ["NO_COLOR"] = "1"
    os.environ["FORCE_COLOR"] = "0"

    import litellm

    litellm.suppress_debug_info = True


def set_trace_context(**kwargs: Any) -> None:
    """
    Merge fields into the trace context of the current task.

    The orchestrator sets ``run_id`` and ``trace_id`` when a run starts; the
    scheduler adds ``node_id`` inside each node task. Tasks created later
    inherit a copy, so a node id never leaks into sibling tasks.
    """
    current = trace_context.get() or {}
    trace_context.set({**current, **kwargs})


def get_trace_context() -> dict:
    """Return a copy of the current trace context (empty dict if unset)."""
    context = trace_context.get() or {}
    return context.copy()


def clear_trace_context() -> None:
    """Drop all trace context. Mostly useful between tests."""
    trace_context.set(None)
