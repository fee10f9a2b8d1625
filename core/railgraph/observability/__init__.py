"""
Observability for railgraph runs.

- Run and node ids propagate through ContextVar trace context
- JSON log lines for production, colored lines for development
"""

from railgraph.observability.logging import (
    clear_trace_context,
    configure_logging,
    get_trace_context,
    set_trace_context,
)

__all__ = [
    "configure_logging",
    "get_trace_context",
    "set_trace_context",
    "clear_trace_context",
]
