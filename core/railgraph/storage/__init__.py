"""Persistence for finished runs."""

from railgraph.storage.run_store import FileRunStore, InMemoryRunStore, RunStore

__all__ = ["FileRunStore", "InMemoryRunStore", "RunStore"]
