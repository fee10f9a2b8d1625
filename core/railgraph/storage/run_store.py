"""
Run Store - write-once persistence of run records.

File layout:
  {base_path}/
    {run_id}.json

A run id is saved exactly once; a second save raises
RunAlreadyPersistedError instead of rewriting history.
"""

import asyncio
import logging
from pathlib import Path
from typing import Protocol, runtime_checkable

from railgraph.errors import RunAlreadyPersistedError
from railgraph.schemas.run import RunRecord
from railgraph.utils.io import atomic_write

logger = logging.getLogger(__name__)


def validate_run_id(run_id: str) -> None:
    """
    Reject run ids that could escape the storage directory.

    Raises:
        ValueError: If the id is empty or contains path or shell characters
    """
    if not run_id or run_id.strip() == "":
        raise ValueError("Run id cannot be empty")
    if "/" in run_id or "\\" in run_id:
        raise ValueError(f"Invalid run id: path separators not allowed in '{run_id}'")
    if ".." in run_id or run_id.startswith("."):
        raise ValueError(f"Invalid run id: path traversal detected in '{run_id}'")
    if len(run_id) > 1 and run_id[1] == ":":
        raise ValueError(f"Invalid run id: absolute paths not allowed in '{run_id}'")
    if "\x00" in run_id:
        raise ValueError("Invalid run id: null bytes not allowed")
    if any(char in run_id for char in '<>|&$`\'"'):
        raise ValueError(f"Invalid run id: contains dangerous characters in '{run_id}'")


@runtime_checkable
class RunStore(Protocol):
    async def save_run(self, run_id: str, record: RunRecord) -> None: ...

    async def load_run(self, run_id: str) -> RunRecord | None: ...

    async def list_runs(self) -> list[str]: ...


class FileRunStore:
    """JSON-file run store. Disk work runs in a thread so the event loop stays free."""

    def __init__(self, base_path: str | Path):
        self.base_path = Path(base_path)
        self._lock = asyncio.Lock()

    def get_run_path(self, run_id: str) -> Path:
        validate_run_id(run_id)
        return self.base_path / f"{run_id}.json"

    async def save_run(self, run_id: str, record: RunRecord) -> None:
        path = self.get_run_path(run_id)

        def _write() -> None:
            if path.exists():
                raise RunAlreadyPersistedError(run_id)
            path.parent.mkdir(parents=True, exist_ok=True)
            with atomic_write(path) as f:
                f.write(record.model_dump_json(indent=2))

        async with self._lock:
            await asyncio.to_thread(_write)
        logger.debug(f"Saved run record {run_id}")

    async def load_run(self, run_id: str) -> RunRecord | None:
        path = self.get_run_path(run_id)

        def _read() -> RunRecord | None:
            if not path.exists():
                return None
            return RunRecord.model_validate_json(path.read_text(encoding="utf-8"))

        return await asyncio.to_thread(_read)

    async def list_runs(self) -> list[str]:
        """Run ids, newest first."""

        def _scan() -> list[str]:
            if not self.base_path.exists():
                return []
            files = [p for p in self.base_path.glob("*.json") if p.is_file()]
            files.sort(key=lambda p: (p.stat().st_mtime, p.stem), reverse=True)
            return [p.stem for p in files]

        return await asyncio.to_thread(_scan)


class InMemoryRunStore:
    """Run store for tests and throwaway runs."""

    def __init__(self):
        self._records: dict[str, str] = {}

    async def save_run(self, run_id: str, record: RunRecord) -> None:
        validate_run_id(run_id)
        if run_id in self._records:
            raise RunAlreadyPersistedError(run_id)
        self._records[run_id] = record.model_dump_json()

    async def load_run(self, run_id: str) -> RunRecord | None:
        raw = self._records.get(run_id)
        return RunRecord.model_validate_json(raw) if raw is not None else None

    async def list_runs(self) -> list[str]:
        return list(reversed(self._records))
