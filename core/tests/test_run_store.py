"""Tests for the run stores: write-once persistence and run id validation."""

from pathlib import Path

import pytest
from conftest import make_graph, turn

from railgraph.errors import RunAlreadyPersistedError
from railgraph.schemas.run import RunRecord, RunStatus
from railgraph.storage import FileRunStore, InMemoryRunStore
from railgraph.storage.run_store import validate_run_id

# === HELPER FUNCTIONS ===


def create_test_record(run_id: str = "run_1", status: RunStatus = RunStatus.COMPLETED) -> RunRecord:
    """Create a RunRecord with a one-node graph."""
    return RunRecord(
        run_id=run_id,
        question="What is revenue?",
        status=status,
        graph=make_graph([turn("a")], []),
        final_answer="10 million",
    )


# === VALIDATION TESTS ===


class TestValidateRunId:
    @pytest.mark.parametrize(
        "run_id", ["", "  ", "../escape", "a/b", "a\\b", ".hidden", "C:run", "a\x00b", "run;$x", "r`x`"]
    )
    def test_rejects_unsafe_ids(self, run_id):
        with pytest.raises(ValueError):
            validate_run_id(run_id)

    def test_accepts_generated_ids(self):
        validate_run_id("run_20260101_120000_ab12cd34")


# === FILE STORE TESTS ===


class TestFileRunStore:
    """FileRunStore keeps one JSON document per run."""

    @pytest.mark.asyncio
    async def test_save_and_load(self, tmp_path: Path):
        store = FileRunStore(tmp_path / "runs")
        record = create_test_record()

        await store.save_run(record.run_id, record)
        loaded = await store.load_run(record.run_id)

        assert (tmp_path / "runs" / "run_1.json").exists()
        assert loaded is not None
        assert loaded.final_answer == "10 million"
        assert loaded.graph.nodes[0].id == "a"

    @pytest.mark.asyncio
    async def test_second_save_is_refused(self, tmp_path: Path):
        store = FileRunStore(tmp_path)
        record = create_test_record()
        await store.save_run(record.run_id, record)

        with pytest.raises(RunAlreadyPersistedError):
            await store.save_run(record.run_id, create_test_record(status=RunStatus.FAILED))

        loaded = await store.load_run(record.run_id)
        assert loaded.status == RunStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_missing_run(self, tmp_path: Path):
        assert await FileRunStore(tmp_path).load_run("run_missing") is None

    @pytest.mark.asyncio
    async def test_list_on_missing_directory(self, tmp_path: Path):
        assert await FileRunStore(tmp_path / "nope").list_runs() == []

    @pytest.mark.asyncio
    async def test_list_runs(self, tmp_path: Path):
        store = FileRunStore(tmp_path)
        for run_id in ("run_a", "run_b"):
            await store.save_run(run_id, create_test_record(run_id))

        assert sorted(await store.list_runs()) == ["run_a", "run_b"]

    @pytest.mark.asyncio
    async def test_traversal_is_rejected(self, tmp_path: Path):
        with pytest.raises(ValueError):
            await FileRunStore(tmp_path).load_run("../etc")


# === IN-MEMORY STORE TESTS ===


class TestInMemoryRunStore:
    @pytest.mark.asyncio
    async def test_write_once_and_newest_first(self):
        store = InMemoryRunStore()
        await store.save_run("run_a", create_test_record("run_a"))
        await store.save_run("run_b", create_test_record("run_b"))

        with pytest.raises(RunAlreadyPersistedError):
            await store.save_run("run_a", create_test_record("run_a"))

        assert await store.list_runs() == ["run_b", "run_a"]
        loaded = await store.load_run("run_a")
        assert loaded.run_id == "run_a"
