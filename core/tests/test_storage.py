"""Tests for the store backends and the session store."""

from pathlib import Path

import pytest

from bookflow.errors import StorageError
from bookflow.schemas.workflow_state import UnitResult, UnitStatus, WorkflowStatus
from bookflow.storage.backend import (
    CHECKPOINTS_TABLE,
    SESSIONS_TABLE,
    UNIT_RESULTS_TABLE,
    FileStore,
    InMemoryStore,
)
from bookflow.storage.session_store import SessionStore
from bookflow.workflow.stages import create_initial_state


@pytest.fixture(params=["memory", "file"])
def backend(request, tmp_path: Path):
    if request.param == "memory":
        return InMemoryStore()
    return FileStore(tmp_path / "store")


# === BACKENDS ===


class TestBackends:
    @pytest.mark.asyncio
    async def test_insert_assigns_increasing_ids(self, backend):
        first = await backend.insert(SESSIONS_TABLE, {"session_id": "a"})
        second = await backend.insert(SESSIONS_TABLE, {"session_id": "b"})

        assert second["id"] > first["id"]

    @pytest.mark.asyncio
    async def test_select_filters_orders_and_limits(self, backend):
        for n, ts in [(1, "2026-01-02"), (2, "2026-01-01"), (3, "2026-01-03")]:
            await backend.insert(CHECKPOINTS_TABLE, {"session_id": "s", "n": n, "timestamp": ts})
        await backend.insert(CHECKPOINTS_TABLE, {"session_id": "other", "n": 9, "timestamp": "2027"})

        rows = await backend.select(
            CHECKPOINTS_TABLE, {"session_id": "s"}, order_by="timestamp", descending=True, limit=2
        )

        assert [row["n"] for row in rows] == [3, 1]

    @pytest.mark.asyncio
    async def test_timestamp_ties_resolve_by_insertion_order(self, backend):
        for n in range(3):
            await backend.insert(CHECKPOINTS_TABLE, {"session_id": "s", "n": n, "timestamp": "same"})

        [latest] = await backend.select(
            CHECKPOINTS_TABLE, {"session_id": "s"}, order_by="timestamp", descending=True, limit=1
        )

        assert latest["n"] == 2

    @pytest.mark.asyncio
    async def test_update_and_delete(self, backend):
        await backend.insert(SESSIONS_TABLE, {"session_id": "a", "status": "active"})
        await backend.insert(SESSIONS_TABLE, {"session_id": "b", "status": "active"})

        assert await backend.update(SESSIONS_TABLE, {"session_id": "a"}, {"status": "failed"}) == 1
        assert await backend.delete(SESSIONS_TABLE, {"session_id": "b"}) == 1

        rows = await backend.select(SESSIONS_TABLE)
        assert [(r["session_id"], r["status"]) for r in rows] == [("a", "failed")]

    @pytest.mark.asyncio
    async def test_upsert(self, backend):
        await backend.upsert(UNIT_RESULTS_TABLE, {"session_id": "s", "unit_number": 1}, {"title": "v1"})
        await backend.upsert(UNIT_RESULTS_TABLE, {"session_id": "s", "unit_number": 1}, {"title": "v2"})

        rows = await backend.select(UNIT_RESULTS_TABLE, {"session_id": "s"})
        assert [row["title"] for row in rows] == ["v2"]

    @pytest.mark.asyncio
    async def test_unknown_table(self, backend):
        with pytest.raises(StorageError) as exc_info:
            await backend.insert("nope", {})

        assert exc_info.value.code == "STORE_UNKNOWN_TABLE"

    @pytest.mark.asyncio
    async def test_returned_rows_are_copies(self):
        backend = InMemoryStore()
        await backend.insert(SESSIONS_TABLE, {"session_id": "a", "meta": {"k": 1}})

        [row] = await backend.select(SESSIONS_TABLE)
        row["meta"]["k"] = 2

        [again] = await backend.select(SESSIONS_TABLE)
        assert again["meta"]["k"] == 1


@pytest.mark.asyncio
async def test_file_store_rejects_corrupted_table(tmp_path: Path):
    (tmp_path / "sessions.json").write_text("{not json", encoding="utf-8")

    with pytest.raises(StorageError, match="Corrupted table file"):
        await FileStore(tmp_path).select(SESSIONS_TABLE)


# === SESSION STORE ===


class TestSessionStore:
    @pytest.mark.asyncio
    async def test_create_and_update_session(self, backend):
        store = SessionStore(backend)
        state = create_initial_state("Write about tea", user_id="u1")

        await store.create_session(state)
        updated = await store.update_session_status(
            state.session_id, WorkflowStatus.FAILED, current_stage="failed", error="cycle"
        )
        row = await store.get_session(state.session_id)

        assert updated is True
        assert row["user_id"] == "u1"
        assert row["status"] == "failed"
        assert row["current_stage"] == "failed"
        assert row["error"] == "cycle"

    @pytest.mark.asyncio
    async def test_update_missing_session_returns_false(self, backend):
        store = SessionStore(backend)

        assert await store.update_session_status("missing", WorkflowStatus.ACTIVE) is False
        assert await store.get_session("missing") is None

    @pytest.mark.asyncio
    async def test_unit_results_are_replaced_per_unit(self, backend):
        store = SessionStore(backend)
        draft = UnitResult(unit_number=2, title="Brewing", status=UnitStatus.NEEDS_REVISION)
        final = UnitResult(
            unit_number=2, title="Brewing", content="Steep.", word_count=1, status=UnitStatus.COMPLETED
        )
        first = UnitResult(unit_number=1, title="Leaves", content="Green.", status=UnitStatus.COMPLETED)

        await store.save_unit_result("s", draft)
        await store.save_unit_result("s", final)
        await store.save_unit_result("s", first)
        results = await store.list_unit_results("s")

        assert [r.unit_number for r in results] == [1, 2]
        assert results[1] == final
