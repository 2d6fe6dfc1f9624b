"""Tests for the session stores."""

from __future__ import annotations

import json

import pytest

from terminal_sessions.record import SessionRecord, SessionStatus
from terminal_sessions.store import JsonSessionStore, MemorySessionStore, new_session_id


def _record(name: str = "build", created_at: float = 100.0) -> SessionRecord:
    return SessionRecord(
        id=new_session_id(),
        name=name,
        command="make",
        working_directory="/tmp",
        run_as="alice",
        created_at=created_at,
        updated_at=created_at,
    )


@pytest.fixture(params=["memory", "json"])
def store(request, tmp_path):
    if request.param == "memory":
        return MemorySessionStore()
    return JsonSessionStore(tmp_path)


class TestSessionStore:
    @pytest.mark.asyncio
    async def test_create_and_get(self, store):
        rec = await store.create(_record())
        fetched = await store.get(rec.id)
        assert fetched is not None
        assert fetched.name == "build"
        assert fetched.status is SessionStatus.RUNNING

    @pytest.mark.asyncio
    async def test_get_missing(self, store):
        assert await store.get("missing") is None

    @pytest.mark.asyncio
    async def test_duplicate_create(self, store):
        rec = await store.create(_record())
        with pytest.raises(ValueError):
            await store.create(rec)

    @pytest.mark.asyncio
    async def test_update_pid_status_exit(self, store):
        rec = await store.create(_record())

        assert await store.update_pid(rec.id, 4321)
        assert await store.update_exit(rec.id, 2, SessionStatus.FAILED)

        fetched = await store.get(rec.id)
        assert fetched.pid == 4321
        assert fetched.exit_code == 2
        assert fetched.status is SessionStatus.FAILED
        assert await store.update_status("missing", SessionStatus.STOPPED) is False

    @pytest.mark.asyncio
    async def test_list_newest_first_and_by_status(self, store):
        old = await store.create(_record("old", created_at=100.0))
        new = await store.create(_record("new", created_at=200.0))
        await store.update_status(old.id, SessionStatus.STOPPED)

        assert [r.id for r in await store.list_all()] == [new.id, old.id]
        assert [r.id for r in await store.list_by_status(SessionStatus.RUNNING)] == [new.id]
        assert [r.id for r in await store.list_by_status(SessionStatus.STOPPED)] == [old.id]

    @pytest.mark.asyncio
    async def test_delete(self, store):
        rec = await store.create(_record())
        assert await store.delete(rec.id) is True
        assert await store.get(rec.id) is None
        assert await store.delete(rec.id) is False


class TestJsonSessionStore:
    @pytest.mark.asyncio
    async def test_survives_reopen(self, tmp_path):
        rec = await JsonSessionStore(tmp_path).create(_record())
        await JsonSessionStore(tmp_path).update_exit(rec.id, 0, SessionStatus.COMPLETED)

        fetched = await JsonSessionStore(tmp_path).get(rec.id)

        assert fetched.status is SessionStatus.COMPLETED
        assert fetched.exit_code == 0
        assert fetched.run_as == "alice"

    @pytest.mark.asyncio
    async def test_layout(self, tmp_path):
        rec = await JsonSessionStore(tmp_path).create(_record())
        meta = tmp_path / "sessions" / rec.id / "meta.json"
        assert json.loads(meta.read_text())["id"] == rec.id
        assert not (meta.parent / "meta.json.tmp").exists()

    @pytest.mark.asyncio
    async def test_corrupt_record_is_skipped(self, tmp_path):
        store = JsonSessionStore(tmp_path)
        good = await store.create(_record())
        for name, content in (("b" * 32, "{not json"), ("c" * 32, "[1, 2, 3]"), ("d" * 32, "\"text\"")):
            bad_dir = tmp_path / "sessions" / name
            bad_dir.mkdir(parents=True)
            (bad_dir / "meta.json").write_text(content)

        assert [r.id for r in await store.list_all()] == [good.id]

    @pytest.mark.asyncio
    async def test_ids_cannot_escape_the_store(self, tmp_path):
        store = JsonSessionStore(tmp_path / "data")
        outside = tmp_path / "victim"
        outside.mkdir()
        rec = _record()
        (outside / "meta.json").write_text(json.dumps(rec.to_dict()))
        (outside / "keep.txt").write_text("keep")

        assert await store.get("../../victim") is None
        assert await store.delete("../../victim") is False
        assert await store.update_status("../../victim", SessionStatus.STOPPED) is False
        assert (outside / "keep.txt").exists()

        bad = _record()
        bad.id = "../escape"
        with pytest.raises(ValueError):
            await store.create(bad)
        assert not (tmp_path / "data" / "escape").exists()
