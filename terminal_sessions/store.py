from __future__ import annotations

import asyncio
import json
import re
import shutil
import time
import uuid
from pathlib import Path
from typing import AsyncIterator, Dict, List, Optional, Protocol

import aiofiles

from .record import SessionRecord, SessionStatus


SESSION_ID_RE = re.compile(r"^[0-9a-f]{32}$")


def new_session_id() -> str:
    return uuid.uuid4().hex


def is_session_id(value: str) -> bool:
    return isinstance(value, str) and SESSION_ID_RE.match(value) is not None


class SessionStore(Protocol):
    """Keyed record store holding the canonical session status."""

    async def create(self, record: SessionRecord) -> SessionRecord: ...

    async def get(self, session_id: str) -> Optional[SessionRecord]: ...

    async def update_status(self, session_id: str, status: SessionStatus) -> bool: ...

    async def update_pid(self, session_id: str, pid: Optional[int]) -> bool: ...

    async def update_exit(self, session_id: str, exit_code: Optional[int], status: SessionStatus) -> bool: ...

    async def delete(self, session_id: str) -> bool: ...

    async def list_all(self) -> List[SessionRecord]: ...

    async def list_by_status(self, status: SessionStatus) -> List[SessionRecord]: ...


def _newest_first(records: List[SessionRecord]) -> List[SessionRecord]:
    return sorted(records, key=lambda rec: rec.created_at, reverse=True)


class MemorySessionStore:
    """In-process store; records live as long as the store object."""

    def __init__(self) -> None:
        self._records: Dict[str, SessionRecord] = {}

    async def create(self, record: SessionRecord) -> SessionRecord:
        if record.id in self._records:
            raise ValueError(f"Session {record.id} already exists")
        self._records[record.id] = record
        return record

    async def get(self, session_id: str) -> Optional[SessionRecord]:
        return self._records.get(session_id)

    async def update_status(self, session_id: str, status: SessionStatus) -> bool:
        record = self._records.get(session_id)
        if not record:
            return False
        record.status = status
        record.touch()
        return True

    async def update_pid(self, session_id: str, pid: Optional[int]) -> bool:
        record = self._records.get(session_id)
        if not record:
            return False
        record.pid = pid
        record.touch()
        return True

    async def update_exit(self, session_id: str, exit_code: Optional[int], status: SessionStatus) -> bool:
        record = self._records.get(session_id)
        if not record:
            return False
        record.exit_code = exit_code
        record.status = status
        record.touch()
        return True

    async def delete(self, session_id: str) -> bool:
        return self._records.pop(session_id, None) is not None

    async def list_all(self) -> List[SessionRecord]:
        return _newest_first(list(self._records.values()))

    async def list_by_status(self, status: SessionStatus) -> List[SessionRecord]:
        return _newest_first([rec for rec in self._records.values() if rec.status is status])


class JsonSessionStore:
    """One `meta.json` per session under `<root>/sessions/<id>/`."""

    def __init__(self, root: Path):
        self.root = Path(root).expanduser()
        self.sessions_dir = self.root / "sessions"
        self.sessions_dir.mkdir(parents=True, exist_ok=True)

    def _meta_path(self, session_id: str) -> Path:
        return self.sessions_dir / session_id / "meta.json"

    async def _aiter_records(self) -> AsyncIterator[SessionRecord]:
        meta_paths = sorted(self.sessions_dir.glob("*/meta.json"))
        for meta in meta_paths:
            record = await self.get(meta.parent.name)
            if record:
                yield record

    async def get(self, session_id: str) -> Optional[SessionRecord]:
        if not is_session_id(session_id):
            return None
        meta_path = self._meta_path(session_id)
        if not meta_path.exists():
            return None
        async with aiofiles.open(meta_path, "r", encoding="utf-8") as fh:
            content = await fh.read()
        try:
            return SessionRecord.from_dict(json.loads(content))
        except (ValueError, KeyError, TypeError):
            return None

    async def _save(self, record: SessionRecord) -> None:
        record_dir = self.sessions_dir / record.id
        await asyncio.to_thread(record_dir.mkdir, parents=True, exist_ok=True)
        tmp_path = record_dir / "meta.json.tmp"
        meta_path = record_dir / "meta.json"
        async with aiofiles.open(tmp_path, "w", encoding="utf-8") as fh:
            await fh.write(json.dumps(record.to_dict(), indent=2))
        await asyncio.to_thread(tmp_path.replace, meta_path)

    async def create(self, record: SessionRecord) -> SessionRecord:
        if not is_session_id(record.id):
            raise ValueError(f"Invalid session id {record.id!r}")
        if self._meta_path(record.id).exists():
            raise ValueError(f"Session {record.id} already exists")
        if not record.created_at:
            record.created_at = time.time()
        record.updated_at = record.updated_at or record.created_at
        await self._save(record)
        return record

    async def update_status(self, session_id: str, status: SessionStatus) -> bool:
        record = await self.get(session_id)
        if not record:
            return False
        record.status = status
        record.touch()
        await self._save(record)
        return True

    async def update_pid(self, session_id: str, pid: Optional[int]) -> bool:
        record = await self.get(session_id)
        if not record:
            return False
        record.pid = pid
        record.touch()
        await self._save(record)
        return True

    async def update_exit(self, session_id: str, exit_code: Optional[int], status: SessionStatus) -> bool:
        record = await self.get(session_id)
        if not record:
            return False
        record.exit_code = exit_code
        record.status = status
        record.touch()
        await self._save(record)
        return True

    async def delete(self, session_id: str) -> bool:
        if not is_session_id(session_id):
            return False
        record_dir = self.sessions_dir / session_id
        if not record_dir.exists():
            return False
        await asyncio.to_thread(shutil.rmtree, record_dir, ignore_errors=True)
        return True

    async def list_all(self) -> List[SessionRecord]:
        records = [record async for record in self._aiter_records()]
        return _newest_first(records)

    async def list_by_status(self, status: SessionStatus) -> List[SessionRecord]:
        records = [record async for record in self._aiter_records() if record.status is status]
        return _newest_first(records)
