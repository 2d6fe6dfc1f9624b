"""Shared fixtures for terminal session tests."""

from __future__ import annotations

import asyncio
import time

import pytest
import pytest_asyncio

from terminal_sessions.config import SessionsConfig
from terminal_sessions.events import ExitedEvent, OutputEvent
from terminal_sessions.identity import current_identity
from terminal_sessions.services import TerminalSessions
from terminal_sessions.supervisor import ProcessSupervisor


class EventRecorder:
    """Supervisor listener that keeps every event it is handed."""

    def __init__(self) -> None:
        self.events: list = []
        self._exited = asyncio.Event()

    def __call__(self, event) -> None:
        self.events.append(event)
        if isinstance(event, ExitedEvent):
            self._exited.set()

    @property
    def output(self) -> str:
        return "".join(e.chunk for e in self.events if isinstance(e, OutputEvent))

    @property
    def exits(self) -> list:
        return [e for e in self.events if isinstance(e, ExitedEvent)]

    async def wait_exit(self, timeout: float = 5.0) -> ExitedEvent:
        await asyncio.wait_for(self._exited.wait(), timeout)
        return self.exits[-1]

    async def wait_output(self, text: str, timeout: float = 5.0) -> None:
        await wait_for(lambda: text in self.output, timeout)


async def wait_for(predicate, timeout: float = 5.0, interval: float = 0.02) -> None:
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not met within %.1fs" % timeout)
        await asyncio.sleep(interval)


async def wait_for_record(store, session_id: str, predicate, timeout: float = 5.0):
    deadline = time.monotonic() + timeout
    while True:
        record = await store.get(session_id)
        if record is not None and predicate(record):
            return record
        if time.monotonic() > deadline:
            raise AssertionError(f"session {session_id} never reached the expected state: {record!r}")
        await asyncio.sleep(0.02)


@pytest.fixture
def me() -> str:
    return current_identity()


@pytest.fixture
def config(tmp_path) -> SessionsConfig:
    return SessionsConfig(
        max_sessions=2,
        kill_grace_s=0.5,
        shutdown_timeout_s=3.0,
        drain_timeout_s=0.2,
        data_dir=str(tmp_path / "data"),
    )


@pytest_asyncio.fixture
async def recorder() -> EventRecorder:
    return EventRecorder()


@pytest_asyncio.fixture
async def supervisor(recorder):
    sup = ProcessSupervisor(listener=recorder, kill_grace_s=0.5, drain_timeout_s=0.2)
    yield sup
    await sup.shutdown(3.0)


@pytest_asyncio.fixture
async def services(config):
    svc = TerminalSessions(config, ephemeral=True)
    await svc.start()
    yield svc
    await svc.shutdown()
