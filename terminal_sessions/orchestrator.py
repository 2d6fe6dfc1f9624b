from __future__ import annotations

import asyncio
import inspect
import logging
import time
from typing import Any, Dict, List, Optional, Set, Union

import psutil

from .errors import CapacityExceeded, NoSuchSession, SessionNotActive, ShuttingDown
from .events import EventBus, EventType, ExitedEvent, OutputEvent, ProcessEvent, SessionEvent
from .hooks import SessionLifecycleHooks
from .multiplexer import ViewerMultiplexer
from .record import SessionRecord, SessionStatus
from .store import SessionStore, new_session_id
from .supervisor import ProcessSupervisor

logger = logging.getLogger(__name__)


class SessionOrchestrator:
    """Admission control, canonical lifecycle status and command routing.

    Every status mutation (create, stop, delete, exit handling, recovery)
    runs under one lock, so the running count used for admission and the
    persisted records never disagree.
    """

    def __init__(
        self,
        store: SessionStore,
        supervisor: ProcessSupervisor,
        multiplexer: ViewerMultiplexer,
        *,
        bus: Optional[EventBus] = None,
        hooks: Optional[SessionLifecycleHooks] = None,
        max_sessions: int = 10,
        shutdown_timeout_s: float = 10.0,
    ) -> None:
        self.store = store
        self.supervisor = supervisor
        self.multiplexer = multiplexer
        self.bus = bus or EventBus()
        self.hooks = hooks
        self.max_sessions = max_sessions
        self.shutdown_timeout_s = shutdown_timeout_s
        # Sessions the operator stopped whose process has not exited yet.
        self._stopped: Set[str] = set()
        self._exit_tasks: Set[asyncio.Task] = set()
        self._closing = False
        supervisor.set_listener(self._on_process_event)

    def _get_lock(self) -> asyncio.Lock:
        if not hasattr(self, "_lock_instance"):
            self._lock_instance = asyncio.Lock()
        return self._lock_instance

    # ------------------------------------------------------------------
    # Hooks / events

    def _run_hook(self, name: str, *args: Any) -> None:
        hook = getattr(self.hooks, name, None) if self.hooks else None
        if not hook:
            return
        try:
            result = hook(*args)
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                task.add_done_callback(lambda t: self._hook_done(name, t))
        except Exception:
            logger.exception("Hook %s failed", name)

    def _hook_done(self, name: str, task: asyncio.Future) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Hook %s failed", name, exc_info=exc)

    def _publish(self, event_type: EventType, session_id: str, **data: Any) -> None:
        self.bus.publish(SessionEvent(type=event_type, session_id=session_id, data=data))

    def _on_process_event(self, event: ProcessEvent) -> None:
        if isinstance(event, OutputEvent):
            self.multiplexer.broadcast(
                event.session_id,
                SessionEvent(type=EventType.TERMINAL_OUTPUT, session_id=event.session_id, data={"data": event.chunk}),
            )
        elif isinstance(event, ExitedEvent):
            task = asyncio.get_running_loop().create_task(self.handle_exit(event))
            self._exit_tasks.add(task)
            task.add_done_callback(self._exit_tasks.discard)

    # ------------------------------------------------------------------
    # Queries

    async def list_sessions(self) -> List[SessionRecord]:
        return await self.store.list_all()

    async def get_session(self, session_id: str) -> Optional[SessionRecord]:
        return await self.store.get(session_id)

    async def running_count(self) -> int:
        return len(await self.store.list_by_status(SessionStatus.RUNNING))

    async def describe(self, session_id: str) -> Dict[str, Any]:
        """Session payload plus live process stats and viewer count."""
        record = await self.store.get(session_id)
        if record is None:
            raise NoSuchSession(session_id, "session not found")
        payload = record.to_payload()
        payload["viewers"] = len(self.multiplexer.viewers_of(session_id))
        payload["outputChunks"] = self.supervisor.output_chunks(session_id)
        size = self.supervisor.window_size(session_id)
        if size:
            payload["cols"], payload["rows"] = size
        payload["stats"] = await self._process_stats(session_id)
        return payload

    async def _process_stats(self, session_id: str) -> Dict[str, Any]:
        stats: Dict[str, Any] = {"alive": False}
        pid = self.supervisor.pid_of(session_id)
        if not pid:
            return stats
        stats["alive"] = True
        try:
            proc = await asyncio.to_thread(psutil.Process, pid)
            with proc.oneshot():
                stats["uptime"] = max(0.0, time.time() - proc.create_time())
                stats["cpu_percent"] = proc.cpu_percent(interval=0.0)
                stats["memory_rss"] = proc.memory_info().rss
                stats["num_threads"] = proc.num_threads()
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            pass
        return stats

    # ------------------------------------------------------------------
    # Lifecycle

    async def create_session(
        self,
        name: str,
        command: Optional[str],
        working_directory: str,
        run_as: str,
    ) -> SessionRecord:
        if not name or not str(name).strip():
            raise ValueError("name is required")
        if not working_directory:
            raise ValueError("workingDirectory is required")
        if not run_as:
            raise ValueError("runAsIdentity is required")
        if self._closing:
            raise ShuttingDown(None, "server is shutting down")

        async with self._get_lock():
            running = await self.store.list_by_status(SessionStatus.RUNNING)
            if len(running) >= self.max_sessions:
                logger.warning("Rejected session %r: %d of %d sessions running", name, len(running), self.max_sessions)
                raise CapacityExceeded(None, f"maximum number of sessions ({self.max_sessions}) reached")

            now = time.time()
            record = SessionRecord(
                id=new_session_id(),
                name=str(name).strip(),
                command=command or "",
                working_directory=working_directory,
                run_as=run_as,
                status=SessionStatus.RUNNING,
                created_at=now,
                updated_at=now,
            )
            await self.store.create(record)
            try:
                pid = await self.supervisor.spawn(record.id, record.command, record.working_directory, record.run_as)
            except BaseException:
                # Never leave a running record without a process behind it.
                await self.store.delete(record.id)
                logger.error("Rolled back session %s (%s) after spawn failure", record.id, record.name)
                raise
            await self.store.update_pid(record.id, pid)
            record = await self.store.get(record.id) or record

        logger.info("Session created: %s - %s (pid %s)", record.id, record.name, record.pid)
        self._publish(EventType.SESSION_CREATED, record.id, session=record.to_payload())
        self._run_hook("on_session_running", record)
        return record

    async def stop_session(self, session_id: str) -> bool:
        """Kill a live session and mark it stopped. False if it is not live."""
        async with self._get_lock():
            record = await self.store.get(session_id)
            if record is None:
                raise NoSuchSession(session_id, "session not found")
            if not self.supervisor.is_supervised(session_id):
                return False
            self.supervisor.kill(session_id)
            self._stopped.add(session_id)
            await self.store.update_status(session_id, SessionStatus.STOPPED)

        logger.info("Session %s stopped", session_id)
        self._publish(EventType.SESSION_STATUS, session_id, status=SessionStatus.STOPPED.value)
        return True

    async def delete_session(self, session_id: str) -> None:
        async with self._get_lock():
            record = await self.store.get(session_id)
            if record is None:
                raise NoSuchSession(session_id, "session not found")
            if self.supervisor.is_supervised(session_id):
                self.supervisor.kill(session_id)
            await self.store.delete(session_id)
            self._stopped.discard(session_id)
            self.multiplexer.drop_session(session_id)
            self.supervisor.release(session_id)

        logger.info("Session deleted: %s", session_id)
        self._publish(EventType.SESSION_DELETED, session_id)
        self._run_hook("on_session_deleted", session_id)

    async def handle_exit(self, event: ExitedEvent) -> None:
        session_id = event.session_id
        async with self._get_lock():
            record = await self.store.get(session_id)
            if record is None:
                # Deleted while the process was still shutting down.
                self._stopped.discard(session_id)
                self.supervisor.release(session_id)
                return
            status = event.status
            if session_id in self._stopped or record.status is SessionStatus.STOPPED:
                status = SessionStatus.STOPPED
            self._stopped.discard(session_id)
            await self.store.update_exit(session_id, event.exit_code, status)
            record = await self.store.get(session_id) or record

        logger.info("Session %s process exited: code=%s status=%s", session_id, event.exit_code, status.value)
        self.multiplexer.broadcast(session_id, SessionEvent(
            type=EventType.SESSION_EXITED,
            session_id=session_id,
            data={"exitCode": event.exit_code, "status": status.value, "session": record.to_payload()},
        ))
        self._publish(EventType.SESSION_STATUS, session_id, status=status.value, exitCode=event.exit_code)
        self._run_hook("on_session_exited", record, event.exit_code)

    async def recover(self) -> int:
        """Fail `running` records left behind by a previous server process."""
        stale: List[SessionRecord] = []
        async with self._get_lock():
            for record in await self.store.list_by_status(SessionStatus.RUNNING):
                if self.supervisor.is_supervised(record.id):
                    continue
                if record.pid and psutil.pid_exists(record.pid):
                    logger.warning(
                        "Session %s: pid %s from a previous run is still alive but cannot be reattached",
                        record.id, record.pid,
                    )
                await self.store.update_exit(record.id, record.exit_code, SessionStatus.FAILED)
                stale.append(record)
        if stale:
            logger.warning("Marked %d orphaned session(s) from a previous run as failed", len(stale))
        return len(stale)

    # ------------------------------------------------------------------
    # Routing

    def write(self, session_id: str, data: Union[str, bytes]) -> None:
        if session_id in self._stopped:
            raise SessionNotActive(session_id, "session has been stopped")
        try:
            self.supervisor.write(session_id, data)
        except NoSuchSession as exc:
            raise SessionNotActive(session_id, "session is not active") from exc

    def resize(self, session_id: str, cols: int, rows: int) -> None:
        if session_id in self._stopped:
            raise SessionNotActive(session_id, "session has been stopped")
        try:
            self.supervisor.resize(session_id, cols, rows)
        except NoSuchSession as exc:
            raise SessionNotActive(session_id, "session is not active") from exc

    # ------------------------------------------------------------------
    # Shutdown

    async def shutdown(self) -> None:
        """Stop every live session; returns within the forced-shutdown timeout."""
        self._closing = True
        live = self.supervisor.supervised_ids()
        self._stopped.update(live)
        self.supervisor.kill_all()

        async with self._get_lock():
            for session_id in live:
                await self.store.update_status(session_id, SessionStatus.STOPPED)

        await self.supervisor.shutdown(self.shutdown_timeout_s)
        pending = list(self._exit_tasks)
        if pending:
            await asyncio.wait(pending, timeout=self.shutdown_timeout_s)
        logger.info("Session orchestrator shut down (%d session(s) stopped)", len(live))
