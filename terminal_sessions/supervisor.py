from __future__ import annotations

import asyncio
import errno
import logging
import os
import pty
import shlex
import signal
import subprocess
from typing import Dict, List, Optional, Sequence, Set, Tuple, Union

from .errors import AlreadySupervised, NoSuchSession, SpawnError
from .events import ExitedEvent, OutputEvent, ProcessEvent, ProcessListener
from .identity import Identity, IdentityResolver, select_launcher
from .pty import PTYState, ReplayBuffer, acquire_controlling_tty, close_fd, get_window_size, set_window_size
from .record import SessionStatus

logger = logging.getLogger(__name__)

READ_CHUNK_BYTES = 4096

Command = Union[str, Sequence[str], None]


class ProcessSupervisor:
    """Owns one interactive pty process per session and proxies its I/O.

    Output is read on the event loop (``add_reader``), appended to the
    session's ReplayBuffer and handed to the listener as ``OutputEvent`` in
    read order. When the process goes away, whether by exit, signal or a pty
    failure, exactly one ``ExitedEvent`` follows the last ``OutputEvent``.
    """

    def __init__(
        self,
        *,
        identities: Optional[IdentityResolver] = None,
        listener: Optional[ProcessListener] = None,
        replay_buffer_size: int = 1000,
        kill_grace_s: float = 5.0,
        drain_timeout_s: float = 0.5,
        pty_cols: int = 80,
        pty_rows: int = 24,
        run_as_mode: str = "auto",
        signal_winch_on_resize: bool = False,
    ) -> None:
        self.identities = identities or IdentityResolver()
        self.replay_buffer_size = replay_buffer_size
        self.kill_grace_s = kill_grace_s
        self.drain_timeout_s = drain_timeout_s
        self.pty_cols = pty_cols
        self.pty_rows = pty_rows
        self.run_as_mode = run_as_mode
        self.signal_winch_on_resize = signal_winch_on_resize
        self._listener = listener
        self._pty: Dict[str, PTYState] = {}
        self._buffers: Dict[str, ReplayBuffer] = {}
        self._spawning: Set[str] = set()

    def set_listener(self, listener: Optional[ProcessListener]) -> None:
        self._listener = listener

    # ------------------------------------------------------------------
    # Queries

    def is_supervised(self, session_id: str) -> bool:
        return session_id in self._pty

    def supervised_ids(self) -> List[str]:
        return list(self._pty)

    def pid_of(self, session_id: str) -> Optional[int]:
        state = self._pty.get(session_id)
        return state.pid if state else None

    def get_replay(self, session_id: str) -> List[str]:
        buffer = self._buffers.get(session_id)
        return buffer.snapshot() if buffer else []

    def output_chunks(self, session_id: str) -> int:
        """Chunks produced over the session's lifetime, including evicted ones."""
        buffer = self._buffers.get(session_id)
        return buffer.total_chunks if buffer else 0

    def window_size(self, session_id: str) -> Optional[Tuple[int, int]]:
        state = self._pty.get(session_id)
        if not state or state.closed:
            return None
        try:
            return get_window_size(state.master_fd)
        except OSError:
            return None

    def release(self, session_id: str) -> None:
        """Forget the retained replay buffer of a session that is no longer live."""
        if session_id not in self._pty:
            self._buffers.pop(session_id, None)

    def _require(self, session_id: str) -> PTYState:
        state = self._pty.get(session_id)
        if not state:
            raise NoSuchSession(session_id, "no process is supervised for this session")
        return state

    # ------------------------------------------------------------------
    # Spawn

    def _build_argv(self, session_id: str, command: Command, identity: Identity) -> List[str]:
        if isinstance(command, (list, tuple)):
            argv = [str(part) for part in command]
        elif command and str(command).strip():
            try:
                argv = shlex.split(str(command))
            except ValueError as exc:
                raise SpawnError(session_id, f"cannot parse command {command!r}: {exc}") from exc
        else:
            argv = [identity.shell, "-l"]
        if not argv:
            raise SpawnError(session_id, "command must contain at least one argument")
        return argv

    async def spawn(self, session_id: str, command: Command, working_directory: str, identity: str) -> int:
        if session_id in self._pty or session_id in self._spawning:
            raise AlreadySupervised(session_id, "a process is already supervised for this session")
        if not working_directory or not os.path.isdir(working_directory):
            raise SpawnError(session_id, f"working directory {working_directory!r} does not exist")
        ident = self.identities.lookup(identity)
        if ident is None:
            raise SpawnError(session_id, f"identity {identity!r} does not exist on this system")

        argv = self._build_argv(session_id, command, ident)
        env = os.environ.copy()
        env.setdefault("TERM", "xterm-256color")
        plan = select_launcher(ident, self.run_as_mode).prepare(argv, ident, env)

        self._spawning.add(session_id)
        try:
            master_fd, slave_fd = pty.openpty()
            try:
                set_window_size(slave_fd, self.pty_cols, self.pty_rows)
                proc = await asyncio.create_subprocess_exec(
                    *plan.argv,
                    cwd=working_directory,
                    env=plan.env,
                    stdin=slave_fd,
                    stdout=slave_fd,
                    stderr=slave_fd,
                    start_new_session=True,
                    preexec_fn=acquire_controlling_tty,
                    **plan.kwargs,
                )
            except (OSError, subprocess.SubprocessError) as exc:
                close_fd(master_fd)
                logger.error("Failed to spawn %s for session %s: %s", plan.argv[0], session_id, exc)
                raise SpawnError(session_id, f"failed to launch {plan.argv[0]!r}: {exc}") from exc
            finally:
                close_fd(slave_fd)

            os.set_blocking(master_fd, False)
            buffer = ReplayBuffer(self.replay_buffer_size)
            state = PTYState(session_id=session_id, master_fd=master_fd, process=proc, buffer=buffer)
            self._buffers[session_id] = buffer
            self._pty[session_id] = state
        finally:
            self._spawning.discard(session_id)

        state.reader = asyncio.create_task(self._pty_reader(state))
        state.monitor = asyncio.create_task(self._monitor(state))
        logger.info(
            "Spawned pid %s for session %s as %s in %s: %s",
            proc.pid, session_id, ident.name, working_directory, shlex.join(plan.argv),
        )
        return proc.pid

    # ------------------------------------------------------------------
    # Output

    def _notify(self, event: ProcessEvent) -> None:
        if not self._listener:
            return
        try:
            self._listener(event)
        except Exception:
            logger.exception("Listener failed on %s for session %s", type(event).__name__, event.session_id)

    def _deliver(self, state: PTYState, data: bytes, final: bool = False) -> None:
        text = state.decoder.decode(data, final=final)
        if not text:
            return
        state.buffer.append(text)
        self._notify(OutputEvent(state.session_id, text))

    async def _pty_reader(self, state: PTYState) -> None:
        loop = asyncio.get_running_loop()
        readable = asyncio.Event()
        loop.add_reader(state.master_fd, readable.set)
        try:
            while True:
                await readable.wait()
                readable.clear()
                try:
                    data = os.read(state.master_fd, READ_CHUNK_BYTES)
                except BlockingIOError:
                    continue
                except OSError as exc:
                    # EIO is how a pty master reports that every slave fd is closed.
                    if exc.errno != errno.EIO:
                        state.io_failed = True
                        logger.warning("PTY read failed for session %s: %s", state.session_id, exc)
                    break
                if not data:
                    break
                self._deliver(state, data)
        finally:
            if not state.closed:
                loop.remove_reader(state.master_fd)

    async def _monitor(self, state: PTYState) -> None:
        waiter = asyncio.ensure_future(state.process.wait())
        reader = state.reader
        assert reader is not None
        await asyncio.wait({waiter, reader}, return_when=asyncio.FIRST_COMPLETED)

        if reader.done() and not reader.cancelled() and reader.exception() is not None:
            state.io_failed = True
            logger.error("PTY reader crashed for session %s", state.session_id, exc_info=reader.exception())
        if not waiter.done() and state.io_failed:
            logger.warning("Lost pty of session %s; killing pid %s", state.session_id, state.pid)
            self._signal(state, signal.SIGKILL)

        exit_code = await waiter

        if not reader.done():
            await asyncio.wait({reader}, timeout=self.drain_timeout_s)
        if not reader.done():
            reader.cancel()
            await asyncio.wait({reader})
        self._deliver(state, b"", final=True)

        self._close(state)
        if self._pty.get(state.session_id) is state:
            del self._pty[state.session_id]

        status = SessionStatus.FAILED if state.io_failed else SessionStatus.for_exit_code(exit_code)
        logger.info("Session %s pid %s exited: code=%s status=%s", state.session_id, state.pid, exit_code, status.value)
        self._notify(ExitedEvent(state.session_id, exit_code, status))

    def _close(self, state: PTYState) -> None:
        if state.closed:
            return
        loop = asyncio.get_running_loop()
        if state.escalation is not None:
            state.escalation.cancel()
            state.escalation = None
        loop.remove_reader(state.master_fd)
        if state.writer_registered:
            loop.remove_writer(state.master_fd)
            state.writer_registered = False
        state.pending_input.clear()
        state.closed = True
        close_fd(state.master_fd)

    # ------------------------------------------------------------------
    # Input

    def write(self, session_id: str, data: Union[str, bytes]) -> None:
        """Queue input for the process; never blocks."""
        state = self._require(session_id)
        payload = data.encode("utf-8") if isinstance(data, str) else bytes(data)
        if not payload or state.closed:
            return
        if state.pending_input:
            state.pending_input.extend(payload)
            return
        try:
            written = os.write(state.master_fd, payload)
        except BlockingIOError:
            written = 0
        except OSError as exc:
            logger.warning("Write to session %s failed: %s", session_id, exc)
            return
        if written < len(payload):
            state.pending_input.extend(payload[written:])
            asyncio.get_running_loop().add_writer(state.master_fd, self._flush_input, state)
            state.writer_registered = True

    def _flush_input(self, state: PTYState) -> None:
        try:
            written = os.write(state.master_fd, state.pending_input)
        except BlockingIOError:
            return
        except OSError as exc:
            logger.warning("Write to session %s failed: %s", state.session_id, exc)
            state.pending_input.clear()
        else:
            del state.pending_input[:written]
        if not state.pending_input:
            asyncio.get_running_loop().remove_writer(state.master_fd)
            state.writer_registered = False

    def resize(self, session_id: str, cols: int, rows: int) -> None:
        state = self._require(session_id)
        try:
            set_window_size(state.master_fd, cols, rows)
        except OSError as exc:
            logger.debug("Resize of session %s failed: %s", session_id, exc)
            return
        logger.debug("Resized session %s to %sx%s", session_id, cols, rows)
        if self.signal_winch_on_resize:
            self._signal(state, signal.SIGWINCH)

    # ------------------------------------------------------------------
    # Termination

    def _signal(self, state: PTYState, sig: signal.Signals) -> None:
        # start_new_session=True makes the child a group leader: pgid == pid.
        try:
            os.killpg(state.pid, sig)
        except ProcessLookupError:
            pass
        except PermissionError as exc:
            logger.warning("Not permitted to send %s to session %s: %s", sig.name, state.session_id, exc)

    def kill(self, session_id: str) -> bool:
        """SIGTERM now, SIGKILL after the grace period. False if nothing is live."""
        state = self._pty.get(session_id)
        if not state:
            return False
        logger.info("Terminating session %s (pid %s)", session_id, state.pid)
        self._signal(state, signal.SIGTERM)
        if state.escalation is None:
            loop = asyncio.get_running_loop()
            state.escalation = loop.call_later(self.kill_grace_s, self._escalate, state)
        return True

    def _escalate(self, state: PTYState) -> None:
        state.escalation = None
        if self._pty.get(state.session_id) is not state:
            return
        logger.warning(
            "Session %s ignored SIGTERM for %.1fs; sending SIGKILL to pid %s",
            state.session_id, self.kill_grace_s, state.pid,
        )
        self._signal(state, signal.SIGKILL)

    def kill_all(self) -> int:
        session_ids = list(self._pty)
        logger.info("Killing %d supervised process(es)", len(session_ids))
        for session_id in session_ids:
            self.kill(session_id)
        return len(session_ids)

    async def shutdown(self, timeout_s: float = 10.0) -> None:
        """Kill every live process and wait for them, at most `timeout_s`."""
        states = list(self._pty.values())
        self.kill_all()
        monitors = [state.monitor for state in states if state.monitor]
        if not monitors:
            return
        _, pending = await asyncio.wait(monitors, timeout=timeout_s)
        if not pending:
            return
        for state in states:
            if self._pty.get(state.session_id) is not state:
                continue
            logger.error("Session %s still alive after %.1fs; forcing shutdown", state.session_id, timeout_s)
            self._signal(state, signal.SIGKILL)
            if state.reader and not state.reader.done():
                state.reader.cancel()
            self._close(state)
