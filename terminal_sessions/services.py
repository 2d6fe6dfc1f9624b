from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

from .config import SessionsConfig
from .events import EventBus
from .hooks import SessionLifecycleHooks
from .identity import IdentityResolver
from .multiplexer import ViewerMultiplexer
from .orchestrator import SessionOrchestrator
from .store import JsonSessionStore, MemorySessionStore, SessionStore
from .supervisor import ProcessSupervisor

logger = logging.getLogger(__name__)


class TerminalSessions:
    """Explicitly constructed core services with a start/shutdown lifecycle."""

    def __init__(
        self,
        config: Optional[SessionsConfig] = None,
        *,
        store: Optional[SessionStore] = None,
        identities: Optional[IdentityResolver] = None,
        hooks: Optional[SessionLifecycleHooks] = None,
        ephemeral: bool = False,
    ) -> None:
        self.config = config or SessionsConfig()
        if store is None:
            store = MemorySessionStore() if ephemeral else JsonSessionStore(Path(self.config.data_dir))
        self.store = store
        self.identities = identities or IdentityResolver(self.config.identity_home_prefix)
        self.bus = EventBus()
        self.supervisor = ProcessSupervisor(
            identities=self.identities,
            replay_buffer_size=self.config.replay_buffer_size,
            kill_grace_s=self.config.kill_grace_s,
            drain_timeout_s=self.config.drain_timeout_s,
            pty_cols=self.config.pty_cols,
            pty_rows=self.config.pty_rows,
            run_as_mode=self.config.run_as_mode,
            signal_winch_on_resize=self.config.signal_winch_on_resize,
        )
        self.multiplexer = ViewerMultiplexer(
            self.store,
            self.supervisor,
            viewer_queue_limit=self.config.viewer_queue_limit,
        )
        self.orchestrator = SessionOrchestrator(
            self.store,
            self.supervisor,
            self.multiplexer,
            bus=self.bus,
            hooks=hooks,
            max_sessions=self.config.max_sessions,
            shutdown_timeout_s=self.config.shutdown_timeout_s,
        )
        self.started = False

    async def start(self) -> None:
        if self.started:
            return
        await self.orchestrator.recover()
        self.started = True
        logger.info(
            "Terminal sessions ready: max_sessions=%d replay=%d chunks kill_grace=%.1fs",
            self.config.max_sessions, self.config.replay_buffer_size, self.config.kill_grace_s,
        )

    async def shutdown(self) -> None:
        if not self.started:
            return
        logger.info("Shutting down terminal sessions")
        await self.orchestrator.shutdown()
        self.started = False

    async def __aenter__(self) -> "TerminalSessions":
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.shutdown()
