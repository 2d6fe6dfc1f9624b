from __future__ import annotations

import logging
from asyncio import Queue as AsyncQueue
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set

from .errors import NoSuchSession
from .events import EventType, SessionEvent
from .record import SessionRecord
from .store import SessionStore
from .supervisor import ProcessSupervisor

logger = logging.getLogger(__name__)


@dataclass
class Viewer:
    """One remote viewer; the transport drains `queue` and sends it on."""

    viewer_id: str
    queue_limit: int = 10000
    queue: AsyncQueue = field(default_factory=AsyncQueue)
    sessions: Set[str] = field(default_factory=set)

    def push(self, event: SessionEvent) -> bool:
        """Enqueue without waiting. False when the viewer has fallen too far behind."""
        if self.queue.qsize() >= self.queue_limit:
            return False
        self.queue.put_nowait(event)
        return True

    def reply(self, frame: Dict[str, Any]) -> None:
        """Queue a transport-level frame; replies are never subject to the lag limit."""
        self.queue.put_nowait(frame)

    def discard_pending(self) -> int:
        dropped = 0
        while not self.queue.empty():
            self.queue.get_nowait()
            dropped += 1
        return dropped


@dataclass
class AttachResult:
    session: SessionRecord
    replay: List[str]
    viewers: int


class ViewerMultiplexer:
    """Fans each session's events out to the viewers attached to it."""

    def __init__(self, store: SessionStore, supervisor: ProcessSupervisor, *, viewer_queue_limit: int = 10000):
        self.store = store
        self.supervisor = supervisor
        self.viewer_queue_limit = viewer_queue_limit
        self._viewers: Dict[str, Viewer] = {}
        self._attachments: Dict[str, Set[str]] = {}

    # ------------------------------------------------------------------
    # Viewers

    def connect(self, viewer_id: str) -> Viewer:
        viewer = self._viewers.get(viewer_id)
        if viewer is None:
            viewer = Viewer(viewer_id=viewer_id, queue_limit=self.viewer_queue_limit)
            self._viewers[viewer_id] = viewer
            logger.debug("Viewer %s connected", viewer_id)
        return viewer

    def viewer(self, viewer_id: str) -> Optional[Viewer]:
        return self._viewers.get(viewer_id)

    def disconnect(self, viewer_id: str) -> None:
        viewer = self._viewers.pop(viewer_id, None)
        if viewer is None:
            return
        for session_id in list(viewer.sessions):
            self._unlink(session_id, viewer_id)
        logger.info("Viewer %s disconnected", viewer_id)

    def viewers_of(self, session_id: str) -> List[str]:
        return sorted(self._attachments.get(session_id, ()))

    def sessions_of(self, viewer_id: str) -> List[str]:
        viewer = self._viewers.get(viewer_id)
        return sorted(viewer.sessions) if viewer else []

    # ------------------------------------------------------------------
    # Attachments

    def _unlink(self, session_id: str, viewer_id: str) -> bool:
        viewers = self._attachments.get(session_id)
        if not viewers or viewer_id not in viewers:
            return False
        viewers.discard(viewer_id)
        if not viewers:
            del self._attachments[session_id]
        viewer = self._viewers.get(viewer_id)
        if viewer:
            viewer.sessions.discard(session_id)
        return True

    async def attach(self, session_id: str, viewer_id: str) -> AttachResult:
        """Attach a viewer and hand it the replay buffer.

        Everything after the record lookup runs without yielding to the event
        loop: the viewer's queue receives `session:attached` (with the replay)
        and then exactly the output produced after this call.
        """
        record = await self.store.get(session_id)
        if record is None:
            raise NoSuchSession(session_id, "session not found")

        viewer = self.connect(viewer_id)
        self._attachments.setdefault(session_id, set()).add(viewer_id)
        viewer.sessions.add(session_id)
        replay = self.supervisor.get_replay(session_id)
        count = len(self._attachments[session_id])

        viewer.queue.put_nowait(SessionEvent(
            type=EventType.SESSION_ATTACHED,
            session_id=session_id,
            data={"session": record.to_payload(), "buffer": replay, "connectedClients": count},
        ))
        logger.info("Viewer %s attached to session %s (%d viewer(s))", viewer_id, session_id, count)
        return AttachResult(session=record, replay=replay, viewers=count)

    def detach(self, session_id: str, viewer_id: str) -> bool:
        if not self._unlink(session_id, viewer_id):
            return False
        viewer = self._viewers.get(viewer_id)
        if viewer:
            viewer.queue.put_nowait(SessionEvent(type=EventType.SESSION_DETACHED, session_id=session_id))
        logger.info("Viewer %s detached from session %s", viewer_id, session_id)
        return True

    def drop_session(self, session_id: str) -> None:
        viewer_ids = list(self._attachments.pop(session_id, ()))
        for viewer_id in viewer_ids:
            viewer = self._viewers.get(viewer_id)
            if not viewer:
                continue
            viewer.sessions.discard(session_id)
            viewer.queue.put_nowait(
                SessionEvent(type=EventType.SESSION_DETACHED, session_id=session_id, data={"reason": "deleted"})
            )
        if viewer_ids:
            logger.info("Dropped %d attachment(s) of session %s", len(viewer_ids), session_id)

    # ------------------------------------------------------------------
    # Delivery

    def broadcast(self, session_id: str, event: SessionEvent) -> int:
        """Deliver to every attached viewer without waiting on any of them."""
        delivered = 0
        for viewer_id in list(self._attachments.get(session_id, ())):
            viewer = self._viewers.get(viewer_id)
            if viewer is None:
                self._unlink(session_id, viewer_id)
                continue
            if viewer.push(event):
                delivered += 1
                continue
            self._lagged(session_id, viewer)
        return delivered

    def _lagged(self, session_id: str, viewer: Viewer) -> None:
        # The discarded backlog may span every session the viewer watches,
        # so it is detached from all of them and told to re-attach.
        dropped = viewer.discard_pending()
        for attached_id in sorted(viewer.sessions):
            self._unlink(attached_id, viewer.viewer_id)
            viewer.queue.put_nowait(SessionEvent(
                type=EventType.VIEWER_LAGGED,
                session_id=attached_id,
                data={"dropped": dropped},
            ))
        logger.warning(
            "Viewer %s fell behind on session %s (%d event(s) dropped); detached",
            viewer.viewer_id, session_id, dropped,
        )
