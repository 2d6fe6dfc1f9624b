from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Optional, Set, Union
from asyncio import Queue as AsyncQueue
import logging
import time

from .record import SessionStatus

logger = logging.getLogger(__name__)


# ----------------------------------------------------------------------
# Supervisor -> orchestrator


@dataclass(frozen=True)
class OutputEvent:
    session_id: str
    chunk: str


@dataclass(frozen=True)
class ExitedEvent:
    session_id: str
    exit_code: Optional[int]
    status: SessionStatus


ProcessEvent = Union[OutputEvent, ExitedEvent]
ProcessListener = Callable[[ProcessEvent], None]


# ----------------------------------------------------------------------
# Core -> viewers


class EventType(Enum):
    SESSION_CREATED = "session:created"
    SESSION_STATUS = "session:status"
    SESSION_EXITED = "session:exited"
    SESSION_DELETED = "session:deleted"
    SESSION_ATTACHED = "session:attached"
    SESSION_DETACHED = "session:detached"
    TERMINAL_OUTPUT = "terminal:output"
    VIEWER_LAGGED = "viewer:lagged"


@dataclass
class SessionEvent:
    type: EventType
    session_id: str
    data: Dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "sessionId": self.session_id,
            "timestamp": self.timestamp,
            **self.data,
        }


class EventBus:
    """In-process lifecycle event fan-out to every subscribed client.

    Terminal output does not go through the bus; it is routed per session by
    the ViewerMultiplexer.
    """

    def __init__(self):
        self._subscribers: Set[AsyncQueue] = set()

    def subscribe(self) -> AsyncQueue:
        q: AsyncQueue = AsyncQueue()
        self._subscribers.add(q)
        return q

    def unsubscribe(self, q: AsyncQueue) -> None:
        self._subscribers.discard(q)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def publish(self, event: SessionEvent) -> None:
        for q in list(self._subscribers):
            q.put_nowait(event)
        logger.debug("Published %s for session %s to %d subscriber(s)", event.type.value, event.session_id, len(self._subscribers))
