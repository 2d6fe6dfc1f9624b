"""Terminal Sessions - shared pseudo-terminal sessions for many remote viewers."""

__version__ = "0.1.0"

from .config import SessionsConfig
from .errors import (
    AlreadySupervised,
    CapacityExceeded,
    NoSuchSession,
    SessionError,
    SessionNotActive,
    ShuttingDown,
    SpawnError,
)
from .events import EventBus, EventType, ExitedEvent, OutputEvent, SessionEvent
from .hooks import SessionLifecycleHooks
from .identity import IdentityResolver
from .multiplexer import ViewerMultiplexer
from .orchestrator import SessionOrchestrator
from .pty import PTYState, ReplayBuffer
from .record import SessionRecord, SessionStatus
from .services import TerminalSessions
from .store import JsonSessionStore, MemorySessionStore, SessionStore
from .supervisor import ProcessSupervisor

__all__ = [
    "__version__",
    "SessionsConfig",
    "TerminalSessions",
    "SessionOrchestrator",
    "ProcessSupervisor",
    "ViewerMultiplexer",
    "IdentityResolver",
    "SessionLifecycleHooks",
    "SessionRecord",
    "SessionStatus",
    "SessionStore",
    "MemorySessionStore",
    "JsonSessionStore",
    "PTYState",
    "ReplayBuffer",
    "EventBus",
    "EventType",
    "SessionEvent",
    "OutputEvent",
    "ExitedEvent",
    "SessionError",
    "AlreadySupervised",
    "NoSuchSession",
    "SpawnError",
    "CapacityExceeded",
    "SessionNotActive",
    "ShuttingDown",
]
