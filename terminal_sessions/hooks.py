from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Optional

from .record import SessionRecord


MaybeAwaitable = Any


@dataclass(frozen=True)
class SessionLifecycleHooks:
    """Optional callbacks for hosts embedding the session core.

    Callbacks may be sync or async. Exceptions are logged and otherwise
    ignored; a failing hook never changes a session's lifecycle.
    """

    # Called after a session's process is spawned and its pid persisted.
    on_session_running: Optional[Callable[[SessionRecord], MaybeAwaitable]] = None

    # Called once the exit of a session's process has been recorded.
    on_session_exited: Optional[Callable[[SessionRecord, Optional[int]], MaybeAwaitable]] = None

    # Called after a session's record has been deleted.
    on_session_deleted: Optional[Callable[[str], MaybeAwaitable]] = None
