from typing import Any, Dict, Optional


class SessionError(Exception):
    """Base for every condition reported back to a caller of the core.

    Each error names the session it concerns (when there is one) and the
    concrete reason, since callers usually relay it to a remote viewer.
    """

    code = "session_error"

    def __init__(self, session_id: Optional[str], reason: str):
        self.session_id = session_id
        self.reason = reason
        if session_id:
            super().__init__(f"Session {session_id}: {reason}")
        else:
            super().__init__(reason)

    def to_payload(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "sessionId": self.session_id,
            "message": str(self),
        }


class AlreadySupervised(SessionError):
    code = "already_supervised"


class NoSuchSession(SessionError):
    code = "no_such_session"


class SpawnError(SessionError):
    code = "spawn_error"


class CapacityExceeded(SessionError):
    code = "capacity_exceeded"


class SessionNotActive(SessionError):
    code = "session_not_active"


class ShuttingDown(SessionError):
    code = "shutting_down"
