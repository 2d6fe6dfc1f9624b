from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional
import time


class SessionStatus(str, Enum):
    RUNNING = "running"
    STOPPED = "stopped"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not SessionStatus.RUNNING

    @classmethod
    def for_exit_code(cls, exit_code: Optional[int]) -> "SessionStatus":
        return cls.COMPLETED if exit_code == 0 else cls.FAILED


@dataclass
class SessionRecord:
    """Persisted metadata describing one supervised session."""

    id: str
    name: str
    command: str
    working_directory: str
    run_as: str
    status: SessionStatus = SessionStatus.RUNNING
    pid: Optional[int] = None
    created_at: float = 0.0
    updated_at: float = 0.0
    exit_code: Optional[int] = None

    def touch(self) -> None:
        self.updated_at = time.time()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "command": self.command,
            "working_directory": self.working_directory,
            "run_as": self.run_as,
            "status": self.status.value,
            "pid": self.pid,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "exit_code": self.exit_code,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SessionRecord":
        now = time.time()
        return cls(
            id=str(data["id"]),
            name=str(data.get("name") or ""),
            command=str(data.get("command") or ""),
            working_directory=str(data.get("working_directory") or ""),
            run_as=str(data.get("run_as") or ""),
            status=SessionStatus(data.get("status", SessionStatus.FAILED.value)),
            pid=data.get("pid"),
            created_at=float(data.get("created_at", now)),
            updated_at=float(data.get("updated_at", now)),
            exit_code=data.get("exit_code"),
        )

    def to_payload(self) -> Dict[str, Any]:
        """Wire shape sent to viewers."""
        return {
            "id": self.id,
            "name": self.name,
            "status": self.status.value,
            "command": self.command,
            "workingDirectory": self.working_directory,
            "pid": self.pid,
            "runAsIdentity": self.run_as,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "exitCode": self.exit_code,
        }
