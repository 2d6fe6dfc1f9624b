from collections import deque
from dataclasses import dataclass, field
import asyncio
import codecs
import fcntl
import os
import struct
import termios
from typing import Deque, List, Optional


class ReplayBuffer:
    """Most recent output chunks of one session, oldest dropped first."""

    def __init__(self, capacity: int = 1000):
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self.capacity = capacity
        self._chunks: Deque[str] = deque(maxlen=capacity)
        self.total_chunks = 0

    def append(self, chunk: str) -> None:
        self._chunks.append(chunk)
        self.total_chunks += 1

    def snapshot(self) -> List[str]:
        return list(self._chunks)

    def __len__(self) -> int:
        return len(self._chunks)


@dataclass
class PTYState:
    session_id: str
    master_fd: int
    process: asyncio.subprocess.Process
    buffer: ReplayBuffer
    decoder: codecs.IncrementalDecoder = field(
        default_factory=lambda: codecs.getincrementaldecoder("utf-8")(errors="replace")
    )
    pending_input: bytearray = field(default_factory=bytearray)
    writer_registered: bool = False
    reader: Optional[asyncio.Task] = None
    monitor: Optional[asyncio.Task] = None
    escalation: Optional[asyncio.TimerHandle] = None
    io_failed: bool = False
    closed: bool = False

    @property
    def pid(self) -> int:
        return self.process.pid


def set_window_size(fd: int, cols: int, rows: int) -> None:
    winsz = struct.pack("HHHH", max(1, int(rows)), max(1, int(cols)), 0, 0)
    fcntl.ioctl(fd, termios.TIOCSWINSZ, winsz)


def get_window_size(fd: int) -> tuple:
    """Return (cols, rows) of the terminal behind `fd`."""
    packed = fcntl.ioctl(fd, termios.TIOCGWINSZ, struct.pack("HHHH", 0, 0, 0, 0))
    rows, cols, _, _ = struct.unpack("HHHH", packed)
    return cols, rows


def acquire_controlling_tty() -> None:
    """Runs in the child after setsid(): make stdin (the pty slave) its terminal."""
    fcntl.ioctl(0, termios.TIOCSCTTY, 0)


def close_fd(fd: Optional[int]) -> None:
    if fd is None:
        return
    try:
        os.close(fd)
    except OSError:
        pass
