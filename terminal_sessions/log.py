import logging
import sys
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path
from typing import Optional, Union

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def configure_logging(level: str = "INFO", log_dir: Optional[Union[str, Path]] = None) -> None:
    """Set up console logging and, when `log_dir` is given, daily-rotated files.

    Safe to call more than once; handlers installed by a previous call are
    replaced rather than duplicated.
    """
    root = logging.getLogger("terminal_sessions")
    root.setLevel(getattr(logging, str(level).upper(), logging.INFO))
    root.propagate = False

    for handler in list(root.handlers):
        if getattr(handler, "_terminal_sessions", False):
            root.removeHandler(handler)
            handler.close()

    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)

    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(formatter)
    console._terminal_sessions = True  # type: ignore[attr-defined]
    root.addHandler(console)

    if not log_dir:
        return

    path = Path(log_dir).expanduser()
    path.mkdir(parents=True, exist_ok=True)

    app_file = TimedRotatingFileHandler(path / "app.log", when="midnight", backupCount=14, encoding="utf-8")
    app_file.setFormatter(formatter)
    app_file._terminal_sessions = True  # type: ignore[attr-defined]
    root.addHandler(app_file)

    error_file = TimedRotatingFileHandler(path / "error.log", when="midnight", backupCount=14, encoding="utf-8")
    error_file.setLevel(logging.ERROR)
    error_file.setFormatter(formatter)
    error_file._terminal_sessions = True  # type: ignore[attr-defined]
    root.addHandler(error_file)
