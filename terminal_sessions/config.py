from __future__ import annotations

import dataclasses
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Union

import yaml

ENV_PREFIX = "TERMINAL_SESSIONS_"
RUN_AS_MODES = ("auto", "setuid", "sudo")


def _default_data_dir() -> str:
    return str(Path.home() / ".cache" / "terminal_sessions")


def _truthy(raw: Any) -> bool:
    if isinstance(raw, bool):
        return raw
    return str(raw).strip().lower() in {"1", "true", "yes", "y", "on"}


@dataclass(frozen=True)
class SessionsConfig:
    """Operational limits and server settings.

    Values are merged from defaults, an optional YAML file and
    `TERMINAL_SESSIONS_<FIELD>` environment variables, later sources winning.
    """

    max_sessions: int = 10
    replay_buffer_size: int = 1000
    kill_grace_s: float = 5.0
    shutdown_timeout_s: float = 10.0
    drain_timeout_s: float = 0.5
    pty_cols: int = 80
    pty_rows: int = 24
    viewer_queue_limit: int = 10000
    signal_winch_on_resize: bool = False
    run_as_mode: str = "auto"
    identity_home_prefix: str = "/home/"
    data_dir: str = field(default_factory=_default_data_dir)
    host: str = "127.0.0.1"
    port: int = 3456
    log_level: str = "INFO"
    log_dir: Optional[str] = None

    def __post_init__(self) -> None:
        for name in ("max_sessions", "replay_buffer_size", "pty_cols", "pty_rows", "viewer_queue_limit"):
            if getattr(self, name) < 1:
                raise ValueError(f"{name} must be >= 1")
        for name in ("kill_grace_s", "shutdown_timeout_s", "drain_timeout_s"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must be >= 0")
        if self.run_as_mode not in RUN_AS_MODES:
            raise ValueError(f"run_as_mode must be one of {', '.join(RUN_AS_MODES)}")

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "SessionsConfig":
        fields = {f.name: f for f in dataclasses.fields(cls)}
        values: Dict[str, Any] = {}
        for key, raw in data.items():
            name = str(key).strip().lower().replace("-", "_")
            if name not in fields:
                raise ValueError(f"Unknown config key {key!r}")
            values[name] = _coerce(name, fields[name].type, raw)
        return cls(**values)

    @classmethod
    def load(
        cls,
        path: Optional[Union[str, Path]] = None,
        *,
        environ: Optional[Mapping[str, str]] = None,
    ) -> "SessionsConfig":
        env = os.environ if environ is None else environ
        merged: Dict[str, Any] = {}

        path = path or env.get(f"{ENV_PREFIX}CONFIG")
        if path:
            merged.update(load_yaml(path))

        for f in dataclasses.fields(cls):
            raw = env.get(f"{ENV_PREFIX}{f.name.upper()}")
            if raw is not None and raw != "":
                merged[f.name] = raw

        return cls.from_mapping(merged)


def _coerce(name: str, type_name: Any, raw: Any) -> Any:
    type_name = str(type_name)
    try:
        if raw is None:
            return None if "Optional" in type_name else raw
        if type_name == "bool":
            return _truthy(raw)
        if type_name == "int":
            return int(raw)
        if type_name == "float":
            return float(raw)
        if name in ("data_dir", "log_dir"):
            return os.path.expanduser(str(raw))
        return str(raw)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Invalid value for {name}: {raw!r}") from exc


def load_yaml(path: Union[str, Path]) -> Dict[str, Any]:
    path = Path(os.path.expanduser(str(path)))
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")
    with open(path, "r", encoding="utf-8") as fh:
        data = yaml.safe_load(fh) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Config file {path} must contain a mapping")
    # Accept either a flat mapping or one nested under `sessions:`.
    if isinstance(data.get("sessions"), dict):
        return dict(data["sessions"])
    return dict(data)
