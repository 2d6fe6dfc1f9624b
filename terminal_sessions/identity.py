"""Local OS identities and how to launch a process as one of them.

The supervisor only asks a `Launcher` to turn an argv into a `LaunchPlan`;
which elevation mechanism is used lives here, not in the core.
"""

from __future__ import annotations

import os
import pwd
import shutil
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol


def current_identity() -> str:
    return pwd.getpwuid(os.getuid()).pw_name


@dataclass(frozen=True)
class Identity:
    name: str
    uid: int
    gid: int
    home: str
    shell: str


class IdentityResolver:
    """Looks up identities in the local passwd database."""

    def __init__(self, home_prefix: str = "/home/"):
        self.home_prefix = home_prefix

    def lookup(self, name: str) -> Optional[Identity]:
        if not name:
            return None
        try:
            entry = pwd.getpwnam(name)
        except KeyError:
            return None
        return Identity(
            name=entry.pw_name,
            uid=entry.pw_uid,
            gid=entry.pw_gid,
            home=entry.pw_dir,
            shell=entry.pw_shell or "/bin/sh",
        )

    def exists(self, name: str) -> bool:
        return self.lookup(name) is not None

    def home_dir(self, name: str) -> Optional[str]:
        identity = self.lookup(name)
        return identity.home if identity else None

    def login_shell(self, name: str) -> Optional[str]:
        identity = self.lookup(name)
        return identity.shell if identity else None

    def list_identities(self) -> List[str]:
        """Identities a session may run as: regular users plus ourselves."""
        names = [
            entry.pw_name
            for entry in pwd.getpwall()
            if entry.pw_dir.startswith(self.home_prefix)
        ]
        me = current_identity()
        if me not in names:
            names.append(me)
        return sorted(set(names))


@dataclass
class LaunchPlan:
    argv: List[str]
    env: Dict[str, str]
    # Extra keyword arguments for asyncio.create_subprocess_exec.
    kwargs: Dict[str, Any] = field(default_factory=dict)


def _identity_env(base: Dict[str, str], identity: Identity) -> Dict[str, str]:
    env = dict(base)
    env["HOME"] = identity.home
    env["USER"] = identity.name
    env["LOGNAME"] = identity.name
    env.setdefault("SHELL", identity.shell)
    return env


class Launcher(Protocol):
    def prepare(self, argv: List[str], identity: Identity, env: Dict[str, str]) -> LaunchPlan: ...


class DirectLauncher:
    """Runs the process as the identity of this server process."""

    def prepare(self, argv: List[str], identity: Identity, env: Dict[str, str]) -> LaunchPlan:
        return LaunchPlan(argv=list(argv), env=_identity_env(env, identity))


class SetuidLauncher:
    """Drops to the target uid/gid in the child; the server must run as root."""

    def prepare(self, argv: List[str], identity: Identity, env: Dict[str, str]) -> LaunchPlan:
        return LaunchPlan(
            argv=list(argv),
            env=_identity_env(env, identity),
            kwargs={"user": identity.uid, "group": identity.gid, "extra_groups": os.getgrouplist(identity.name, identity.gid)},
        )


class SudoLauncher:
    """Prefixes the argv with sudo for the target identity."""

    def __init__(self, sudo_bin: Optional[str] = None):
        self.sudo_bin = sudo_bin or shutil.which("sudo") or "sudo"

    def prepare(self, argv: List[str], identity: Identity, env: Dict[str, str]) -> LaunchPlan:
        return LaunchPlan(
            argv=[self.sudo_bin, "-u", identity.name, "-H", "--", *argv],
            env=_identity_env(env, identity),
        )


def select_launcher(identity: Identity, mode: str = "auto") -> Launcher:
    if mode == "sudo":
        return SudoLauncher()
    if mode == "setuid":
        return SetuidLauncher()
    if identity.uid == os.getuid():
        return DirectLauncher()
    if os.geteuid() == 0:
        return SetuidLauncher()
    return SudoLauncher()
