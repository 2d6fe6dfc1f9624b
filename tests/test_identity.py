"""Tests for identity lookup and launch planning."""

from __future__ import annotations

import os

from terminal_sessions.identity import (
    DirectLauncher,
    Identity,
    IdentityResolver,
    SetuidLauncher,
    SudoLauncher,
    current_identity,
    select_launcher,
)

ALICE = Identity(name="alice", uid=os.getuid() + 1000, gid=1000, home="/home/alice", shell="/bin/bash")


class TestIdentityResolver:
    def test_current_identity_exists(self):
        resolver = IdentityResolver()
        me = current_identity()
        assert resolver.exists(me)
        assert resolver.lookup(me).uid == os.getuid()
        assert resolver.home_dir(me)
        assert resolver.login_shell(me)

    def test_unknown_identity(self):
        resolver = IdentityResolver()
        assert resolver.lookup("no-such-identity-xyz") is None
        assert resolver.exists("no-such-identity-xyz") is False
        assert resolver.home_dir("no-such-identity-xyz") is None
        assert resolver.lookup("") is None

    def test_list_includes_current_identity(self):
        names = IdentityResolver(home_prefix="/nonexistent-prefix/").list_identities()
        assert current_identity() in names
        assert names == sorted(set(names))


class TestLaunchers:
    def test_direct_sets_identity_env(self):
        plan = DirectLauncher().prepare(["ls", "-l"], ALICE, {"PATH": "/usr/bin", "HOME": "/root"})
        assert plan.argv == ["ls", "-l"]
        assert plan.env["HOME"] == "/home/alice"
        assert plan.env["USER"] == "alice"
        assert plan.env["LOGNAME"] == "alice"
        assert plan.env["PATH"] == "/usr/bin"
        assert plan.kwargs == {}

    def test_sudo_prefixes_argv(self):
        plan = SudoLauncher(sudo_bin="/usr/bin/sudo").prepare(["bash", "-l"], ALICE, {})
        assert plan.argv == ["/usr/bin/sudo", "-u", "alice", "-H", "--", "bash", "-l"]

    def test_setuid_passes_user_and_group(self):
        me = IdentityResolver().lookup(current_identity())
        plan = SetuidLauncher().prepare(["bash"], me, {})
        assert plan.kwargs["user"] == me.uid
        assert plan.kwargs["group"] == me.gid
        assert me.gid in plan.kwargs["extra_groups"]

    def test_select_launcher(self):
        me = IdentityResolver().lookup(current_identity())
        assert isinstance(select_launcher(me, "auto"), DirectLauncher)
        assert isinstance(select_launcher(ALICE, "sudo"), SudoLauncher)
        assert isinstance(select_launcher(ALICE, "setuid"), SetuidLauncher)
        expected = SetuidLauncher if os.geteuid() == 0 else SudoLauncher
        assert isinstance(select_launcher(ALICE, "auto"), expected)
