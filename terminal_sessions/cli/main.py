import argparse
import asyncio
import dataclasses
import os
import sys
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from ..config import SessionsConfig
from ..identity import IdentityResolver
from ..log import configure_logging
from ..store import JsonSessionStore


def _load_config(args) -> SessionsConfig:
    config = SessionsConfig.load(getattr(args, "config", None))
    overrides = {}
    if getattr(args, "host", None):
        overrides["host"] = args.host
    if getattr(args, "port", None):
        overrides["port"] = args.port
    if getattr(args, "log_level", None):
        overrides["log_level"] = args.log_level
    if getattr(args, "data_dir", None):
        overrides["data_dir"] = os.path.expanduser(args.data_dir)
    return dataclasses.replace(config, **overrides) if overrides else config


def _format_time(ts: float) -> str:
    if not ts:
        return "-"
    return datetime.fromtimestamp(ts).strftime("%Y-%m-%d %H:%M:%S")


def main(argv: Optional[List[str]] = None):
    parser = argparse.ArgumentParser(description="Terminal Sessions CLI")
    parser.add_argument("--config", default=None, help="Path to a YAML config file")
    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # ts serve
    serve_parser = subparsers.add_parser("serve", help="Run the HTTP/WebSocket server")
    serve_parser.add_argument("--host", default=None, help="Bind address")
    serve_parser.add_argument("--port", type=int, default=None, help="Bind port")
    serve_parser.add_argument("--log-level", default=None, help="Log level (DEBUG, INFO, ...)")
    serve_parser.add_argument("--data-dir", default=None, help="Directory for persisted session records")
    serve_parser.add_argument("--ephemeral", action="store_true", help="Keep session records in memory only")

    # ts list
    list_parser = subparsers.add_parser("list", help="List persisted sessions")
    list_parser.add_argument("--status", default=None, help="Only show sessions with this status")
    list_parser.add_argument("--data-dir", default=None, help="Directory for persisted session records")

    # ts users
    subparsers.add_parser("users", help="List identities sessions may run as")

    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    try:
        config = _load_config(args)
    except (ValueError, FileNotFoundError) as exc:
        print(f"Invalid configuration: {exc}")
        sys.exit(2)

    if args.command == "serve":
        from ..api.app import run

        configure_logging(config.log_level, config.log_dir)
        run(config, ephemeral=bool(args.ephemeral))
        return

    if args.command == "users":
        for name in IdentityResolver(config.identity_home_prefix).list_identities():
            print(name)
        return

    if args.command == "list":
        try:
            asyncio.run(list_sessions(config, status=args.status))
        except KeyboardInterrupt:
            pass


async def list_sessions(config: SessionsConfig, *, status: Optional[str] = None) -> None:
    store = JsonSessionStore(Path(config.data_dir))
    records = await store.list_all()
    if status:
        records = [r for r in records if r.status.value == status]

    print(f"{'ID':<34} {'NAME':<20} {'STATUS':<10} {'PID':<7} {'USER':<12} {'CREATED'}")
    for r in records:
        print(f"{r.id:<34} {r.name[:20]:<20} {r.status.value:<10} {r.pid or '-':<7} {r.run_as:<12} {_format_time(r.created_at)}")


if __name__ == "__main__":
    main()
