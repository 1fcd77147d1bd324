# src/taskbridge/cli/main.py

"""
CLI entrypoint (`taskbridge`).

Loads settings once, initializes logging, builds the services, then runs one
maintenance command against the configured backend.
"""

from __future__ import annotations

import argparse
import asyncio
import getpass
import json
import logging
import sys
from collections.abc import Sequence

from ..config import Settings, load_settings
from ..errors import ConfigError, TaskBridgeError
from ..logging_setup import setup_logging
from .bootstrap import Services, build_services
from .migrate import migrate_directory

logger = logging.getLogger(__name__)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="taskbridge", description="Task manager persistence/identity tools.")
    parser.add_argument("--no-dotenv", action="store_true", help="do not read a local .env file")
    parser.add_argument("--log-dir", default=None, help="write full logs here (default: <data dir>)")
    sub = parser.add_subparsers(dest="command", required=True)

    check = sub.add_parser("check-config", help="validate configuration and show the selected backend")
    check.add_argument("--connect", action="store_true", help="also open the backend")

    admin = sub.add_parser("create-admin", help="create a local administrator account")
    admin.add_argument("username")
    admin.add_argument("--name", default=None)
    admin.add_argument("--email", default=None)
    admin.add_argument("--password", default=None, help="prompted for when omitted")

    activity = sub.add_parser("activity", help="print recent activity, newest first")
    activity.add_argument("--limit", type=int, default=None)

    sub.add_parser("purge-sessions", help="delete expired sessions")

    migrate = sub.add_parser("migrate", help="copy an embedded data directory into the remote store")
    migrate.add_argument("--from-dir", required=True)

    return parser


async def _check_config(services: Services, args: argparse.Namespace) -> int:
    if args.connect:
        await services.gateway.open()
        await services.gateway.close()
    info = services.gateway.describe()
    info["issuer"] = services.settings.auth.issuer
    info["key_set"] = services.settings.auth.jwks_url
    info["shared_secret"] = bool(services.settings.auth.shared_secret)
    print(json.dumps(info, indent=2, default=str))
    return 0


async def _create_admin(services: Services, args: argparse.Namespace) -> int:
    password = args.password or getpass.getpass("Password: ")
    async with services:
        user = await services.sessions.register(
            args.username, password, name=args.name, email=args.email, is_admin=True
        )
    print(f"created admin {user.username} ({user.id})")
    return 0


async def _activity(services: Services, args: argparse.Namespace) -> int:
    async with services:
        records = await services.gateway.recent_activity(args.limit)
    for r in records:
        print(f"{r.timestamp}  {r.action:<16} {r.details}")
    return 0


async def _purge_sessions(services: Services, _args: argparse.Namespace) -> int:
    async with services:
        purged = await services.sessions.purge_expired()
    print(f"purged {purged} expired session(s)")
    return 0


async def _migrate(services: Services, args: argparse.Namespace) -> int:
    if services.settings.backend_name != "remote":
        raise ConfigError("migrate needs a configured remote store as the target")
    async with services:
        report = await migrate_directory(args.from_dir, services.gateway)
    for table, counts in report.items():
        print(f"{table:<16} " + " ".join(f"{k}={v}" for k, v in sorted(counts.items())))
    return 0


_COMMANDS = {
    "check-config": _check_config,
    "create-admin": _create_admin,
    "activity": _activity,
    "purge-sessions": _purge_sessions,
    "migrate": _migrate,
}


async def run_command(settings: Settings, args: argparse.Namespace, **transports) -> int:
    services = build_services(settings, **transports)
    try:
        return await _COMMANDS[args.command](services, args)
    finally:
        # idempotent; commands that opened the services have already closed them
        await services.aclose()


def main(argv: Sequence[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)

    try:
        settings = load_settings(dotenv=not args.no_dotenv)
    except ConfigError as exc:
        print(f"configuration error: {exc}", file=sys.stderr)
        return 2

    level_name = str(settings.log_level).upper()
    console_level = getattr(logging, level_name, logging.INFO)
    setup_logging(log_dir=args.log_dir or settings.data_dir, console_level=console_level)
    logger.info("Starting %s command=%s backend=%s", settings.app_name, args.command, settings.backend_name)

    try:
        return asyncio.run(run_command(settings, args))
    except TaskBridgeError as exc:
        logger.error("%s failed: %s", args.command, exc)
        print(f"error: {exc}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        logger.info("Interrupted.")
        return 130


if __name__ == "__main__":
    sys.exit(main())
