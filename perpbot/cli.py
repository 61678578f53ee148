"""CLI tool for operator tasks.

Usage:
    python -m perpbot.cli serve
    python -m perpbot.cli issue-token <operator-name>
    python -m perpbot.cli init-db
    python -m perpbot.cli sweep-once
    python -m perpbot.cli reconcile [bot_id]
"""

import asyncio
import json
import sys

import uvicorn

from perpbot.config import settings
from perpbot.database import create_db_and_tables
from perpbot.engine.runtime import build_runtime
from perpbot.services.auth import create_access_token
from perpbot.utils.logging import setup_logging

COMMANDS = ("serve", "issue-token", "init-db", "sweep-once", "reconcile")


def serve():
    """Run the webhook receiver and admin API."""
    uvicorn.run("perpbot.main:app", host=settings.host, port=settings.port, log_config=None)


def issue_token(args: list[str]):
    """Print a JWT for the admin API."""
    if not args or not args[0].strip():
        print("Usage: python -m perpbot.cli issue-token <operator-name>")
        sys.exit(1)
    operator = args[0].strip()
    token = create_access_token(operator, settings)
    print(f"Token for '{operator}' (valid {settings.jwt_expire_minutes} minutes):\n")
    print(token)


def init_db():
    runtime = build_runtime(settings)
    create_db_and_tables(runtime.engine)
    print("Database tables created.")
    asyncio.run(runtime.aclose())


async def _sweep_once() -> dict:
    runtime = build_runtime(settings)
    try:
        create_db_and_tables(runtime.engine)
        return await runtime.retry_queue.sweep()
    finally:
        await runtime.aclose()


async def _reconcile(bot_id: int | None):
    runtime = build_runtime(settings)
    try:
        create_db_and_tables(runtime.engine)
        if bot_id is None:
            return await runtime.reconciler.reconcile_all()
        return await runtime.reconciler.reconcile(bot_id)
    finally:
        await runtime.aclose()


def main():
    if len(sys.argv) < 2:
        print("Usage: python -m perpbot.cli <command>")
        print(f"Commands: {', '.join(COMMANDS)}")
        sys.exit(1)

    setup_logging(settings.log_level)
    command, args = sys.argv[1], sys.argv[2:]
    if command == "serve":
        serve()
    elif command == "issue-token":
        issue_token(args)
    elif command == "init-db":
        init_db()
    elif command == "sweep-once":
        print(json.dumps(asyncio.run(_sweep_once()), indent=2, default=str))
    elif command == "reconcile":
        bot_id = None
        if args:
            try:
                bot_id = int(args[0])
            except ValueError:
                print(f"Invalid bot id: {args[0]}")
                sys.exit(1)
        print(json.dumps(asyncio.run(_reconcile(bot_id)), indent=2, default=str))
    else:
        print(f"Unknown command: {command}")
        sys.exit(1)


if __name__ == "__main__":
    main()
