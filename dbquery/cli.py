"""Command-line front end: ``dbquery <command> ...`` with JSON output."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from collections.abc import Sequence
from typing import Any, TextIO

from .config import AppConfig, load_config
from .errors import (
    DatabaseConnectionError,
    DatabaseError,
    DbQueryError,
    InternalError,
    NotFoundError,
    ValidationError,
)
from .service import DbQueryService

LOG = logging.getLogger(__name__)

EXIT_CODES: dict[type[DbQueryError], int] = {
    ValidationError: 2,
    NotFoundError: 3,
    DatabaseConnectionError: 4,
    DatabaseError: 5,
    InternalError: 6,
}


def exit_code_for(exc: DbQueryError) -> int:
    for kind, code in EXIT_CODES.items():
        if isinstance(exc, kind):
            return code
    return EXIT_CODES[InternalError]


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="dbquery", description="Read-only SQL over registered databases.")
    parser.add_argument("--log-level", help="Override the configured log level")
    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("list", help="List registered databases")

    add = commands.add_parser("add", help="Register or update a database connection")
    add.add_argument("name")
    add.add_argument("url")

    remove = commands.add_parser("remove", help="Delete a registered database")
    remove.add_argument("name")

    schema = commands.add_parser("schema", help="Show tables, views and row counts")
    schema.add_argument("name")
    schema.add_argument("--refresh", action="store_true", help="Ignore the cached metadata")

    query = commands.add_parser("query", help="Run a read-only SQL statement")
    query.add_argument("name")
    query.add_argument("sql")

    ask = commands.add_parser("ask", help="Translate a question to SQL and run it")
    ask.add_argument("name")
    ask.add_argument("prompt")
    return parser


async def dispatch(service: DbQueryService, args: argparse.Namespace) -> Any:
    if args.command == "list":
        return [record.as_dict() for record in service.list_connections()]
    if args.command == "add":
        record = await service.register(args.name, args.url)
        return record.as_dict()
    if args.command == "remove":
        await service.delete(args.name)
        return {"deleted": args.name}
    if args.command == "schema":
        if args.refresh:
            metadata = await service.refresh_schema(args.name)
        else:
            metadata = await service.describe(args.name)
        return metadata.as_dict()
    if args.command == "query":
        result = await service.run_query(args.name, args.sql)
        return result.as_dict()
    if args.command == "ask":
        outcome = await service.run_natural_query(args.name, args.prompt)
        return outcome.as_dict()
    raise ValidationError(f"Unknown command '{args.command}'")


async def _run(config: AppConfig, args: argparse.Namespace) -> Any:
    async with DbQueryService.from_config(config) as service:
        return await dispatch(service, args)


def main(argv: Sequence[str] | None = None, *, stdout: TextIO | None = None, stderr: TextIO | None = None) -> int:
    stdout = stdout or sys.stdout
    stderr = stderr or sys.stderr
    args = build_parser().parse_args(argv)
    config = load_config()
    logging.basicConfig(
        level=(args.log_level or config.log_level).upper(),
        stream=stderr,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        payload = asyncio.run(_run(config, args))
    except DbQueryError as exc:
        LOG.debug("Command failed", exc_info=True)
        print(f"{exc.code}: {exc}", file=stderr)
        return exit_code_for(exc)
    json.dump(payload, stdout, indent=2)
    stdout.write("\n")
    return 0


__all__ = ["EXIT_CODES", "build_parser", "dispatch", "exit_code_for", "main"]
