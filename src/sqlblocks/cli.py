from __future__ import annotations

import asyncio
import dataclasses
import json
import logging
import os
import sys
from pathlib import Path
from typing import Any

import click
from redis import Redis
from redis.exceptions import RedisError
from rich.console import Console

from sqlblocks import __version__
from sqlblocks.config import Settings
from sqlblocks.engine import Engine
from sqlblocks.errors import SqlBlocksError
from sqlblocks.events import LIFECYCLE_EVENTS, EventFilter, EventFollower
from sqlblocks.models import ExecutionResult, ResultFormat, Status
from sqlblocks.registry import DEFAULT_SESSION
from sqlblocks.render import InlineSink, records_table, render_text
from sqlblocks.status_reference import get_status_reference

log = logging.getLogger(__name__)

SUCCESS_STATUSES = frozenset({Status.COMPLETED, Status.COMPLETED_WITH_ERRORS})


class _JsonErrorGroup(click.Group):
    """Group that reports click errors as ``{"ok": false, "error": ...}`` on stdout."""

    def main(self, *args: Any, **kwargs: Any) -> Any:
        kwargs.pop("standalone_mode", None)
        try:
            code = super().main(*args, standalone_mode=False, **kwargs)
        except click.ClickException as e:
            click.echo(json.dumps({"ok": False, "error": e.format_message()}))
            code = e.exit_code
        except click.Abort:
            click.echo("Aborted!", err=True)
            code = 1
        sys.exit(code or 0)


def _configure_logging(verbose: bool) -> None:
    level = os.getenv("SQLBLOCKS_LOG_LEVEL") or ("DEBUG" if verbose else "WARNING")
    logging.basicConfig(level=level.upper(), format="%(asctime)s %(levelname)s %(message)s")


def _load_settings(ctx: click.Context) -> Settings:
    try:
        settings = Settings.load(ctx.obj.get("config") if ctx.obj else None)
        settings.validate()
    except ValueError as e:
        raise click.ClickException(f"Invalid configuration: {e}") from e
    return settings


def _parse_vars(values: tuple[str, ...]) -> dict[str, Any] | None:
    """Turn ``--var key=value`` pairs into template params.

    Values that parse as JSON keep their type (``n=5``, ``ids=[1,2]``);
    anything else is a plain string.
    """
    if not values:
        return None
    params: dict[str, Any] = {}
    for item in values:
        key, sep, raw = item.partition("=")
        if not sep or not key.strip():
            raise click.BadParameter(f"Expected KEY=VALUE, got '{item}'.", param_hint="--var")
        try:
            params[key.strip()] = json.loads(raw)
        except json.JSONDecodeError:
            params[key.strip()] = raw
    return params


def _run(coro: Any) -> Any:
    try:
        return asyncio.run(coro)
    except SqlBlocksError as e:
        raise click.ClickException(str(e)) from e
    except ValueError as e:
        raise click.ClickException(str(e)) from e


def _emit_result(result: ExecutionResult, output_format: str) -> None:
    if output_format == "json":
        click.echo(json.dumps(result.to_dict(), indent=2, default=str))
    elif output_format == "table" and result.records:
        Console().print(records_table(result.records))
        if result.stderr:
            click.echo("[stderr]\n" + result.stderr, err=True)
    else:
        click.echo(render_text(result))


@click.group(cls=_JsonErrorGroup)
@click.version_option(version=__version__)
@click.option(
    "--config",
    type=click.Path(dir_okay=False, path_type=Path),
    envvar="SQLBLOCKS_CONFIG",
    help="Config file (default: ~/.config/sqlblocks/config.toml).",
)
@click.option("-v", "--verbose", is_flag=True, help="Debug logging to stderr.")
@click.pass_context
def main(ctx: click.Context, config: Path | None, verbose: bool):
    """Run SQL blocks against persistent DuckDB/sqlite3 CLI sessions.

    \b
    Quick start:
      sqlblocks exec "SELECT 42"                     Run in the default session
      sqlblocks exec -d app.db "SELECT * FROM t"     Run against a database file
      sqlblocks exec --standalone "SELECT 1"         Run in a one-off process
      sqlblocks batch q1.sql q2.sql --live           Queue files, watch progress
      sqlblocks history --session default            Follow lifecycle events
    """
    _configure_logging(verbose)
    ctx.ensure_object(dict)
    ctx.obj["config"] = config


@main.command("exec")
@click.argument("query")
@click.option("-s", "--session", default=DEFAULT_SESSION, show_default=True, help="Session name.")
@click.option("--standalone", is_flag=True, help="Run in a one-off process instead of a session.")
@click.option("-d", "--database", default=None, help="Database file for a new session.")
@click.option("--var", "variables", multiple=True, metavar="KEY=VALUE", help="Template value.")
@click.option("--max-lines", type=click.IntRange(min=0), default=None, help="Truncate output.")
@click.option("--timeout", type=click.FloatRange(min=0, min_open=True), default=None)
@click.option(
    "--format",
    "output_format",
    type=click.Choice(["json", "raw", "table"]),
    default="json",
    show_default=True,
)
@click.pass_context
def exec_query(
    ctx: click.Context,
    query: str,
    session: str,
    standalone: bool,
    database: str | None,
    variables: tuple[str, ...],
    max_lines: int | None,
    timeout: float | None,
    output_format: str,
):
    """Run QUERY and print its result. Use '-' to read the query from stdin."""
    if query == "-":
        query = click.get_text_stream("stdin").read()
    settings = _load_settings(ctx)
    params = _parse_vars(variables)

    async def _go() -> ExecutionResult:
        async with Engine(settings, sink=InlineSink()) as engine:
            return await engine.execute(
                query,
                session=None if standalone else session,
                database=database,
                params=params,
                result_format=ResultFormat.RAW if output_format == "raw" else ResultFormat.TABLE,
                max_lines=max_lines,
                timeout=timeout,
            )

    result = _run(_go())
    _emit_result(result, output_format)
    if result.status not in SUCCESS_STATUSES:
        ctx.exit(1)


@main.command()
@click.argument(
    "files", nargs=-1, required=True, type=click.Path(exists=True, dir_okay=False, path_type=Path)
)
@click.option("-s", "--session", default=DEFAULT_SESSION, show_default=True, help="Session name.")
@click.option("-d", "--database", default=None, help="Database file for a new session.")
@click.option("--var", "variables", multiple=True, metavar="KEY=VALUE", help="Template value.")
@click.option("--live", is_flag=True, help="Show a live progress table on stderr.")
@click.option(
    "--cancel",
    "cancel_indexes",
    type=int,
    multiple=True,
    metavar="INDEX",
    help="Cancel the execution for the file at INDEX (0-based) right after submitting.",
)
@click.pass_context
def batch(
    ctx: click.Context,
    files: tuple[Path, ...],
    session: str,
    database: str | None,
    variables: tuple[str, ...],
    live: bool,
    cancel_indexes: tuple[int, ...],
):
    """Queue each FILE in one session and print all results as a JSON array."""
    for index in cancel_indexes:
        if not 0 <= index < len(files):
            raise click.BadParameter(f"No file at index {index}.", param_hint="--cancel")
    settings = _load_settings(ctx)
    if live:
        settings = dataclasses.replace(
            settings, output=dataclasses.replace(settings.output, live_display=True)
        )
    params = _parse_vars(variables)

    async def _go() -> list[dict[str, Any]]:
        async with Engine(settings, sink=InlineSink()) as engine:
            executions = [
                await engine.submit(
                    path.read_text(encoding="utf-8"),
                    session=session,
                    database=database,
                    params=params,
                )
                for path in files
            ]
            outcomes = {}
            for index in cancel_indexes:
                outcomes[index] = await engine.cancel(executions[index].exec_id)
            payload = []
            for index, (path, execution) in enumerate(zip(files, executions, strict=True)):
                result = await engine.wait(execution.exec_id)
                entry = {"file": str(path), **result.to_dict()}
                if index in outcomes:
                    entry["cancel_outcome"] = str(outcomes[index])
                payload.append(entry)
            return payload

    payload = _run(_go())
    click.echo(json.dumps(payload, indent=2, default=str))


@main.command()
@click.option("-s", "--session", default=None, help="Only events for this session.")
@click.option("--id", "exec_id", default=None, help="Follow one execution until it completes.")
@click.option(
    "--type",
    "event_types",
    type=click.Choice(LIFECYCLE_EVENTS),
    multiple=True,
    help="Only events of this type (repeatable).",
)
@click.option(
    "--timeout",
    type=click.FloatRange(min=0, min_open=True),
    default=30.0,
    show_default=True,
    help="Idle seconds.",
)
@click.option("--count", type=click.IntRange(min=0), default=0, help="Stop after N events.")
@click.option("--from-start", is_flag=True, help="Replay the stream from its beginning.")
@click.pass_context
def history(
    ctx: click.Context,
    session: str | None,
    exec_id: str | None,
    event_types: tuple[str, ...],
    timeout: float,
    count: int,
    from_start: bool,
):
    """Follow lifecycle events from the Redis stream as JSON lines.

    Stops after --timeout seconds without a new event, after --count events,
    or when the execution given with --id completes.
    """
    settings = _load_settings(ctx)
    if not settings.events.redis_url:
        raise click.ClickException(
            "No Redis URL configured. Set SQLBLOCKS_REDIS_URL or [events] redis_url."
        )
    event_filter = EventFilter(session=session, exec_id=exec_id)
    if event_types:
        event_filter = dataclasses.replace(event_filter, types=frozenset(event_types))
    follower = EventFollower(
        Redis.from_url(settings.events.redis_url),
        event_filter,
        idle_timeout=timeout,
        from_start=from_start,
    )
    if not follower.available():
        raise click.ClickException(f"Redis unavailable at {settings.events.redis_url}")
    try:
        for event in follower.follow(limit=count):
            click.echo(json.dumps(event, default=str))
    except RedisError as e:
        raise click.ClickException(f"Lost Redis connection: {e}") from e


@main.command("help-status")
def help_status():
    """Show the execution status lifecycle and cancel outcomes."""
    click.echo(json.dumps(get_status_reference(), indent=2, sort_keys=False))


if __name__ == "__main__":
    main()
