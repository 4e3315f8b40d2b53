from __future__ import annotations

import asyncio
import json
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Any, Awaitable, Callable

import click

from actionflow_mcp import __version__
from actionflow_mcp.errors import ActionFlowError
from actionflow_mcp.models.work_item import (
    Priority,
    RecurrencePattern,
    RecurrenceRule,
    WorkItemCreate,
    WorkItemKind,
    WorkItemStatus,
)
from actionflow_mcp.utils.config import get_config
from actionflow_mcp.utils.logger import setup_logging

_db_option = click.option(
    "--db-path",
    default=None,
    help="Path for the SQLite database file (default: ACTIONFLOW_DB_PATH or data/actionflow.db).",
)


def _run_with_engine(db_path: str | None, action: Callable[[Any], Awaitable[Any]]) -> Any:
    from actionflow_mcp.server import build_engine

    config = get_config()
    if db_path:
        config = replace(config, db_path=Path(db_path))

    async def _run() -> Any:
        engine = await build_engine(config)
        try:
            return await action(engine)
        finally:
            await engine.db.close()

    try:
        return asyncio.run(_run())
    except ActionFlowError as exc:
        raise click.ClickException(str(exc)) from exc


def _echo_json(data: Any) -> None:
    click.echo(json.dumps(data, indent=2, default=str))


@click.group()
@click.version_option(version=__version__, prog_name="actionflow")
def main() -> None:
    """ActionFlow: scheduled work item execution engine."""
    setup_logging(get_config().log_level)


@main.command()
@_db_option
def init(db_path: str | None) -> None:
    """Initialize the ActionFlow database."""

    async def _init(engine: Any) -> None:
        click.echo(f"Database initialized at {engine.db.db_path}")

    _run_with_engine(db_path, _init)


@main.command()
def start() -> None:
    """Start the ActionFlow MCP server (scheduler included)."""
    from actionflow_mcp.server import mcp

    click.echo("Starting ActionFlow MCP Server...", err=True)
    mcp.run()


@main.command()
def version() -> None:
    """Print the version and exit."""
    click.echo(f"actionflow {__version__}")


@main.command()
@_db_option
@click.option("--owner", required=True, help="Principal the work is done for.")
@click.option(
    "--kind",
    required=True,
    type=click.Choice([k.value for k in WorkItemKind]),
    help="Handler that will execute the item.",
)
@click.option("--payload", default="{}", show_default=True, help="JSON payload for the handler.")
@click.option(
    "--priority",
    default=Priority.MEDIUM.value,
    show_default=True,
    type=click.Choice([p.value for p in Priority]),
)
@click.option("--at", "scheduled_for", default=None, help="ISO-8601 run time (default: now).")
@click.option(
    "--max-retries",
    default=None,
    type=int,
    help="Retry budget on failure (default: ACTIONFLOW_MAX_RETRIES or 3).",
)
@click.option(
    "--every",
    "pattern",
    default=None,
    type=click.Choice([p.value for p in RecurrencePattern]),
    help="Repeat the item on this pattern.",
)
@click.option("--interval", default=1, show_default=True, type=int, help="Repeat every N periods.")
@click.option("--until", "end_date", default=None, help="ISO-8601 end of the recurrence.")
@click.option("--confirm/--no-confirm", "requires_confirmation", default=False, help="Hold until confirmed.")
@click.option("--name", default=None)
def submit(
    db_path: str | None,
    owner: str,
    kind: str,
    payload: str,
    priority: str,
    scheduled_for: str | None,
    max_retries: int | None,
    pattern: str | None,
    interval: int,
    end_date: str | None,
    requires_confirmation: bool,
    name: str | None,
) -> None:
    """Schedule a new work item."""
    try:
        recurrence = (
            RecurrenceRule(
                pattern=pattern,
                interval=interval,
                end_date=datetime.fromisoformat(end_date) if end_date else None,
            )
            if pattern
            else None
        )
        request = WorkItemCreate(
            owner=owner,
            kind=kind,
            payload=json.loads(payload),
            priority=priority,
            scheduled_for=datetime.fromisoformat(scheduled_for) if scheduled_for else None,
            max_retries=get_config().default_max_retries if max_retries is None else max_retries,
            recurrence=recurrence,
            requires_confirmation=requires_confirmation,
            name=name,
        )
    except ValueError as exc:
        raise click.BadParameter(str(exc)) from exc

    async def _submit(engine: Any) -> None:
        item = await engine.work_queue.submit(request)
        click.echo(f"{item.id} {item.status.value}")

    _run_with_engine(db_path, _submit)


@main.command("list")
@_db_option
@click.option("--owner", default=None)
@click.option("--status", default=None, type=click.Choice([s.value for s in WorkItemStatus]))
@click.option("--kind", default=None, type=click.Choice([k.value for k in WorkItemKind]))
@click.option("--limit", default=50, show_default=True, type=int)
@click.option("--offset", default=0, show_default=True, type=int)
def list_items(
    db_path: str | None,
    owner: str | None,
    status: str | None,
    kind: str | None,
    limit: int,
    offset: int,
) -> None:
    """List work items."""

    async def _list(engine: Any) -> None:
        page = await engine.work_queue.list_items(owner, status, kind, limit, offset)
        for item in page["items"]:
            click.echo(
                f"{item.id}  {item.status.value:<9}  {item.priority.value:<6}  "
                f"{item.kind.value:<15}  {item.scheduled_for.isoformat()}  {item.owner}"
            )
        click.echo(f"-- {len(page['items'])} of {page['total']}")

    _run_with_engine(db_path, _list)


@main.command()
@_db_option
@click.argument("item_id")
def show(db_path: str | None, item_id: str) -> None:
    """Show a work item with its execution history."""

    async def _show(engine: Any) -> None:
        item = await engine.work_queue.get(item_id)
        _echo_json(item.model_dump(mode="json"))

    _run_with_engine(db_path, _show)


@main.command()
@_db_option
@click.argument("item_id")
def cancel(db_path: str | None, item_id: str) -> None:
    """Cancel a pending work item."""

    async def _cancel(engine: Any) -> None:
        item = await engine.work_queue.cancel(item_id, requested_by="cli")
        click.echo(f"{item.id} {item.status.value}")

    _run_with_engine(db_path, _cancel)


@main.command()
@_db_option
@click.argument("item_id")
@click.option("--by", "confirmed_by", default="cli", show_default=True)
def confirm(db_path: str | None, item_id: str, confirmed_by: str) -> None:
    """Confirm a work item that requires confirmation."""

    async def _confirm(engine: Any) -> None:
        item = await engine.work_queue.confirm(item_id, confirmed_by)
        click.echo(f"{item.id} confirmed by {item.confirmed_by}")

    _run_with_engine(db_path, _confirm)


@main.command()
@_db_option
@click.argument("item_id", required=False)
def tick(db_path: str | None, item_id: str | None) -> None:
    """Run one discovery cycle, or force-execute ITEM_ID."""

    async def _tick(engine: Any) -> None:
        if item_id:
            outcome = await engine.executor.execute_now(item_id)
            _echo_json(outcome.to_dict())
            return
        executed = await engine.scheduler.run_discovery_once()
        click.echo(f"Executed {executed} work item(s)")

    _run_with_engine(db_path, _tick)


@main.command()
@_db_option
def sweep(db_path: str | None) -> None:
    """Run one maintenance sweep (stalled items, retention)."""

    async def _sweep(engine: Any) -> None:
        report = await engine.scheduler.run_maintenance_once()
        _echo_json(report.to_dict())

    _run_with_engine(db_path, _sweep)


@main.command()
@_db_option
@click.option("--owner", default=None)
def stats(db_path: str | None, owner: str | None) -> None:
    """Print work item statistics."""
    from actionflow_mcp.services.stats import collect_engine_stats

    async def _stats(engine: Any) -> None:
        _echo_json(
            await collect_engine_stats(engine.db, engine.executor, engine.scheduler, owner)
        )

    _run_with_engine(db_path, _stats)


if __name__ == "__main__":
    main()
