# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Command-line interface for the delivery pipeline.

Usage:
    delivery-pipeline init-db
    delivery-pipeline serve --host 0.0.0.0 --port 8000
    delivery-pipeline details <message-id>
    delivery-pipeline purge-expired

Every command accepts ``--config`` (INI path) and ``--db`` (database path
overriding the configuration).
"""

from __future__ import annotations

import asyncio
import json
from datetime import datetime
from typing import Any

import click
from rich.console import Console
from rich.table import Table

from .config import PipelineConfig, load_settings
from .logger import configure_logging
from .persistence import Persistence
from .service import DeliveryService

console = Console()
err_console = Console(stderr=True)

_STATUS_STYLES = {
    "PENDING": "yellow",
    "SUCCESS": "green",
    "FAILED": "red",
    "WARNING": "magenta",
}


def run_async(coro):
    """Run an async coroutine synchronously."""
    return asyncio.run(coro)


def print_error(message: str) -> None:
    err_console.print(f"[red]Error:[/red] {message}")


def print_success(message: str) -> None:
    console.print(f"[green]✓[/green] {message}")


def print_json(data: Any) -> None:
    console.print_json(json.dumps(data, indent=2, default=str))


def _format_ts(ts: int | None) -> str:
    if not ts:
        return "-"
    return datetime.fromtimestamp(ts).strftime("%Y-%m-%d %H:%M:%S")


def _settings(ctx: click.Context) -> PipelineConfig:
    return ctx.obj["settings"]


@click.group()
@click.version_option(package_name="delivery-pipeline")
@click.option("--config", "config_path", type=click.Path(dir_okay=False), default=None, help="INI configuration file.")
@click.option("--db", "db_path", default=None, help="Database path (overrides the configuration).")
@click.option("--log-level", default=None, help="Logging level (default: NDP_LOG_LEVEL or INFO).")
@click.pass_context
def main(ctx: click.Context, config_path: str | None, db_path: str | None, log_level: str | None) -> None:
    """Notification delivery pipeline."""
    configure_logging(log_level)
    settings = load_settings(config_path)
    if db_path:
        settings.db_path = db_path
    ctx.obj = {"settings": settings}


@main.command("init-db")
@click.pass_context
def init_db(ctx: click.Context) -> None:
    """Create the database schema."""
    settings = _settings(ctx)
    run_async(Persistence(settings.db_path, settings.retention).init_db())
    print_success(f"Database initialised at {settings.db_path}")


@main.command("serve")
@click.option("--host", "-h", default=None, help="Host to bind to.")
@click.option("--port", "-p", type=int, default=None, help="Port to listen on.")
@click.pass_context
def serve(ctx: click.Context, host: str | None, port: int | None) -> None:
    """Run the API server and the workflow worker."""
    import uvicorn

    from .server import build_app

    settings = _settings(ctx)
    app = build_app(settings)
    uvicorn.run(app, host=host or settings.host, port=port or settings.port)


@main.command("details")
@click.argument("message_id")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def details(ctx: click.Context, message_id: str, as_json: bool) -> None:
    """Show a message record and its execution details."""
    service = DeliveryService(_settings(ctx))
    message, entries = run_async(service.message_details(message_id))
    if message is None:
        print_error(f"Message '{message_id}' not found")
        ctx.exit(1)

    if as_json:
        print_json(
            {
                "message": message.model_dump(),
                "execution_details": [entry.model_dump() for entry in entries],
            }
        )
        return

    console.print(f"[bold]Message[/bold] {message.id}")
    console.print(f"  Recipient: {message.email or '-'}")
    console.print(f"  Provider:  {message.provider_id or '-'}")
    console.print(f"  Provider id: {message.identifier or '-'}")
    console.print(f"  Expires:   {_format_ts(message.expire_at)}")

    table = Table(title="Execution details")
    table.add_column("#", style="dim")
    table.add_column("Created")
    table.add_column("Detail", style="cyan")
    table.add_column("Status")
    table.add_column("Raw", overflow="fold")
    for entry in entries:
        style = _STATUS_STYLES.get(str(entry.status), "white")
        table.add_row(
            str(entry.id or "-"),
            _format_ts(entry.created_at),
            str(entry.detail),
            f"[{style}]{entry.status}[/{style}]",
            entry.raw or "",
        )
    console.print(table)


@main.command("purge-expired")
@click.pass_context
def purge_expired(ctx: click.Context) -> None:
    """Delete message records whose retention window has elapsed."""
    service = DeliveryService(_settings(ctx))
    removed = run_async(service.purge_expired())
    print_success(f"Removed {removed} expired message(s)")


__all__ = ["main"]
