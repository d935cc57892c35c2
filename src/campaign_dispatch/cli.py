# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Command-line interface for campaign-dispatch.

Usage:
    campaign-dispatch init-db
    campaign-dispatch accounts add acme --smtp-host smtp.example.com --smtp-port 587 \\
        --smtp-username mailer@example.com --smtp-password secret --hourly-limit 20
    campaign-dispatch accounts list
    campaign-dispatch run-once
    campaign-dispatch reset-windows
    campaign-dispatch serve --port 8000

Every command reads settings with ``load_settings`` (``--config`` or
``CDS_CONFIG``); ``--db-path`` overrides the database location.
"""

from __future__ import annotations

import asyncio
import json
import os
from dataclasses import replace
from typing import Any, Optional

import click
from pydantic import ValidationError
from rich.console import Console
from rich.table import Table

from .batching import StoreReadError
from .config_loader import DB_PATH_OVERRIDE_ENV, DispatchSettings, load_settings
from .core import DispatchEngine
from .logger import configure_logging
from .models import AccountCreate, Encryption
from .persistence import Persistence

console = Console()
err_console = Console(stderr=True)


def run_async(coro):
    """Run an async coroutine synchronously."""
    return asyncio.run(coro)


def print_error(message: str) -> None:
    err_console.print(f"[red]Error:[/red] {message}")


def print_success(message: str) -> None:
    console.print(f"[green]✓[/green] {message}")


def print_json(data: Any) -> None:
    console.print_json(json.dumps(data, indent=2, default=str))


def _settings(ctx: click.Context) -> DispatchSettings:
    return ctx.obj["settings"]


def _persistence(ctx: click.Context) -> Persistence:
    return Persistence(_settings(ctx).db_path)


@click.group()
@click.option("--config", "config_path", type=click.Path(dir_okay=False), help="INI settings file.")
@click.option("--db-path", help="SQLite database path (overrides settings).")
@click.option("--log-level", default=None, help="Logging level (default: CDS_LOG_LEVEL or INFO).")
@click.pass_context
def main(ctx: click.Context, config_path: Optional[str], db_path: Optional[str], log_level: Optional[str]) -> None:
    """campaign-dispatch: outbound campaign email dispatcher."""
    configure_logging(log_level)
    settings = load_settings(config_path)
    if db_path:
        settings = replace(settings, db_path=db_path)
    ctx.ensure_object(dict)
    ctx.obj["settings"] = settings
    ctx.obj["config_path"] = config_path
    ctx.obj["log_level"] = log_level


@main.command("init-db")
@click.pass_context
def init_db(ctx: click.Context) -> None:
    """Create the database schema."""
    persistence = _persistence(ctx)
    run_async(persistence.init_db())
    print_success(f"Database ready at {persistence.db_path}")


@main.group()
def accounts() -> None:
    """Manage sending accounts."""


@accounts.command("add")
@click.argument("account_id")
@click.option("--name", help="Display name of the account.")
@click.option("--hourly-limit", type=int, default=None, help="Max sends per hour (default: 20).")
@click.option("--daily-limit", type=int, default=None, help="Max sends per day (default: 100).")
@click.option("--smtp-host", help="SMTP server hostname.")
@click.option("--smtp-port", type=int, help="SMTP server port.")
@click.option("--smtp-username", help="SMTP username (AUTH LOGIN).")
@click.option("--smtp-password", help="SMTP password.")
@click.option(
    "--encryption",
    type=click.Choice([e.value for e in Encryption]),
    default=None,
    help="SMTP encryption (default: inferred from port).",
)
@click.option("--ses-access-key-id", help="SES access key of this account.")
@click.option("--ses-secret-access-key", help="SES secret of this account.")
@click.option("--ses-region", help="SES region of this account.")
@click.pass_context
def accounts_add(
    ctx: click.Context,
    account_id: str,
    name: Optional[str],
    hourly_limit: Optional[int],
    daily_limit: Optional[int],
    smtp_host: Optional[str],
    smtp_port: Optional[int],
    smtp_username: Optional[str],
    smtp_password: Optional[str],
    encryption: Optional[str],
    ses_access_key_id: Optional[str],
    ses_secret_access_key: Optional[str],
    ses_region: Optional[str],
) -> None:
    """Add or update a sending account."""
    fields: dict[str, Any] = {
        "id": account_id,
        "name": name,
        "hourly_limit": hourly_limit,
        "daily_limit": daily_limit,
        "smtp_host": smtp_host,
        "smtp_port": smtp_port,
        "smtp_username": smtp_username,
        "smtp_password": smtp_password,
        "smtp_encryption": encryption,
        "ses_access_key_id": ses_access_key_id,
        "ses_secret_access_key": ses_secret_access_key,
        "ses_region": ses_region,
    }
    try:
        account = AccountCreate(**{k: v for k, v in fields.items() if v is not None})
    except ValidationError as exc:
        print_error(f"Invalid account: {exc.errors()[0]['msg']}")
        raise SystemExit(1)

    persistence = _persistence(ctx)

    async def _add() -> None:
        await persistence.init_db()
        await persistence.add_account(account.model_dump())

    run_async(_add())
    print_success(f"Account '{account.id}' saved")


@accounts.command("list")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def accounts_list(ctx: click.Context, as_json: bool) -> None:
    """List sending accounts with their window counters."""
    persistence = _persistence(ctx)

    async def _list() -> list[dict[str, Any]]:
        await persistence.init_db()
        return await persistence.list_accounts()

    rows = run_async(_list())
    if as_json:
        print_json(rows)
        return
    if not rows:
        console.print("[dim]No accounts configured.[/dim]")
        return

    table = Table(title="Sending Accounts")
    table.add_column("ID", style="cyan")
    table.add_column("Transport")
    table.add_column("Hour", justify="right")
    table.add_column("Day", justify="right")
    for row in rows:
        if row.get("smtp_host"):
            transport = f"smtp {row['smtp_host']}:{row.get('smtp_port') or '-'}"
        elif row.get("has_managed_credentials"):
            transport = f"ses {row.get('ses_region') or 'us-east-1'}"
        else:
            transport = "[yellow]default ses / none[/yellow]"
        table.add_row(
            row["id"],
            transport,
            f"{row['sent_this_hour']}/{row['hourly_limit']}",
            f"{row['sent_today']}/{row['daily_limit']}",
        )
    console.print(table)


@main.command("run-once")
@click.option("--json", "as_json", is_flag=True, help="Output the report as JSON.")
@click.pass_context
def run_once(ctx: click.Context, as_json: bool) -> None:
    """Reset elapsed windows and dispatch one batch."""
    settings = _settings(ctx)
    persistence = Persistence(settings.db_path)
    engine = DispatchEngine(persistence, settings=settings)

    async def _run():
        await persistence.init_db()
        await engine.reset_windows()
        return await engine.run_once()

    try:
        report = run_async(_run())
    except StoreReadError as exc:
        print_error(str(exc))
        raise SystemExit(1)

    data = report.as_dict()
    if as_json:
        print_json(data)
        return
    table = Table(title="Dispatch Report")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")
    for key in ("fetched", "attempted", "sent", "failed", "rate_limited", "skipped", "store_errors"):
        table.add_row(key, str(data[key]))
    console.print(table)
    for campaign_id, campaign_status in data["campaigns"].items():
        console.print(f"  campaign {campaign_id}: {campaign_status}")
    if report.timed_out:
        console.print("[yellow]Invocation deadline exceeded; remaining messages stay pending[/yellow]")


@main.command("reset-windows")
@click.pass_context
def reset_windows(ctx: click.Context) -> None:
    """Reset hourly/daily counters whose window has elapsed."""
    settings = _settings(ctx)
    persistence = Persistence(settings.db_path)
    engine = DispatchEngine(persistence, settings=settings)

    async def _reset():
        await persistence.init_db()
        return await engine.reset_windows()

    results = run_async(_reset())
    hourly = sorted(account_id for account_id, (h, _) in results.items() if h)
    daily = sorted(account_id for account_id, (_, d) in results.items() if d)
    print_success(f"Hourly windows reset: {', '.join(hourly) or 'none'}")
    print_success(f"Daily windows reset: {', '.join(daily) or 'none'}")


@main.command("serve")
@click.option("--host", default=None, help="Bind address (default from settings).")
@click.option("--port", type=int, default=None, help="Port (default from settings).")
@click.option("--reload", is_flag=True, help="Enable auto-reload for development.")
@click.pass_context
def serve(ctx: click.Context, host: Optional[str], port: Optional[int], reload: bool) -> None:
    """Run the HTTP server with the scheduler loop."""
    import uvicorn

    settings = _settings(ctx)
    host = host or settings.http_host
    port = port or settings.http_port

    # Environment variables for config (used by server.py)
    if ctx.obj.get("config_path"):
        os.environ["CDS_CONFIG"] = ctx.obj["config_path"]
    if ctx.obj.get("log_level"):
        os.environ["CDS_LOG_LEVEL"] = ctx.obj["log_level"]
    os.environ[DB_PATH_OVERRIDE_ENV] = settings.db_path

    console.print("\n[bold cyan]Starting campaign-dispatch[/bold cyan]")
    console.print(f"  DB:      {settings.db_path}")
    console.print(f"  Listen:  {host}:{port}")
    console.print()
    uvicorn.run(
        "campaign_dispatch.server:app",
        host=host,
        port=port,
        reload=reload,
        log_level="info",
    )


if __name__ == "__main__":
    main()
