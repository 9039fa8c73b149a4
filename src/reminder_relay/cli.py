# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Command-line interface for reminder-relay.

Usage:
    reminder-relay serve
    reminder-relay status
    reminder-relay jobs --state failed
    reminder-relay reset-quotas --yes
    reminder-relay test-channels someone@example.com

Every command reads the same configuration as the HTTP server (``config.ini``
or ``RMD_*`` / provider environment variables).
"""

from __future__ import annotations

import asyncio
import json
import sys
from datetime import datetime
from typing import Any, Dict, Optional

import click
import uvicorn
from rich.console import Console
from rich.table import Table

from .api import create_service_app
from .config import load_settings
from .core import ReminderService
from .errors import ConfigurationError, StoreUnavailable
from .logger import configure_logging

console = Console()
err_console = Console(stderr=True)

JOB_STATES = ["waiting", "ready", "active", "completed", "failed"]


def run_async(coro):
    """Run an async coroutine synchronously."""
    return asyncio.run(coro)


def print_error(message: str) -> None:
    """Print an error message to stderr."""
    err_console.print(f"[red]Error:[/red] {message}")


def print_success(message: str) -> None:
    """Print a success message."""
    console.print(f"[green]✓[/green] {message}")


def print_json(data: Any) -> None:
    """Print data as formatted JSON."""
    console.print_json(json.dumps(data, indent=2, default=str))


def _load(config_path: Optional[str]) -> Dict[str, Any]:
    try:
        settings = load_settings(config_path=config_path)
    except ConfigurationError as exc:
        print_error(f"{exc.code}: {exc}")
        sys.exit(1)
    configure_logging(settings["log_level"])
    return settings


def get_service(settings: Dict[str, Any]) -> ReminderService:
    """Create a service that never starts its background loops."""
    return ReminderService.from_settings(settings, test_mode=True)


def _with_service(config_path: Optional[str], action):
    """Run ``action(service)`` against an initialised service, then release it."""
    service = get_service(_load(config_path))

    async def _run():
        await service.init()
        try:
            return await action(service)
        finally:
            await service.stop()

    try:
        return run_async(_run())
    except StoreUnavailable as exc:
        print_error(f"{exc.code}: {exc}")
        sys.exit(1)


def _fmt_ts(value: Optional[float]) -> str:
    if not value:
        return "-"
    return datetime.fromtimestamp(value).strftime("%Y-%m-%d %H:%M:%S")


config_option = click.option(
    "--config", "-c", "config_path", type=click.Path(dir_okay=False), default=None,
    help="Path to config.ini (defaults to RMD_CONFIG or ./config.ini).",
)


@click.group()
@click.version_option(package_name="reminder-relay")
def main() -> None:
    """reminder-relay CLI - Delayed email reminders over a quota-aware provider ring."""
    pass


@main.command("serve")
@config_option
@click.option("--host", default=None, help="Bind address (overrides configuration).")
@click.option("--port", type=int, default=None, help="Bind port (overrides configuration).")
def serve(config_path: Optional[str], host: Optional[str], port: Optional[int]) -> None:
    """Run the HTTP server together with the dispatch loop."""
    settings = _load(config_path)
    app = create_service_app(settings)
    bind_host = host or str(settings["http_host"])
    bind_port = port or int(settings["http_port"])
    console.print(f"[bold]reminder-relay[/bold] listening on http://{bind_host}:{bind_port}")
    uvicorn.run(app, host=bind_host, port=bind_port, log_level=settings["log_level"].lower())


@main.command("status")
@config_option
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
def status(config_path: Optional[str], as_json: bool) -> None:
    """Show quota usage per channel and queue counts."""

    async def _status(service: ReminderService):
        return {
            "channels": await service.service_status(),
            "jobs": await service.queue.counts(),
        }

    data = _with_service(config_path, _status)

    if as_json:
        print_json(data)
        return

    table = Table(title="Channels")
    table.add_column("#", justify="right")
    table.add_column("Channel", style="cyan")
    table.add_column("Sent", justify="right")
    table.add_column("Remaining", justify="right")
    table.add_column("Available", justify="center")

    bulk = data["channels"]["sendgrid"]
    rows = [(bulk.get("name") or "sendgrid", bulk)]
    rows.extend((acc["email"], acc) for acc in data["channels"]["gmailAccounts"])
    for index, (name, entry) in enumerate(rows):
        available = "[green]✓[/green]" if entry["isAvailable"] else "[red]✗[/red]"
        table.add_row(str(index), name, str(entry["emailsSent"]), str(entry["remaining"]), available)
    console.print(table)

    counts = data["jobs"]
    console.print("\n[bold]Jobs[/bold]")
    for state in JOB_STATES:
        console.print(f"  {state.capitalize():<10} {counts.get(state, 0)}")
    console.print()


@main.command("jobs")
@config_option
@click.option("--state", "-s", type=click.Choice(JOB_STATES), default=None, help="Filter by state.")
@click.option("--limit", "-l", type=int, default=50, help="Max jobs to show.")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
def jobs(config_path: Optional[str], state: Optional[str], limit: int, as_json: bool) -> None:
    """List jobs in the queue."""

    async def _jobs(service: ReminderService):
        return await service.list_jobs(state=state, limit=limit)

    data = _with_service(config_path, _jobs)

    if as_json:
        print_json(data)
        return

    if not data["jobs"]:
        console.print("[dim]No jobs found.[/dim]")
        return

    table = Table(title="Jobs")
    table.add_column("ID", style="cyan")
    table.add_column("Status")
    table.add_column("Attempts", justify="right")
    table.add_column("Run at")
    table.add_column("Recipient")
    table.add_column("Error")

    for job in data["jobs"]:
        table.add_row(
            job["id"],
            job["status"],
            f"{job['attempts']}/{job['max_attempts']}",
            _fmt_ts(job["run_at"]),
            job["payload"].get("email") or "-",
            (job.get("error") or "-")[:60],
        )
    console.print(table)


@main.command("reset-quotas")
@config_option
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation.")
def reset_quotas(config_path: Optional[str], yes: bool) -> None:
    """Zero the daily counters of every channel."""
    if not yes and not click.confirm("Reset the daily counters of every channel?"):
        console.print("Aborted.")
        return

    async def _reset(service: ReminderService):
        await service.reset_quotas()

    _with_service(config_path, _reset)
    print_success("Quota counters reset")


@main.command("test-channels")
@config_option
@click.argument("address")
def test_channels(config_path: Optional[str], address: str) -> None:
    """Send a test email to ADDRESS through every channel."""

    async def _test(service: ReminderService):
        return await service.test_channels(address)

    results = _with_service(config_path, _test)
    failed = False
    for result in results:
        if result["status"] == "Success":
            print_success(f"{result['channel']}: {result['status']}")
        else:
            failed = True
            print_error(f"{result['channel']}: {result['status']}")
    if failed:
        sys.exit(1)


if __name__ == "__main__":
    main()
