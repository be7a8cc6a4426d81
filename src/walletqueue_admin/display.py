"""Rich-based display for walletqueue-admin.

Renders queue records, cache entries and drain reports. It only formats
data; reading the database is the CLI's job.
"""

from __future__ import annotations

from datetime import datetime

from rich.console import Console
from rich.table import Table

from walletqueue.models import TaskRecord, now_millis
from walletqueue.queue import DrainReport


def _format_millis(value: int | None) -> str:
    if value is None:
        return "[dim]never[/dim]"
    return datetime.fromtimestamp(value / 1000).strftime("%Y-%m-%d %H:%M:%S")


def _truncate(text: str, width: int = 60) -> str:
    return text if len(text) <= width else text[: width - 1] + "…"


def queue_table(records: list[TaskRecord]) -> Table:
    """Table of persisted queue records, in drain order."""
    now = now_millis()
    table = Table(title="Queued Tasks", border_style="blue")
    table.add_column("ID", justify="right")
    table.add_column("Task")
    table.add_column("Added", style="dim")
    table.add_column("Expires")
    table.add_column("Pri", justify="right")
    table.add_column("Attempts", justify="right")
    table.add_column("Arguments", style="dim")

    for record in records:
        expires = _format_millis(record.expires_at)
        if record.is_expired(now):
            expires = f"[red]{expires}[/red]"
        attempts = f"[yellow]{record.attempts}[/yellow]" if record.attempts else "0"
        table.add_row(
            str(record.id),
            record.task_name,
            datetime.fromtimestamp(record.added_at).strftime("%Y-%m-%d %H:%M:%S"),
            expires,
            str(record.priority),
            attempts,
            _truncate(record.arguments),
        )
    return table


def cache_table(entries: list[dict]) -> Table:
    now = now_millis()
    table = Table(title="Cache", border_style="blue")
    table.add_column("Key")
    table.add_column("Expires")
    table.add_column("Value", style="dim")

    for entry in entries:
        expires = _format_millis(entry["expires_at"])
        if entry["expires_at"] is not None and entry["expires_at"] <= now:
            expires = f"[red]{expires}[/red]"
        table.add_row(_truncate(entry["key"], 48), expires, _truncate(entry["value"], 40))
    return table


def print_drain_report(report: DrainReport, console: Console | None = None) -> None:
    """Print a summary after resuming the queue."""
    console = console or Console()
    table = Table(title="Resume Results", show_header=False, border_style="green")
    table.add_column("Outcome", style="dim")
    table.add_column("Count", style="bold")

    table.add_row("Completed", f"[green]{len(report.completed)}[/green]")
    table.add_row("Failed", f"[red]{len(report.failed)}[/red]" if report.failed else "0")
    table.add_row("Deferred", str(len(report.deferred)))
    table.add_row("Discarded", str(len(report.discarded)))
    table.add_row("Dropped", f"[red]{len(report.dropped)}[/red]" if report.dropped else "0")
    console.print(table)
