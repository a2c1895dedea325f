"""Rich output helpers — job tables, job detail and log lines."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from rich.console import Console
from rich.table import Table
from rich.text import Text

console = Console()


def status_style(status: str) -> str:
    return {
        "COMPLETED": "green",
        "RUNNING": "yellow",
        "FAILED": "red",
        "INFO": "cyan",
        "WARNING": "yellow",
        "ERROR": "red",
    }.get(status, "white")


def fmt_date(iso: str | None) -> str:
    if not iso:
        return "—"
    try:
        dt = datetime.fromisoformat(iso.replace("Z", "+00:00"))
        return dt.strftime("%Y-%m-%d %H:%M:%S")
    except ValueError:
        return iso


def jobs_table(items: list[dict[str, Any]]) -> Table:
    table = Table(
        title=f"Jobs ({len(items)})",
        header_style="bold cyan",
        border_style="dim",
    )
    table.add_column("ID", style="dim", no_wrap=True)
    table.add_column("Kind")
    table.add_column("Status")
    table.add_column("Phase", style="dim")
    table.add_column("Progress", justify="right")
    table.add_column("Processed", justify="right")
    table.add_column("Added", justify="right")
    table.add_column("Updated", justify="right")
    table.add_column("Started", style="dim")
    table.add_column("Finished", style="dim")

    for j in items:
        status = j.get("status", "?")
        table.add_row(
            str(j.get("id", ""))[:8] + "…",
            j.get("kind", ""),
            Text(status, style=status_style(status)),
            j.get("current_phase") or "—",
            f"{j.get('progress_percent', 0)}%",
            str(j.get("items_processed", 0)),
            str(j.get("items_added", 0)),
            str(j.get("items_updated", 0)),
            fmt_date(j.get("started_at")),
            fmt_date(j.get("finished_at")),
        )
    return table


def job_detail(j: dict[str, Any]) -> None:
    """Print detailed view of a single job."""
    console.rule(f"[bold cyan]Job — {j.get('id')}")

    status = j.get("status", "?")
    console.print("  [dim]Status        [/dim] ", end="")
    console.print(Text(status, style=status_style(status)))

    fields = [
        ("Kind", j.get("kind")),
        ("Phase", j.get("current_phase")),
        ("Progress", f"{j.get('progress_percent', 0)}%"),
        ("Total files", j.get("total_files")),
        ("Processed", j.get("items_processed")),
        ("Added", j.get("items_added")),
        ("Updated", j.get("items_updated")),
        ("Unchanged", j.get("items_unchanged")),
        ("Started", fmt_date(j.get("started_at"))),
        ("Heartbeat", fmt_date(j.get("last_heartbeat"))),
        ("Finished", fmt_date(j.get("finished_at"))),
        ("Cancel req.", "yes" if j.get("cancel_requested") else None),
    ]
    for label, value in fields:
        if value is not None and value != "":
            console.print(f"  [dim]{label:<14}[/dim] {value}")

    if j.get("error_msg"):
        console.print(f"  [dim]{'Error':<14}[/dim] [red]{j['error_msg']}[/red]")

    summary = j.get("summary") or {}
    if summary:
        console.print("\n[dim]Summary:[/dim]")
        for key, value in summary.items():
            console.print(f"  [cyan]{key:<18}[/cyan] {value}")


def print_log_entry(entry: dict[str, Any]) -> None:
    level = entry.get("level", "INFO")
    line = Text()
    line.append(fmt_date(entry.get("timestamp")), style="dim")
    line.append(" ")
    line.append(f"{level:<7}", style=status_style(level))
    line.append(" ")
    line.append(entry.get("message", ""))
    details = entry.get("details") or {}
    if details:
        line.append("  " + " ".join(f"{k}={v}" for k, v in details.items()), style="dim")
    console.print(line)
