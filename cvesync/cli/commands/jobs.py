"""CLI commands for starting and inspecting ingestion jobs."""

from __future__ import annotations

import json
import time
from typing import Any

import click
import httpx
from rich.text import Text

from cvesync.cli.output import console, job_detail, jobs_table, print_log_entry, status_style

TERMINAL_STATES = {"COMPLETED", "FAILED"}


def _request(ctx: click.Context, method: str, path: str, **kwargs: Any) -> Any:
    """Call the API and return decoded JSON; exits with status 1 on any failure."""
    api_url: str = ctx.obj["api_url"]
    try:
        r = httpx.request(method, f"{api_url}/api/v1{path}", timeout=kwargs.pop("timeout", 15), **kwargs)
        r.raise_for_status()
        return r.json()
    except httpx.ConnectError:
        console.print(f"[red]Cannot connect to API at {api_url}.[/red]")
        raise SystemExit(1)
    except httpx.HTTPStatusError as e:
        console.print(f"[red]API error {e.response.status_code}:[/red] {e.response.text}")
        raise SystemExit(1)


@click.command("ingest")
@click.option("--kind", default="cvelist", show_default=True, help="Ingestor to run")
@click.option(
    "--wait/--no-wait",
    default=False,
    show_default=True,
    help="Wait for the job to finish before returning",
)
@click.option(
    "--poll-interval",
    default=3,
    show_default=True,
    help="Polling interval in seconds when --wait is set",
)
@click.pass_context
def ingest_cmd(ctx: click.Context, kind: str, wait: bool, poll_interval: int) -> None:
    """Start an ingestion job.

    Example:

        cvesync ingest --kind cvelist --wait
    """
    job = _request(ctx, "POST", "/jobs", json={"kind": kind})
    job_id = job["id"]
    console.print(f"[bold cyan]Ingestion started[/bold cyan] ({kind})")
    console.print(f"  Job ID: [dim]{job_id}[/dim]")

    if not wait:
        return

    with console.status("[dim]Waiting for job to complete…[/dim]") as spinner:
        while True:
            time.sleep(poll_interval)
            try:
                r = httpx.get(f"{ctx.obj['api_url']}/api/v1/jobs/{job_id}", timeout=10)
                r.raise_for_status()
                job = r.json()
            except httpx.HTTPError as e:
                console.print(f"[yellow]Poll error:[/yellow] {e}")
                continue
            spinner.update(
                f"[dim]{job.get('current_phase') or '…'} — "
                f"{job.get('progress_percent', 0)}% "
                f"({job.get('items_processed', 0)} processed)[/dim]"
            )
            if job.get("status") in TERMINAL_STATES:
                break

    status = job.get("status", "?")
    console.print("\n[bold]Job finished[/bold] — ", end="")
    console.print(Text(status, style=status_style(status)))
    job_detail(job)
    if status != "COMPLETED":
        raise SystemExit(1)


@click.group("jobs")
def jobs_cmd() -> None:
    """Inspect and control ingestion jobs."""


@jobs_cmd.command("list")
@click.option("--limit", default=20, show_default=True)
@click.pass_context
def jobs_list(ctx: click.Context, limit: int) -> None:
    """List recent jobs, newest first."""
    data = _request(ctx, "GET", "/jobs", params={"limit": limit}, timeout=10)
    console.print(jobs_table(data["items"]))


@jobs_cmd.command("show")
@click.argument("job_id")
@click.pass_context
def jobs_show(ctx: click.Context, job_id: str) -> None:
    """Show status, progress and summary of one job."""
    job_detail(_request(ctx, "GET", f"/jobs/{job_id}", timeout=10))


@jobs_cmd.command("cancel")
@click.argument("job_id")
@click.pass_context
def jobs_cancel(ctx: click.Context, job_id: str) -> None:
    """Request cancellation; the run stops at its next batch boundary."""
    _request(ctx, "POST", f"/jobs/{job_id}/cancel", timeout=10)
    console.print(f"[yellow]Cancellation requested[/yellow] for [dim]{job_id}[/dim]")


@jobs_cmd.command("logs")
@click.argument("job_id")
@click.option("--follow", "-f", is_flag=True, default=False, help="Stream new entries until the job ends")
@click.pass_context
def jobs_logs(ctx: click.Context, job_id: str, follow: bool) -> None:
    """Print a job's log, optionally following it live."""
    if not follow:
        for entry in _request(ctx, "GET", f"/jobs/{job_id}/logs", timeout=10):
            print_log_entry(entry)
        return

    api_url: str = ctx.obj["api_url"]
    try:
        with httpx.stream(
            "GET",
            f"{api_url}/api/v1/jobs/{job_id}/logs/stream",
            timeout=httpx.Timeout(10, read=None),
        ) as r:
            r.raise_for_status()
            event = "message"
            for line in r.iter_lines():
                if line.startswith("event:"):
                    event = line.split(":", 1)[1].strip()
                elif line.startswith("data:") and event == "log":
                    print_log_entry(json.loads(line.split(":", 1)[1]))
                elif not line:
                    event = "message"
    except httpx.ConnectError:
        console.print(f"[red]Cannot connect to API at {api_url}.[/red]")
        raise SystemExit(1)
    except httpx.HTTPStatusError as e:
        console.print(f"[red]API error {e.response.status_code}[/red]")
        raise SystemExit(1)
