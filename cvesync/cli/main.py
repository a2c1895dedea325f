"""cvesync CLI entry point — `cvesync` command group."""

from __future__ import annotations

import click

from cvesync.cli.commands.jobs import ingest_cmd, jobs_cmd


@click.group()
@click.version_option(package_name="cvesync")
@click.option(
    "--api-url",
    default="http://localhost:8000",
    envvar="CVESYNC_API_URL",
    show_default=True,
    help="Base URL of the cvesync API server",
)
@click.pass_context
def cli(ctx: click.Context, api_url: str) -> None:
    """cvesync — local mirror of the CVE List V5 corpus.

    \b
    Quick start:
      cvesync serve
      cvesync ingest --wait
      cvesync jobs list
      cvesync jobs logs <job-id> --follow

    API docs: http://localhost:8000/docs
    """
    ctx.ensure_object(dict)
    ctx.obj["api_url"] = api_url.rstrip("/")


# Register sub-commands
cli.add_command(ingest_cmd)
cli.add_command(jobs_cmd)


@cli.command("serve")
@click.option("--host", default=None, help="Bind host [default: APP_HOST]")
@click.option("--port", default=None, type=int, help="Bind port [default: APP_PORT]")
@click.option("--reload", is_flag=True, default=False, help="Enable auto-reload (dev mode)")
def serve(host: str | None, port: int | None, reload: bool) -> None:
    """Start the cvesync API server."""
    import uvicorn

    from cvesync.core.config import get_settings

    settings = get_settings()
    uvicorn.run(
        "cvesync.api.app:app",
        host=host or settings.app_host,
        port=port or settings.app_port,
        reload=reload,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    cli()
