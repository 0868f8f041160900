"""journalcoach CLI.

Runs the API server, triggers pipeline passes in-process (for system
cron or debugging), and inspects jobs and configuration.

Usage:
    journalcoach serve                 Start the API server
    journalcoach process-pending       Claim pending replies and send pushes
    journalcoach notify-events         Send due agenda notifications
    journalcoach send-checkins         Send proactive check-in notifications
    journalcoach jobs list             List chat and tool jobs
    journalcoach config validate       Check configuration before deploy
"""

import asyncio
import logging
import os
from typing import Optional

import typer
from rich.console import Console

from journalcoach.cli.config import CoachConfig, load_config, validate_startup_config
from journalcoach.cli.output import (
    format_config,
    format_job_detail,
    format_job_table,
    format_pass_summary,
)

_log = logging.getLogger(__name__)

app = typer.Typer(
    name="journalcoach",
    help="Coach reply pipeline with push delivery",
    no_args_is_help=True,
)
jobs_app = typer.Typer(help="Inspect chat and tool jobs")
config_app = typer.Typer(help="Configuration management")

app.add_typer(jobs_app, name="jobs")
app.add_typer(config_app, name="config")

console = Console()

# --- Global state ---
_config_path: str | None = None


@app.callback()
def main(
    config: Optional[str] = typer.Option(
        None, "--config", help="Path to journalcoach.yaml config file"
    ),
):
    """journalcoach CLI."""
    global _config_path
    _config_path = config


def _load() -> CoachConfig:
    try:
        cfg = load_config(config_path=_config_path)
    except FileNotFoundError as e:
        console.print(f"[red]Config file not found:[/red] {e}")
        raise typer.Exit(1)
    logging.basicConfig(level=cfg.server.log_level.upper())
    return cfg


def _build_services(cfg: CoachConfig):
    from journalcoach.db.connection import SessionLocal, init_db
    from journalcoach.services.pipeline import build_services

    init_db()
    return build_services(cfg, SessionLocal)


# --- Server ---


@app.command()
def serve(
    host: Optional[str] = typer.Option(None, "--host", help="Bind address"),
    port: Optional[int] = typer.Option(None, "--port", help="Bind port"),
):
    """Start the API server (uvicorn)."""
    import uvicorn

    cfg = _load()
    final_host = host or cfg.server.host
    final_port = port or cfg.server.port

    # Propagate config path so the app's startup loads the same config as the CLI.
    if _config_path:
        os.environ["JOURNALCOACH_CONFIG_PATH"] = str(_config_path)

    console.print(f"[bold]Starting journalcoach on {final_host}:{final_port}[/bold]")
    uvicorn.run(
        "journalcoach.api.main:app",
        host=final_host,
        port=final_port,
        log_level=cfg.server.log_level,
        workers=1,
    )


# --- Pipeline passes ---


@app.command("process-pending")
def process_pending_cmd(
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """Run one claim pass, then the chat and tool notification phases."""
    from journalcoach.services.pipeline import process_pending, summarize

    services = _build_services(_load())
    result = asyncio.run(process_pending(services))
    console.print(format_pass_summary("process-pending", summarize(result), as_json=json_output))


@app.command("notify-events")
def notify_events_cmd(
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """Send agenda before/after notifications that are due."""
    from journalcoach.services.pipeline import notify_events, summarize

    services = _build_services(_load())
    result = asyncio.run(notify_events(services))
    console.print(format_pass_summary("notify-events", summarize(result), as_json=json_output))


@app.command("send-checkins")
def send_checkins_cmd(
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """Send a generated check-in to every user with a push subscription."""
    from journalcoach.services.pipeline import send_checkins, summarize

    services = _build_services(_load())
    result = asyncio.run(send_checkins(services))
    console.print(format_pass_summary("send-checkins", summarize(result), as_json=json_output))


# --- Job commands ---


@jobs_app.command("list")
def jobs_list(
    status: Optional[str] = typer.Option(None, "--status", "-s", help="Filter by status"),
    kind: Optional[str] = typer.Option(None, "--kind", "-k", help="chat or tool"),
    limit: int = typer.Option(50, "--limit", help="Maximum jobs to show"),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """List jobs, newest first."""
    from journalcoach.db.connection import get_db_context
    from journalcoach.db.models import JobKind, JobStatus
    from journalcoach.services.job_service import JobService

    _load()
    try:
        status_filter = JobStatus(status.upper()) if status else None
        kind_filter = JobKind(kind.lower()) if kind else None
    except ValueError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)

    with get_db_context() as db:
        jobs = JobService(db).list_jobs(status=status_filter, kind=kind_filter, limit=limit)
        console.print(format_job_table(jobs, as_json=json_output))


@jobs_app.command("show")
def jobs_show(
    job_id: str = typer.Argument(help="Job ID"),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """Show one job, including its buffer and error."""
    from journalcoach.db.connection import get_db_context
    from journalcoach.services.job_service import JobService

    _load()
    with get_db_context() as db:
        job = JobService(db).get_job(job_id)
        if job is None:
            console.print(f"[red]Job not found:[/red] {job_id}")
            raise typer.Exit(1)
        console.print(format_job_detail(job, as_json=json_output))


# --- Config commands ---


@config_app.command("show")
def config_show():
    """Display resolved configuration (secrets masked)."""
    console.print(format_config(_load()))


@config_app.command("validate")
def config_validate(
    config: Optional[str] = typer.Option(None, "--config", help="Config file path"),
):
    """Validate configuration without starting the server."""
    path = config or _config_path
    try:
        cfg = load_config(config_path=path)
        warnings = validate_startup_config(cfg)
    except FileNotFoundError as e:
        console.print(f"[red]Config file not found:[/red] {e}")
        raise typer.Exit(1)
    except ValueError as e:
        console.print(f"[red]Config validation failed:[/red] {e}")
        raise typer.Exit(1)

    console.print("[green]Config is valid.[/green]")
    for warning in warnings:
        console.print(f"  [yellow]warning:[/yellow] {warning}")
    console.print(f"  Push: {'configured' if cfg.push.is_configured else 'not configured'}")
    console.print(f"  Queue: {'configured' if cfg.queue.is_configured else 'not configured'}")


if __name__ == "__main__":
    app()
