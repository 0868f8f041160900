"""CLI output formatters for Rich tables and JSON.

Provides human-readable Rich output (default) and machine-parseable JSON
output (--json flag). All formatting goes through these functions so the
CLI commands stay clean.
"""

import json

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from journalcoach.cli.config import CoachConfig
from journalcoach.db.models import Job

console = Console()

# Status color map
STATUS_COLORS = {
    "PENDING": "yellow",
    "PROCESSING": "blue",
    "STREAMING": "blue",
    "COMPLETED": "green",
    "FAILED": "red",
}


def mask_secret(value: str) -> str:
    """Show only the last four characters of a secret."""
    if not value:
        return "(unset)"
    return "***" + value[-4:] if len(value) > 8 else "***"


def job_to_dict(job: Job) -> dict:
    return {
        "id": job.id,
        "kind": job.kind,
        "status": job.status,
        "user_id": job.user_id,
        "related_entity_id": job.related_entity_id,
        "conversation_id": job.conversation_id,
        "client_connected": job.client_connected,
        "notification_sent": job.notification_sent,
        "error": job.error,
        "buffer": job.buffer,
        "created_at": job.created_at,
        "completed_at": job.completed_at,
    }


def _render(renderable) -> str:
    with console.capture() as capture:
        console.print(renderable)
    return capture.get()


def format_pass_summary(title: str, summary: dict, as_json: bool = False) -> str:
    """Format a cron pass result as one table per phase, or JSON.

    Args:
        title: Name of the pass.
        summary: Nested dict from summarize(); flat dicts are one phase.
        as_json: If True, return JSON string instead of Rich tables.
    """
    if as_json:
        return json.dumps(summary, indent=2)

    phases = {k: v for k, v in summary.items() if isinstance(v, dict)} or {title: summary}
    table = Table(title=title, show_lines=True)
    table.add_column("Phase", style="cyan")
    table.add_column("Counts")
    for phase, counts in phases.items():
        rendered = ", ".join(
            f"{key}={value}" for key, value in counts.items() if not isinstance(value, list)
        )
        table.add_row(phase, rendered)
    return _render(table)


def format_job_table(jobs: list[Job], as_json: bool = False) -> str:
    """Format a list of jobs as a Rich table or JSON."""
    if as_json:
        return json.dumps([job_to_dict(j) for j in jobs], indent=2)

    if not jobs:
        return "No jobs found."

    table = Table(title="Jobs", show_lines=True)
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Kind")
    table.add_column("Status")
    table.add_column("User")
    table.add_column("Notified")
    table.add_column("Created")

    for job in jobs:
        status_color = STATUS_COLORS.get(job.status, "white")
        table.add_row(
            job.id[:12],
            job.kind,
            f"[{status_color}]{job.status}[/{status_color}]",
            job.user_id,
            "yes" if job.notification_sent else "no",
            job.created_at[:19] if job.created_at else "-",
        )
    return _render(table)


def format_job_detail(job: Job, as_json: bool = False) -> str:
    """Format a single job as a Rich panel or JSON."""
    if as_json:
        return json.dumps(job_to_dict(job), indent=2)

    status_color = STATUS_COLORS.get(job.status, "white")
    lines = [
        f"[bold]Job ID:[/bold]    {job.id}",
        f"[bold]Kind:[/bold]      {job.kind}",
        f"[bold]Status:[/bold]    [{status_color}]{job.status}[/{status_color}]",
        f"[bold]User:[/bold]      {job.user_id}",
        f"[bold]Entity:[/bold]    {job.related_entity_id or '-'}",
        f"[bold]Client:[/bold]    {'connected' if job.client_connected else 'detached'}",
        f"[bold]Notified:[/bold]  {'yes' if job.notification_sent else 'no'}",
        "",
        f"[bold]Created:[/bold]   {job.created_at[:19] if job.created_at else '-'}",
        f"[bold]Completed:[/bold] {job.completed_at[:19] if job.completed_at else '-'}",
    ]
    if job.error:
        lines.append("")
        lines.append(f"[bold red]Error:[/bold red] {job.error}")
    if job.buffer:
        preview = job.buffer if len(job.buffer) <= 200 else job.buffer[:200] + "..."
        lines.append("")
        lines.append(f"[bold]Buffer:[/bold] {preview}")

    return _render(Panel("\n".join(lines), title="Job Detail", border_style="cyan"))


def format_config(cfg: CoachConfig) -> str:
    """Render the resolved configuration with secrets masked."""
    lines = [
        "[bold]Server:[/bold]",
        f"  host: {cfg.server.host}",
        f"  port: {cfg.server.port}",
        f"  log_level: {cfg.server.log_level}",
        "",
        "[bold]Pipeline:[/bold]",
    ]
    lines.extend(f"  {key}: {value}" for key, value in cfg.pipeline.model_dump().items())
    lines += [
        "",
        "[bold]Push:[/bold]",
        f"  configured: {cfg.push.is_configured}",
        f"  vapid_public_key: {mask_secret(cfg.push.vapid_public_key)}",
        f"  vapid_private_key: {mask_secret(cfg.push.vapid_private_key)}",
        f"  vapid_subject: {cfg.push.vapid_subject}",
        "",
        "[bold]Queue:[/bold]",
        f"  configured: {cfg.queue.is_configured}",
        f"  token: {mask_secret(cfg.queue.token)}",
        f"  callback_base_url: {cfg.queue.callback_base_url or '(unset)'}",
        f"  verification: {cfg.queue.verification.value}",
        "",
        "[bold]LLM:[/bold]",
        f"  model: {cfg.llm.model}",
        "",
        "[bold]Cron:[/bold]",
        f"  secret: {mask_secret(cfg.cron.secret)}",
    ]
    return _render("\n".join(lines))
