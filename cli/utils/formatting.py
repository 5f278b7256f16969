"""Rich Formatting Utilities for Job Output"""

from typing import Any

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

console = Console()

STATUS_STYLES = {
    "pending": "yellow",
    "active": "cyan",
    "completed": "green",
    "failed": "red",
}


def print_success(message: str):
    """Print success message with green styling"""
    console.print(f"[green]✓ {message}[/green]")


def print_error(message: str):
    """Print error message with red styling"""
    console.print(f"[red]✗ {message}[/red]")


def print_info(message: str):
    """Print info message with blue styling"""
    console.print(f"[blue]ℹ {message}[/blue]")


def print_error_envelope(envelope: dict[str, Any]):
    """Print a standardized error envelope as JSON"""
    console.print_json(data=envelope)


def create_job_panel(job: dict[str, Any]) -> Panel:
    """Create formatted panel for a job snapshot"""
    status = job.get("status", "")
    style = STATUS_STYLES.get(status, "white")

    content = f"""
• Job ID: [cyan]{job.get("jobId", "")}[/cyan]
• Type: [magenta]{job.get("type", "")}[/magenta]
• Status: [{style}]{status}[/{style}] (queue: {job.get("queueStatus", "")})
• Stage: [yellow]{job.get("stage") or "-"}[/yellow]
• Progress: [green]{job.get("progress", 0)}%[/green]
• Attempts: [blue]{job.get("attempts", 0)}[/blue]
"""
    if job.get("result") is not None:
        content += f"• Result: [green]{job['result']}[/green]\n"
    if job.get("failureReason"):
        content += f"• Failure: [red]{job['failureReason']}[/red]\n"

    return Panel(content, title="Job Status", border_style=style)


def create_stats_table(stats: dict[str, Any]) -> Table:
    """Create formatted table for queue statistics"""
    table = Table(title="Job Statistics", box=box.ROUNDED)

    table.add_column("Group", justify="left", style="bold")
    table.add_column("Key", justify="left", style="cyan")
    table.add_column("Count", justify="right", style="green")

    table.add_row("total", "-", str(stats.get("total_jobs", 0)))
    table.add_row("queue depth", "pending + active", str(stats.get("queue_depth", 0)))

    for status, count in sorted(stats.get("by_status", {}).items()):
        table.add_row("status", status, str(count))

    for job_type, count in sorted(stats.get("by_type", {}).items()):
        table.add_row("type", job_type, str(count))

    return table


def format_progress_event(event: dict[str, Any]) -> str:
    """One line per progress event"""
    line = (
        f"[cyan]{event.get('stage', '')}[/cyan] "
        f"[green]{event.get('progress', 0):>3}%[/green]"
    )
    if event.get("message"):
        line += f" {event['message']}"
    if event.get("error"):
        line += f" [red]({event['error']})[/red]"
    return line


def format_lifecycle_event(event: dict[str, Any]) -> str:
    """Terminal event summary"""
    event_type = event.get("eventType", "")
    style = STATUS_STYLES.get(event_type, "white")
    line = (
        f"[{style}]{event_type}[/{style}] after {event.get('attempts', 0)} attempt(s)"
    )
    if event.get("result") is not None:
        line += f": {event['result']}"
    if event.get("error"):
        line += f": [red]{event['error']}[/red]"
    return line
