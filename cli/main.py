"""Cook Mode Jobs CLI - Main Entry Point"""

import asyncio
import json
from typing import Optional
from uuid import UUID

import typer
from rich.console import Console
from rich.panel import Panel

from cookmode.config.logging import setup_logging
from cookmode.config.settings import get_settings
from cookmode.core.exceptions import CookModeException, ValidationError
from cookmode.infra.jobs.models import JobStatus
from cookmode.main import create_runtime, run_worker

from .utils.formatting import (
    create_job_panel,
    create_stats_table,
    format_lifecycle_event,
    format_progress_event,
    print_error,
    print_error_envelope,
    print_info,
    print_success,
)

console = Console()

# Create main Typer app
app = typer.Typer(
    name="cookmode",
    help="🍳 Cook Mode Jobs - background job queue CLI",
    rich_markup_mode="rich",
)


def _parse_job_id(job_id: str) -> UUID:
    try:
        return UUID(job_id)
    except ValueError:
        print_error_envelope(
            ValidationError("Invalid job id", {"job_id": job_id}).to_dict()
        )
        raise typer.Exit(1) from None


def _run(coro):
    """Run a command coroutine, turning job errors into the error envelope."""
    try:
        return asyncio.run(coro)
    except CookModeException as e:
        print_error_envelope(e.to_dict())
        raise typer.Exit(1) from None


@app.command()
def worker(
    concurrency: Optional[int] = typer.Option(
        None, "--concurrency", "-c", help="Number of concurrent executors"
    ),
    once: bool = typer.Option(
        False, "--once", help="Process at most one job and exit"
    ),
):
    """👷 Run the worker pool"""
    settings = get_settings()

    if once:

        async def process_one():
            async with create_runtime(settings) as runtime:
                return await runtime.pool.run_once()

        job_id = _run(process_one())
        if job_id is None:
            print_info("No job available")
        else:
            print_success(f"Processed job {job_id}")
        return

    print_info(f"Starting worker on queue [cyan]{settings.queue_name}[/cyan]")
    _run(run_worker(settings, concurrency=concurrency))


@app.command()
def submit(
    operation_type: str = typer.Argument(..., help="Operation type, e.g. recipe.extract"),
    payload: str = typer.Option("{}", "--payload", "-p", help="Payload as JSON"),
):
    """📥 Submit a job"""
    try:
        payload_data = json.loads(payload)
    except json.JSONDecodeError as e:
        print_error_envelope(
            ValidationError("Payload is not valid JSON", {"error": str(e)}).to_dict()
        )
        raise typer.Exit(1) from None

    async def submit_job():
        async with create_runtime(get_settings()) as runtime:
            return await runtime.service.submit(
                {"type": operation_type, "payload": payload_data}
            )

    job_id = _run(submit_job())
    print_success(f"Job submitted: {job_id}")


@app.command()
def status(job_id: str = typer.Argument(..., help="Job id")):
    """📊 Show the status of a job"""
    parsed_id = _parse_job_id(job_id)

    async def fetch():
        async with create_runtime(get_settings()) as runtime:
            return await runtime.service.get_job(parsed_id)

    snapshot = _run(fetch())
    console.print(create_job_panel(snapshot.to_message()))


@app.command()
def watch(
    job_id: str = typer.Argument(..., help="Job id"),
    timeout: float = typer.Option(
        300.0, "--timeout", "-t", help="Give up after this many seconds"
    ),
):
    """👀 Follow a job's progress until it completes or fails"""
    parsed_id = _parse_job_id(job_id)

    async def follow() -> bool:
        async with create_runtime(get_settings()) as runtime:
            finished = asyncio.Event()

            def on_progress(event):
                console.print(format_progress_event(event))

            def on_event(event):
                console.print(format_lifecycle_event(event))
                finished.set()

            subscriptions = await runtime.service.subscribe(
                parsed_id, on_progress=on_progress, on_event=on_event
            )
            try:
                # The job may have finished before we subscribed
                snapshot = await runtime.service.get_job(parsed_id)
                if snapshot.queue_status.is_terminal:
                    console.print(create_job_panel(snapshot.to_message()))
                    return snapshot.queue_status == JobStatus.COMPLETED

                print_info(f"Watching job {parsed_id}...")
                try:
                    await asyncio.wait_for(finished.wait(), timeout)
                except TimeoutError:
                    print_error(f"No terminal event within {timeout}s")
                    return False

                snapshot = await runtime.service.get_job(parsed_id)
                return snapshot.queue_status == JobStatus.COMPLETED
            finally:
                for subscription in subscriptions:
                    await runtime.pubsub.unsubscribe(subscription)

    if not _run(follow()):
        raise typer.Exit(1)


@app.command()
def stats():
    """📈 Show queue statistics"""

    async def fetch():
        async with create_runtime(get_settings()) as runtime:
            return await runtime.service.stats()

    job_stats = _run(fetch())
    console.print(create_stats_table(job_stats.model_dump()))


@app.command()
def cleanup(
    days: Optional[int] = typer.Option(
        None, "--days", "-d", help="Delete finished jobs older than this many days"
    ),
):
    """🧹 Delete old completed and failed jobs"""

    async def purge():
        async with create_runtime(get_settings()) as runtime:
            return await runtime.service.cleanup(days)

    deleted = _run(purge())
    print_success(f"Deleted {deleted} finished job(s)")


def version_callback(value: bool):
    if not value:
        return
    settings = get_settings()
    console.print(
        Panel(
            f"🍳 [bold cyan]{settings.app_name}[/bold cyan]\n\n"
            f"• Version: [green]{settings.version}[/green]\n"
            f"• Environment: [yellow]{settings.environment}[/yellow]",
            title="Version Info",
            border_style="cyan",
        )
    )
    raise typer.Exit()


@app.callback()
def main(
    version: Optional[bool] = typer.Option(
        None,
        "--version",
        "-v",
        help="Show version and exit",
        callback=version_callback,
        is_eager=True,
    ),
):
    """
    🍳 Cook Mode Jobs CLI

    Submit background jobs, follow their progress and run workers.
    """
    setup_logging(get_settings())


if __name__ == "__main__":
    app()
