"""CLI commands for Re-Phase Leads jobs."""

import asyncio
import uuid
from typing import Optional

import typer
from rich.console import Console

app = typer.Typer(no_args_is_help=True)
console = Console()


def print_job(job) -> None:
    style = {"completed": "green", "failed": "red", "running": "yellow"}.get(job.status, "white")
    console.print(f"Job [bold]{job.id}[/bold]: [{style}]{job.status}[/{style}]")
    console.print(f"  Progress: {job.progress_done}/{job.progress_total}")
    if job.message:
        console.print(f"  {job.message}")
    if job.error:
        console.print(f"  [red]{job.error}[/red]")


@app.command("start")
def start(
    workspace_id: uuid.UUID = typer.Argument(help="Workspace ID"),
    tag: Optional[uuid.UUID] = typer.Option(None, "--tag", "-t", help="Only evaluate this phase tag"),
    last_30_days: bool = typer.Option(False, "--last-30-days", help="Only conversations active in the last 30 days"),
    actor: Optional[str] = typer.Option(None, "--actor", help="Requesting user ID"),
):
    """Create a retag job without processing it."""

    async def _start():
        from autophase.config import get_settings
        from autophase.engine.retag import create_retag_job
        from autophase.errors import RetagError
        from autophase.storage.db import close_db, get_session

        try:
            async with get_session() as session:
                job = await create_retag_job(
                    session,
                    workspace_id,
                    requested_by=actor,
                    tag_id=tag,
                    only_last_30_days=last_30_days,
                    cooldown_days=get_settings().retag.full_scope_cooldown_days,
                )
        except RetagError as e:
            console.print(f"[red]{e}[/red]")
            raise typer.Exit(1)
        finally:
            await close_db()
        print_job(job)

    asyncio.run(_start())


@app.command("step")
def step(
    workspace_id: uuid.UUID = typer.Argument(help="Workspace ID"),
    job_id: uuid.UUID = typer.Argument(help="Retag job ID"),
    actor: Optional[str] = typer.Option(None, "--actor", help="Acting user ID"),
):
    """Process the next batch of a retag job."""

    async def _step():
        from autophase.engine.retag import run_retag_step
        from autophase.errors import RetagError
        from autophase.runtime import build_runtime
        from autophase.storage.db import close_db

        try:
            job = await run_retag_step(build_runtime(), workspace_id, job_id, actor_user_id=actor)
        except RetagError as e:
            console.print(f"[red]{e}[/red]")
            raise typer.Exit(1)
        finally:
            await close_db()
        print_job(job)

    asyncio.run(_step())


@app.command("all")
def run_all(
    workspace_id: uuid.UUID = typer.Argument(help="Workspace ID"),
    tag: Optional[uuid.UUID] = typer.Option(None, "--tag", "-t", help="Only evaluate this phase tag"),
    last_30_days: bool = typer.Option(False, "--last-30-days", help="Only conversations active in the last 30 days"),
    actor: Optional[str] = typer.Option(None, "--actor", help="Requesting user ID"),
):
    """Create a retag job and step it to completion."""

    async def _all():
        from autophase.engine.retag import run_retag_to_completion
        from autophase.errors import RetagError
        from autophase.runtime import build_runtime
        from autophase.storage.db import close_db

        try:
            with console.status("Re-phasing leads..."):
                job, rounds = await run_retag_to_completion(
                    build_runtime(), workspace_id, requested_by=actor, tag_id=tag, only_last_30_days=last_30_days
                )
        except RetagError as e:
            console.print(f"[red]{e}[/red]")
            raise typer.Exit(1)
        finally:
            await close_db()
        print_job(job)
        console.print(f"  Rounds: {rounds}")

    asyncio.run(_all())


@app.command("status")
def status(
    workspace_id: uuid.UUID = typer.Argument(help="Workspace ID"),
    job_id: uuid.UUID = typer.Argument(help="Retag job ID"),
):
    """Show a retag job's progress."""

    async def _status():
        from autophase.engine.retag import get_retag_job
        from autophase.errors import RetagError
        from autophase.storage.db import close_db, get_session

        try:
            async with get_session() as session:
                job = await get_retag_job(session, workspace_id, job_id)
        except RetagError as e:
            console.print(f"[red]{e}[/red]")
            raise typer.Exit(1)
        finally:
            await close_db()
        print_job(job)

    asyncio.run(_status())
