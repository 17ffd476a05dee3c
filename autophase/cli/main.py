"""Autophase CLI: main entry point using Typer."""

import asyncio
import logging
import uuid
from typing import List, Optional

import typer
from rich.console import Console
from rich.logging import RichHandler

from autophase.cli.retag_cmd import app as retag_app
from autophase.cli.settings_cmd import app as settings_app

app = typer.Typer(
    name="autophase",
    help="Confidence-gated lead phase automation for your inbox.",
    no_args_is_help=True,
)
console = Console()

app.add_typer(settings_app, name="settings", help="Show or change a workspace's automation settings")
app.add_typer(retag_app, name="retag", help="Re-Phase Leads bulk jobs")

_NOISY_LOGGERS = ("httpx", "httpcore", "sqlalchemy.engine")


def _setup_logging(verbose: bool = False):
    from autophase.config import get_settings

    level = logging.DEBUG if verbose else getattr(logging, get_settings().general.log_level.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[RichHandler(rich_tracebacks=True, show_time=False)],
    )
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def print_summary(summary) -> None:
    """Render a RunSummary as a table."""
    from rich.table import Table

    if summary.skipped_reason:
        console.print(f"[yellow]Skipped: {summary.skipped_reason}[/yellow]")

    table = Table(title=f"Auto-phase {summary.source} run ({summary.mode})")
    table.add_column("Outcome", style="cyan")
    table.add_column("Count", style="green", justify="right")
    for label, value in [
        ("candidates", summary.total_candidates),
        ("processed", summary.processed),
        ("applied", summary.applied),
        ("shadowed", summary.shadowed),
        ("skipped (manual)", summary.skipped_manual),
        ("skipped (low confidence)", summary.skipped_low_confidence),
        ("skipped (other)", summary.skipped_other),
        ("errors", summary.errors),
    ]:
        table.add_row(label, str(value))
    console.print(table)

    for message in summary.error_messages:
        console.print(f"  [red]{message}[/red]")


@app.command()
def init(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """Initialize Autophase: create tables and a default config file."""
    _setup_logging(verbose)

    async def _init():
        from pathlib import Path

        from autophase.storage.db import close_db, init_db

        console.print("[bold]Setting up Autophase[/bold]", style="green")

        config_dir = Path.home() / ".config/autophase"
        config_dir.mkdir(parents=True, exist_ok=True)
        console.print(f"  Config dir: {config_dir}")

        console.print("  Initializing database...")
        await init_db()
        await close_db()
        console.print("  Database ready.")

        config_path = config_dir / "config.toml"
        if not config_path.exists():
            config_path.write_text(
                "[general]\n"
                'db_url = "postgresql+asyncpg://localhost/autophase"\n'
                'log_level = "INFO"\n\n'
                "[anthropic]\n"
                '# api_key = ""  # Or set ANTHROPIC_API_KEY env var\n'
                'model = "claude-haiku-4-5-20251001"\n\n'
                "[classifier]\n"
                "max_attempts = 3\n"
                "backoff_seconds = 0.25\n"
                '# knowledge_path = "~/.config/autophase/knowledge.md"\n\n'
                "[runs]\n"
                "lock_ttl_seconds = 120\n"
                "sweep_interval_minutes = 15\n"
                '# cron_secret = ""  # Or set AUTO_PHASE_CRON_SECRET env var\n\n'
                "[retag]\n"
                "batch_size = 20\n"
                "concurrency = 3\n"
            )
            console.print(f"  Config written: {config_path}")

        console.print("\n[bold green]Autophase initialized![/bold green]")
        console.print("\nNext steps:")
        console.print("  1. Enable a workspace: [cyan]autophase settings set <workspace> --enabled[/cyan]")
        console.print("  2. Try a shadow run:   [cyan]autophase run <workspace>[/cyan]")
        console.print("  3. Run the sweeper:    [cyan]autophase daemon[/cyan]")

    asyncio.run(_init())


@app.command()
def status(
    verbose: bool = typer.Option(False, "--verbose", "-v"),
):
    """Show per-workspace automation state and recent errors."""
    _setup_logging(verbose)

    async def _status():
        from rich.table import Table
        from sqlalchemy import func, select

        from autophase.storage.db import get_session
        from autophase.storage.models import AutomationSettings, RetagJob

        async with get_session() as session:
            result = await session.execute(select(AutomationSettings).order_by(AutomationSettings.updated_at.desc()))
            rows = result.scalars().all()

            result = await session.execute(
                select(RetagJob.status, func.count()).group_by(RetagJob.status)
            )
            jobs = {row[0]: row[1] for row in result.all()}

        if not rows:
            console.print("[yellow]No workspaces configured yet.[/yellow]")
            return

        table = Table(title="Auto-phase Workspaces")
        table.add_column("Workspace", style="cyan")
        table.add_column("Enabled", justify="center")
        table.add_column("Mode")
        table.add_column("Backfill")
        table.add_column("Last run")
        table.add_column("Last error", style="red")
        for row in rows:
            last = row.last_catchup_run_at or row.last_incremental_run_at
            table.add_row(
                str(row.workspace_id),
                "[green]YES[/green]" if row.enabled else "[red]NO[/red]",
                row.mode,
                row.backfill_state,
                last.strftime("%Y-%m-%d %H:%M") if last else "never",
                (row.last_error or "")[:60],
            )
        console.print(table)

        if jobs:
            console.print("\n[bold]Retag jobs:[/bold]")
            for job_status, count in sorted(jobs.items()):
                console.print(f"  {job_status}: {count}")

    asyncio.run(_status())


@app.command()
def run(
    workspace_id: uuid.UUID = typer.Argument(help="Workspace ID"),
    source: str = typer.Option("incremental", "--source", "-s", help="incremental, catchup, backfill, manual_rephase"),
    conversation: Optional[List[str]] = typer.Option(None, "--conversation", "-c", help="Only these conversation IDs"),
    max_conversations: Optional[int] = typer.Option(None, "--max", "-n", help="Max conversations to process"),
    role: str = typer.Option("owner", "--role", help="Actor role (owner or setter)"),
    actor: Optional[str] = typer.Option(None, "--actor", help="Actor user ID for the audit trail"),
    force: bool = typer.Option(False, "--force", help="Run even when automation is disabled"),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
):
    """Run auto-phasing once for a workspace."""
    _setup_logging(verbose)

    from autophase.engine.candidates import RUN_SOURCES

    if source not in RUN_SOURCES:
        console.print(f"[red]Unknown source '{source}'. Use one of: {', '.join(RUN_SOURCES)}[/red]")
        raise typer.Exit(1)

    async def _run():
        from autophase.engine.orchestrator import RunOptions, run_workspace_auto_phase
        from autophase.runtime import build_runtime
        from autophase.storage.db import close_db

        try:
            summary = await run_workspace_auto_phase(
                build_runtime(),
                RunOptions(
                    workspace_id=workspace_id,
                    source=source,
                    actor_user_id=actor,
                    actor_role=role,
                    conversation_ids=conversation or None,
                    max_conversations=max_conversations,
                    force_run_when_disabled=force,
                ),
            )
        finally:
            await close_db()
        print_summary(summary)

    asyncio.run(_run())


@app.command()
def unlock(
    workspace_id: uuid.UUID = typer.Argument(help="Workspace ID"),
    conversation_id: str = typer.Argument(help="Conversation ID"),
    actor: Optional[str] = typer.Option(None, "--actor", help="Actor user ID for the audit trail"),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
):
    """Remove a conversation's manual phase tags and re-run automation on it."""
    _setup_logging(verbose)

    async def _unlock():
        from autophase.engine.orchestrator import unlock_thread_for_auto_phase
        from autophase.runtime import build_runtime
        from autophase.storage.db import close_db

        try:
            summary = await unlock_thread_for_auto_phase(build_runtime(), workspace_id, conversation_id, actor_user_id=actor)
        finally:
            await close_db()
        console.print(f"Unlocked [bold]{conversation_id}[/bold]")
        print_summary(summary)

    asyncio.run(_unlock())


@app.command()
def sweep(
    verbose: bool = typer.Option(False, "--verbose", "-v"),
):
    """Run one scheduled sweep over all enabled workspaces."""
    _setup_logging(verbose)

    async def _sweep():
        from autophase.engine.sweep import run_sweep
        from autophase.runtime import build_runtime
        from autophase.storage.db import close_db

        try:
            result = await run_sweep(build_runtime())
        finally:
            await close_db()
        console.print(f"Processed [bold]{result.processed_workspaces}[/bold] workspaces")
        for summary in result.summaries:
            print_summary(summary)

    asyncio.run(_sweep())


@app.command()
def audit(
    workspace_id: uuid.UUID = typer.Argument(help="Workspace ID"),
    conversation: Optional[str] = typer.Option(None, "--conversation", "-c", help="Filter by conversation"),
    action: Optional[str] = typer.Option(None, "--action", "-a", help="Filter by action"),
    limit: int = typer.Option(20, "--limit", "-n", help="Max entries"),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
):
    """Show recent automation audit entries."""
    _setup_logging(verbose)

    async def _audit():
        from rich.table import Table

        from autophase.storage.audit import list_audit_entries
        from autophase.storage.db import close_db, get_session

        try:
            async with get_session() as session:
                entries = await list_audit_entries(session, workspace_id, conversation, action, limit)
        finally:
            await close_db()

        if not entries:
            console.print("[yellow]No audit entries.[/yellow]")
            return

        table = Table(title="Audit Trail")
        table.add_column("When", style="dim")
        table.add_column("Conversation", style="cyan")
        table.add_column("Action")
        table.add_column("Reason")
        for entry in entries:
            details = entry.details or {}
            table.add_row(
                entry.created_at.strftime("%Y-%m-%d %H:%M") if entry.created_at else "?",
                entry.conversation_id,
                entry.action,
                str(details.get("reason", ""))[:80],
            )
        console.print(table)

    asyncio.run(_audit())


@app.command()
def daemon(
    interval: Optional[int] = typer.Option(None, "--interval", "-i", help="Sweep interval in minutes"),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
):
    """Run Autophase as a background daemon (sweep on interval)."""
    _setup_logging(verbose)

    from autophase.daemon import run_daemon

    asyncio.run(run_daemon(interval_minutes=interval))


if __name__ == "__main__":
    app()
