"""CLI commands for a workspace's auto-phase settings."""

import asyncio
import uuid
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

app = typer.Typer(no_args_is_help=True)
console = Console()


def print_settings(config) -> None:
    table = Table(title=f"Auto-phase settings: {config.workspace_id}")
    table.add_column("Setting", style="cyan")
    table.add_column("Value")
    for field, value in config.model_dump().items():
        if field == "workspace_id":
            continue
        if value is None:
            value = "[dim]-[/dim]"
        elif isinstance(value, bool):
            value = "[green]yes[/green]" if value else "[red]no[/red]"
        table.add_row(field, str(value))
    console.print(table)


@app.command("show")
def show_settings(
    workspace_id: uuid.UUID = typer.Argument(help="Workspace ID"),
):
    """Show settings (creating the defaults on first use)."""

    async def _show():
        from autophase.engine.settings_store import get_automation_settings
        from autophase.storage.db import close_db, get_session

        try:
            async with get_session() as session:
                config = await get_automation_settings(session, workspace_id)
        finally:
            await close_db()
        print_settings(config)

    asyncio.run(_show())


@app.command("set")
def set_settings(
    workspace_id: uuid.UUID = typer.Argument(help="Workspace ID"),
    enabled: Optional[bool] = typer.Option(None, "--enabled/--disabled", help="Turn automation on or off"),
    mode: Optional[str] = typer.Option(None, "--mode", "-m", help="shadow or enforce"),
    historical_policy: Optional[str] = typer.Option(
        None, "--historical-policy", help="manual_backlog_only or auto_catchup"
    ),
    min_confidence: Optional[int] = typer.Option(None, "--min-confidence", help="0-100"),
    incremental_max: Optional[int] = typer.Option(None, "--incremental-max", help="Conversations per incremental run"),
    catchup_max: Optional[int] = typer.Option(None, "--catchup-max", help="Conversations per catchup/backfill run"),
    any_message: Optional[bool] = typer.Option(
        None, "--any-message/--inbound-only", help="Classify after outbound messages too"
    ),
    apply_temperature: Optional[bool] = typer.Option(None, "--temperature/--no-temperature"),
    manual_lock: Optional[bool] = typer.Option(None, "--manual-lock/--no-manual-lock"),
    window_hours: Optional[int] = typer.Option(None, "--new-lead-window", help="Hours a quiet lead stays New Lead"),
    uncertain_existing_phase: Optional[str] = typer.Option(None, "--uncertain-existing", help="in_contact or keep_current"),
    allow_setter: Optional[bool] = typer.Option(None, "--allow-setter/--owner-only"),
):
    """Change settings. Only the flags you pass are updated."""
    patch = {
        "enabled": enabled,
        "mode": mode,
        "historical_policy": historical_policy,
        "min_confidence": min_confidence,
        "incremental_max_conversations": incremental_max,
        "catchup_max_conversations": catchup_max,
        "classify_on_any_message": any_message,
        "apply_temperature": apply_temperature,
        "manual_lock_enabled": manual_lock,
        "uncertain_new_lead_window_hours": window_hours,
        "uncertain_existing_phase": uncertain_existing_phase,
        "allow_setter_trigger": allow_setter,
    }
    patch = {key: value for key, value in patch.items() if value is not None}
    if not patch:
        console.print("[yellow]Nothing to change.[/yellow]")
        raise typer.Exit(1)

    async def _set():
        from autophase.engine.settings_store import update_automation_settings
        from autophase.storage.db import close_db, get_session

        try:
            async with get_session() as session:
                config = await update_automation_settings(session, workspace_id, patch)
        finally:
            await close_db()
        console.print(f"Updated: {', '.join(sorted(patch))}")
        print_settings(config)

    asyncio.run(_set())
