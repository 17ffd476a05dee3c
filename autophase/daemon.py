"""Autophase daemon: periodic sweep of enabled workspaces."""

import asyncio
import logging
import signal
from datetime import datetime, timezone
from typing import Optional

from rich.console import Console

from autophase.engine.sweep import run_sweep
from autophase.runtime import Runtime, build_runtime
from autophase.storage.db import close_db

logger = logging.getLogger(__name__)
console = Console()

_running = True


def _handle_shutdown(signum, frame):
    global _running
    _running = False
    logger.info("Shutdown signal received, finishing current cycle...")


async def run_daemon(interval_minutes: Optional[int] = None, runtime: Optional[Runtime] = None) -> None:
    """Run the sweep every ``interval_minutes`` until SIGINT/SIGTERM.

    Args:
        interval_minutes: Minutes between sweeps. Defaults to the configured interval.
        runtime: Engine dependencies; built from settings when omitted.
    """
    global _running
    _running = True

    signal.signal(signal.SIGINT, _handle_shutdown)
    signal.signal(signal.SIGTERM, _handle_shutdown)

    runtime = runtime or build_runtime()
    interval_minutes = interval_minutes or runtime.settings.runs.sweep_interval_minutes
    interval = interval_minutes * 60

    console.print(f"[bold]Autophase daemon started[/bold] (interval: {interval_minutes}m)")
    console.print("Press Ctrl+C to stop.\n")

    cycle = 0
    while _running:
        cycle += 1
        start = datetime.now(timezone.utc)
        logger.info("Daemon cycle %d starting at %s", cycle, start.isoformat())

        try:
            result = await run_sweep(runtime)
            applied = sum(s.applied for s in result.summaries)
            shadowed = sum(s.shadowed for s in result.summaries)
            errors = sum(s.errors for s in result.summaries)
            logger.info(
                "Sweep: %d workspaces, %d applied, %d shadowed, %d errors",
                result.processed_workspaces,
                applied,
                shadowed,
                errors,
            )

            elapsed = (datetime.now(timezone.utc) - start).total_seconds()
            logger.info("Cycle %d complete in %.1fs", cycle, elapsed)

        except Exception as e:
            logger.error("Daemon cycle %d failed: %s", cycle, e, exc_info=True)

        if _running:
            logger.info("Next sweep in %d minutes...", interval_minutes)
            try:
                await asyncio.sleep(interval)
            except asyncio.CancelledError:
                break

    await close_db()
    console.print("\n[bold]Autophase daemon stopped.[/bold]")
