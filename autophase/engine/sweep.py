"""Scheduled sweep over every workspace with automation enabled."""

import logging
from typing import Optional

from pydantic import BaseModel, Field

from autophase.clock import utcnow
from autophase.engine.orchestrator import RunOptions, RunSummary, run_workspace_auto_phase
from autophase.engine.settings_store import MAX_ERROR_CHARS, list_enabled_workspaces
from autophase.runtime import Runtime
from autophase.storage.models import AutomationSettings

logger = logging.getLogger(__name__)


class SweepResult(BaseModel):
    success: bool = True
    processed_workspaces: int = 0
    summaries: list[RunSummary] = Field(default_factory=list)


async def _record_workspace_failure(runtime: Runtime, workspace_id, error: Exception) -> None:
    try:
        async with runtime.session_factory() as session:
            row = await session.get(AutomationSettings, workspace_id)
            if row is not None:
                row.last_error = str(error)[:MAX_ERROR_CHARS]
                row.last_catchup_run_at = utcnow()
    except Exception as e:
        logger.error("Could not record sweep failure for %s: %s", workspace_id, e)


async def run_sweep(runtime: Runtime, limit: Optional[int] = None) -> SweepResult:
    """Run catchup (or backfill, until it completes) for each enabled workspace."""
    limit = limit or runtime.settings.runs.sweep_workspace_limit
    async with runtime.session_factory() as session:
        workspaces = await list_enabled_workspaces(session, limit=limit)

    result = SweepResult()
    for config in workspaces:
        source = "catchup" if config.backfill_state == "completed" else "backfill"
        try:
            summary = await run_workspace_auto_phase(
                runtime,
                RunOptions(workspace_id=config.workspace_id, source=source, actor_role="owner"),
            )
            result.summaries.append(summary)
        except Exception as e:
            logger.error("Sweep failed for workspace %s: %s", config.workspace_id, e, exc_info=True)
            await _record_workspace_failure(runtime, config.workspace_id, e)
        result.processed_workspaces += 1

    logger.info("Sweep processed %d workspaces", result.processed_workspaces)
    return result
