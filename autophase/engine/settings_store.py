"""Per-workspace automation settings: defaults, clamping and bookkeeping."""

import logging
import math
from datetime import datetime
from typing import Any, Literal, Mapping, Optional
from uuid import UUID

from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from autophase.clock import as_utc, utcnow
from autophase.storage.models import AutomationSettings

logger = logging.getLogger(__name__)

Mode = Literal["shadow", "enforce"]
HistoricalPolicy = Literal["manual_backlog_only", "auto_catchup"]
UncertainExistingPhase = Literal["in_contact", "keep_current"]
BackfillState = Literal["pending", "running", "completed"]

BACKFILL_STATES = ("pending", "running", "completed")
MAX_ERROR_CHARS = 1200

# field -> (min, max, default)
INT_RANGES: dict[str, tuple[int, int, int]] = {
    "min_confidence": (0, 100, 70),
    "incremental_max_conversations": (1, 500, 30),
    "catchup_max_conversations": (1, 1500, 120),
    "uncertain_new_lead_window_hours": (1, 168, 24),
}

# Default-on switches
BOOL_FIELDS = (
    "classify_on_any_message",
    "apply_temperature",
    "manual_lock_enabled",
    "allow_setter_trigger",
)

_FALSE_STRINGS = {"false", "0", "no", "off", ""}


class AutomationConfig(BaseModel):
    """Normalized snapshot of a workspace's automation settings."""

    workspace_id: UUID
    enabled: bool = False
    mode: Mode = "shadow"
    historical_policy: HistoricalPolicy = "manual_backlog_only"
    enabled_at: Optional[datetime] = None
    min_confidence: int = 70
    incremental_max_conversations: int = 30
    catchup_max_conversations: int = 120
    classify_on_any_message: bool = True
    apply_temperature: bool = True
    manual_lock_enabled: bool = True
    uncertain_new_lead_window_hours: int = 24
    uncertain_existing_phase: UncertainExistingPhase = "in_contact"
    allow_setter_trigger: bool = True
    backfill_state: BackfillState = "pending"
    backfill_completed_at: Optional[datetime] = None
    last_incremental_run_at: Optional[datetime] = None
    last_catchup_run_at: Optional[datetime] = None
    last_error: Optional[str] = None
    updated_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


def clamp_int(value: Any, lo: int, hi: int, fallback: int) -> int:
    """Round into [lo, hi]; anything non-numeric yields the fallback."""
    if isinstance(value, bool):
        return fallback
    try:
        number = float(value)
    except (TypeError, ValueError):
        return fallback
    if not math.isfinite(number):
        return fallback
    return max(lo, min(hi, int(round(number))))


def coerce_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() not in _FALSE_STRINGS
    return bool(value)


def _mode(value: Any) -> str:
    return "enforce" if value == "enforce" else "shadow"


def _historical_policy(value: Any) -> str:
    return "auto_catchup" if value == "auto_catchup" else "manual_backlog_only"


def _uncertain_existing_phase(value: Any) -> str:
    return "keep_current" if value == "keep_current" else "in_contact"


def normalize_settings(row: Any) -> AutomationConfig:
    """Read a settings row, repairing anything out of range or unknown."""
    values = {
        "workspace_id": row.workspace_id,
        "enabled": row.enabled is True,
        "mode": _mode(row.mode),
        "historical_policy": _historical_policy(row.historical_policy),
        "enabled_at": as_utc(row.enabled_at),
        "uncertain_existing_phase": _uncertain_existing_phase(row.uncertain_existing_phase),
        "backfill_state": row.backfill_state if row.backfill_state in BACKFILL_STATES else "pending",
        "backfill_completed_at": as_utc(row.backfill_completed_at),
        "last_incremental_run_at": as_utc(row.last_incremental_run_at),
        "last_catchup_run_at": as_utc(row.last_catchup_run_at),
        "last_error": row.last_error,
        "updated_at": as_utc(row.updated_at),
    }
    for field, (lo, hi, default) in INT_RANGES.items():
        values[field] = clamp_int(getattr(row, field), lo, hi, default)
    for field in BOOL_FIELDS:
        # Only an explicit False turns these off
        values[field] = getattr(row, field) is not False
    return AutomationConfig(**values)


def coerce_patch(patch: Mapping[str, Any], current: AutomationConfig, now: Optional[datetime] = None) -> dict:
    """Translate a partial update into column values.

    Only keys present in ``patch`` are considered. Out-of-range numbers are
    clamped against the current value, unknown enum values fall back to the
    safe default, and an invalid ``backfill_state`` is dropped.
    """
    updates: dict[str, Any] = {}

    if "enabled" in patch:
        updates["enabled"] = coerce_bool(patch["enabled"])
    if "mode" in patch:
        updates["mode"] = _mode(patch["mode"])
    if "historical_policy" in patch:
        updates["historical_policy"] = _historical_policy(patch["historical_policy"])
    if "uncertain_existing_phase" in patch:
        updates["uncertain_existing_phase"] = _uncertain_existing_phase(patch["uncertain_existing_phase"])

    for field, (lo, hi, _default) in INT_RANGES.items():
        if field in patch:
            updates[field] = clamp_int(patch[field], lo, hi, getattr(current, field))

    for field in BOOL_FIELDS:
        if field in patch:
            updates[field] = coerce_bool(patch[field])

    if "backfill_state" in patch and patch["backfill_state"] in BACKFILL_STATES:
        updates["backfill_state"] = patch["backfill_state"]

    next_enabled = updates.get("enabled", current.enabled)
    if next_enabled and current.enabled_at is None:
        updates["enabled_at"] = now or utcnow()

    return updates


async def _load_row(session: AsyncSession, workspace_id: UUID) -> Optional[AutomationSettings]:
    result = await session.execute(
        select(AutomationSettings).where(AutomationSettings.workspace_id == workspace_id)
    )
    return result.scalar_one_or_none()


async def _get_or_create_row(session: AsyncSession, workspace_id: UUID) -> AutomationSettings:
    row = await _load_row(session, workspace_id)
    if row is not None:
        return row

    try:
        async with session.begin_nested():
            row = AutomationSettings(workspace_id=workspace_id)
            session.add(row)
    except IntegrityError:
        # Someone else created it between our read and insert
        logger.debug("Settings row for %s created concurrently, re-reading", workspace_id)
        row = await _load_row(session, workspace_id)
        if row is None:
            raise
    else:
        logger.info("Created default auto-phase settings for workspace %s", workspace_id)
    return row


async def get_automation_settings(session: AsyncSession, workspace_id: UUID) -> AutomationConfig:
    """Return the workspace's settings, creating the default row if missing."""
    row = await _get_or_create_row(session, workspace_id)
    return normalize_settings(row)


async def update_automation_settings(
    session: AsyncSession,
    workspace_id: UUID,
    patch: Mapping[str, Any],
    now: Optional[datetime] = None,
) -> AutomationConfig:
    """Apply a partial update and return the normalized result."""
    row = await _get_or_create_row(session, workspace_id)
    current = normalize_settings(row)
    updates = coerce_patch(patch or {}, current, now=now)
    if not updates:
        return current

    for field, value in updates.items():
        setattr(row, field, value)
    await session.flush()
    logger.info("Updated auto-phase settings for %s: %s", workspace_id, ", ".join(sorted(updates)))
    return normalize_settings(row)


async def mark_run_result(
    session: AsyncSession,
    workspace_id: UUID,
    source: str,
    error: Optional[str],
    now: Optional[datetime] = None,
) -> None:
    """Persist the outcome of a run: last error plus the per-source run stamp."""
    row = await _get_or_create_row(session, workspace_id)
    now = now or utcnow()
    row.last_error = error[:MAX_ERROR_CHARS] if error else None
    if source == "incremental":
        row.last_incremental_run_at = now
    elif source in ("catchup", "backfill"):
        row.last_catchup_run_at = now
    await session.flush()


async def set_backfill_state(
    session: AsyncSession,
    workspace_id: UUID,
    state: str,
    completed_at: Optional[datetime] = None,
) -> None:
    row = await _get_or_create_row(session, workspace_id)
    row.backfill_state = state
    row.backfill_completed_at = completed_at
    await session.flush()


async def list_enabled_workspaces(session: AsyncSession, limit: int = 1000) -> list[AutomationConfig]:
    """Enabled workspaces, least recently updated first."""
    result = await session.execute(
        select(AutomationSettings)
        .where(AutomationSettings.enabled.is_(True))
        .order_by(AutomationSettings.updated_at.asc())
        .limit(limit)
    )
    return [normalize_settings(row) for row in result.scalars().all()]
