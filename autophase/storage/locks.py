"""Per-workspace advisory lease.

One row per workspace in ``auto_phase_locks``. Acquiring is a single
``INSERT ... ON CONFLICT DO UPDATE ... WHERE locked_until < now`` so the
database decides the winner; a crashed holder is superseded once its
lease expires. This is cooperative locking, not a fenced distributed lock:
a run that outlives its TTL can overlap with the next one.
"""

import logging
import uuid
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import delete
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from autophase.clock import utcnow
from autophase.storage.db import dialect_insert
from autophase.storage.models import WorkspaceLock

logger = logging.getLogger(__name__)

MIN_TTL_SECONDS = 10
MAX_TTL_SECONDS = 3600
DEFAULT_TTL_SECONDS = 90


def clamp_ttl(ttl_seconds: Optional[int]) -> int:
    if ttl_seconds is None:
        return DEFAULT_TTL_SECONDS
    return max(MIN_TTL_SECONDS, min(MAX_TTL_SECONDS, int(ttl_seconds)))


async def acquire_workspace_lock(
    session: AsyncSession,
    workspace_id: uuid.UUID,
    ttl_seconds: Optional[int] = None,
    holder: Optional[str] = None,
    now: Optional[datetime] = None,
) -> bool:
    """Try to take the lease. Never waits; returns False while another lease is live."""
    now = now or utcnow()
    locked_until = now + timedelta(seconds=clamp_ttl(ttl_seconds))

    stmt = dialect_insert(session, WorkspaceLock).values(
        workspace_id=workspace_id,
        holder=holder,
        acquired_at=now,
        locked_until=locked_until,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[WorkspaceLock.workspace_id],
        set_={
            "holder": stmt.excluded.holder,
            "acquired_at": stmt.excluded.acquired_at,
            "locked_until": stmt.excluded.locked_until,
        },
        where=WorkspaceLock.locked_until < now,
    )
    try:
        result = await session.execute(stmt)
        await session.commit()
    except SQLAlchemyError as e:
        logger.warning("Lock acquire failed for workspace %s: %s", workspace_id, e)
        await session.rollback()
        return False

    acquired = (result.rowcount or 0) > 0
    logger.debug("Lock %s for workspace %s", "acquired" if acquired else "busy", workspace_id)
    return acquired


async def release_workspace_lock(
    session: AsyncSession,
    workspace_id: uuid.UUID,
    holder: Optional[str] = None,
) -> None:
    """Drop the lease. Best-effort: failures are logged, never raised."""
    stmt = delete(WorkspaceLock).where(WorkspaceLock.workspace_id == workspace_id)
    if holder is not None:
        stmt = stmt.where(WorkspaceLock.holder == holder)
    try:
        await session.execute(stmt)
        await session.commit()
    except Exception as e:
        logger.warning("Lock release failed for workspace %s: %s", workspace_id, e)
