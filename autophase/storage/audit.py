"""Append-only audit trail for automation decisions."""

import logging
from typing import Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from autophase.storage.models import ThreadAuditLog

logger = logging.getLogger(__name__)

ACTION_SHADOW = "auto_phase_shadow"
ACTION_APPLIED = "auto_phase_applied"
ACTION_SKIPPED_MANUAL = "auto_phase_skipped_manual"
ACTION_SKIPPED_LOW_CONFIDENCE = "auto_phase_skipped_low_confidence"
ACTION_RETAG_EVALUATED = "retag-evaluated"
ACTION_RETAG_SKIPPED_MANUAL = "retag-skipped-manual"


async def write_audit(
    session: AsyncSession,
    workspace_id: UUID,
    conversation_id: str,
    action: str,
    actor_user_id: Optional[str] = None,
    details: Optional[dict] = None,
) -> None:
    """Record an audit entry inside a savepoint.

    A failed insert rolls back only the savepoint and is logged; the caller's
    tag and metadata writes in the same transaction are unaffected.
    """
    try:
        async with session.begin_nested():
            session.add(
                ThreadAuditLog(
                    workspace_id=workspace_id,
                    conversation_id=conversation_id,
                    action=action,
                    actor_user_id=actor_user_id,
                    details=details or {},
                )
            )
    except SQLAlchemyError as e:
        logger.warning("Audit write failed (%s, %s): %s", action, conversation_id, e)


async def list_audit_entries(
    session: AsyncSession,
    workspace_id: UUID,
    conversation_id: Optional[str] = None,
    action: Optional[str] = None,
    limit: int = 50,
) -> list[ThreadAuditLog]:
    """Most recent audit entries first."""
    query = select(ThreadAuditLog).where(ThreadAuditLog.workspace_id == workspace_id)
    if conversation_id:
        query = query.where(ThreadAuditLog.conversation_id == conversation_id)
    if action:
        query = query.where(ThreadAuditLog.action == action)
    query = query.order_by(ThreadAuditLog.created_at.desc()).limit(limit)
    result = await session.execute(query)
    return list(result.scalars().all())
