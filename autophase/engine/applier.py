"""Writing automation outcomes: tag links, lead status and AI bookkeeping."""

import logging
from datetime import datetime
from typing import Iterable, Optional
from uuid import UUID

from sqlalchemy import delete, update
from sqlalchemy.ext.asyncio import AsyncSession

from autophase.clock import utcnow
from autophase.engine.candidates import AUTOMATION_SOURCES
from autophase.engine.catalog import TagCatalog, lead_status_for_stage
from autophase.engine.settings_store import AutomationConfig
from autophase.storage.db import dialect_insert
from autophase.storage.models import ConversationTag, ConversationThread

logger = logging.getLogger(__name__)


async def insert_tag_links(
    session: AsyncSession,
    workspace_id: UUID,
    conversation_id: str,
    tag_ids: Iterable[UUID],
    source: str = "ai",
    created_by: Optional[str] = None,
) -> int:
    """Link tags to a conversation; existing links are left as they are."""
    rows = [
        {
            "workspace_id": workspace_id,
            "conversation_id": conversation_id,
            "tag_id": tag_id,
            "source": source,
            "created_by": created_by,
            "created_at": utcnow(),
        }
        for tag_id in dict.fromkeys(t for t in tag_ids if t is not None)
    ]
    if not rows:
        return 0
    stmt = dialect_insert(session, ConversationTag).values(rows)
    stmt = stmt.on_conflict_do_nothing(index_elements=["workspace_id", "conversation_id", "tag_id"])
    await session.execute(stmt)
    return len(rows)


async def apply_enforce_tags_and_status(
    session: AsyncSession,
    workspace_id: UUID,
    conversation_id: str,
    config: AutomationConfig,
    catalog: TagCatalog,
    target_phase_tag_id: Optional[UUID],
    target_temperature_tag_id: Optional[UUID],
    actor_user_id: Optional[str] = None,
) -> None:
    """Replace managed tags with the targets and derive lead status.

    Manual and bulk links survive while manual lock is on. Errors propagate.
    """
    tags_to_manage = list(catalog.phase_tag_ids)
    if config.apply_temperature:
        tags_to_manage += catalog.temperature_tag_ids

    if tags_to_manage:
        stmt = delete(ConversationTag).where(
            ConversationTag.workspace_id == workspace_id,
            ConversationTag.conversation_id == conversation_id,
            ConversationTag.tag_id.in_(tags_to_manage),
        )
        if config.manual_lock_enabled:
            stmt = stmt.where(ConversationTag.source.in_(sorted(AUTOMATION_SOURCES)))
        await session.execute(stmt.execution_options(synchronize_session=False))

    targets = [target_phase_tag_id]
    if config.apply_temperature:
        targets.append(target_temperature_tag_id)
    await insert_tag_links(session, workspace_id, conversation_id, targets, source="ai", created_by=actor_user_id)

    stage_key = catalog.phase_key_by_tag_id.get(target_phase_tag_id) if target_phase_tag_id else None
    await session.execute(
        update(ConversationThread)
        .where(
            ConversationThread.workspace_id == workspace_id,
            ConversationThread.conversation_id == conversation_id,
        )
        .values(lead_status=lead_status_for_stage(stage_key))
        .execution_options(synchronize_session=False)
    )
    logger.debug("Applied phase %s / temperature %s to %s", target_phase_tag_id, target_temperature_tag_id, conversation_id)


async def update_thread_ai_metadata(
    session: AsyncSession,
    workspace_id: UUID,
    conversation_id: str,
    phase_confidence: Optional[int],
    temperature_confidence: Optional[int],
    reason: str,
    mode: str,
    source: str,
    now: Optional[datetime] = None,
) -> None:
    await session.execute(
        update(ConversationThread)
        .where(
            ConversationThread.workspace_id == workspace_id,
            ConversationThread.conversation_id == conversation_id,
        )
        .values(
            ai_phase_updated_at=now or utcnow(),
            ai_phase_confidence=phase_confidence,
            ai_temperature_confidence=temperature_confidence,
            ai_phase_reason=reason,
            ai_phase_mode=mode,
            ai_phase_last_run_source=source,
        )
        .execution_options(synchronize_session=False)
    )
