"""Selecting which conversations a run should (re)classify."""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional, Sequence
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from autophase.clock import as_utc
from autophase.engine.settings_store import AutomationConfig, clamp_int
from autophase.storage.models import ConversationTag, ConversationThread

logger = logging.getLogger(__name__)

RUN_SOURCES = ("incremental", "catchup", "backfill", "manual_rephase")

MIN_PAGE_SIZE = 80
MAX_PAGE_SIZE = 800
MAX_SCAN_ROWS = 5000
MAX_REQUESTED_CONVERSATIONS = 1500

AUTOMATION_SOURCES = frozenset({"ai", "retag"})


@dataclass(frozen=True)
class TagLink:
    tag_id: UUID
    source: str = ""

    @property
    def is_automated(self) -> bool:
        return self.source in AUTOMATION_SOURCES

    @property
    def is_manual(self) -> bool:
        """Set by a person (manual, bulk, ...); an empty source is not evidence of either."""
        return bool(self.source) and not self.is_automated


def normalize_source(value: Optional[str]) -> str:
    return (value or "").strip().lower()


def thread_activity_at(thread) -> Optional[datetime]:
    """Last message time, or creation time for a thread with no messages."""
    return as_utc(thread.last_message_at) or as_utc(thread.created_at)


def thread_last_activity(thread) -> Optional[datetime]:
    stamps = [t for t in (as_utc(thread.last_message_at), as_utc(thread.created_at)) if t is not None]
    return max(stamps) if stamps else None


def needs_classification(thread, config: AutomationConfig, source: str) -> bool:
    """Staleness rule for one thread under a run source."""
    last_at = thread_activity_at(thread)
    ai_at = as_utc(thread.ai_phase_updated_at)

    if source == "backfill":
        if config.historical_policy == "manual_backlog_only":
            return False
        return ai_at is None

    if source == "catchup" and config.historical_policy == "manual_backlog_only":
        if ai_at is not None:
            return last_at is not None and last_at > ai_at
        # Never classified: only threads that arrived after automation was switched on
        created_at = as_utc(thread.created_at)
        enabled_at = as_utc(config.enabled_at)
        return created_at is not None and enabled_at is not None and created_at >= enabled_at

    if ai_at is None:
        return True
    return last_at is not None and last_at > ai_at


def pick_max_conversations(config: AutomationConfig, source: str, requested: Optional[int] = None) -> int:
    fallback = (
        config.incremental_max_conversations if source == "incremental" else config.catchup_max_conversations
    )
    if requested is None:
        return fallback
    return clamp_int(requested, 1, MAX_REQUESTED_CONVERSATIONS, fallback)


def page_size_for(max_count: int) -> int:
    return min(MAX_PAGE_SIZE, max(MIN_PAGE_SIZE, max_count * 6))


def _dedupe_ids(ids: Iterable[str]) -> list[str]:
    seen: list[str] = []
    for raw in ids:
        value = str(raw or "").strip()
        if value and value not in seen:
            seen.append(value)
    return seen


def _recency_order():
    return (ConversationThread.last_message_at.desc().nulls_last(), ConversationThread.conversation_id.asc())


async def load_thread_candidates(
    session: AsyncSession,
    workspace_id: UUID,
    config: AutomationConfig,
    source: str,
    max_count: int,
    conversation_ids: Optional[Sequence[str]] = None,
) -> list[ConversationThread]:
    """Return up to ``max_count`` threads to classify, most recent first.

    Explicit ids bypass the staleness rules; removed threads are never returned.
    """
    base = select(ConversationThread).where(
        ConversationThread.workspace_id == workspace_id,
        ConversationThread.lead_status != "removed",
    )

    if conversation_ids:
        ids = _dedupe_ids(conversation_ids)[:max_count]
        if not ids:
            return []
        result = await session.execute(
            base.where(ConversationThread.conversation_id.in_(ids)).order_by(*_recency_order())
        )
        return list(result.scalars().all())

    if source == "backfill" and config.historical_policy == "manual_backlog_only":
        return []

    page_size = page_size_for(max_count)
    candidates: list[ConversationThread] = []
    offset = 0
    while len(candidates) < max_count and offset < MAX_SCAN_ROWS:
        result = await session.execute(base.order_by(*_recency_order()).offset(offset).limit(page_size))
        rows = result.scalars().all()
        for thread in rows:
            if thread.is_spam:
                continue
            if needs_classification(thread, config, source):
                candidates.append(thread)
                if len(candidates) >= max_count:
                    break
        if len(rows) < page_size:
            break
        offset += page_size

    logger.debug("Selected %d %s candidates for workspace %s", len(candidates), source, workspace_id)
    return candidates


async def load_managed_tag_links(
    session: AsyncSession,
    workspace_id: UUID,
    conversation_ids: Sequence[str],
    managed_tag_ids: Sequence[UUID],
) -> dict[str, list[TagLink]]:
    """Current links to managed tags, grouped by conversation."""
    links: dict[str, list[TagLink]] = {cid: [] for cid in conversation_ids}
    if not conversation_ids or not managed_tag_ids:
        return links

    result = await session.execute(
        select(ConversationTag.conversation_id, ConversationTag.tag_id, ConversationTag.source)
        .where(
            ConversationTag.workspace_id == workspace_id,
            ConversationTag.conversation_id.in_(list(conversation_ids)),
            ConversationTag.tag_id.in_(list(managed_tag_ids)),
        )
        .order_by(ConversationTag.created_at.asc())
    )
    for conversation_id, tag_id, source in result.all():
        links.setdefault(conversation_id, []).append(TagLink(tag_id=tag_id, source=normalize_source(source)))
    return links
