"""Conversation transcripts for the classifier."""

import re
from datetime import datetime, timezone
from typing import Sequence
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from autophase.clock import as_utc
from autophase.storage.models import ConversationMessage

_WHITESPACE_RE = re.compile(r"\s+")
_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


async def load_recent_messages(
    session: AsyncSession,
    workspace_id: UUID,
    conversation_id: str,
    limit: int = 80,
) -> list[ConversationMessage]:
    """The latest ``limit`` messages of a conversation (read-only)."""
    result = await session.execute(
        select(ConversationMessage)
        .where(
            ConversationMessage.workspace_id == workspace_id,
            ConversationMessage.conversation_id == conversation_id,
        )
        .order_by(
            ConversationMessage.message_timestamp.desc().nulls_last(),
            ConversationMessage.created_at.desc(),
        )
        .limit(limit)
    )
    return list(result.scalars().all())


def _message_time(message):
    return as_utc(message.message_timestamp) or as_utc(message.created_at)


def format_transcript(messages: Sequence, max_messages: int = 45) -> str:
    """Render the most recent messages oldest-first, one line each.

    ``[Setter @ 2026-02-01T12:00:00+00:00] Sounds good, talk soon``
    """
    ordered = sorted(
        enumerate(messages),
        key=lambda pair: (_message_time(pair[1]) or _EPOCH, pair[0]),
    )
    recent = [m for _, m in ordered][-max_messages:] if max_messages > 0 else []

    lines = []
    for message in recent:
        speaker = "Setter" if (message.direction or "").strip().lower() == "outbound" else "Lead"
        when = _message_time(message)
        stamp = when.isoformat() if when else "unknown"
        text = _WHITESPACE_RE.sub(" ", message.message_text or "").strip() or "(no text)"
        lines.append(f"[{speaker} @ {stamp}] {text}")
    return "\n".join(lines)
