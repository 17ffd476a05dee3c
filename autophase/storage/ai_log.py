"""Permanent record of classification service calls."""

import logging
from typing import Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from autophase.storage.models import AIConversation

logger = logging.getLogger(__name__)


async def store_ai_conversation(
    session: AsyncSession,
    session_type: str,
    model: str,
    request_messages: list[dict],
    response_content: dict,
    prompt_version: Optional[str] = None,
    input_tokens: Optional[int] = None,
    output_tokens: Optional[int] = None,
    latency_ms: Optional[int] = None,
    workspace_id: Optional[UUID] = None,
    conversation_id: Optional[str] = None,
) -> AIConversation:
    """Log an AI API call for permanent record."""
    conv = AIConversation(
        session_type=session_type,
        model=model,
        prompt_version=prompt_version,
        request_messages=request_messages,
        response_content=response_content,
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        latency_ms=latency_ms,
        workspace_id=workspace_id,
        conversation_id=conversation_id,
    )
    session.add(conv)
    await session.flush()
    logger.debug("Stored AI conversation: %s (%s tokens in, %s out)", session_type, input_tokens, output_tokens)
    return conv
