"""Re-Phase Leads: a persisted, resumable bulk reclassification job.

A job holds a cursor (``progress_done``) into the workspace's conversations
in recency order. Each step re-reads the row, consumes one page and commits,
so steps can come from independent callers (a poll, a cron tick) without a
long-lived process. Retag runs outside the workspace lease; conversations
with human-set phase tags are skipped before any classification call.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Optional
from uuid import UUID

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from autophase.clock import as_utc, utcnow
from autophase.engine.applier import insert_tag_links
from autophase.engine.candidates import AUTOMATION_SOURCES, load_managed_tag_links
from autophase.engine.catalog import (
    TagDefinition,
    is_excluded_name,
    is_temperature_name,
    load_tag_definitions,
    normalize_name,
)
from autophase.errors import (
    ConfigurationError,
    RetagAlreadyRunningError,
    RetagJobNotFoundError,
    RetagWeeklyLimitError,
)
from autophase.processing.classifier import PROMPT_VERSION, RetagChoice
from autophase.processing.knowledge import load_knowledge
from autophase.processing.transcript import format_transcript, load_recent_messages
from autophase.runtime import Runtime
from autophase.storage import audit
from autophase.storage.ai_log import store_ai_conversation
from autophase.storage.models import ConversationTag, ConversationThread, RetagJob

logger = logging.getLogger(__name__)

SCOPE_DAYS = 30

MSG_STARTED = "Retag job started"
MSG_NOTHING_TO_DO = "No conversations matched this retag scope."
MSG_COMPLETE = "Retag complete"
ERR_NO_TAGS = "No tags found to evaluate"
ERR_NO_PROMPTS = (
    "No phases have requirements (prompt) configured. Add requirements in Settings → Phases and retry."
)


def _scope_filters(workspace_id: UUID, only_last_30_days: bool, now: datetime) -> list:
    filters = [
        ConversationThread.workspace_id == workspace_id,
        ConversationThread.lead_status != "removed",
    ]
    if only_last_30_days:
        filters.append(ConversationThread.last_message_at >= now - timedelta(days=SCOPE_DAYS))
    return filters


def _full_scope_filters(workspace_id: UUID) -> list:
    return [
        RetagJob.workspace_id == workspace_id,
        RetagJob.tag_id.is_(None),
        RetagJob.only_last_30_days.is_(False),
    ]


async def create_retag_job(
    session: AsyncSession,
    workspace_id: UUID,
    requested_by: Optional[str] = None,
    tag_id: Optional[UUID] = None,
    only_last_30_days: bool = False,
    cooldown_days: int = 7,
    now: Optional[datetime] = None,
) -> RetagJob:
    """Start a job sized to the eligible conversation count.

    A full-scope job (every tag, all time) is limited to one at a time and
    one per ``cooldown_days``.
    """
    now = now or utcnow()

    if tag_id is None and not only_last_30_days:
        result = await session.execute(
            select(RetagJob.id)
            .where(*_full_scope_filters(workspace_id), RetagJob.status.in_(["queued", "running"]))
            .limit(1)
        )
        if result.scalar_one_or_none() is not None:
            raise RetagAlreadyRunningError()

        result = await session.execute(
            select(RetagJob)
            .where(
                *_full_scope_filters(workspace_id),
                RetagJob.status == "completed",
                RetagJob.created_at >= now - timedelta(days=cooldown_days),
            )
            .order_by(RetagJob.created_at.desc())
            .limit(1)
        )
        recent = result.scalar_one_or_none()
        if recent is not None:
            raise RetagWeeklyLimitError(as_utc(recent.created_at) + timedelta(days=cooldown_days))

    result = await session.execute(
        select(func.count())
        .select_from(ConversationThread)
        .where(*_scope_filters(workspace_id, only_last_30_days, now))
    )
    total = result.scalar() or 0

    job = RetagJob(
        workspace_id=workspace_id,
        requested_by=requested_by,
        tag_id=tag_id,
        only_last_30_days=only_last_30_days,
        status="running" if total > 0 else "completed",
        progress_total=total,
        progress_done=0,
        message=MSG_STARTED if total > 0 else MSG_NOTHING_TO_DO,
        started_at=now if total > 0 else None,
        completed_at=None if total > 0 else now,
        created_at=now,
        updated_at=now,
    )
    session.add(job)
    await session.flush()
    logger.info("Retag job %s created for %s: %d conversations", job.id, workspace_id, total)
    return job


async def get_retag_job(session: AsyncSession, workspace_id: UUID, job_id: UUID) -> RetagJob:
    result = await session.execute(
        select(RetagJob).where(RetagJob.id == job_id, RetagJob.workspace_id == workspace_id)
    )
    job = result.scalar_one_or_none()
    if job is None:
        raise RetagJobNotFoundError(job_id)
    return job


async def load_retag_tags(session: AsyncSession, workspace_id: UUID, tag_id: Optional[UUID] = None) -> list[TagDefinition]:
    """Phase tags a retag may assign, optionally just one."""
    return [
        tag
        for tag in await load_tag_definitions(session, workspace_id)
        if (tag_id is None or tag.id == tag_id)
        and not is_temperature_name(tag.name)
        and not is_excluded_name(tag.name)
    ]


def prompted_retag_tags(tags: list[TagDefinition]) -> list[TagDefinition]:
    """The answer space of a retag: eligible tags that carry prompt text."""
    if not tags:
        raise ConfigurationError(ERR_NO_TAGS)
    prompted = [t for t in tags if t.prompt]
    if not prompted:
        raise ConfigurationError(ERR_NO_PROMPTS)
    return prompted


def _finish(job: RetagJob, status: str, now: datetime, message: Optional[str] = None, error: Optional[str] = None):
    job.status = status
    job.message = message
    job.error = error
    job.completed_at = now
    job.updated_at = now
    if status == "failed":
        logger.warning("Retag job %s failed: %s", job.id, error)
    else:
        logger.info("Retag job %s completed", job.id)


async def run_retag_step(
    runtime: Runtime,
    workspace_id: UUID,
    job_id: UUID,
    actor_user_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> RetagJob:
    """Process the next page of a job. A finished job is returned unchanged."""
    now = now or utcnow()
    retag_settings = runtime.settings.retag
    classifier_settings = runtime.settings.classifier

    async with runtime.session_factory() as session:
        job = await get_retag_job(session, workspace_id, job_id)
        if job.status in ("completed", "failed"):
            return job

        tags = await load_retag_tags(session, workspace_id, job.tag_id)
        if not tags:
            _finish(job, "failed", now, error=ERR_NO_TAGS)
            return job

        total = job.progress_total or 0
        done = job.progress_done or 0
        if done >= total:
            job.progress_done = total
            _finish(job, "completed", now, message=MSG_COMPLETE)
            return job

        result = await session.execute(
            select(ConversationThread.conversation_id)
            .where(*_scope_filters(workspace_id, job.only_last_30_days, now))
            .order_by(ConversationThread.last_message_at.desc().nulls_last(), ConversationThread.conversation_id.asc())
            .offset(done)
            .limit(retag_settings.batch_size)
        )
        conversation_ids = [row[0] for row in result.all()]
        if not conversation_ids:
            job.progress_done = total
            _finish(job, "completed", now, message=MSG_COMPLETE)
            return job

        try:
            prompted_tags = prompted_retag_tags(tags)
        except ConfigurationError as e:
            _finish(job, "failed", now, error=str(e))
            return job

        considered_ids = [t.id for t in tags]
        links = await load_managed_tag_links(session, workspace_id, conversation_ids, considered_ids)
        manual = {cid for cid in conversation_ids if any(link.is_manual for link in links.get(cid, []))}

        await session.execute(
            delete(ConversationTag)
            .where(
                ConversationTag.workspace_id == workspace_id,
                ConversationTag.conversation_id.in_(conversation_ids),
                ConversationTag.tag_id.in_(considered_ids),
                ConversationTag.source.in_(sorted(AUTOMATION_SOURCES)),
            )
            .execution_options(synchronize_session=False)
        )

        default_tag_id = next(
            (t.id for t in prompted_tags if normalize_name(t.name) in ("new lead", "new")), None
        )
        targets = [cid for cid in conversation_ids if cid not in manual]

        # Transcripts are read up front; only the classification calls run concurrently
        transcripts: dict[str, str] = {}
        for cid in targets:
            messages = await load_recent_messages(
                session, workspace_id, cid, limit=classifier_settings.message_fetch_limit
            )
            transcripts[cid] = format_transcript(messages, max_messages=retag_settings.transcript_messages)
        knowledge = load_knowledge(classifier_settings.knowledge_path, classifier_settings.knowledge_max_chars)

        semaphore = asyncio.Semaphore(max(1, retag_settings.concurrency))

        async def _evaluate(cid: str) -> tuple[str, RetagChoice]:
            async with semaphore:
                try:
                    choice = await runtime.classifier.pick_retag_tag(
                        transcripts[cid], prompted_tags, knowledge, default_tag_id
                    )
                except Exception as e:
                    logger.error("Retag classification failed for %s: %s", cid, e)
                    choice = RetagChoice(tag_id=default_tag_id, method="default", error=str(e))
                return cid, choice

        choices = await asyncio.gather(*[_evaluate(cid) for cid in targets])

        applied = 0
        considered = [str(t) for t in considered_ids]
        for cid, choice in choices:
            reply = choice.reply
            if reply is not None and classifier_settings.store_ai_conversations:
                await store_ai_conversation(
                    session=session,
                    session_type="retag",
                    model=reply.model,
                    prompt_version=PROMPT_VERSION,
                    request_messages=reply.request_messages,
                    response_content={"raw": reply.text, "method": choice.method},
                    input_tokens=reply.input_tokens,
                    output_tokens=reply.output_tokens,
                    latency_ms=reply.latency_ms,
                    workspace_id=workspace_id,
                    conversation_id=cid,
                )
            details = {
                "job_id": str(job.id),
                "matched_tag_ids": [str(choice.tag_id)] if choice.tag_id else [],
                "considered_tag_ids": considered,
                "method": choice.method,
            }
            if choice.error:
                details["error"] = choice.error
            await audit.write_audit(session, workspace_id, cid, audit.ACTION_RETAG_EVALUATED, actor_user_id, details)
            if choice.tag_id is not None:
                applied += await insert_tag_links(
                    session, workspace_id, cid, [choice.tag_id], source="retag", created_by=actor_user_id
                )

        for cid in conversation_ids:
            if cid in manual:
                await audit.write_audit(
                    session, workspace_id, cid, audit.ACTION_RETAG_SKIPPED_MANUAL, actor_user_id,
                    {"job_id": str(job.id), "reason": "manual phase present"},
                )

        next_done = min(total, done + len(conversation_ids))
        job.progress_done = next_done
        job.started_at = job.started_at or now
        if next_done >= total:
            _finish(job, "completed", now, message=f"Retag complete. Applied {applied} tags in final batch.")
        else:
            job.status = "running"
            job.message = f"Processed {next_done}/{total} conversations"
            job.error = None
            job.updated_at = now
        await session.flush()

        logger.info(
            "Retag job %s step: %d conversations (%d manual), %d tags applied, %d/%d done",
            job.id, len(conversation_ids), len(manual), applied, next_done, total,
        )
        return job


async def run_retag_to_completion(
    runtime: Runtime,
    workspace_id: UUID,
    requested_by: Optional[str] = None,
    tag_id: Optional[UUID] = None,
    only_last_30_days: bool = False,
) -> tuple[RetagJob, int]:
    """Start a job and step it until it finishes or hits the round ceiling.

    Returns the final job snapshot and the number of steps taken.
    """
    async with runtime.session_factory() as session:
        job = await create_retag_job(
            session,
            workspace_id,
            requested_by=requested_by,
            tag_id=tag_id,
            only_last_30_days=only_last_30_days,
            cooldown_days=runtime.settings.retag.full_scope_cooldown_days,
        )

    rounds = 0
    max_rounds = runtime.settings.retag.max_rounds
    while job.status == "running" and rounds < max_rounds:
        job = await run_retag_step(runtime, workspace_id, job.id, actor_user_id=requested_by)
        rounds += 1

    if job.status == "running":
        logger.warning("Retag job %s still running after %d rounds", job.id, rounds)
    return job, rounds
