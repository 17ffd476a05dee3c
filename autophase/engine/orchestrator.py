"""One automation run for one workspace.

    not-run -> locked -> (no-op | processing) -> completed

Each candidate is handled in its own session so one failure rolls back only
that conversation. The workspace lease is always released, and the run
outcome is always written back to the workspace settings.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Sequence
from uuid import UUID

from pydantic import BaseModel, Field
from sqlalchemy import delete

from autophase.clock import utcnow
from autophase.engine.applier import apply_enforce_tags_and_status, update_thread_ai_metadata
from autophase.engine.candidates import (
    load_managed_tag_links,
    load_thread_candidates,
    pick_max_conversations,
)
from autophase.engine.catalog import TagCatalog, load_tag_catalog
from autophase.engine.policy import PhaseDecision, current_state, decide, has_manual_lock
from autophase.engine.settings_store import (
    AutomationConfig,
    get_automation_settings,
    mark_run_result,
    set_backfill_state,
)
from autophase.processing.classifier import PROMPT_VERSION
from autophase.processing.knowledge import load_knowledge
from autophase.processing.transcript import format_transcript, load_recent_messages
from autophase.runtime import Runtime
from autophase.storage import audit
from autophase.storage.ai_log import store_ai_conversation
from autophase.storage.locks import acquire_workspace_lock, release_workspace_lock
from autophase.storage.models import ConversationTag

logger = logging.getLogger(__name__)

MAX_REPORTED_ERRORS = 6
MAX_ERROR_CHARS = 1200

SKIP_DISABLED = "auto-phasing disabled"
SKIP_SETTER = "setter trigger disabled"
SKIP_LOCK_BUSY = "workspace lock busy"
SKIP_NO_PHASE_TAGS = "no phase tags configured"

OUTBOUND_SKIP_REASON = "Skipped: latest message was outbound and classify_on_any_message is disabled."


@dataclass
class RunOptions:
    workspace_id: UUID
    source: str = "incremental"
    actor_user_id: Optional[str] = None
    actor_role: Optional[str] = None
    conversation_ids: Optional[Sequence[str]] = None
    max_conversations: Optional[int] = None
    force_run_when_disabled: bool = False
    lock_ttl_seconds: Optional[int] = None


class RunSummary(BaseModel):
    workspace_id: UUID
    source: str
    mode: str = "shadow"
    total_candidates: int = 0
    processed: int = 0
    applied: int = 0
    shadowed: int = 0
    skipped_manual: int = 0
    skipped_low_confidence: int = 0
    skipped_other: int = 0
    errors: int = 0
    error_messages: list[str] = Field(default_factory=list)
    started_at: datetime
    completed_at: Optional[datetime] = None
    lock_acquired: bool = False
    skipped_reason: Optional[str] = None

    def run_error(self) -> Optional[str]:
        if not self.error_messages:
            return None
        return " | ".join(self.error_messages[:MAX_REPORTED_ERRORS])[:MAX_ERROR_CHARS]


def _low_confidence_suffix(decision: PhaseDecision, config: AutomationConfig) -> str:
    if not decision.low_confidence:
        return ""
    return f" Confidence below threshold ({decision.phase_confidence} < {config.min_confidence})."


def _id(value: Optional[UUID]) -> Optional[str]:
    return str(value) if value is not None else None


async def refresh_backfill_state(runtime: Runtime, config: AutomationConfig, now: Optional[datetime] = None) -> None:
    """Mark the historical backfill running or completed. Never raises."""
    now = now or utcnow()
    try:
        async with runtime.session_factory() as session:
            if config.historical_policy == "manual_backlog_only":
                await set_backfill_state(session, config.workspace_id, "completed", now)
                return
            remaining = await load_thread_candidates(session, config.workspace_id, config, "backfill", 1)
            if remaining:
                await set_backfill_state(session, config.workspace_id, "running", None)
            else:
                await set_backfill_state(session, config.workspace_id, "completed", now)
    except Exception as e:
        logger.warning("Could not refresh backfill state for %s: %s", config.workspace_id, e)


async def _process_candidate(
    runtime: Runtime,
    options: RunOptions,
    config: AutomationConfig,
    catalog: TagCatalog,
    thread,
    knowledge: str,
    now: Optional[datetime],
) -> str:
    """Classify and act on one conversation; returns the summary counter to bump."""
    workspace_id = options.workspace_id
    conversation_id = thread.conversation_id
    classifier_settings = runtime.settings.classifier

    async with runtime.session_factory() as session:
        # Re-read links inside this conversation's transaction before replacing them
        links = (await load_managed_tag_links(session, workspace_id, [conversation_id], catalog.managed_tag_ids))[
            conversation_id
        ]
        current_phase, current_temperature = current_state(links, catalog)
        manual_lock = has_manual_lock(links, config)

        direction = (thread.last_message_direction or "").strip().lower()
        if not config.classify_on_any_message and direction and direction != "inbound":
            await update_thread_ai_metadata(
                session,
                workspace_id,
                conversation_id,
                phase_confidence=config.min_confidence if current_phase else None,
                temperature_confidence=None,
                reason=OUTBOUND_SKIP_REASON,
                mode=config.mode,
                source=options.source,
                now=now,
            )
            return "skipped_other"

        messages = await load_recent_messages(
            session, workspace_id, conversation_id, limit=classifier_settings.message_fetch_limit
        )
        transcript = format_transcript(messages, max_messages=classifier_settings.transcript_messages)
        output = await runtime.classifier.classify(transcript, catalog, knowledge)

        reply = getattr(output, "reply", None)
        if reply is not None and classifier_settings.store_ai_conversations:
            await store_ai_conversation(
                session=session,
                session_type="auto_phase",
                model=reply.model,
                prompt_version=PROMPT_VERSION,
                request_messages=reply.request_messages,
                response_content={"raw": reply.text, "method": output.method},
                input_tokens=reply.input_tokens,
                output_tokens=reply.output_tokens,
                latency_ms=reply.latency_ms,
                workspace_id=workspace_id,
                conversation_id=conversation_id,
            )

        decision = decide(
            thread, current_phase, current_temperature, output, config, catalog, manual_lock=manual_lock, now=now
        )
        reason = output.reason + _low_confidence_suffix(decision, config)
        temperature_confidence = decision.temperature_confidence if config.apply_temperature else None

        if config.mode == "shadow":
            await update_thread_ai_metadata(
                session, workspace_id, conversation_id,
                decision.phase_confidence, temperature_confidence, reason, config.mode, options.source, now,
            )
            await audit.write_audit(
                session, workspace_id, conversation_id, audit.ACTION_SHADOW, options.actor_user_id,
                {
                    "phase_tag_id": _id(decision.proposed_phase_tag_id),
                    "temperature_tag_id": _id(decision.proposed_temperature_tag_id),
                    "phase_confidence": decision.phase_confidence,
                    "temperature_confidence": decision.temperature_confidence,
                    "reason": reason,
                    "manual_lock": manual_lock,
                },
            )
            outcome = "shadowed"

        elif decision.manual_lock:
            reason += " Skipped: manual lock is active."
            await update_thread_ai_metadata(
                session, workspace_id, conversation_id,
                decision.phase_confidence, temperature_confidence, reason, config.mode, options.source, now,
            )
            await audit.write_audit(
                session, workspace_id, conversation_id, audit.ACTION_SKIPPED_MANUAL, options.actor_user_id,
                {"reason": reason},
            )
            outcome = "skipped_manual"

        elif decision.low_confidence and decision.is_unchanged(config.apply_temperature):
            await update_thread_ai_metadata(
                session, workspace_id, conversation_id,
                decision.phase_confidence, temperature_confidence, reason, config.mode, options.source, now,
            )
            await audit.write_audit(
                session, workspace_id, conversation_id, audit.ACTION_SKIPPED_LOW_CONFIDENCE, options.actor_user_id,
                {
                    "phase_confidence": decision.phase_confidence,
                    "threshold": config.min_confidence,
                    "reason": reason,
                },
            )
            outcome = "skipped_low_confidence"

        else:
            await apply_enforce_tags_and_status(
                session,
                workspace_id,
                conversation_id,
                config,
                catalog,
                decision.target_phase_tag_id,
                decision.target_temperature_tag_id,
                actor_user_id=options.actor_user_id,
            )
            await update_thread_ai_metadata(
                session, workspace_id, conversation_id,
                decision.phase_confidence, temperature_confidence, reason, config.mode, options.source, now,
            )
            await audit.write_audit(
                session, workspace_id, conversation_id, audit.ACTION_APPLIED, options.actor_user_id,
                {
                    "previous_phase_tag_id": _id(decision.current_phase_tag_id),
                    "phase_tag_id": _id(decision.target_phase_tag_id),
                    "previous_temperature_tag_id": _id(decision.current_temperature_tag_id),
                    "temperature_tag_id": _id(decision.target_temperature_tag_id),
                    "phase_confidence": decision.phase_confidence,
                    "temperature_confidence": decision.temperature_confidence,
                    "reason": reason,
                    "low_confidence_fallback": decision.low_confidence,
                },
            )
            outcome = "applied"

    return outcome


async def run_workspace_auto_phase(runtime: Runtime, options: RunOptions, now: Optional[datetime] = None) -> RunSummary:
    """Classify and (in enforce mode) re-tag one workspace's stale conversations."""
    workspace_id = options.workspace_id
    async with runtime.session_factory() as session:
        config = await get_automation_settings(session, workspace_id)

    summary = RunSummary(workspace_id=workspace_id, source=options.source, mode=config.mode, started_at=utcnow())

    def _finish(reason: Optional[str] = None) -> RunSummary:
        summary.skipped_reason = reason or summary.skipped_reason
        summary.completed_at = utcnow()
        return summary

    if not options.force_run_when_disabled and not config.enabled:
        return _finish(SKIP_DISABLED)
    if (options.actor_role or "").strip().lower() == "setter" and not config.allow_setter_trigger:
        return _finish(SKIP_SETTER)

    holder = uuid.uuid4().hex
    ttl = options.lock_ttl_seconds or runtime.settings.runs.lock_ttl_seconds
    async with runtime.session_factory() as session:
        summary.lock_acquired = await acquire_workspace_lock(session, workspace_id, ttl, holder=holder)
    if not summary.lock_acquired:
        logger.info("Workspace %s is locked by another run, skipping", workspace_id)
        return _finish(SKIP_LOCK_BUSY)

    try:
        async with runtime.session_factory() as session:
            catalog = await load_tag_catalog(session, workspace_id)
            if not catalog.phase_tags:
                return _finish(SKIP_NO_PHASE_TAGS)

            max_count = pick_max_conversations(config, options.source, options.max_conversations)
            candidates = await load_thread_candidates(
                session, workspace_id, config, options.source, max_count, options.conversation_ids
            )
        summary.total_candidates = len(candidates)

        if candidates:
            knowledge = load_knowledge(
                runtime.settings.classifier.knowledge_path, runtime.settings.classifier.knowledge_max_chars
            )
            for thread in candidates:
                try:
                    outcome = await _process_candidate(runtime, options, config, catalog, thread, knowledge, now)
                except Exception as e:
                    logger.error("Auto-phase failed for %s/%s: %s", workspace_id, thread.conversation_id, e)
                    summary.errors += 1
                    summary.error_messages.append(f"{thread.conversation_id}: {e}")
                else:
                    setattr(summary, outcome, getattr(summary, outcome) + 1)
                    summary.processed += 1

        if options.source in ("backfill", "catchup"):
            await refresh_backfill_state(runtime, config, now)

        async with runtime.session_factory() as session:
            await mark_run_result(session, workspace_id, options.source, summary.run_error(), now)

        logger.info(
            "Auto-phase %s run for %s (%s): %d candidates, %d applied, %d shadowed, "
            "%d manual, %d low-confidence, %d other, %d errors",
            options.source, workspace_id, config.mode, summary.total_candidates, summary.applied,
            summary.shadowed, summary.skipped_manual, summary.skipped_low_confidence,
            summary.skipped_other, summary.errors,
        )
        return _finish()

    except Exception as e:
        logger.error("Auto-phase run failed for workspace %s: %s", workspace_id, e, exc_info=True)
        summary.errors += 1
        summary.error_messages.append(str(e))
        try:
            async with runtime.session_factory() as session:
                await mark_run_result(session, workspace_id, options.source, str(e), now)
        except Exception as mark_error:
            logger.error("Could not record run failure for %s: %s", workspace_id, mark_error)
        return _finish()

    finally:
        async with runtime.session_factory() as session:
            await release_workspace_lock(session, workspace_id, holder=holder)


async def unlock_thread_for_auto_phase(
    runtime: Runtime,
    workspace_id: UUID,
    conversation_id: str,
    actor_user_id: Optional[str] = None,
    actor_role: Optional[str] = None,
) -> RunSummary:
    """Drop a conversation's manual phase tags and let automation re-decide it."""
    async with runtime.session_factory() as session:
        await get_automation_settings(session, workspace_id)
        catalog = await load_tag_catalog(session, workspace_id)
        if catalog.managed_tag_ids:
            await session.execute(
                delete(ConversationTag)
                .where(
                    ConversationTag.workspace_id == workspace_id,
                    ConversationTag.conversation_id == conversation_id,
                    ConversationTag.tag_id.in_(catalog.managed_tag_ids),
                    ConversationTag.source.in_(["manual", "bulk"]),
                )
                .execution_options(synchronize_session=False)
            )
    logger.info("Unlocked %s/%s for auto-phase", workspace_id, conversation_id)

    return await run_workspace_auto_phase(
        runtime,
        RunOptions(
            workspace_id=workspace_id,
            source="incremental",
            actor_user_id=actor_user_id,
            actor_role=actor_role,
            conversation_ids=[conversation_id],
            max_conversations=1,
            force_run_when_disabled=True,
            lock_ttl_seconds=runtime.settings.runs.unlock_lock_ttl_seconds,
        ),
    )
