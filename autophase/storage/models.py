"""SQLAlchemy ORM models for Autophase."""

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from autophase.clock import utcnow

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    pass


class AutomationSettings(Base):
    __tablename__ = "auto_phase_settings"

    workspace_id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True)
    enabled: Mapped[bool] = mapped_column(Boolean, default=False)
    mode: Mapped[str] = mapped_column(
        String,
        CheckConstraint("mode IN ('shadow','enforce')"),
        default="shadow",
    )
    historical_policy: Mapped[str] = mapped_column(
        String,
        CheckConstraint("historical_policy IN ('manual_backlog_only','auto_catchup')"),
        default="manual_backlog_only",
    )
    enabled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    min_confidence: Mapped[int] = mapped_column(Integer, default=70)
    incremental_max_conversations: Mapped[int] = mapped_column(Integer, default=30)
    catchup_max_conversations: Mapped[int] = mapped_column(Integer, default=120)
    classify_on_any_message: Mapped[bool] = mapped_column(Boolean, default=True)
    apply_temperature: Mapped[bool] = mapped_column(Boolean, default=True)
    manual_lock_enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    uncertain_new_lead_window_hours: Mapped[int] = mapped_column(Integer, default=24)
    uncertain_existing_phase: Mapped[str] = mapped_column(
        String,
        CheckConstraint("uncertain_existing_phase IN ('in_contact','keep_current')"),
        default="in_contact",
    )
    allow_setter_trigger: Mapped[bool] = mapped_column(Boolean, default=True)
    backfill_state: Mapped[str] = mapped_column(
        String,
        CheckConstraint("backfill_state IN ('pending','running','completed')"),
        default="pending",
    )
    backfill_completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    last_incremental_run_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    last_catchup_run_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    last_error: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("idx_auto_phase_settings_enabled", "enabled", "updated_at"),
    )


class WorkspaceLock(Base):
    __tablename__ = "auto_phase_locks"

    workspace_id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True)
    holder: Mapped[Optional[str]] = mapped_column(Text)
    acquired_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    locked_until: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class Tag(Base):
    __tablename__ = "tags"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    workspace_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    prompt: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        Index("idx_tags_workspace", "workspace_id", "created_at"),
    )


class ConversationThread(Base):
    __tablename__ = "conversation_threads"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    workspace_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    conversation_id: Mapped[str] = mapped_column(Text, nullable=False)
    lead_name: Mapped[Optional[str]] = mapped_column(Text)
    last_message_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    last_message_direction: Mapped[Optional[str]] = mapped_column(Text)
    lead_status: Mapped[str] = mapped_column(
        String,
        CheckConstraint("lead_status IN ('open','qualified','disqualified','removed')"),
        default="open",
    )
    is_spam: Mapped[bool] = mapped_column(Boolean, default=False)
    ai_phase_updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    ai_phase_confidence: Mapped[Optional[int]] = mapped_column(Integer)
    ai_temperature_confidence: Mapped[Optional[int]] = mapped_column(Integer)
    ai_phase_reason: Mapped[Optional[str]] = mapped_column(Text)
    ai_phase_mode: Mapped[Optional[str]] = mapped_column(Text)
    ai_phase_last_run_source: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        UniqueConstraint("workspace_id", "conversation_id", name="uq_threads_workspace_conversation"),
        Index("idx_threads_recency", "workspace_id", "last_message_at"),
    )


class ConversationMessage(Base):
    __tablename__ = "conversation_messages"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    workspace_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    conversation_id: Mapped[str] = mapped_column(Text, nullable=False)
    message_text: Mapped[Optional[str]] = mapped_column(Text)
    direction: Mapped[Optional[str]] = mapped_column(Text)
    message_timestamp: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        Index("idx_messages_conversation", "workspace_id", "conversation_id", "message_timestamp"),
    )


class ConversationTag(Base):
    __tablename__ = "conversation_tags"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    workspace_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    conversation_id: Mapped[str] = mapped_column(Text, nullable=False)
    tag_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    source: Mapped[Optional[str]] = mapped_column(Text)  # manual, bulk, ai, retag
    created_by: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        UniqueConstraint("workspace_id", "conversation_id", "tag_id", name="uq_conversation_tags"),
        Index("idx_conversation_tags_tag", "workspace_id", "tag_id"),
    )


class RetagJob(Base):
    __tablename__ = "retag_jobs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    workspace_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    requested_by: Mapped[Optional[str]] = mapped_column(Text)
    tag_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid)
    only_last_30_days: Mapped[bool] = mapped_column(Boolean, default=False)
    status: Mapped[str] = mapped_column(
        String,
        CheckConstraint("status IN ('queued','running','completed','failed')"),
        default="queued",
    )
    progress_total: Mapped[int] = mapped_column(Integer, default=0)
    progress_done: Mapped[int] = mapped_column(Integer, default=0)
    message: Mapped[Optional[str]] = mapped_column(Text)
    error: Mapped[Optional[str]] = mapped_column(Text)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("idx_retag_jobs_workspace", "workspace_id", "status", "created_at"),
    )


class ThreadAuditLog(Base):
    __tablename__ = "thread_audit_log"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    workspace_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    conversation_id: Mapped[str] = mapped_column(Text, nullable=False)
    action: Mapped[str] = mapped_column(Text, nullable=False)
    actor_user_id: Mapped[Optional[str]] = mapped_column(Text)
    details: Mapped[Optional[dict]] = mapped_column(JSONType, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        Index("idx_thread_audit_conversation", "workspace_id", "conversation_id", "created_at"),
        Index("idx_thread_audit_action", "action"),
    )


class AIConversation(Base):
    __tablename__ = "ai_conversations"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    session_type: Mapped[str] = mapped_column(Text, nullable=False)
    model: Mapped[str] = mapped_column(Text, nullable=False)
    prompt_version: Mapped[Optional[str]] = mapped_column(Text)
    request_messages: Mapped[list] = mapped_column(JSONType, nullable=False)
    response_content: Mapped[dict] = mapped_column(JSONType, nullable=False)
    input_tokens: Mapped[Optional[int]] = mapped_column(Integer)
    output_tokens: Mapped[Optional[int]] = mapped_column(Integer)
    latency_ms: Mapped[Optional[int]] = mapped_column(Integer)
    workspace_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid)
    conversation_id: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        Index("idx_ai_conversations_type", "session_type"),
        Index("idx_ai_conversations_date", "created_at"),
    )
