"""Shared test fixtures."""

import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional
from unittest.mock import MagicMock

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import NullPool

from autophase.config import Settings
from autophase.engine.catalog import TagDefinition, build_catalog
from autophase.engine.settings_store import AutomationConfig
from autophase.processing.classifier import ClassifierOutput, RetagChoice
from autophase.runtime import Runtime
from autophase.storage.db import init_db, session_factory_for
from autophase.storage.models import (
    AutomationSettings,
    ConversationMessage,
    ConversationTag,
    ConversationThread,
    Tag,
)

NOW = datetime(2026, 3, 2, 12, 0, 0, tzinfo=timezone.utc)

DEFAULT_TAG_NAMES = (
    "New Lead",
    "In Contact",
    "Qualified",
    "Unqualified",
    "Call Booked",
    "Won",
    "No Show",
    "Hot",
    "Warm",
    "Cold",
    "Priority",
)


# --- Plain value factories ---

def make_config(**overrides) -> AutomationConfig:
    """Create an AutomationConfig with defaults, enabled in enforce mode."""
    defaults = {
        "workspace_id": uuid.uuid4(),
        "enabled": True,
        "mode": "enforce",
    }
    defaults.update(overrides)
    return AutomationConfig(**defaults)


def make_thread(**overrides):
    """Create a mock ConversationThread for testing."""
    defaults = {
        "id": uuid.uuid4(),
        "workspace_id": uuid.uuid4(),
        "conversation_id": f"conv-{uuid.uuid4().hex[:8]}",
        "lead_name": "Jamie Lead",
        "last_message_at": NOW - timedelta(hours=1),
        "last_message_direction": "inbound",
        "lead_status": "open",
        "is_spam": False,
        "ai_phase_updated_at": None,
        "ai_phase_confidence": None,
        "created_at": NOW - timedelta(days=3),
    }
    defaults.update(overrides)
    mock = MagicMock(spec=ConversationThread)
    for k, v in defaults.items():
        setattr(mock, k, v)
    return mock


def make_message(text: Optional[str] = "Hello", direction: str = "inbound", at: Optional[datetime] = None, **overrides):
    """Create a mock ConversationMessage for testing."""
    defaults = {
        "message_text": text,
        "direction": direction,
        "message_timestamp": at,
        "created_at": at or NOW,
    }
    defaults.update(overrides)
    mock = MagicMock(spec=ConversationMessage)
    for k, v in defaults.items():
        setattr(mock, k, v)
    return mock


def make_tags(*names: str, prompts: Optional[dict] = None) -> list[TagDefinition]:
    prompts = prompts or {}
    return [TagDefinition(id=uuid.uuid4(), name=name, prompt=prompts.get(name)) for name in names]


def make_catalog(*names: str):
    """Build a catalog from tag names (defaults to the standard funnel)."""
    return build_catalog(make_tags(*(names or DEFAULT_TAG_NAMES)))


def tag_id(catalog, name: str) -> uuid.UUID:
    for tag in catalog.phase_tags + catalog.temperature_tags:
        if tag.name == name:
            return tag.id
    raise KeyError(name)


def make_output(phase_tag_id=None, phase_confidence=90, temperature_tag_id=None, temperature_confidence=90, **overrides):
    return ClassifierOutput(
        phase_tag_id=phase_tag_id,
        phase_confidence=phase_confidence,
        temperature_tag_id=temperature_tag_id,
        temperature_confidence=temperature_confidence,
        reason=overrides.pop("reason", "Lead asked about pricing."),
        **overrides,
    )


class StubClassifier:
    """Stands in for PhaseClassifier; answers are chosen per test."""

    def __init__(self, output=None, retag_name: Optional[str] = None, fail_for: Optional[set] = None):
        self.output = output
        self.retag_name = retag_name
        self.fail_for = fail_for or set()
        self.classify_calls: list[str] = []
        self.retag_calls: list[str] = []

    async def classify(self, transcript, catalog, knowledge=""):
        self.classify_calls.append(transcript)
        if any(marker in transcript for marker in self.fail_for):
            raise RuntimeError("classifier exploded")
        if callable(self.output):
            return self.output(transcript, catalog)
        return self.output or make_output(phase_confidence=45, temperature_confidence=45, reason="stub")

    async def pick_retag_tag(self, transcript, tags, knowledge="", default_tag_id=None):
        self.retag_calls.append(transcript)
        chosen = next((t.id for t in tags if t.name == self.retag_name), None)
        if chosen is None:
            return RetagChoice(tag_id=default_tag_id, method="default")
        return RetagChoice(tag_id=chosen, method="model")


# --- Database fixtures ---

@pytest.fixture
def db_url(tmp_path):
    return f"sqlite+aiosqlite:///{tmp_path / 'autophase.db'}"


@pytest_asyncio.fixture
async def engine(db_url):
    """File-backed SQLite engine with the full schema."""
    engine = create_async_engine(db_url, poolclass=NullPool)
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return session_factory_for(engine)


@pytest.fixture
def settings():
    settings = Settings()
    settings.anthropic.api_key = ""
    settings.classifier.knowledge_path = None
    return settings


@pytest.fixture
def classifier():
    return StubClassifier()


@pytest.fixture
def runtime(settings, session_factory, classifier):
    return Runtime(settings=settings, session_factory=session_factory, classifier=classifier)


@pytest.fixture
def workspace_id():
    return uuid.uuid4()


# --- Seeding helpers ---

async def seed_tags(session, workspace_id, names=DEFAULT_TAG_NAMES, prompts: Optional[dict] = None) -> dict:
    """Insert tags in creation order; returns name -> id."""
    prompts = prompts or {}
    ids = {}
    for i, name in enumerate(names):
        tag = Tag(
            id=uuid.uuid4(),
            workspace_id=workspace_id,
            name=name,
            prompt=prompts.get(name),
            created_at=NOW - timedelta(days=30) + timedelta(seconds=i),
        )
        session.add(tag)
        ids[name] = tag.id
    await session.flush()
    return ids


async def seed_thread(session, workspace_id, conversation_id: str, **fields) -> ConversationThread:
    values = {
        "last_message_at": NOW - timedelta(hours=1),
        "last_message_direction": "inbound",
        "created_at": NOW - timedelta(days=3),
    }
    values.update(fields)
    thread = ConversationThread(workspace_id=workspace_id, conversation_id=conversation_id, **values)
    session.add(thread)
    await session.flush()
    return thread


async def seed_message(session, workspace_id, conversation_id: str, text: str, direction="inbound", at=None):
    message = ConversationMessage(
        workspace_id=workspace_id,
        conversation_id=conversation_id,
        message_text=text,
        direction=direction,
        message_timestamp=at or NOW - timedelta(hours=1),
    )
    session.add(message)
    await session.flush()
    return message


async def seed_link(session, workspace_id, conversation_id: str, tag_id, source: Optional[str] = "ai"):
    link = ConversationTag(
        workspace_id=workspace_id,
        conversation_id=conversation_id,
        tag_id=tag_id,
        source=source,
    )
    session.add(link)
    await session.flush()
    return link


async def seed_settings(session, workspace_id, **fields) -> AutomationSettings:
    values = {"enabled": True, "mode": "enforce"}
    values.update(fields)
    row = AutomationSettings(workspace_id=workspace_id, **values)
    session.add(row)
    await session.flush()
    return row


async def linked_tag_ids(session, workspace_id, conversation_id: str) -> dict:
    """tag_id -> source for a conversation's current links."""
    from sqlalchemy import select

    result = await session.execute(
        select(ConversationTag.tag_id, ConversationTag.source).where(
            ConversationTag.workspace_id == workspace_id,
            ConversationTag.conversation_id == conversation_id,
        )
    )
    return {row[0]: row[1] for row in result.all()}
