"""Dependencies shared by every engine entry point."""

from dataclasses import dataclass
from typing import Optional

from autophase.config import Settings, get_settings
from autophase.processing.classifier import PhaseClassifier
from autophase.storage.db import SessionFactory, get_session


@dataclass
class Runtime:
    settings: Settings
    session_factory: SessionFactory
    classifier: PhaseClassifier


def build_runtime(settings: Optional[Settings] = None) -> Runtime:
    """Wire the process-level defaults: configured database and Anthropic client."""
    settings = settings or get_settings()
    return Runtime(
        settings=settings,
        session_factory=get_session,
        classifier=PhaseClassifier.from_settings(settings),
    )
