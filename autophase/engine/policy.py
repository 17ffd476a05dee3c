"""Turning a classifier output into a target phase and temperature."""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Sequence
from uuid import UUID

from autophase.clock import as_utc, utcnow
from autophase.engine.candidates import TagLink, thread_last_activity
from autophase.engine.catalog import TagCatalog, pick_highest_priority_phase_id
from autophase.engine.settings_store import AutomationConfig, clamp_int
from autophase.processing.classifier import ClassifierOutput


@dataclass
class PhaseDecision:
    current_phase_tag_id: Optional[UUID]
    current_temperature_tag_id: Optional[UUID]
    # What the policy would set with no manual lock
    proposed_phase_tag_id: Optional[UUID]
    proposed_temperature_tag_id: Optional[UUID]
    phase_confidence: int
    temperature_confidence: int
    low_confidence: bool
    manual_lock: bool

    @property
    def target_phase_tag_id(self) -> Optional[UUID]:
        return self.current_phase_tag_id if self.manual_lock else self.proposed_phase_tag_id

    @property
    def target_temperature_tag_id(self) -> Optional[UUID]:
        return self.current_temperature_tag_id if self.manual_lock else self.proposed_temperature_tag_id

    def is_unchanged(self, apply_temperature: bool) -> bool:
        if self.target_phase_tag_id != self.current_phase_tag_id:
            return False
        return not apply_temperature or self.target_temperature_tag_id == self.current_temperature_tag_id


def current_state(links: Sequence[TagLink], catalog: TagCatalog) -> tuple[Optional[UUID], Optional[UUID]]:
    """(current phase, current temperature) from a conversation's managed links."""
    phase_ids = set(catalog.phase_tag_ids)
    linked_phases = [link.tag_id for link in links if link.tag_id in phase_ids]
    linked = {link.tag_id for link in links}
    current_temperature = next((t for t in catalog.temperature_tag_ids if t in linked), None)
    return pick_highest_priority_phase_id(linked_phases, catalog), current_temperature


def has_manual_lock(links: Sequence[TagLink], config: AutomationConfig) -> bool:
    """A human-sourced managed tag protects the conversation from automation."""
    if not config.manual_lock_enabled:
        return False
    return any(link.is_manual for link in links)


def low_confidence_phase_id(
    config: AutomationConfig,
    catalog: TagCatalog,
    current_phase_tag_id: Optional[UUID],
    last_activity: Optional[datetime],
    now: Optional[datetime] = None,
) -> Optional[UUID]:
    """Phase to use when the classifier is not confident enough.

    An existing phase is always kept. Without one, a recently active
    conversation becomes New Lead and an older one In Contact.
    """
    if current_phase_tag_id is not None:
        return current_phase_tag_id

    now = now or utcnow()
    last_activity = as_utc(last_activity)
    window = timedelta(hours=config.uncertain_new_lead_window_hours)
    is_fresh = last_activity is not None and now - last_activity <= window

    if is_fresh and catalog.new_lead_tag_id is not None:
        return catalog.new_lead_tag_id
    return catalog.in_contact_tag_id or catalog.new_lead_tag_id


def decide(
    candidate,
    current_phase_tag_id: Optional[UUID],
    current_temperature_tag_id: Optional[UUID],
    output: ClassifierOutput,
    config: AutomationConfig,
    catalog: TagCatalog,
    manual_lock: bool = False,
    now: Optional[datetime] = None,
) -> PhaseDecision:
    phase_confidence = clamp_int(output.phase_confidence, 0, 100, 45)
    temperature_confidence = clamp_int(output.temperature_confidence, 0, 100, 45)
    low_confidence = phase_confidence < config.min_confidence

    if output.phase_tag_id is not None and not low_confidence:
        target_phase = output.phase_tag_id
    else:
        target_phase = (
            low_confidence_phase_id(config, catalog, current_phase_tag_id, thread_last_activity(candidate), now)
            or current_phase_tag_id
            or output.phase_tag_id
        )

    if not config.apply_temperature:
        target_temperature = current_temperature_tag_id
    elif temperature_confidence >= config.min_confidence:
        target_temperature = output.temperature_tag_id or current_temperature_tag_id
    else:
        target_temperature = current_temperature_tag_id

    return PhaseDecision(
        current_phase_tag_id=current_phase_tag_id,
        current_temperature_tag_id=current_temperature_tag_id,
        proposed_phase_tag_id=target_phase,
        proposed_temperature_tag_id=target_temperature,
        phase_confidence=phase_confidence,
        temperature_confidence=temperature_confidence,
        low_confidence=low_confidence,
        manual_lock=manual_lock,
    )
