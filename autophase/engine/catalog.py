"""Workspace tag taxonomy: phase and temperature tags, stage keys, priority."""

import re
from dataclasses import dataclass, field
from typing import Iterable, Optional, Sequence
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from autophase.storage.models import Tag

TEMPERATURE_NAMES = frozenset({"hot", "warm", "cold", "hot lead", "warm lead", "cold lead"})
EXCLUDED_NAMES = frozenset({"priority", "spam"})

STAGE_ALIASES: dict[str, str] = {
    "new lead": "new_lead",
    "new": "new_lead",
    "in contact": "in_contact",
    "contacted": "in_contact",
    "qualified": "qualified",
    "unqualified": "unqualified",
    "disqualified": "unqualified",
    "call booked": "call_booked",
    "booked call": "call_booked",
    "call": "call_booked",
    "won": "won",
    "closed won": "won",
    "no show": "no_show",
    "noshow": "no_show",
}

FUNNEL_STAGE_PRIORITY = (
    "new_lead",
    "in_contact",
    "qualified",
    "unqualified",
    "call_booked",
    "won",
    "no_show",
)

_SEPARATORS_RE = re.compile(r"[_-]+")
_WHITESPACE_RE = re.compile(r"\s+")


def normalize_name(value: Optional[str]) -> str:
    """'  Call_Booked ' -> 'call booked'."""
    text = (value or "").strip().lower()
    text = _SEPARATORS_RE.sub(" ", text)
    return _WHITESPACE_RE.sub(" ", text).strip()


def is_temperature_name(name: Optional[str]) -> bool:
    return normalize_name(name) in TEMPERATURE_NAMES


def is_excluded_name(name: Optional[str]) -> bool:
    return normalize_name(name) in EXCLUDED_NAMES


def stage_key_for(name: Optional[str]) -> Optional[str]:
    return STAGE_ALIASES.get(normalize_name(name))


def lead_status_for_stage(stage_key: Optional[str]) -> str:
    if stage_key == "qualified":
        return "qualified"
    if stage_key == "unqualified":
        return "disqualified"
    return "open"


@dataclass(frozen=True)
class TagDefinition:
    id: UUID
    name: str
    prompt: Optional[str] = None


@dataclass
class TagCatalog:
    phase_tags: list[TagDefinition] = field(default_factory=list)
    temperature_tags: list[TagDefinition] = field(default_factory=list)
    phase_key_by_tag_id: dict[UUID, str] = field(default_factory=dict)
    new_lead_tag_id: Optional[UUID] = None
    in_contact_tag_id: Optional[UUID] = None

    @property
    def phase_tag_ids(self) -> list[UUID]:
        return [t.id for t in self.phase_tags]

    @property
    def temperature_tag_ids(self) -> list[UUID]:
        return [t.id for t in self.temperature_tags]

    @property
    def managed_tag_ids(self) -> list[UUID]:
        """Every tag the engine may add or remove, phases first."""
        return self.phase_tag_ids + self.temperature_tag_ids

    def tag_id_for_stage(self, stage_key: str) -> Optional[UUID]:
        for tag in self.phase_tags:
            if self.phase_key_by_tag_id.get(tag.id) == stage_key:
                return tag.id
        return None

    def temperature_tag_id_containing(self, word: str) -> Optional[UUID]:
        for tag in self.temperature_tags:
            if word in normalize_name(tag.name):
                return tag.id
        return None


def build_catalog(tags: Iterable[TagDefinition]) -> TagCatalog:
    """Partition tags (already in creation order) into a catalog."""
    catalog = TagCatalog()
    for tag in tags:
        if is_temperature_name(tag.name):
            catalog.temperature_tags.append(tag)
            continue
        if is_excluded_name(tag.name):
            continue
        catalog.phase_tags.append(tag)
        key = stage_key_for(tag.name)
        if key:
            catalog.phase_key_by_tag_id[tag.id] = key

    for tag in catalog.phase_tags:
        name = normalize_name(tag.name)
        if catalog.new_lead_tag_id is None and name in ("new lead", "new"):
            catalog.new_lead_tag_id = tag.id
        if catalog.in_contact_tag_id is None and name in ("in contact", "contacted"):
            catalog.in_contact_tag_id = tag.id
    return catalog


def pick_highest_priority_phase_id(tag_ids: Sequence[UUID], catalog: TagCatalog) -> Optional[UUID]:
    """Resolve the single current phase among linked phase tags.

    Scans stages in funnel order and returns the first linked tag found;
    when none map to a stage, the first linked tag is returned.
    """
    if not tag_ids:
        return None
    for stage in FUNNEL_STAGE_PRIORITY:
        for tag_id in tag_ids:
            if catalog.phase_key_by_tag_id.get(tag_id) == stage:
                return tag_id
    return tag_ids[0]


async def load_tag_definitions(session: AsyncSession, workspace_id: UUID) -> list[TagDefinition]:
    result = await session.execute(
        select(Tag).where(Tag.workspace_id == workspace_id).order_by(Tag.created_at.asc(), Tag.id.asc())
    )
    return [
        TagDefinition(id=tag.id, name=tag.name or "", prompt=(tag.prompt or "").strip() or None)
        for tag in result.scalars().all()
    ]


async def load_tag_catalog(session: AsyncSession, workspace_id: UUID) -> TagCatalog:
    return build_catalog(await load_tag_definitions(session, workspace_id))
