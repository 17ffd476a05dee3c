"""Tests for the workspace tag catalog."""

import uuid

import pytest

from autophase.engine.catalog import (
    TagDefinition,
    build_catalog,
    lead_status_for_stage,
    load_tag_catalog,
    normalize_name,
    pick_highest_priority_phase_id,
    stage_key_for,
)
from tests.conftest import make_catalog, make_tags, seed_tags, tag_id


class TestNormalizeName:
    def test_separators_and_case(self):
        """Underscores, dashes and case are normalized."""
        assert normalize_name("  Call_Booked ") == "call booked"
        assert normalize_name("no--show") == "no show"
        assert normalize_name("New   Lead") == "new lead"
        assert normalize_name(None) == ""

    def test_stage_aliases(self):
        """Aliases resolve to their funnel stage."""
        assert stage_key_for("Contacted") == "in_contact"
        assert stage_key_for("Disqualified") == "unqualified"
        assert stage_key_for("booked-call") == "call_booked"
        assert stage_key_for("Closed Won") == "won"
        assert stage_key_for("NoShow") == "no_show"
        assert stage_key_for("Follow up") is None


class TestBuildCatalog:
    def test_partitions_phase_and_temperature(self):
        """Temperature and excluded tags are split from phases."""
        catalog = make_catalog()
        assert [t.name for t in catalog.temperature_tags] == ["Hot", "Warm", "Cold"]
        assert "Priority" not in [t.name for t in catalog.phase_tags]
        assert catalog.new_lead_tag_id == tag_id(catalog, "New Lead")
        assert catalog.in_contact_tag_id == tag_id(catalog, "In Contact")

    def test_lead_suffixed_temperatures(self):
        """"Hot Lead" style names count as temperatures."""
        catalog = build_catalog(make_tags("Hot Lead", "warm_lead", "Spam", "New"))
        assert len(catalog.temperature_tags) == 2
        assert [t.name for t in catalog.phase_tags] == ["New"]
        assert catalog.new_lead_tag_id == catalog.phase_tags[0].id

    def test_first_tag_of_a_stage_wins(self):
        """The oldest tag of a stage backs special lookups."""
        catalog = build_catalog(make_tags("New Lead", "new"))
        assert catalog.new_lead_tag_id == catalog.phase_tags[0].id
        assert catalog.tag_id_for_stage("new_lead") == catalog.phase_tags[0].id

    def test_managed_ids_cover_phase_and_temperature(self):
        """Managed ids include phase and temperature tags."""
        catalog = make_catalog("New Lead", "Hot", "Priority")
        assert set(catalog.managed_tag_ids) == {tag_id(catalog, "New Lead"), tag_id(catalog, "Hot")}

    def test_unknown_phase_names_still_phases(self):
        """Unmapped names remain phase tags."""
        catalog = build_catalog(make_tags("Follow Up"))
        assert len(catalog.phase_tags) == 1
        assert catalog.phase_key_by_tag_id == {}


class TestPickHighestPriority:
    def test_empty(self):
        """No linked tags gives no phase."""
        assert pick_highest_priority_phase_id([], make_catalog()) is None

    def test_earlier_funnel_stage_wins(self):
        """The earliest funnel stage wins."""
        catalog = make_catalog()
        booked, new_lead = tag_id(catalog, "Call Booked"), tag_id(catalog, "New Lead")
        assert pick_highest_priority_phase_id([booked, new_lead], catalog) == new_lead

    def test_qualified_beats_won(self):
        """Qualified precedes Won in funnel order."""
        catalog = make_catalog()
        won, qualified = tag_id(catalog, "Won"), tag_id(catalog, "Qualified")
        assert pick_highest_priority_phase_id([won, qualified], catalog) == qualified

    def test_unmapped_tags_return_first(self):
        """Without mapped stages the first id is returned."""
        tags = make_tags("Follow Up", "Nurture")
        catalog = build_catalog(tags)
        assert pick_highest_priority_phase_id([tags[1].id, tags[0].id], catalog) == tags[1].id


class TestLeadStatus:
    @pytest.mark.parametrize(
        "stage,status",
        [("qualified", "qualified"), ("unqualified", "disqualified"), ("won", "open"), (None, "open")],
    )
    def test_mapping(self, stage, status):
        """Stages map to lead statuses."""
        assert lead_status_for_stage(stage) == status


class TestLoadTagCatalog:
    @pytest.mark.asyncio
    async def test_loads_in_creation_order_scoped_to_workspace(self, session_factory, workspace_id):
        """Catalog reads only this workspace's tags, oldest first."""
        async with session_factory() as session:
            ids = await seed_tags(session, workspace_id, ["New Lead", "Hot", "Qualified"], prompts={"Qualified": "  "})
            await seed_tags(session, uuid.uuid4(), ["In Contact"])

        async with session_factory() as session:
            catalog = await load_tag_catalog(session, workspace_id)

        assert catalog.phase_tag_ids == [ids["New Lead"], ids["Qualified"]]
        assert catalog.temperature_tag_ids == [ids["Hot"]]
        assert catalog.in_contact_tag_id is None
        # Blank prompts count as no prompt
        assert all(t.prompt is None for t in catalog.phase_tags)
        assert isinstance(catalog.phase_tags[0], TagDefinition)
