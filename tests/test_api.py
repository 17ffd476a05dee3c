"""Tests for the REST API endpoints."""

import asyncio
import uuid

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import NullPool

from autophase.api.routes import app, get_runtime
from autophase.engine.retag import run_retag_to_completion
from autophase.runtime import Runtime
from autophase.storage.db import init_db, session_factory_for
from tests.conftest import StubClassifier, linked_tag_ids, make_output, seed_settings, seed_tags, seed_thread, tag_id

OWNER = {"X-Actor-Id": "user-1", "X-Actor-Role": "owner"}
SETTER = {"X-Actor-Id": "user-2", "X-Actor-Role": "setter"}


@pytest.fixture
def api_runtime(tmp_path, settings):
    """Runtime on its own engine so connections open inside the TestClient loop."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'api.db'}", poolclass=NullPool)
    asyncio.run(init_db(engine))
    runtime = Runtime(settings=settings, session_factory=session_factory_for(engine), classifier=StubClassifier())
    yield runtime
    asyncio.run(engine.dispose())


@pytest.fixture
def client(api_runtime):
    app.dependency_overrides[get_runtime] = lambda: api_runtime
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def seed(runtime, *steps):
    """Run seeding coroutines ``step(session)`` in a single committed session."""

    async def _inner():
        results = []
        async with runtime.session_factory() as session:
            for step in steps:
                results.append(await step(session))
        return results

    return asyncio.run(_inner())


def settings_url(workspace_id):
    return f"/api/workspaces/{workspace_id}/auto-phase/settings"


class TestHealth:
    def test_health(self, client):
        """Health endpoint answers without an actor."""
        resp = client.get("/health")
        assert resp.status_code == 200
        assert resp.json() == {"status": "ok"}


class TestActorRoles:
    def test_missing_role_is_forbidden(self, client, workspace_id):
        """No X-Actor-Role header means 403."""
        resp = client.get(settings_url(workspace_id))
        assert resp.status_code == 403

    def test_viewer_is_forbidden(self, client, workspace_id):
        """Roles other than owner/setter cannot trigger runs."""
        resp = client.post(
            f"/api/workspaces/{workspace_id}/auto-phase/run",
            headers={"X-Actor-Role": "viewer"},
        )
        assert resp.status_code == 403

    def test_role_is_case_insensitive(self, client, workspace_id):
        """Role header is normalized before the check."""
        resp = client.get(settings_url(workspace_id), headers={"X-Actor-Role": "Owner"})
        assert resp.status_code == 200


class TestSettingsEndpoints:
    def test_first_read_returns_defaults(self, client, workspace_id):
        """First read creates and returns default settings."""
        resp = client.get(settings_url(workspace_id), headers=OWNER)
        assert resp.status_code == 200
        data = resp.json()
        assert data["workspace_id"] == str(workspace_id)
        assert data["enabled"] is False
        assert data["mode"] == "shadow"
        assert data["min_confidence"] == 70

    def test_patch_clamps_and_normalizes(self, client, workspace_id):
        """PATCH clamps numbers, falls back on bad enums, ignores unknown keys."""
        resp = client.patch(
            settings_url(workspace_id),
            headers=OWNER,
            json={"enabled": "true", "mode": "bogus", "min_confidence": 500, "unknown_key": 1},
        )
        assert resp.status_code == 200
        data = resp.json()
        assert data["enabled"] is True
        assert data["enabled_at"] is not None
        assert data["mode"] == "shadow"
        assert data["min_confidence"] == 100

        again = client.get(settings_url(workspace_id), headers=SETTER).json()
        assert again["min_confidence"] == 100

    def test_empty_patch_is_noop(self, client, workspace_id):
        """PATCH without a body returns current settings."""
        resp = client.patch(settings_url(workspace_id), headers=OWNER)
        assert resp.status_code == 200
        assert resp.json()["enabled"] is False


class TestRunEndpoints:
    def test_run_applies_confident_phase(self, client, api_runtime, workspace_id):
        """Enforce run over HTTP writes the classified tags."""
        ids = seed(
            api_runtime,
            lambda s: seed_settings(s, workspace_id),
            lambda s: seed_tags(s, workspace_id),
            lambda s: seed_thread(s, workspace_id, "c1"),
        )[1]
        api_runtime.classifier.output = lambda transcript, catalog: make_output(
            tag_id(catalog, "Qualified"), 92, tag_id(catalog, "Warm"), 80
        )

        resp = client.post(
            f"/api/workspaces/{workspace_id}/auto-phase/run", headers=OWNER, json={"source": "incremental"}
        )

        assert resp.status_code == 200
        summary = resp.json()
        assert summary["lock_acquired"] is True
        assert summary["total_candidates"] == 1
        assert summary["applied"] == 1
        links = seed(api_runtime, lambda s: linked_tag_ids(s, workspace_id, "c1"))[0]
        assert links == {ids["Qualified"]: "ai", ids["Warm"]: "ai"}

    def test_run_without_body_defaults_to_incremental(self, client, workspace_id):
        """Bodyless run uses the incremental source."""
        resp = client.post(f"/api/workspaces/{workspace_id}/auto-phase/run", headers=OWNER)
        assert resp.status_code == 200
        data = resp.json()
        assert data["source"] == "incremental"
        assert data["skipped_reason"] == "auto-phasing disabled"

    def test_unknown_source_is_rejected(self, client, workspace_id):
        """Unknown run source is a 422."""
        resp = client.post(
            f"/api/workspaces/{workspace_id}/auto-phase/run", headers=OWNER, json={"source": "everything"}
        )
        assert resp.status_code == 422

    def test_setter_blocked_when_trigger_disabled(self, client, api_runtime, workspace_id):
        """Setter runs are skipped when the workspace forbids them."""
        seed(api_runtime, lambda s: seed_settings(s, workspace_id, allow_setter_trigger=False))
        resp = client.post(f"/api/workspaces/{workspace_id}/auto-phase/run", headers=SETTER)
        assert resp.status_code == 200
        assert resp.json()["skipped_reason"] == "setter trigger disabled"

    def test_unlock_requires_conversation_id(self, client, workspace_id):
        """Empty conversation id fails validation."""
        resp = client.post(
            f"/api/workspaces/{workspace_id}/auto-phase/unlock", headers=OWNER, json={"conversation_id": ""}
        )
        assert resp.status_code == 422

    def test_audit_lists_entries_after_shadow_run(self, client, api_runtime, workspace_id):
        """Audit endpoint returns the shadow entry with its actor."""
        seed(
            api_runtime,
            lambda s: seed_settings(s, workspace_id, mode="shadow"),
            lambda s: seed_tags(s, workspace_id),
            lambda s: seed_thread(s, workspace_id, "c1"),
        )
        client.post(f"/api/workspaces/{workspace_id}/auto-phase/run", headers=OWNER)

        resp = client.get(f"/api/workspaces/{workspace_id}/audit", headers=OWNER, params={"conversation_id": "c1"})

        assert resp.status_code == 200
        entries = resp.json()
        assert [e["action"] for e in entries] == ["auto_phase_shadow"]
        assert entries[0]["actor_user_id"] == "user-1"

    def test_audit_limit_bounds(self, client, workspace_id):
        """Audit limit above 200 is rejected."""
        resp = client.get(f"/api/workspaces/{workspace_id}/audit", headers=OWNER, params={"limit": 1000})
        assert resp.status_code == 422


class TestRetagEndpoints:
    def _seed_workspace(self, runtime, workspace_id):
        return seed(
            runtime,
            lambda s: seed_tags(s, workspace_id, prompts={"Qualified": "Has budget."}),
            lambda s: seed_thread(s, workspace_id, "c1"),
        )[0]

    def test_start_and_step(self, client, api_runtime, workspace_id):
        """Start a job, step it once, read it back."""
        self._seed_workspace(api_runtime, workspace_id)
        api_runtime.classifier.retag_name = "Qualified"

        resp = client.post(f"/api/workspaces/{workspace_id}/retag", headers=OWNER, json={})
        assert resp.status_code == 200
        job = resp.json()
        assert job["status"] == "running"
        assert job["progress_total"] == 1
        assert job["requested_by"] == "user-1"

        step = client.post(f"/api/workspaces/{workspace_id}/retag/{job['id']}/step", headers=OWNER)
        assert step.status_code == 200
        assert step.json()["status"] == "completed"

        read = client.get(f"/api/workspaces/{workspace_id}/retag/{job['id']}", headers=SETTER)
        assert read.json()["progress_done"] == 1

    def test_second_full_scope_job_conflicts(self, client, api_runtime, workspace_id):
        """A second full-scope job while one runs is a 409."""
        self._seed_workspace(api_runtime, workspace_id)
        client.post(f"/api/workspaces/{workspace_id}/retag", headers=OWNER)

        resp = client.post(f"/api/workspaces/{workspace_id}/retag", headers=OWNER)

        assert resp.status_code == 409
        assert "already running" in resp.json()["detail"]

    def test_weekly_limit(self, client, api_runtime, workspace_id):
        """A full-scope job inside the cooldown is a 429."""
        self._seed_workspace(api_runtime, workspace_id)
        api_runtime.classifier.retag_name = "Qualified"
        asyncio.run(run_retag_to_completion(api_runtime, workspace_id))

        resp = client.post(f"/api/workspaces/{workspace_id}/retag", headers=OWNER)

        assert resp.status_code == 429

    def test_run_all(self, client, api_runtime, workspace_id):
        """run-all steps the job to completion and reports rounds."""
        self._seed_workspace(api_runtime, workspace_id)
        api_runtime.classifier.retag_name = "Qualified"

        resp = client.post(f"/api/workspaces/{workspace_id}/retag/run-all", headers=OWNER)

        assert resp.status_code == 200
        data = resp.json()
        assert data["rounds"] == 1
        assert data["job"]["status"] == "completed"

    def test_unknown_job_is_404(self, client, workspace_id):
        """Unknown job ids are 404 for read and step."""
        resp = client.get(f"/api/workspaces/{workspace_id}/retag/{uuid.uuid4()}", headers=OWNER)
        assert resp.status_code == 404
        resp = client.post(f"/api/workspaces/{workspace_id}/retag/{uuid.uuid4()}/step", headers=OWNER)
        assert resp.status_code == 404


class TestSweepEndpoint:
    def test_unconfigured_secret_is_503(self, client, api_runtime):
        """Sweep is unavailable without a configured secret."""
        api_runtime.settings.runs.cron_secret = ""
        resp = client.post("/api/auto-phase/sweep", headers={"X-Auto-Phase-Secret": "anything"})
        assert resp.status_code == 503

    def test_wrong_secret_is_401(self, client, api_runtime):
        """Missing or wrong secret is a 401."""
        api_runtime.settings.runs.cron_secret = "s3cret"
        assert client.post("/api/auto-phase/sweep").status_code == 401
        resp = client.post("/api/auto-phase/sweep", headers={"X-Auto-Phase-Secret": "nope"})
        assert resp.status_code == 401

    def test_sweep_runs_enabled_workspaces(self, client, api_runtime):
        """Correct secret runs the sweep."""
        api_runtime.settings.runs.cron_secret = "s3cret"
        workspace_id = uuid.uuid4()
        seed(
            api_runtime,
            lambda s: seed_settings(s, workspace_id, mode="shadow"),
            lambda s: seed_tags(s, workspace_id),
        )

        resp = client.post("/api/auto-phase/sweep", headers={"X-Auto-Phase-Secret": "s3cret"})

        assert resp.status_code == 200
        data = resp.json()
        assert data["success"] is True
        assert data["processed_workspaces"] == 1
        assert data["summaries"][0]["source"] == "backfill"
