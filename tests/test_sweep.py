"""Tests for the scheduled sweep and daemon loop."""

import uuid
from datetime import timedelta
from unittest.mock import AsyncMock, patch

import pytest

from autophase.engine.settings_store import get_automation_settings
from autophase.engine.sweep import SweepResult, run_sweep
from tests.conftest import NOW, seed_settings, seed_tags, seed_thread


class TestRunSweep:
    @pytest.mark.asyncio
    async def test_source_follows_backfill_state(self, runtime, session_factory):
        """Completed backfill means catchup, otherwise backfill."""
        fresh, settled, disabled = uuid.uuid4(), uuid.uuid4(), uuid.uuid4()
        async with session_factory() as session:
            await seed_settings(session, fresh, backfill_state="pending", updated_at=NOW - timedelta(hours=1))
            await seed_settings(session, settled, backfill_state="completed", updated_at=NOW)
            await seed_settings(session, disabled, enabled=False)
            for workspace_id in (fresh, settled):
                await seed_tags(session, workspace_id)

        result = await run_sweep(runtime)

        assert result.success
        assert result.processed_workspaces == 2
        assert [(s.workspace_id, s.source) for s in result.summaries] == [
            (fresh, "backfill"),
            (settled, "catchup"),
        ]

    @pytest.mark.asyncio
    async def test_catchup_classifies_new_threads(self, runtime, session_factory, workspace_id):
        """Catchup picks up threads created after enablement."""
        async with session_factory() as session:
            await seed_settings(
                session, workspace_id, backfill_state="completed", enabled_at=NOW - timedelta(days=1)
            )
            await seed_tags(session, workspace_id)
            await seed_thread(session, workspace_id, "new", created_at=NOW - timedelta(hours=2))
            await seed_thread(session, workspace_id, "backlog", created_at=NOW - timedelta(days=10))

        result = await run_sweep(runtime)

        summary = result.summaries[0]
        assert summary.total_candidates == 1
        assert summary.processed == 1

    @pytest.mark.asyncio
    async def test_workspace_crash_is_recorded_and_sweep_continues(self, runtime, session_factory):
        """A crashing workspace records last_error and the sweep continues."""
        broken, healthy = uuid.uuid4(), uuid.uuid4()
        async with session_factory() as session:
            await seed_settings(session, broken, updated_at=NOW - timedelta(hours=1))
            await seed_settings(session, healthy, updated_at=NOW)

        from autophase.engine import sweep as sweep_module

        real_run = sweep_module.run_workspace_auto_phase

        async def flaky_run(rt, options, now=None):
            if options.workspace_id == broken:
                raise RuntimeError("database went away")
            return await real_run(rt, options, now)

        with patch("autophase.engine.sweep.run_workspace_auto_phase", side_effect=flaky_run):
            result = await run_sweep(runtime)

        assert result.processed_workspaces == 2
        assert [s.workspace_id for s in result.summaries] == [healthy]

        async with session_factory() as session:
            config = await get_automation_settings(session, broken)
        assert config.last_error == "database went away"
        assert config.last_catchup_run_at is not None


class TestDaemon:
    @pytest.mark.asyncio
    async def test_daemon_runs_sweep_until_stopped(self, runtime):
        """The daemon sweeps until stopped, then closes the database."""
        from autophase import daemon

        calls = []

        async def fake_sweep(rt):
            calls.append(rt)
            daemon._running = False
            return SweepResult()

        with patch("autophase.daemon.run_sweep", side_effect=fake_sweep), \
             patch("autophase.daemon.close_db", new_callable=AsyncMock) as close_db, \
             patch("autophase.daemon.signal.signal"):
            await daemon.run_daemon(interval_minutes=1, runtime=runtime)

        assert calls == [runtime]
        close_db.assert_awaited_once()
