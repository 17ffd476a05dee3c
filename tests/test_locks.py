"""Tests for the per-workspace lease."""

import asyncio
import uuid
from datetime import timedelta

import pytest
from sqlalchemy import select

from autophase.storage.locks import acquire_workspace_lock, clamp_ttl, release_workspace_lock
from autophase.storage.models import WorkspaceLock
from tests.conftest import NOW


class TestClampTtl:
    def test_bounds(self):
        """TTL defaults to 90 and is clamped to [10, 3600]."""
        assert clamp_ttl(None) == 90
        assert clamp_ttl(1) == 10
        assert clamp_ttl(99999) == 3600
        assert clamp_ttl(120) == 120


class TestAcquire:
    @pytest.mark.asyncio
    async def test_second_acquire_is_refused_until_expiry(self, session_factory, workspace_id):
        """A held lease blocks others until it expires."""
        async with session_factory() as session:
            assert await acquire_workspace_lock(session, workspace_id, 60, holder="a", now=NOW)
        async with session_factory() as session:
            assert not await acquire_workspace_lock(session, workspace_id, 60, holder="b", now=NOW + timedelta(seconds=30))
        async with session_factory() as session:
            assert await acquire_workspace_lock(session, workspace_id, 60, holder="c", now=NOW + timedelta(seconds=61))

        async with session_factory() as session:
            row = (await session.execute(select(WorkspaceLock))).scalar_one()
        assert row.holder == "c"

    @pytest.mark.asyncio
    async def test_locks_are_per_workspace(self, session_factory):
        """Leases on different workspaces are independent."""
        async with session_factory() as session:
            assert await acquire_workspace_lock(session, uuid.uuid4(), 60, now=NOW)
        async with session_factory() as session:
            assert await acquire_workspace_lock(session, uuid.uuid4(), 60, now=NOW)

    @pytest.mark.asyncio
    async def test_concurrent_acquire_has_one_winner(self, session_factory, workspace_id):
        """Concurrent acquires produce exactly one holder."""
        async def attempt(holder):
            async with session_factory() as session:
                return await acquire_workspace_lock(session, workspace_id, 60, holder=holder, now=NOW)

        results = await asyncio.gather(*[attempt(f"h{i}") for i in range(5)])
        assert sorted(results) == [False, False, False, False, True]


class TestRelease:
    @pytest.mark.asyncio
    async def test_release_frees_lock(self, session_factory, workspace_id):
        """Release lets the next caller acquire."""
        async with session_factory() as session:
            await acquire_workspace_lock(session, workspace_id, 60, holder="a", now=NOW)
        async with session_factory() as session:
            await release_workspace_lock(session, workspace_id, holder="a")
        async with session_factory() as session:
            assert await acquire_workspace_lock(session, workspace_id, 60, holder="b", now=NOW)

    @pytest.mark.asyncio
    async def test_release_by_other_holder_is_noop(self, session_factory, workspace_id):
        """A stale holder cannot release someone else's lease."""
        async with session_factory() as session:
            await acquire_workspace_lock(session, workspace_id, 60, holder="a", now=NOW)
        async with session_factory() as session:
            await release_workspace_lock(session, workspace_id, holder="stale")
        async with session_factory() as session:
            assert not await acquire_workspace_lock(session, workspace_id, 60, holder="b", now=NOW)

    @pytest.mark.asyncio
    async def test_release_swallows_errors(self, workspace_id):
        """Release failures are logged, not raised."""
        from unittest.mock import AsyncMock

        session = AsyncMock()
        session.execute.side_effect = RuntimeError("connection lost")
        await release_workspace_lock(session, workspace_id, holder="a")
        session.commit.assert_not_called()
