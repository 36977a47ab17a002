"""
Unit tests for the database-backed marker, deferred-version and run stores
"""

import pytest
from unittest.mock import AsyncMock
from sqlalchemy import select
from sqlalchemy.exc import OperationalError
from core.exceptions import CheckpointError
from discovery.checkpoint import DatabaseCheckpointStore
from discovery.deferred import DatabaseDeferredVersionStore
from discovery.relevance import classify
from discovery.runs import RunTracker
from models.base import RunStatus
from models.checkpoint import DiscoveryMarker
from models.discovery_run import DiscoveryRun


class TestDatabaseCheckpointStore:

    @pytest.mark.asyncio
    async def test_first_run_has_no_marker(self, db_session):
        store = DatabaseCheckpointStore(db_session, "npmjs")

        assert await store.load() is None

    @pytest.mark.asyncio
    async def test_save_then_load(self, db_session, session_factory):
        await DatabaseCheckpointStore(db_session, "npmjs").save(105)

        # A new session sees the committed value
        async with session_factory() as other:
            assert await DatabaseCheckpointStore(other, "npmjs").load() == 105

    @pytest.mark.asyncio
    async def test_marker_only_moves_forward(self, db_session):
        store = DatabaseCheckpointStore(db_session, "npmjs")
        await store.save(100)
        await store.save(100)
        await store.save(120)

        with pytest.raises(CheckpointError):
            await store.save(110)

        assert await store.load() == 120

        result = await db_session.execute(select(DiscoveryMarker))
        row = result.scalar_one()
        assert row.total_saves == 3

    @pytest.mark.asyncio
    async def test_markers_are_kept_per_feed(self, db_session):
        await DatabaseCheckpointStore(db_session, "npmjs").save(10)
        await DatabaseCheckpointStore(db_session, "mirror").save(99)

        assert await DatabaseCheckpointStore(db_session, "npmjs").load() == 10

    @pytest.mark.asyncio
    async def test_database_failure_raises_checkpoint_error(self):
        session = AsyncMock()
        session.execute.side_effect = OperationalError("SELECT", {}, Exception("database is locked"))

        with pytest.raises(CheckpointError) as exc_info:
            await DatabaseCheckpointStore(session, "npmjs").save(5)

        assert exc_info.value.context["operation"] == "save"
        session.rollback.assert_awaited_once()


class TestDatabaseDeferredVersionStore:

    @pytest.mark.asyncio
    async def test_defer_and_list_oldest_first(self, db_session, make_record):
        store = DatabaseDeferredVersionStore(db_session)
        later = classify(make_record(205)).candidate
        earlier = classify(make_record(201)).candidate

        await store.defer(later, "timeout")
        await store.defer(earlier, "timeout")

        pending = await store.pending(limit=10)

        assert [p.candidate.sequence_id for p in pending] == [201, 205]
        assert pending[0].candidate == earlier
        assert pending[0].attempts == 1

    @pytest.mark.asyncio
    async def test_repeated_failure_counts_attempts(self, db_session, make_record):
        store = DatabaseDeferredVersionStore(db_session)
        candidate = classify(make_record(210)).candidate

        await store.defer(candidate, "timeout")
        await store.defer(candidate, "integrity mismatch")

        pending = await store.pending(limit=10)

        assert len(pending) == 1
        assert pending[0].attempts == 2
        assert pending[0].last_error == "integrity mismatch"

    @pytest.mark.asyncio
    async def test_resolve_forgets_candidate(self, db_session, make_record):
        store = DatabaseDeferredVersionStore(db_session)
        candidate = classify(make_record(220)).candidate
        await store.defer(candidate, "timeout")

        await store.resolve(candidate)
        await store.resolve(candidate)

        assert await store.pending(limit=10) == []

    @pytest.mark.asyncio
    async def test_pending_respects_limit(self, db_session, make_record):
        store = DatabaseDeferredVersionStore(db_session)
        for seq in range(230, 235):
            await store.defer(classify(make_record(seq)).candidate, "timeout")

        assert len(await store.pending(limit=2)) == 2


class TestRunTracker:

    @pytest.mark.asyncio
    async def test_run_lifecycle(self, db_session):
        tracker = RunTracker(db_session, "npmjs")

        run = await tracker.start(marker_before=100)
        assert run.status == RunStatus.RUNNING

        await tracker.complete(RunStatus.PARTIAL, {
            "marker": 105,
            "batch_count": 1,
            "change_count": 5,
            "relevant_count": 4,
            "notified_count": 3,
            "unprocessable_count": 1,
            "staging_failure_count": 1,
            "stopped_early": False,
            "remaining_seconds": 840.0,
        })

        result = await db_session.execute(select(DiscoveryRun))
        stored = result.scalar_one()
        assert stored.status == RunStatus.PARTIAL
        assert stored.marker_before == 100
        assert stored.marker_after == 105
        assert stored.notified_count == 3
        assert stored.completed_at is not None
        assert stored.duration_seconds >= 0

    @pytest.mark.asyncio
    async def test_complete_without_start_is_a_no_op(self, db_session):
        await RunTracker(db_session, "npmjs").complete(RunStatus.SUCCESS, {})

        result = await db_session.execute(select(DiscoveryRun))
        assert result.scalars().all() == []
