"""
Tests for failure scenarios and error handling
"""

import json
import pytest
from sqlalchemy import select
from unittest.mock import AsyncMock
from core.exceptions import CheckpointError, DeliveryError, DiscoveryException, TransientFeedError
from discovery.checkpoint import DatabaseCheckpointStore
from discovery.constants import MetricName
from discovery.governor import TimeBudget
from discovery.notifier import QueueNotifier
from discovery.relevance import RelevanceFilter
from discovery.runs import RunTracker
from discovery.scanner import DiscoveryScanner
from discovery.stager import ArtifactStager
from models.base import RunStatus
from models.discovery_run import DiscoveryRun


@pytest.fixture
def build_scanner(db_session, object_store, tarball_http, metrics, manual_clock):

    def _build(feed, notifier, checkpoints=None, batch_size=100):
        return DiscoveryScanner(
            feed=feed,
            relevance=RelevanceFilter(),
            stager=ArtifactStager(object_store, tarball_http, metrics),
            notifier=notifier,
            checkpoints=checkpoints or DatabaseCheckpointStore(db_session, "npmjs"),
            metrics=metrics,
            batch_size=batch_size,
            tracker=RunTracker(db_session, "npmjs"),
            monotonic=manual_clock,
        )

    return _build


@pytest.fixture
def budget(manual_clock):
    return TimeBudget.from_seconds(900, 120, clock=manual_clock)


async def _last_run(db_session) -> DiscoveryRun:
    result = await db_session.execute(select(DiscoveryRun).order_by(DiscoveryRun.id.desc()).limit(1))
    return result.scalar_one()


@pytest.mark.asyncio
async def test_feed_outage_keeps_marker_and_records_failure(
    db_session, build_scanner, budget, list_feed, make_record, serve_tarballs, message_queue, metrics_backend
):
    """
    Test: feed unavailable after retries, the run fails without losing progress
    """
    records = [make_record(1), make_record(2)]
    serve_tarballs(*records)
    feed = list_feed(records)
    real_read = feed.read
    feed.read = AsyncMock(side_effect=[
        await real_read(None, 1),
        TransientFeedError("Change feed unavailable after retries", context={"position": 1}),
    ])

    with pytest.raises(TransientFeedError):
        await build_scanner(feed, QueueNotifier(message_queue), batch_size=1).run(budget)

    # The first batch was committed before the outage
    assert await DatabaseCheckpointStore(db_session, "npmjs").load() == 1
    assert len(message_queue.messages) == 1

    run = await _last_run(db_session)
    assert run.status == RunStatus.FAILED
    assert run.marker_after == 1
    assert "unavailable" in run.error_message
    assert run.error_details["error_type"] == "TransientFeedError"

    # Metrics are flushed on the failure path too
    assert metrics_backend.published
    names = {p.name for _, points, _ in metrics_backend.published for p in points}
    assert MetricName.REMAINING_TIME in names


@pytest.mark.asyncio
async def test_delivery_failure_aborts_without_advancing_marker(
    db_session, build_scanner, budget, list_feed, make_record, serve_tarballs, message_queue
):
    """
    Test: the queue rejects a notification mid-batch; the marker stays put and
    the re-run announces the whole batch again (at-least-once)
    """
    await DatabaseCheckpointStore(db_session, "npmjs").save(100)
    records = [make_record(101), make_record(102), make_record(103)]
    serve_tarballs(*records)
    message_queue.fail_after = 1

    with pytest.raises(DeliveryError):
        await build_scanner(list_feed(records), QueueNotifier(message_queue)).run(budget)

    assert await DatabaseCheckpointStore(db_session, "npmjs").load() == 100

    # Queue recovers
    message_queue.fail_after = None
    result = await build_scanner(list_feed(records), QueueNotifier(message_queue)).run(budget)

    assert result["marker"] == 103
    sequences = [json.loads(m)["sequence"] for m in message_queue.messages]
    assert sequences == [101, 101, 102, 103]


@pytest.mark.asyncio
async def test_budget_stops_between_batches_and_next_run_resumes(
    db_session, build_scanner, list_feed, make_record, serve_tarballs, message_queue, manual_clock
):
    """
    Test: a slow feed exhausts the time budget; the run saves its marker and
    exits early, the next run continues from there
    """
    records = [make_record(n) for n in range(1, 7)]
    serve_tarballs(*records)
    feed = list_feed(records)
    real_read = feed.read

    async def slow_read(position, max_batch):
        manual_clock.advance(400)
        return await real_read(position, max_batch)

    feed.read = slow_read

    budget = TimeBudget.from_seconds(900, 120, clock=manual_clock)
    result = await build_scanner(feed, QueueNotifier(message_queue), batch_size=2).run(budget)

    assert result["stopped_early"] is True
    assert result["marker"] == 4
    assert result["status"] == "success"
    assert result["remaining_seconds"] == pytest.approx(100)

    run = await _last_run(db_session)
    assert run.stopped_early is True

    fresh_budget = TimeBudget.from_seconds(900, 120, clock=manual_clock)
    feed.read = real_read
    result = await build_scanner(feed, QueueNotifier(message_queue), batch_size=2).run(fresh_budget)

    assert result["marker"] == 6
    assert [json.loads(m)["sequence"] for m in message_queue.messages] == [1, 2, 3, 4, 5, 6]


@pytest.mark.asyncio
async def test_exhausted_budget_reads_nothing(
    build_scanner, list_feed, make_record, message_queue, manual_clock
):
    budget = TimeBudget.from_seconds(900, 120, clock=manual_clock)
    manual_clock.advance(800)
    feed = list_feed([make_record(1)])

    result = await build_scanner(feed, QueueNotifier(message_queue)).run(budget)

    assert result["stopped_early"] is True
    assert feed.reads == []


@pytest.mark.asyncio
async def test_checkpoint_failure_aborts_run(
    build_scanner, budget, list_feed, make_record, serve_tarballs, message_queue
):
    records = [make_record(1)]
    serve_tarballs(*records)
    checkpoints = AsyncMock()
    checkpoints.load.return_value = None
    checkpoints.save.side_effect = CheckpointError("Failed to save marker", context={"operation": "save"})

    with pytest.raises(CheckpointError):
        await build_scanner(list_feed(records), QueueNotifier(message_queue), checkpoints=checkpoints).run(budget)


@pytest.mark.asyncio
async def test_unexpected_error_is_wrapped(
    db_session, build_scanner, budget, message_queue
):
    feed = AsyncMock()
    feed.read.side_effect = KeyError("results")

    with pytest.raises(DiscoveryException) as exc_info:
        await build_scanner(feed, QueueNotifier(message_queue)).run(budget)

    assert isinstance(exc_info.value.original_exception, KeyError)
    run = await _last_run(db_session)
    assert run.status == RunStatus.FAILED
