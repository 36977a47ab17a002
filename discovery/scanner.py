# ============================================================================
# File: discovery/scanner.py
# Description: Time-boxed discovery run over the registry change feed
# ============================================================================
"""
Discovery Scanner - orchestrates read -> filter -> stage -> notify -> checkpoint.

This module provides the discovery run with:
- Resumable consumption of the change feed from the persisted marker
- Per-record error containment (malformed records, staging failures)
- Marker advancement only after a batch's effects are committed
- Voluntary early stop before the host's hard deadline
- Operational metrics for every run, flushed even when the run fails
"""

from typing import Any, Dict, Optional
from datetime import datetime
import logging
import time

from core.clock import MonotonicClock, WallClock, utc_now
from core.exceptions import DiscoveryException, StagingError
from core.metrics import MetricsRecorder, MetricUnit
from discovery.checkpoint import CheckpointStore
from discovery.constants import MetricName
from discovery.deferred import DeferredVersionStore
from discovery.feed_reader import RegistryFeedReader
from discovery.governor import TimeBudget
from discovery.notifier import QueueNotifier
from discovery.relevance import Outcome, RelevanceFilter
from discovery.runs import RunTracker
from discovery.stager import ArtifactStager
from models.base import RunStatus
from schemas.feed import CandidateVersion, FeedBatch, StagedArtifact

logger = logging.getLogger(__name__)


class DiscoveryScanner:
    """
    Single-writer discovery run.

    Responsibilities:
    - Own the marker lifecycle (load at start, save after every batch)
    - Contain per-record failures at the record boundary
    - Notify exactly once per successfully staged artifact
    - Stop between batches when the time budget runs low
    - Emit the run's metrics and record the run

    Only one run may be in flight at a time; that is enforced by the
    invocation policy, not here.
    """

    def __init__(
        self,
        feed: RegistryFeedReader,
        relevance: RelevanceFilter,
        stager: ArtifactStager,
        notifier: QueueNotifier,
        checkpoints: CheckpointStore,
        metrics: MetricsRecorder,
        batch_size: int = 100,
        deferred: Optional[DeferredVersionStore] = None,
        tracker: Optional[RunTracker] = None,
        max_staging_attempts: int = 5,
        clock: WallClock = utc_now,
        monotonic: MonotonicClock = time.monotonic
    ):
        self.feed = feed
        self.relevance = relevance
        self.stager = stager
        self.notifier = notifier
        self.checkpoints = checkpoints
        self.metrics = metrics
        self.batch_size = batch_size
        self.deferred = deferred
        self.tracker = tracker
        self.max_staging_attempts = max_staging_attempts
        self.clock = clock
        self.monotonic = monotonic

    async def run(self, budget: TimeBudget) -> Dict[str, Any]:
        """
        Consume the feed from the persisted marker until caught up or out of time.

        Args:
            budget: Time budget of this invocation

        Returns:
            Dictionary with run statistics:
            - status: "success" or "partial_success" (staging failures)
            - marker: Marker persisted at exit
            - stopped_early: True when the time budget ended the run
            - counters: change_count, package_version_count, relevant_count,
              unprocessable_count, staged_count, notified_count,
              staging_failure_count, batch_count, deferred_retried_count

        Raises:
            FeedError: Feed unavailable or unusable (marker already safe)
            DeliveryError: Queue rejected a notification
            CheckpointError: Marker could not be loaded or saved
        """
        marker = await self.checkpoints.load()
        stats = self._new_stats(marker)

        if self.tracker:
            await self.tracker.start(marker_before=marker)

        logger.info(f"Starting discovery run from marker {marker}")

        try:
            await self._retry_deferred(budget, stats)

            while True:
                if budget.should_stop():
                    stats["stopped_early"] = True
                    logger.info(
                        f"Stopping early with {budget.remaining().total_seconds():.0f}s left "
                        f"(safety margin {budget.safety_margin.total_seconds():.0f}s)"
                    )
                    break

                batch = await self.feed.read(marker, self.batch_size)
                if batch.is_empty:
                    logger.info("Change feed exhausted")
                    break

                await self._process_batch(batch, stats)

                marker = batch.highest_sequence
                await self.checkpoints.save(marker)
                stats["marker"] = marker
                stats["batch_count"] += 1

        except DiscoveryException as e:
            logger.error(
                f"Discovery run failed: {e.message}",
                extra={"error_context": e.to_dict()}
            )
            await self._finish(budget, stats, RunStatus.FAILED, e.message, e.to_dict())
            raise

        except Exception as e:
            logger.exception("Unexpected error in discovery run")
            await self._finish(budget, stats, RunStatus.FAILED, str(e))
            raise DiscoveryException(
                "Unexpected error in discovery run",
                context={"marker": stats["marker"], "batch_count": stats["batch_count"]},
                original_exception=e
            )

        status = RunStatus.SUCCESS if stats["staging_failure_count"] == 0 else RunStatus.PARTIAL
        await self._finish(budget, stats, status)

        stats["status"] = "success" if status == RunStatus.SUCCESS else "partial_success"
        logger.info(
            f"Discovery run completed: {stats['status']} - marker {stats['marker']}, "
            f"changes {stats['change_count']}, relevant {stats['relevant_count']}, "
            f"notified {stats['notified_count']}, staging failures {stats['staging_failure_count']}, "
            f"unprocessable {stats['unprocessable_count']}"
        )
        return stats

    @staticmethod
    def _new_stats(marker: Optional[int]) -> Dict[str, Any]:
        return {
            "status": "running",
            "marker_before": marker,
            "marker": marker,
            "stopped_early": False,
            "batch_count": 0,
            "change_count": 0,
            "package_version_count": 0,
            "relevant_count": 0,
            "unprocessable_count": 0,
            "staged_count": 0,
            "notified_count": 0,
            "staging_failure_count": 0,
            "deferred_retried_count": 0,
            "remaining_seconds": None,
        }

    async def _finish(
        self,
        budget: TimeBudget,
        stats: Dict[str, Any],
        status: RunStatus,
        error_message: Optional[str] = None,
        error_details: Optional[Dict[str, Any]] = None
    ) -> None:
        remaining = budget.remaining().total_seconds()
        stats["remaining_seconds"] = remaining
        self.metrics.put(MetricName.REMAINING_TIME, remaining * 1000, MetricUnit.MILLISECONDS)
        await self.metrics.flush()

        if self.tracker:
            await self.tracker.complete(status, stats, error_message, error_details)

    async def _process_batch(self, batch: FeedBatch, stats: Dict[str, Any]) -> None:
        started = self.monotonic()
        now = self.clock()

        change_count = len(batch.records)
        version_count = 0
        relevant = 0
        unprocessable = 0
        failures = 0
        oldest: Optional[datetime] = None

        for record in batch.records:
            if record.version and not record.deleted:
                version_count += 1
                if record.published_at and (oldest is None or record.published_at < oldest):
                    oldest = record.published_at

            classification = self.relevance.classify(record)

            if classification.outcome == Outcome.MALFORMED:
                unprocessable += 1
                logger.warning(
                    f"Skipping unprocessable change {record.sequence_id} ({record.name}): "
                    f"{classification.reason}"
                )
                continue

            if classification.outcome == Outcome.IRRELEVANT:
                continue

            relevant += 1
            artifact = await self._stage(classification.candidate, stats)
            if artifact is None:
                failures += 1
                continue

            await self.notifier.notify(artifact)
            stats["notified_count"] += 1

        stats["change_count"] += change_count
        stats["package_version_count"] += version_count
        stats["relevant_count"] += relevant
        stats["unprocessable_count"] += unprocessable

        self.metrics.put(MetricName.CHANGE_COUNT, change_count)
        self.metrics.put(MetricName.PACKAGE_VERSION_COUNT, version_count)
        self.metrics.put(MetricName.RELEVANT_PACKAGE_VERSIONS, relevant)
        self.metrics.put(MetricName.UNPROCESSABLE_ENTITY, unprocessable)
        self.metrics.put(MetricName.STAGING_FAILURE_COUNT, failures)
        if oldest is not None:
            age = (now - oldest).total_seconds()
            self.metrics.put(MetricName.PACKAGE_VERSION_AGE, max(0.0, age) * 1000, MetricUnit.MILLISECONDS)

        elapsed = self.monotonic() - started
        self.metrics.put(MetricName.BATCH_PROCESSING_TIME, elapsed * 1000, MetricUnit.MILLISECONDS)

        logger.info(
            f"Processed batch up to {batch.highest_sequence}: {change_count} changes, "
            f"{relevant} relevant, {unprocessable} unprocessable, {failures} staging failures"
        )

    async def _stage(self, candidate: CandidateVersion, stats: Dict[str, Any]) -> Optional[StagedArtifact]:
        """Stage one candidate; failures are counted, parked for retry and skipped"""
        try:
            artifact = await self.stager.stage(candidate)
        except StagingError as e:
            stats["staging_failure_count"] += 1
            logger.error(
                f"Failed to stage {candidate.name}@{candidate.version}: {e.message}",
                extra={"error_context": e.to_dict()}
            )
            if self.deferred is not None:
                await self.deferred.defer(candidate, str(e))
            return None

        stats["staged_count"] += 1
        return artifact

    async def _retry_deferred(self, budget: TimeBudget, stats: Dict[str, Any]) -> None:
        """Give previously failed candidates another attempt before reading the feed"""
        if self.deferred is None:
            return

        pending = await self.deferred.pending(limit=self.batch_size)
        if not pending:
            return

        logger.info(f"Retrying {len(pending)} deferred package versions")
        failures = 0

        for item in pending:
            if budget.should_stop():
                break

            candidate = item.candidate
            stats["deferred_retried_count"] += 1
            self.metrics.put(MetricName.DEFERRED_VERSION_RETRIES, 1)

            try:
                artifact = await self.stager.stage(candidate)
            except StagingError as e:
                failures += 1
                stats["staging_failure_count"] += 1
                if item.attempts + 1 >= self.max_staging_attempts:
                    logger.error(
                        f"Giving up on {candidate.name}@{candidate.version} after "
                        f"{item.attempts + 1} staging attempts: {e.message}",
                        extra={"error_context": e.to_dict()}
                    )
                    await self.deferred.resolve(candidate)
                else:
                    await self.deferred.defer(candidate, str(e))
                continue

            stats["staged_count"] += 1
            await self.notifier.notify(artifact)
            stats["notified_count"] += 1
            await self.deferred.resolve(candidate)

        self.metrics.put(MetricName.STAGING_FAILURE_COUNT, failures)
