"""
Audit trail of scanner invocations (``discovery_runs`` table)
"""

from typing import Any, Dict, Optional
from sqlalchemy.ext.asyncio import AsyncSession
from models.discovery_run import DiscoveryRun
from models.base import RunStatus
from core.clock import utc_now, ensure_utc
import logging
import uuid

logger = logging.getLogger(__name__)


class RunTracker:
    """Creates the run row at start and completes it with the run's counters"""

    def __init__(self, db_session: AsyncSession, feed_name: str):
        self.db = db_session
        self.feed_name = feed_name
        self.run: Optional[DiscoveryRun] = None

    async def start(self, marker_before: Optional[int]) -> DiscoveryRun:
        self.run = DiscoveryRun(
            run_id=uuid.uuid4(),
            feed_name=self.feed_name,
            status=RunStatus.RUNNING,
            started_at=utc_now(),
            marker_before=marker_before,
        )
        self.db.add(self.run)
        await self.db.commit()
        await self.db.refresh(self.run)
        return self.run

    async def complete(
        self,
        status: RunStatus,
        report: Dict[str, Any],
        error_message: Optional[str] = None,
        error_details: Optional[Dict[str, Any]] = None
    ) -> None:
        if self.run is None:
            return

        run = self.run
        run.status = status
        run.completed_at = utc_now()
        run.duration_seconds = (run.completed_at - ensure_utc(run.started_at)).total_seconds()
        run.marker_after = report.get("marker")
        run.batch_count = report.get("batch_count", 0)
        run.change_count = report.get("change_count", 0)
        run.package_version_count = report.get("package_version_count", 0)
        run.relevant_count = report.get("relevant_count", 0)
        run.unprocessable_count = report.get("unprocessable_count", 0)
        run.staged_count = report.get("staged_count", 0)
        run.notified_count = report.get("notified_count", 0)
        run.staging_failure_count = report.get("staging_failure_count", 0)
        run.deferred_retried_count = report.get("deferred_retried_count", 0)
        run.stopped_early = bool(report.get("stopped_early", False))
        run.remaining_seconds = report.get("remaining_seconds")
        run.error_message = error_message
        run.error_details = error_details

        try:
            await self.db.commit()
        except Exception as e:
            # The run outcome is already decided; a failed audit write only gets logged
            logger.error(f"Failed to record completion of run {run.run_id}: {str(e)}")
            await self.db.rollback()
