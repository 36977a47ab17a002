"""
Discovery statistics endpoint
"""
from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func
from api.dependencies import get_db
from schemas.api import StatsResponse, RunSummary
from models.base import RunStatus
from models.deferred_version import DeferredVersion
from models.discovery_run import DiscoveryRun
import logging

logger = logging.getLogger(__name__)
router = APIRouter(tags=["Statistics"])


@router.get("/stats", response_model=StatsResponse)
async def get_stats(
    request: Request,
    limit: int = Query(10, ge=1, le=100, description="Number of recent runs to return"),
    db: AsyncSession = Depends(get_db)
):
    """
    Get discovery statistics.

    Returns:
    - Run counts by outcome
    - Totals of the per-run counters
    - Deferred versions still waiting for a staging retry
    - Recent run history
    """
    request_id = getattr(request.state, "request_id", "-")
    logger.info(f"[{request_id}] GET /stats")

    # ========== Run counts ==========

    counts_result = await db.execute(
        select(DiscoveryRun.status, func.count()).group_by(DiscoveryRun.status)
    )
    by_status = {status: count for status, count in counts_result.all()}
    total_runs = sum(by_status.values())

    # ========== Counter totals ==========

    totals_result = await db.execute(
        select(
            func.coalesce(func.sum(DiscoveryRun.change_count), 0),
            func.coalesce(func.sum(DiscoveryRun.relevant_count), 0),
            func.coalesce(func.sum(DiscoveryRun.notified_count), 0),
            func.coalesce(func.sum(DiscoveryRun.unprocessable_count), 0),
            func.coalesce(func.sum(DiscoveryRun.staging_failure_count), 0),
        )
    )
    changes, relevant, notified, unprocessable, staging_failures = totals_result.one()

    pending_result = await db.execute(select(func.count()).select_from(DeferredVersion))
    pending = pending_result.scalar() or 0

    last_success_result = await db.execute(
        select(func.max(DiscoveryRun.completed_at)).where(
            DiscoveryRun.status.in_([RunStatus.SUCCESS, RunStatus.PARTIAL])
        )
    )
    last_success = last_success_result.scalar()

    last_failure_result = await db.execute(
        select(func.max(DiscoveryRun.completed_at)).where(DiscoveryRun.status == RunStatus.FAILED)
    )
    last_failure = last_failure_result.scalar()

    avg_duration_result = await db.execute(
        select(func.avg(DiscoveryRun.duration_seconds)).where(
            DiscoveryRun.duration_seconds.isnot(None)
        )
    )
    avg_duration = avg_duration_result.scalar()

    # ========== Recent runs ==========

    recent_result = await db.execute(
        select(DiscoveryRun).order_by(DiscoveryRun.started_at.desc()).limit(limit)
    )
    recent_runs = [RunSummary.model_validate(run) for run in recent_result.scalars().all()]

    logger.info(f"[{request_id}] Stats: {total_runs} runs, {notified} notifications")

    return StatsResponse(
        total_runs=total_runs,
        successful_runs=by_status.get(RunStatus.SUCCESS, 0),
        partial_runs=by_status.get(RunStatus.PARTIAL, 0),
        failed_runs=by_status.get(RunStatus.FAILED, 0),
        total_changes=changes,
        total_relevant=relevant,
        total_notified=notified,
        total_unprocessable=unprocessable,
        total_staging_failures=staging_failures,
        pending_deferred_versions=pending,
        last_success_at=last_success,
        last_failure_at=last_failure,
        avg_run_duration_seconds=round(avg_duration, 2) if avg_duration else None,
        recent_runs=recent_runs,
    )
