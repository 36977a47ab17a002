"""
Health check endpoint with database and discovery status
"""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, text
from api.dependencies import get_db
from core.config import settings
from schemas.api import HealthCheckResponse, MarkerInfo, RunSummary
from models.checkpoint import DiscoveryMarker
from models.discovery_run import DiscoveryRun
import logging

logger = logging.getLogger(__name__)
router = APIRouter(tags=["Health"])


@router.get("/health", response_model=HealthCheckResponse)
async def health_check(db: AsyncSession = Depends(get_db)):
    """
    Health check endpoint.

    Returns:
    - Database connectivity status
    - Persisted marker of the configured feed
    - Outcome of the most recent discovery run
    """
    db_connected = False
    try:
        await db.execute(text("SELECT 1"))
        db_connected = True
    except Exception as e:
        logger.error(f"Database connection failed: {str(e)}")

    marker = None
    last_run = None

    if db_connected:
        try:
            result = await db.execute(
                select(DiscoveryMarker).where(DiscoveryMarker.feed_name == settings.FEED_NAME)
            )
            row = result.scalar_one_or_none()
            if row is not None:
                marker = MarkerInfo.model_validate(row)

            result = await db.execute(
                select(DiscoveryRun)
                .where(DiscoveryRun.feed_name == settings.FEED_NAME)
                .order_by(DiscoveryRun.started_at.desc())
                .limit(1)
            )
            run = result.scalar_one_or_none()
            if run is not None:
                last_run = RunSummary.model_validate(run)
        except Exception as e:
            logger.error(f"Failed to fetch discovery status: {str(e)}")

    return HealthCheckResponse(
        database_connected=db_connected,
        marker=marker,
        last_run=last_run,
    )
