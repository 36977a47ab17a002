"""
Package canary status endpoint
"""

from fastapi import APIRouter, Depends, HTTPException
from core.exceptions import CanaryError
from discovery.canary import CanaryStateStore
from discovery.factory import build_canary_state_store
from schemas.api import CanaryStatusResponse
import logging

logger = logging.getLogger(__name__)
router = APIRouter(tags=["Canary"])


def get_state_store() -> CanaryStateStore:
    try:
        return build_canary_state_store()
    except ValueError as e:
        raise HTTPException(status_code=503, detail=str(e))


@router.get("/canary", response_model=CanaryStatusResponse)
async def canary_status(store: CanaryStateStore = Depends(get_state_store)):
    """Last persisted state of the package canary"""
    try:
        state = await store.load()
    except CanaryError as e:
        logger.error(f"Failed to read canary state: {e}")
        raise HTTPException(status_code=502, detail=e.message)

    dwell = state.dwell_time
    to_catalog = state.time_to_catalog
    return CanaryStatusResponse(
        package_name=state.package_name,
        version=state.version,
        phase=state.phase,
        retired_version=state.retired_version,
        published_at=state.published_at,
        dwell_time_seconds=dwell.total_seconds() if dwell is not None else None,
        time_to_catalog_seconds=to_catalog.total_seconds() if to_catalog is not None else None,
        estimated_replica_lag_seconds=state.estimated_replica_lag_seconds,
        updated_at=state.updated_at,
    )
