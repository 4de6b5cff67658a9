from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel

from app.core.api_rate_limiter import limiter, SYNC_RATE_LIMIT
from app.core.auth import verify_credentials
from app.core.issue_sync import EVENT_MANUAL, SKIP_ISSUE_NOT_FOUND
from app.core.kv_store import SqlKeyValueStore
from app.core.link_sync import retry_pending_links
from app.core.mapping_store import MappingStore
from app.core.scheduled_sync import ReconciliationScanner
from app.core.services import TrackerFactory, get_kv_store, get_tracker_factory, open_sync_engine
from app.core.sync_config import ConfigStore, SyncConfigurationError


router = APIRouter(prefix="/api/sync", tags=["sync"])


class IssueMappingResponse(BaseModel):
    local_key: str
    remote_key: str
    created_by_counterpart: bool
    pending_links: List[Dict[str, Any]]


async def _require_configured(kv: SqlKeyValueStore) -> None:
    config = await ConfigStore(kv).get_sync_config()
    try:
        config.require_configured()
    except SyncConfigurationError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.post("/issues/{issue_key}")
@limiter.limit(SYNC_RATE_LIMIT)
async def force_sync_issue(
    request: Request,
    issue_key: str,
    kv: SqlKeyValueStore = Depends(get_kv_store),
    factory: TrackerFactory = Depends(get_tracker_factory),
    _: str = Depends(verify_credentials)
):
    """
    Sync one local issue now.

    Runs the same path as a tracker event, loop guard included, and returns
    the SyncResult summary.
    """
    await _require_configured(kv)
    async with open_sync_engine(kv, factory) as engine:
        result = await engine.sync_issue(issue_key.upper(), EVENT_MANUAL)

    if result.skip_reason == SKIP_ISSUE_NOT_FOUND:
        raise HTTPException(status_code=404, detail=f"Issue {issue_key} not found")
    return result.to_dict()


@router.post("/pending-links/retry")
async def retry_links(
    kv: SqlKeyValueStore = Depends(get_kv_store),
    factory: TrackerFactory = Depends(get_tracker_factory),
    _: str = Depends(verify_credentials)
):
    """Retry parked links whose other end now has a remote counterpart."""
    await _require_configured(kv)
    async with open_sync_engine(kv, factory) as engine:
        return await retry_pending_links(engine.remote, engine.mappings, engine.retry)


@router.post("/scheduled/run")
async def run_scheduled_sync(
    kv: SqlKeyValueStore = Depends(get_kv_store),
    factory: TrackerFactory = Depends(get_tracker_factory),
    _: str = Depends(verify_credentials)
):
    """
    Run a reconciliation pass now, regardless of the schedule.

    The request returns once the pass is complete.
    """
    await _require_configured(kv)
    scheduled = await ConfigStore(kv).get_scheduled_config()
    async with open_sync_engine(kv, factory) as engine:
        return await ReconciliationScanner(engine, scheduled).run()


@router.get("/mappings", response_model=List[Dict[str, str]])
async def list_mappings(
    kv: SqlKeyValueStore = Depends(get_kv_store),
    _: str = Depends(verify_credentials)
):
    """List every local/remote issue mapping."""
    return await MappingStore(kv).list_mappings()


@router.get("/mappings/{issue_key}", response_model=IssueMappingResponse)
async def get_mapping(
    issue_key: str,
    kv: SqlKeyValueStore = Depends(get_kv_store),
    _: str = Depends(verify_credentials)
):
    """Look up the remote counterpart and bookkeeping of a local issue."""
    mappings = MappingStore(kv)
    local_key = issue_key.upper()
    remote_key: Optional[str] = await mappings.get_remote_key(local_key)
    if not remote_key:
        raise HTTPException(status_code=404, detail=f"Issue {local_key} is not synced")

    return IssueMappingResponse(
        local_key=local_key,
        remote_key=remote_key,
        created_by_counterpart=await mappings.get_counterpart_origin(local_key) is not None,
        pending_links=await mappings.get_pending_links(local_key),
    )
