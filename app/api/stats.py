from fastapi import APIRouter, Depends, Query

from app.core.auth import verify_credentials
from app.core.kv_store import SqlKeyValueStore
from app.core.mapping_store import MappingStore
from app.core.services import get_kv_store
from app.core.stats import StatsStore


router = APIRouter(prefix="/api/stats", tags=["stats"])


@router.get("")
async def get_stats(
    kv: SqlKeyValueStore = Depends(get_kv_store),
    _: str = Depends(verify_credentials)
):
    """
    Return every statistics record.

    - webhook: event-driven sync counters and recent errors
    - scheduled: the last reconciliation pass
    - api_usage: tracker API call counters with quota estimates
    - pending_link_issues: issues that still have parked links
    """
    stats = StatsStore(kv)
    return {
        "webhook": await stats.get_sync_stats(),
        "scheduled": await stats.get_scheduled_stats(),
        "api_usage": await stats.get_api_usage(),
        "pending_link_issues": await MappingStore(kv).issues_with_pending_links(),
    }


@router.get("/audit")
async def get_audit_log(
    limit: int = Query(50, ge=1, le=500),
    kv: SqlKeyValueStore = Depends(get_kv_store),
    _: str = Depends(verify_credentials)
):
    """Return the newest audit log entries first."""
    return await StatsStore(kv).get_audit_log(limit)


@router.post("/api-usage/reset")
async def reset_api_usage(
    kv: SqlKeyValueStore = Depends(get_kv_store),
    _: str = Depends(verify_credentials)
):
    """Clear the tracker API usage counters."""
    stats = StatsStore(kv)
    await stats.reset_api_usage()
    return await stats.get_api_usage()


@router.delete("/audit")
async def clear_audit_log(
    kv: SqlKeyValueStore = Depends(get_kv_store),
    _: str = Depends(verify_credentials)
):
    """Delete every audit log entry."""
    await StatsStore(kv).clear_audit_log()
    return {"message": "Audit log cleared"}


@router.delete("/webhook/errors")
async def clear_webhook_errors(
    kv: SqlKeyValueStore = Depends(get_kv_store),
    _: str = Depends(verify_credentials)
):
    """Clear the error list of the event-driven sync statistics."""
    await StatsStore(kv).clear_sync_errors()
    return {"message": "Webhook errors cleared"}


@router.delete("/scheduled/errors")
async def clear_scheduled_errors(
    kv: SqlKeyValueStore = Depends(get_kv_store),
    _: str = Depends(verify_credentials)
):
    """Clear the error list of the last reconciliation pass."""
    await StatsStore(kv).clear_scheduled_errors()
    return {"message": "Scheduled sync errors cleared"}
