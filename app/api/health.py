"""Health check API for monitoring system status."""

import logging
import time
from datetime import datetime
from importlib.metadata import version, PackageNotFoundError
from typing import List, Optional
from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from app.core.auth import verify_credentials
from app.core.kv_store import SqlKeyValueStore
from app.core.services import TrackerFactory, get_kv_store, get_tracker_factory
from app.core.stats import StatsStore
from app.core.sync_config import ConfigStore
from app.core.sync_scheduler import scheduler

try:
    __version__ = version("sync-connector")
except PackageNotFoundError:
    __version__ = "0.1.0"


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/health", tags=["health"])

HEALTH_PROBE_KEY = "health:probe"


class ComponentHealth(BaseModel):
    """Health status of a single component."""
    name: str
    status: str  # "healthy", "degraded", "unhealthy"
    message: Optional[str] = None
    latency_ms: Optional[float] = None


class HealthResponse(BaseModel):
    """Complete health check response."""
    status: str  # "healthy", "degraded", "unhealthy"
    timestamp: str
    version: str
    components: List[ComponentHealth]


class QuickHealthResponse(BaseModel):
    """Quick health check for load balancers."""
    status: str
    timestamp: str


@router.get("/quick", response_model=QuickHealthResponse)
async def quick_health():
    """
    Quick health check for load balancers and uptime monitors.

    Returns immediately without checking external dependencies.
    """
    return QuickHealthResponse(
        status="healthy",
        timestamp=datetime.utcnow().isoformat()
    )


@router.get("", response_model=HealthResponse)
async def detailed_health(
    check_trackers: bool = Query(
        False,
        description="Whether to check local and remote tracker connectivity (slower)"
    ),
    kv: SqlKeyValueStore = Depends(get_kv_store),
    factory: TrackerFactory = Depends(get_tracker_factory),
    _: str = Depends(verify_credentials)
):
    """
    Detailed health check with component status.

    Returns health status of:
    - Key-value store connectivity
    - Sync configuration completeness
    - Recent sync errors
    - Optionally: tracker connectivity
    """
    components: List[ComponentHealth] = [await _check_store(kv)]

    config = await ConfigStore(kv).get_sync_config()
    if config.is_configured:
        components.append(ComponentHealth(
            name="configuration",
            status="healthy",
            message=f"Syncing to {config.remote_project_key} ({config.sync_direction})"
        ))
    else:
        components.append(ComponentHealth(
            name="configuration",
            status="degraded",
            message="Remote tracker connection is not configured"
        ))

    webhook_stats = await StatsStore(kv).get_sync_stats()
    errors = len(webhook_stats.get("errors", []))
    components.append(ComponentHealth(
        name="sync",
        status="degraded" if errors else "healthy",
        message=f"{webhook_stats.get('totalSyncs', 0)} syncs, {errors} recent error(s)"
    ))

    components.append(ComponentHealth(
        name="scheduler",
        status="healthy" if scheduler.running else "degraded",
        message="running" if scheduler.running else "not running"
    ))

    if check_trackers and config.is_configured:
        stats = StatsStore(kv)
        components.append(await _check_tracker("local_tracker", factory.local(stats)))
        components.append(await _check_tracker("remote_tracker", factory.remote(config, stats)))

    statuses = {component.status for component in components}
    if "unhealthy" in statuses:
        overall_status = "unhealthy"
    elif "degraded" in statuses:
        overall_status = "degraded"
    else:
        overall_status = "healthy"

    return HealthResponse(
        status=overall_status,
        timestamp=datetime.utcnow().isoformat(),
        version=__version__,
        components=components,
    )


async def _check_store(kv: SqlKeyValueStore) -> ComponentHealth:
    """Check key-value store connectivity with a short-lived write."""
    start = time.perf_counter()
    try:
        await kv.set(HEALTH_PROBE_KEY, datetime.utcnow().isoformat(), ttl_seconds=60)
        await kv.get(HEALTH_PROBE_KEY)
        latency = (time.perf_counter() - start) * 1000
        return ComponentHealth(
            name="database",
            status="healthy",
            message="Connected",
            latency_ms=round(latency, 2)
        )
    except Exception as e:
        return ComponentHealth(
            name="database",
            status="unhealthy",
            message=f"Connection failed: {str(e)}"
        )


async def _check_tracker(name: str, client) -> ComponentHealth:
    start = time.perf_counter()
    try:
        async with client:
            info = await client.get_server_info()
        latency = (time.perf_counter() - start) * 1000
        return ComponentHealth(
            name=name,
            status="healthy",
            message=info.get("serverTitle") or info.get("baseUrl") or "reachable",
            latency_ms=round(latency, 2)
        )
    except Exception as e:
        logger.warning(f"Health check for {name} failed: {e}")
        return ComponentHealth(
            name=name,
            status="degraded",
            message=str(e)[:200]
        )
