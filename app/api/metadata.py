"""
Tracker metadata lookups used when filling in translation tables.

Every route takes the tracker side (``local`` or ``remote``) as its first
path segment and proxies a read-only call to that tracker.
"""

import logging
from contextlib import asynccontextmanager
from enum import Enum
from typing import AsyncIterator, List

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel

from app.core.auth import verify_credentials
from app.core.kv_store import SqlKeyValueStore
from app.core.services import TrackerFactory, get_kv_store, get_tracker_factory
from app.core.stats import StatsStore
from app.core.sync_config import ConfigStore
from app.core.tracker_client import TrackerApiError, TrackerClient


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/metadata", tags=["metadata"])


class TrackerSide(str, Enum):
    local = "local"
    remote = "remote"


class ProjectItem(BaseModel):
    key: str
    name: str
    id: str


class NamedItem(BaseModel):
    id: str
    name: str


class UserItem(BaseModel):
    account_id: str
    display_name: str
    email_address: str = ""


@asynccontextmanager
async def _open_client(
    side: TrackerSide,
    kv: SqlKeyValueStore,
    factory: TrackerFactory,
) -> AsyncIterator[TrackerClient]:
    stats = StatsStore(kv)
    if side == TrackerSide.local:
        client = factory.local(stats)
    else:
        config = await ConfigStore(kv).get_sync_config()
        if not config.is_configured:
            raise HTTPException(status_code=400, detail="Remote tracker connection is not configured")
        client = factory.remote(config, stats)
    try:
        yield client
    except TrackerApiError as e:
        logger.warning(f"Metadata lookup on {side.value} tracker failed: {e}")
        status_code = 404 if e.is_not_found else 502
        raise HTTPException(status_code=status_code, detail=f"{side.value} tracker error: {str(e)}")
    finally:
        await client.close()


@router.get("/{side}/projects", response_model=List[ProjectItem])
async def list_projects(
    side: TrackerSide,
    kv: SqlKeyValueStore = Depends(get_kv_store),
    factory: TrackerFactory = Depends(get_tracker_factory),
    _: str = Depends(verify_credentials)
):
    """List the projects visible to the configured account."""
    async with _open_client(side, kv, factory) as client:
        projects = await client.get_projects()
    return [
        ProjectItem(key=p["key"], name=p.get("name") or p["key"], id=str(p.get("id", "")))
        for p in projects
        if p.get("key")
    ]


@router.get("/{side}/statuses/{project_key}", response_model=List[NamedItem])
async def list_statuses(
    side: TrackerSide,
    project_key: str,
    kv: SqlKeyValueStore = Depends(get_kv_store),
    factory: TrackerFactory = Depends(get_tracker_factory),
    _: str = Depends(verify_credentials)
):
    """Distinct workflow statuses of a project."""
    async with _open_client(side, kv, factory) as client:
        statuses = await client.get_project_statuses(project_key.upper())
    return [NamedItem(id=s["id"], name=s.get("name") or "") for s in statuses]


@router.get("/{side}/fields", response_model=List[NamedItem])
async def list_custom_fields(
    side: TrackerSide,
    kv: SqlKeyValueStore = Depends(get_kv_store),
    factory: TrackerFactory = Depends(get_tracker_factory),
    _: str = Depends(verify_credentials)
):
    """Custom fields only; system fields never need a translation."""
    async with _open_client(side, kv, factory) as client:
        fields = await client.get_fields()
    return [NamedItem(id=f["id"], name=f.get("name") or f["id"]) for f in fields if f.get("custom")]


@router.get("/{side}/users", response_model=List[UserItem])
async def search_users(
    side: TrackerSide,
    query: str = Query("", description="Name or email fragment"),
    limit: int = Query(50, ge=1, le=1000),
    kv: SqlKeyValueStore = Depends(get_kv_store),
    factory: TrackerFactory = Depends(get_tracker_factory),
    _: str = Depends(verify_credentials)
):
    """
    Active human accounts matching ``query``.

    App and bot accounts are filtered out.
    """
    async with _open_client(side, kv, factory) as client:
        users = await client.search_users(query, max_results=limit)
    return [
        UserItem(
            account_id=u["accountId"],
            display_name=u.get("displayName") or "",
            email_address=u.get("emailAddress") or "",
        )
        for u in users
        if u.get("accountId")
        and u.get("active", True)
        and u.get("accountType", "atlassian") == "atlassian"
    ]
