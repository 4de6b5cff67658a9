from typing import List, Literal, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, ValidationError

from app.core.auth import verify_credentials
from app.core.kv_store import SqlKeyValueStore
from app.core.services import get_kv_store
from app.core.sync_config import ConfigStore, ScheduledSyncConfig, SyncConfig, SyncOptions


router = APIRouter(prefix="/api/config", tags=["config"])


class SyncConfigUpdate(BaseModel):
    """Partial update; omitted fields keep their stored value."""
    remote_url: Optional[str] = None
    remote_email: Optional[str] = None
    remote_api_token: Optional[str] = None
    remote_project_key: Optional[str] = None
    allowed_projects: Optional[List[str]] = None
    sync_direction: Optional[Literal["one-way", "bidirectional"]] = None
    webhook_secret: Optional[str] = None


class SyncConfigResponse(BaseModel):
    remote_url: str
    remote_email: str
    remote_project_key: str
    allowed_projects: List[str]
    sync_direction: str
    has_api_token: bool
    has_webhook_secret: bool
    is_configured: bool


def _to_response(config: SyncConfig) -> SyncConfigResponse:
    return SyncConfigResponse(
        remote_url=config.remote_url,
        remote_email=config.remote_email,
        remote_project_key=config.remote_project_key,
        allowed_projects=config.allowed_projects,
        sync_direction=config.sync_direction,
        has_api_token=bool(config.remote_api_token),
        has_webhook_secret=bool(config.webhook_secret),
        is_configured=config.is_configured,
    )


def _validation_detail(e: ValidationError) -> str:
    return "; ".join(error["msg"] for error in e.errors())


@router.get("", response_model=SyncConfigResponse)
async def get_config(
    kv: SqlKeyValueStore = Depends(get_kv_store),
    _: str = Depends(verify_credentials)
):
    """Return the remote connection settings. Secrets are reported only as present or absent."""
    return _to_response(await ConfigStore(kv).get_sync_config())


@router.put("", response_model=SyncConfigResponse)
async def update_config(
    update: SyncConfigUpdate,
    kv: SqlKeyValueStore = Depends(get_kv_store),
    _: str = Depends(verify_credentials)
):
    """
    Update the remote connection settings.

    An omitted or empty ``remote_api_token`` keeps the stored token.
    """
    store = ConfigStore(kv)
    current = await store.get_sync_config()

    changes = update.model_dump(exclude_unset=True)
    if not changes.get("remote_api_token"):
        changes.pop("remote_api_token", None)

    try:
        config = SyncConfig.model_validate({**current.model_dump(), **changes})
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=_validation_detail(e))

    await store.save_sync_config(config)
    return _to_response(config)


@router.get("/options", response_model=SyncOptions)
async def get_options(
    kv: SqlKeyValueStore = Depends(get_kv_store),
    _: str = Depends(verify_credentials)
):
    """Return the per-feature sync switches."""
    return await ConfigStore(kv).get_sync_options()


@router.put("/options", response_model=SyncOptions)
async def update_options(
    options: SyncOptions,
    kv: SqlKeyValueStore = Depends(get_kv_store),
    _: str = Depends(verify_credentials)
):
    """Replace the per-feature sync switches."""
    await ConfigStore(kv).save_sync_options(options)
    return options


@router.get("/scheduled", response_model=ScheduledSyncConfig)
async def get_scheduled(
    kv: SqlKeyValueStore = Depends(get_kv_store),
    _: str = Depends(verify_credentials)
):
    """Return the reconciliation schedule."""
    return await ConfigStore(kv).get_scheduled_config()


@router.put("/scheduled", response_model=ScheduledSyncConfig)
async def update_scheduled(
    scheduled: ScheduledSyncConfig,
    kv: SqlKeyValueStore = Depends(get_kv_store),
    _: str = Depends(verify_credentials)
):
    """Replace the reconciliation schedule."""
    await ConfigStore(kv).save_scheduled_config(scheduled)
    return scheduled
