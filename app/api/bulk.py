from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, field_validator

from app.core.auth import verify_credentials
from app.core.bulk_sync import BulkJobAlreadyRunning, BulkJobRunner, bulk_runner


router = APIRouter(prefix="/api/bulk-sync", tags=["bulk-sync"])


def get_bulk_runner() -> BulkJobRunner:
    """Dependency for the process-wide bulk job runner."""
    return bulk_runner


class BulkSyncRequest(BaseModel):
    issue_keys: Optional[List[str]] = None
    update_existing: bool = False
    sync_missing_data: bool = False

    @field_validator('issue_keys')
    @classmethod
    def validate_issue_keys(cls, v):
        """Normalize keys; an empty list means every issue."""
        if v is None:
            return None
        keys = [key.strip().upper() for key in v if key and key.strip()]
        return keys or None


@router.post("", status_code=202)
async def start_bulk_sync(
    request: BulkSyncRequest,
    runner: BulkJobRunner = Depends(get_bulk_runner),
    _: str = Depends(verify_credentials)
):
    """
    Start a bulk sync in the background.

    Poll ``GET /api/bulk-sync`` for progress. Returns 409 while a job is
    already running.
    """
    try:
        return await runner.start(
            issue_keys=request.issue_keys,
            update_existing=request.update_existing,
            sync_missing_data=request.sync_missing_data,
        )
    except BulkJobAlreadyRunning as e:
        raise HTTPException(status_code=409, detail=str(e))


@router.get("")
async def get_bulk_sync_status(
    runner: BulkJobRunner = Depends(get_bulk_runner),
    _: str = Depends(verify_credentials)
):
    """Return the bulk job slot."""
    return await runner.poll()


@router.post("/cancel")
async def cancel_bulk_sync(
    runner: BulkJobRunner = Depends(get_bulk_runner),
    _: str = Depends(verify_credentials)
):
    """Request cancellation; the job stops before its next issue."""
    return await runner.cancel()
