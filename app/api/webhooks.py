"""
Webhook receivers.

``/api/webhooks/remote`` takes remote tracker events (bidirectional sync
only) authenticated by the shared secret in the query string.
``/api/events/local`` takes the local tracker's own issue, comment and link
events.
"""

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from app.core.api_rate_limiter import limiter, WEBHOOK_RATE_LIMIT
from app.core.auth import verify_local_webhook_secret
from app.core.inbound_sync import WebhookRejected, verify_webhook_secret
from app.core.logging_utils import sanitize_for_logging
from app.core.kv_store import SqlKeyValueStore
from app.core.services import (
    TrackerFactory,
    get_kv_store,
    get_tracker_factory,
    open_inbound_handler,
    open_sync_engine,
)
from app.core.sync_config import ConfigStore


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["webhooks"])


async def _read_json(request: Request) -> Dict[str, Any]:
    try:
        body = await request.json()
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid JSON body")
    if not isinstance(body, dict):
        raise HTTPException(status_code=400, detail="Invalid JSON body")
    return body


@router.get("/webhooks/remote")
async def remote_webhook_status():
    """Browser check for the remote webhook URL."""
    return {"message": "Sync Connector webhook is active. Please use POST for events."}


@router.post("/webhooks/remote")
@limiter.limit(WEBHOOK_RATE_LIMIT)
async def receive_remote_webhook(
    request: Request,
    secret: Optional[str] = Query(None),
    kv: SqlKeyValueStore = Depends(get_kv_store),
    factory: TrackerFactory = Depends(get_tracker_factory),
):
    """
    Apply a remote tracker event to the local tracker.

    Responses:
    - 401: missing or wrong secret
    - 403: bidirectional sync is disabled
    - 400: invalid JSON or no issue in the payload
    - 500: processing failed
    """
    config = await ConfigStore(kv).get_sync_config()
    try:
        verify_webhook_secret(secret, config.webhook_secret)
    except WebhookRejected as e:
        raise HTTPException(status_code=e.status_code, detail=e.detail)

    payload = await _read_json(request)

    try:
        async with open_inbound_handler(kv, factory) as handler:
            return await handler.process(payload, secret)
    except WebhookRejected as e:
        raise HTTPException(status_code=e.status_code, detail=e.detail)
    except Exception as e:
        logger.error(f"Error processing incoming webhook: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=f"Failed to process webhook: {str(e)}")


@router.post("/events/local")
@limiter.limit(WEBHOOK_RATE_LIMIT)
async def receive_local_event(
    request: Request,
    kv: SqlKeyValueStore = Depends(get_kv_store),
    factory: TrackerFactory = Depends(get_tracker_factory),
    _: None = Depends(verify_local_webhook_secret),
):
    """Propagate a local tracker event to the remote tracker."""
    payload = await _read_json(request)
    event_type = payload.get("webhookEvent")
    logger.info(
        f"Local event received: {sanitize_for_logging(event_type, max_length=100)} "
        f"({sanitize_for_logging((payload.get('issue') or {}).get('key'), max_length=50)})"
    )

    try:
        async with open_sync_engine(kv, factory) as engine:
            result = await engine.handle_local_event(payload)
    except Exception as e:
        logger.error(f"Error processing local event {event_type}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=f"Failed to process event: {str(e)}")

    if result is None:
        return {"message": "Ignored", "event": event_type}
    return {"message": "Processed", "event": event_type, "result": result.to_dict()}
