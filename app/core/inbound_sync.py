"""
Remote-to-local sync driven by the remote tracker's webhooks.

Only active when the stored configuration is bidirectional. Remote writes
echoed back by the remote webhook are suppressed by the sync flag the
outbound engine sets on the local key.
"""

import hmac
import logging
from typing import Any, Dict, Optional

from app.core.adf import description_to_document, from_plain_text
from app.core.kv_store import SqlKeyValueStore
from app.core.logging_utils import sanitize_for_logging
from app.core.loop_guard import LoopGuard
from app.core.mapping_store import MappingStore
from app.core.rate_limiter import RetryExecutor
from app.core.stats import (
    StatsStore,
    SYNC_CREATE,
    SYNC_DELETE,
    SYNC_LOOP_PREVENTED,
    SYNC_UPDATE,
)
from app.core.sync_config import SyncConfig
from app.core.tracker_client import TrackerClient
from app.core.translation import TranslationTable


logger = logging.getLogger(__name__)

EVENT_ISSUE_CREATED = "jira:issue_created"
EVENT_ISSUE_UPDATED = "jira:issue_updated"
EVENT_ISSUE_DELETED = "jira:issue_deleted"

INBOUND_ISSUE_TYPE = "Task"


class WebhookRejected(Exception):
    """The webhook request is refused before any processing."""

    def __init__(self, status_code: int, detail: str):
        super().__init__(detail)
        self.status_code = status_code
        self.detail = detail


def verify_webhook_secret(provided: Optional[str], expected: str) -> None:
    """Constant-time comparison; raises WebhookRejected(401) on mismatch."""
    if not provided:
        raise WebhookRejected(401, "Missing secret")
    if not expected or not hmac.compare_digest(provided.encode(), expected.encode()):
        logger.warning(f"Incoming webhook with invalid secret (received {len(provided)} characters)")
        raise WebhookRejected(401, "Invalid secret")


class InboundSyncHandler:
    """Apply remote issue events to the local tracker."""

    def __init__(
        self,
        local: TrackerClient,
        kv: SqlKeyValueStore,
        config: SyncConfig,
        user_table: Optional[TranslationTable] = None,
        retry: Optional[RetryExecutor] = None,
    ):
        self.local = local
        self.config = config
        self.user_table = user_table or TranslationTable()
        self.mappings = MappingStore(kv)
        self.guard = LoopGuard(kv, self.mappings)
        self.stats = StatsStore(kv)
        self.retry = retry or RetryExecutor()

    async def process(self, payload: Dict[str, Any], secret: Optional[str]) -> Dict[str, Any]:
        """
        Validate and route one remote webhook payload.

        Raises:
            WebhookRejected: bad secret (401), one-way configuration (403)
                or a payload without an issue (400)
        """
        verify_webhook_secret(secret, self.config.webhook_secret)

        if not self.config.is_bidirectional:
            logger.warning("Incoming webhook while bidirectional sync is disabled")
            raise WebhookRejected(403, "Bidirectional sync not enabled")

        issue = payload.get("issue")
        if not issue or not issue.get("key"):
            raise WebhookRejected(400, "No issue in payload")

        event_type = payload.get("webhookEvent")
        if event_type == EVENT_ISSUE_CREATED:
            await self.handle_created(issue)
        elif event_type == EVENT_ISSUE_UPDATED:
            await self.handle_updated(issue)
        elif event_type == EVENT_ISSUE_DELETED:
            await self.handle_deleted(issue)
        else:
            logger.info(f"Ignoring remote event: {sanitize_for_logging(event_type, max_length=100)}")
            return {"message": "Ignored", "event": event_type}

        return {"message": "Processed", "event": event_type}

    async def handle_created(self, remote_issue: Dict[str, Any]) -> Optional[str]:
        """Create the local counterpart of a new remote issue. Returns the local key."""
        remote_key = remote_issue["key"]
        logger.info(f"Received remote issue create: {remote_key}")

        existing = await self.mappings.get_local_key(remote_key)
        if existing:
            logger.info(f"Issue {remote_key} already mapped to {existing}. Treating as update.")
            await self.handle_updated(remote_issue)
            return existing

        if not self.config.allowed_projects:
            raise ValueError("No allowed local project configured for inbound issues")
        target_project = self.config.allowed_projects[0]

        fields = remote_issue.get("fields", {})
        payload = {
            "project": {"key": target_project},
            "summary": fields.get("summary") or remote_key,
            "description": description_to_document(fields.get("description")),
            "issuetype": {"name": INBOUND_ISSUE_TYPE},
        }
        created = await self.retry.execute(
            lambda: self.local.create_issue(payload),
            f"Create local issue from {remote_key}",
        )
        local_key = created.key
        logger.info(f"Created local issue {local_key} from remote {remote_key}")

        await self.mappings.store_mapping(local_key, remote_key)
        await self.mappings.mark_created_by_counterpart(local_key, remote_key)

        back_link = from_plain_text(f"Synced from remote issue: {self.config.remote_url}/browse/{remote_key}")
        try:
            await self.local.add_comment(local_key, back_link)
        except Exception as e:
            logger.warning(f"Could not add back-link comment to {local_key}: {e}")

        await self.stats.record_sync(SYNC_CREATE, True, issue_key=local_key, details={"remoteKey": remote_key})
        await self.stats.log_audit_entry("inbound-create", remote_key, local_key, True)
        return local_key

    async def handle_updated(self, remote_issue: Dict[str, Any]) -> bool:
        """Apply a remote update. Returns False when skipped."""
        remote_key = remote_issue["key"]
        local_key = await self.mappings.get_local_key(remote_key)
        if not local_key:
            logger.info(f"Remote issue {remote_key} not mapped. Ignoring update.")
            return False

        if await self.guard.is_syncing(local_key):
            logger.info(f"Loop detected: {local_key} is already syncing. Skipping.")
            await self.stats.record_sync(
                SYNC_LOOP_PREVENTED,
                False,
                issue_key=local_key,
                details={"remoteKey": remote_key, "reason": "sync flag set"},
            )
            return False

        fields = remote_issue.get("fields", {})
        payload: Dict[str, Any] = {}
        if "summary" in fields:
            payload["summary"] = fields.get("summary") or ""
        if "description" in fields:
            payload["description"] = description_to_document(fields.get("description"))
        if "assignee" in fields:
            remote_account = (fields.get("assignee") or {}).get("accountId")
            if not remote_account:
                payload["assignee"] = None
            else:
                local_account = self.user_table.to_inbound(remote_account)
                if local_account:
                    payload["assignee"] = {"accountId": local_account}

        if not payload:
            logger.info(f"No fields to update for {local_key}")
            return False

        await self.guard.mark_syncing(local_key)
        await self.retry.execute(
            lambda: self.local.update_issue(local_key, payload),
            f"Update local issue {local_key}",
        )
        logger.info(f"Updated local issue {local_key} from {remote_key}")
        await self.stats.record_sync(SYNC_UPDATE, True, issue_key=local_key, details={"remoteKey": remote_key})
        await self.stats.log_audit_entry("inbound-update", remote_key, local_key, True)
        return True

    async def handle_deleted(self, remote_issue: Dict[str, Any]) -> bool:
        """Delete the local counterpart of a deleted remote issue."""
        remote_key = remote_issue["key"]
        local_key = await self.mappings.get_local_key(remote_key)
        if not local_key:
            return False

        logger.info(f"Remote issue {remote_key} deleted. Deleting local {local_key}")
        await self.guard.mark_syncing(local_key)
        deleted = await self.retry.execute(
            lambda: self.local.delete_issue(local_key),
            f"Delete local issue {local_key}",
        )
        if not deleted:
            logger.info(f"Local issue {local_key} was already gone")

        await self.mappings.cleanup_issue_data(local_key, remote_key)
        # cleanup removed the flag; keep it so the local delete event is not echoed
        await self.guard.mark_syncing(local_key)
        await self.stats.record_sync(SYNC_DELETE, True, issue_key=local_key, details={"remoteKey": remote_key})
        await self.stats.log_audit_entry("inbound-delete", remote_key, local_key, True)
        return True
