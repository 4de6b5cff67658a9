"""
Bulk job runner.

Pushes every issue of the allowed projects (or an explicit key list)
through the sync engine as a background task. Progress is published to the
``bulkSyncStatus`` slot in the key-value store, which is also where clients
poll it and request cancellation.
"""

import asyncio
import logging
import time
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from app.config import settings
from app.core.issue_sync import IssueSyncEngine
from app.core.kv_store import SqlKeyValueStore
from app.core.rate_limiter import BatchOperationTracker, throttle
from app.core.services import (
    TrackerFactory,
    default_kv_store,
    default_tracker_factory,
    open_sync_engine,
)
from app.core.sync_result import SyncResult
from app.core.stats import SYNC_CREATE, SYNC_UPDATE
from app.core.attachment_sync import sync_attachments
from app.core.link_sync import sync_issue_links
from app.core.comment_sync import sync_all_comments


logger = logging.getLogger(__name__)

BULK_STATUS_KEY = "bulkSyncStatus"

STATUS_IDLE = "idle"
STATUS_RUNNING = "running"
STATUS_COMPLETE = "complete"
STATUS_CANCELLED = "cancelled"
STATUS_ERROR = "error"

OUTCOME_CREATED = "created"
OUTCOME_UPDATED = "updated"
OUTCOME_ALREADY_SYNCED = "alreadySynced"
OUTCOME_RECREATED = "recreated"


class BulkJobAlreadyRunning(Exception):
    """A bulk job is already in progress."""
    pass


class CancellationToken:
    """Cooperative cancellation flag checked between issues."""

    def __init__(self):
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


def _empty_results() -> Dict[str, Any]:
    return {
        "scanned": 0,
        "created": 0,
        "updated": 0,
        "alreadySynced": 0,
        "recreated": 0,
        "errors": 0,
        "elapsedSeconds": 0,
        "stoppedEarly": False,
    }


def _escape_jql_text(text: str) -> str:
    return text.replace("\\", "\\\\").replace('"', '\\"')


class BulkJobRunner:
    """Single-slot background bulk sync."""

    def __init__(
        self,
        kv: Optional[SqlKeyValueStore] = None,
        factory: Optional[TrackerFactory] = None,
        delay_ms: Optional[int] = None,
    ):
        self.kv = kv or default_kv_store
        self.factory = factory or default_tracker_factory
        self.delay_ms = settings.bulk_sync_delay_ms if delay_ms is None else delay_ms
        self.task: Optional[asyncio.Task] = None
        self.token: Optional[CancellationToken] = None

    # ---------------------------------------------------------------------
    # Slot
    # ---------------------------------------------------------------------

    async def poll(self) -> Dict[str, Any]:
        """Current contents of the job slot."""
        return await self.kv.get(BULK_STATUS_KEY) or {"status": STATUS_IDLE}

    async def _save(self, **changes: Any) -> Dict[str, Any]:
        slot = await self.poll()
        slot.update(changes)
        slot["updatedAt"] = datetime.utcnow().isoformat()
        await self.kv.set(BULK_STATUS_KEY, slot)
        return slot

    @property
    def is_running(self) -> bool:
        return self.task is not None and not self.task.done()

    @staticmethod
    def _is_stale(slot: Dict[str, Any]) -> bool:
        updated_at = slot.get("updatedAt") or slot.get("startedAt")
        if not updated_at:
            return True
        try:
            last_update = datetime.fromisoformat(updated_at)
        except (TypeError, ValueError):
            return True
        age = datetime.utcnow() - last_update
        return age > timedelta(seconds=settings.bulk_sync_stale_seconds)

    # ---------------------------------------------------------------------
    # Control
    # ---------------------------------------------------------------------

    async def start(
        self,
        issue_keys: Optional[List[str]] = None,
        update_existing: bool = False,
        sync_missing_data: bool = False,
    ) -> Dict[str, Any]:
        """
        Start a job in the background.

        The stored slot decides, so a job started by another worker blocks
        this one too. A ``running`` slot that has not been refreshed within
        ``settings.bulk_sync_stale_seconds`` is taken over.

        Raises:
            BulkJobAlreadyRunning: while the slot says ``running``
        """
        if self.is_running:
            raise BulkJobAlreadyRunning("A bulk sync is already running")
        slot = await self.poll()
        if slot.get("status") == STATUS_RUNNING:
            if not self._is_stale(slot):
                raise BulkJobAlreadyRunning(
                    f"A bulk sync is already running (started {slot.get('startedAt')})"
                )
            logger.warning(
                f"Bulk sync slot says running but was last updated at {slot.get('updatedAt')}; "
                f"assuming it was interrupted"
            )

        self.token = CancellationToken()
        now = datetime.utcnow().isoformat()
        slot = {
            "status": STATUS_RUNNING,
            "results": _empty_results(),
            "cancelRequested": False,
            "startedAt": now,
            "updatedAt": now,
            "error": None,
            "options": {
                "issueKeys": list(issue_keys) if issue_keys else None,
                "updateExisting": update_existing,
                "syncMissingData": sync_missing_data,
            },
        }
        await self.kv.set(BULK_STATUS_KEY, slot)

        logger.info(
            f"Bulk sync started (keys: {len(issue_keys) if issue_keys else 'all'}, "
            f"updateExisting: {update_existing}, syncMissingData: {sync_missing_data})"
        )
        self.task = asyncio.create_task(
            self._run(issue_keys, update_existing, sync_missing_data, self.token)
        )
        return slot

    async def cancel(self) -> Dict[str, Any]:
        """Request cancellation of the running job."""
        if self.is_running:
            self.token.cancel()
        slot = await self.poll()
        if slot.get("status") != STATUS_RUNNING:
            return slot
        logger.info("Bulk sync cancellation requested")
        return await self._save(cancelRequested=True)

    async def wait(self) -> None:
        """Wait for the current job to finish."""
        if self.task is not None:
            await asyncio.gather(self.task, return_exceptions=True)

    async def shutdown(self) -> None:
        if self.is_running:
            await self.cancel()
            try:
                await asyncio.wait_for(self.wait(), timeout=settings.sync_shutdown_timeout)
            except asyncio.TimeoutError:
                logger.warning("Bulk sync did not stop in time, cancelling task")
                self.task.cancel()

    # ---------------------------------------------------------------------
    # Job
    # ---------------------------------------------------------------------

    async def _cancel_requested(self, token: CancellationToken) -> bool:
        if token.cancelled:
            return True
        slot = await self.poll()
        return bool(slot.get("cancelRequested"))

    async def _run(
        self,
        issue_keys: Optional[List[str]],
        update_existing: bool,
        sync_missing_data: bool,
        token: CancellationToken,
    ) -> None:
        started = time.monotonic()
        results = _empty_results()
        status = STATUS_COMPLETE

        try:
            async with open_sync_engine(self.kv, self.factory) as engine:
                engine.config.require_configured()
                keys = list(issue_keys) if issue_keys else await self._collect_issue_keys(engine)
                tracker = BatchOperationTracker(len(keys))
                logger.info(f"Bulk sync will process {len(keys)} issue(s)")

                for issue_key in keys:
                    if await self._cancel_requested(token):
                        logger.info("Bulk sync was cancelled by user - stopping")
                        results["stoppedEarly"] = True
                        status = STATUS_CANCELLED
                        break

                    results["scanned"] += 1
                    try:
                        outcome = await self._sync_one(engine, issue_key, update_existing, sync_missing_data)
                        results[outcome] += 1
                        tracker.record_success()
                    except Exception as e:
                        logger.error(f"Bulk sync failed for {issue_key}: {e}", exc_info=True)
                        results["errors"] += 1
                        tracker.record_failure(f"{issue_key}: {e}")

                    results["elapsedSeconds"] = round(time.monotonic() - started)
                    await self._save(results=results, progress=tracker.get_progress())
                    await throttle(self.delay_ms)

        except Exception as e:
            logger.error(f"Bulk sync failed: {e}", exc_info=True)
            results["elapsedSeconds"] = round(time.monotonic() - started)
            await self._save(status=STATUS_ERROR, results=results, error=str(e))
            return

        results["elapsedSeconds"] = round(time.monotonic() - started)
        await self._save(status=status, results=results)
        logger.info(
            f"Bulk sync {status}: {results['scanned']} scanned, {results['created']} created, "
            f"{results['updated']} updated, {results['alreadySynced']} already synced, "
            f"{results['recreated']} recreated, {results['errors']} errors ({results['elapsedSeconds']}s)"
        )

    async def _collect_issue_keys(self, engine: IssueSyncEngine) -> List[str]:
        projects = list(engine.config.allowed_projects)
        if not projects:
            projects = [project["key"] for project in await engine.local.get_projects() if project.get("key")]

        keys: List[str] = []
        for project_key in projects:
            issues = await engine.local.search_issues(
                f"project = {project_key} ORDER BY key ASC",
                max_results=settings.bulk_sync_max_issues,
                fields=["key"],
            )
            keys.extend(issue["key"] for issue in issues if issue.get("key"))
        return keys

    async def _sync_one(
        self,
        engine: IssueSyncEngine,
        issue_key: str,
        update_existing: bool,
        sync_missing_data: bool,
    ) -> str:
        """Sync one issue and return the results counter it falls under."""
        issue = await engine.local.get_issue(issue_key)
        if not issue:
            raise LookupError(f"Issue {issue_key} not found")

        remote_key = await engine.mappings.get_remote_key(issue_key)
        if not remote_key:
            existing = await self._find_remote_duplicate(engine, issue)
            if existing:
                logger.info(f"{issue_key} already exists on remote as {existing} - storing mapping")
                await engine.mappings.store_mapping(issue_key, existing)
                return OUTCOME_ALREADY_SYNCED
            await self._create(engine, issue)
            return OUTCOME_CREATED

        if update_existing:
            result = SyncResult(SYNC_UPDATE)
            await engine.update_remote_issue(issue_key, remote_key, issue, result)
            result.log_summary(issue_key, remote_key)
            if not result.success:
                raise RuntimeError("; ".join(result.errors))
            return OUTCOME_UPDATED

        if sync_missing_data:
            if await engine.remote.get_issue(remote_key) is None:
                logger.info(f"Remote {remote_key} was deleted - recreating {issue_key}")
                await engine.mappings.remove_mapping(issue_key, remote_key)
                await self._create(engine, issue)
                return OUTCOME_RECREATED

            result = SyncResult(SYNC_UPDATE)
            options = engine.options
            if options.sync_attachments:
                await sync_attachments(
                    engine.local, engine.remote, engine.mappings, engine.retry, issue, remote_key, result
                )
            if options.sync_links:
                await sync_issue_links(engine.remote, engine.mappings, engine.retry, issue, remote_key, result)
            if options.sync_comments:
                await sync_all_comments(
                    engine.local, engine.remote, engine.mappings, engine.retry, issue_key, remote_key, result,
                    org_name=engine.org_name,
                )

        return OUTCOME_ALREADY_SYNCED

    async def _create(self, engine: IssueSyncEngine, issue: Dict[str, Any]) -> str:
        result = SyncResult(SYNC_CREATE)
        remote_key = await engine.create_remote_issue(issue, result)
        result.log_summary(issue["key"], remote_key)
        if not remote_key:
            raise RuntimeError("; ".join(result.errors) or f"Failed to create {issue['key']}")
        return remote_key

    async def _find_remote_duplicate(self, engine: IssueSyncEngine, issue: Dict[str, Any]) -> Optional[str]:
        """Remote key of an issue with the same summary, so a lost mapping is not duplicated."""
        summary = issue.get("fields", {}).get("summary")
        if not summary:
            return None
        jql = (
            f'project = {engine.config.remote_project_key} '
            f'AND summary ~ "{_escape_jql_text(summary[:50])}"'
        )
        try:
            candidates = await engine.remote.search_issues(jql, max_results=5, fields=["key", "summary"])
        except Exception as e:
            logger.warning(f"Duplicate check for {issue['key']} failed: {e}")
            return None
        for candidate in candidates:
            if candidate.get("fields", {}).get("summary") == summary:
                return candidate.get("key")
        return None


# Global bulk job runner
bulk_runner = BulkJobRunner()
