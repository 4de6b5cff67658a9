"""
Reconciliation scanner.

Periodically walks recently updated local issues and pushes them through
the sync engine, catching changes whose events were missed. Pending links
are retried at the end of every pass.
"""

import asyncio
import logging
from datetime import datetime
from typing import Any, Dict, Optional

from app.config import settings
from app.core.issue_sync import IssueSyncEngine
from app.core.link_sync import retry_pending_links
from app.core.rate_limiter import throttle
from app.core.stats import SYNC_CREATE, SYNC_UPDATE, empty_scheduled_stats
from app.core.sync_config import ScheduledSyncConfig, SyncConfig
from app.core.sync_result import SyncResult


logger = logging.getLogger(__name__)

SCOPE_RECENT = "recent"


def build_jql(config: SyncConfig, sync_scope: str) -> str:
    """
    JQL selecting the issues a pass should look at.

    >>> build_jql(SyncConfig(allowed_projects=["A", "B"]), "all")
    'project IN (A, B) ORDER BY updated DESC'
    """
    projects = config.allowed_projects
    if len(projects) > 1:
        project_filter = f"project IN ({', '.join(projects)})"
    elif projects:
        project_filter = f"project = {projects[0]}"
    else:
        project_filter = f"project = {config.remote_project_key}"

    if sync_scope == SCOPE_RECENT:
        return f"{project_filter} AND updated >= -24h ORDER BY updated DESC"
    return f"{project_filter} ORDER BY updated DESC"


class ReconciliationScanner:
    """One reconciliation pass over the local tracker."""

    def __init__(
        self,
        engine: IssueSyncEngine,
        scheduled_config: ScheduledSyncConfig,
        delay_ms: Optional[int] = None,
        max_results: Optional[int] = None,
    ):
        self.engine = engine
        self.scheduled_config = scheduled_config
        self.delay_ms = settings.scheduled_sync_delay_ms if delay_ms is None else delay_ms
        self.max_results = settings.scheduled_sync_max_results if max_results is None else max_results

    async def run(self, stop_event: Optional[asyncio.Event] = None) -> Dict[str, Any]:
        """
        Run a pass and persist its statistics.

        Args:
            stop_event: Checked between issues; when set the pass stops early

        Returns:
            ``{lastRun, issuesChecked, issuesCreated, issuesUpdated, issuesSkipped, errors}``
        """
        engine = self.engine
        stats = empty_scheduled_stats()
        stats["lastRun"] = datetime.utcnow().isoformat()

        engine.config.require_configured()
        jql = build_jql(engine.config, self.scheduled_config.sync_scope)
        logger.info(f"Scheduled sync starting: {jql}")

        try:
            issues = await engine.local.search_issues(jql, max_results=self.max_results)
            logger.info(f"Found {len(issues)} issues to check")

            for summary in issues:
                if stop_event is not None and stop_event.is_set():
                    logger.info("Scheduled sync stopped early")
                    break

                stats["issuesChecked"] += 1
                issue_key = summary.get("key")
                try:
                    await self._sync_one(issue_key, stats)
                except Exception as e:
                    logger.error(f"Error syncing {issue_key}: {e}", exc_info=True)
                    stats["errors"].append(f"{issue_key}: {e}")
        except Exception as e:
            logger.error(f"Scheduled sync error: {e}", exc_info=True)
            stats["errors"].append(f"General error: {e}")

        try:
            links = await retry_pending_links(engine.remote, engine.mappings, engine.retry)
            logger.info(f"Pending links: {links['success']} synced, {links['stillPending']} still pending")
        except Exception as e:
            logger.error(f"Error retrying pending links: {e}", exc_info=True)

        await engine.stats.save_scheduled_stats(stats)
        logger.info(
            f"Scheduled sync complete: {stats['issuesChecked']} checked, {stats['issuesCreated']} created, "
            f"{stats['issuesUpdated']} updated, {stats['issuesSkipped']} skipped, {len(stats['errors'])} errors"
        )
        return stats

    async def _sync_one(self, issue_key: str, stats: Dict[str, Any]) -> None:
        engine = self.engine
        issue = await engine.local.get_issue(issue_key)
        if not issue:
            logger.info(f"Could not fetch {issue_key}")
            stats["issuesSkipped"] += 1
            return

        if await engine.guard.was_created_by_counterpart(issue_key):
            logger.debug(f"{issue_key} - created by remote sync")
            stats["issuesSkipped"] += 1
            return

        remote_key = await engine.mappings.get_remote_key(issue_key)
        if remote_key:
            logger.info(f"Scheduled UPDATE: {issue_key} -> {remote_key}")
            result = SyncResult(SYNC_UPDATE)
            await engine.update_remote_issue(issue_key, remote_key, issue, result)
            result.log_summary(issue_key, remote_key)
            if result.success:
                stats["issuesUpdated"] += 1
            else:
                stats["errors"].append(f"Failed to update {issue_key}: {'; '.join(result.errors)}")
        else:
            logger.info(f"Scheduled CREATE: {issue_key}")
            result = SyncResult(SYNC_CREATE)
            remote_key = await engine.create_remote_issue(issue, result)
            result.log_summary(issue_key, remote_key)
            if remote_key:
                stats["issuesCreated"] += 1
            else:
                stats["errors"].append(f"Failed to create {issue_key}")

        await throttle(self.delay_ms)
