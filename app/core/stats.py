"""
Sync statistics, API usage counters and the audit log.

Counters are read-modify-write records in the key-value store. Concurrent
invocations can lose an increment; the numbers are for observability, not
accounting.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from app.config import settings
from app.core.kv_store import SqlKeyValueStore


logger = logging.getLogger(__name__)

API_USAGE_KEY = "apiUsageStats"
WEBHOOK_STATS_KEY = "webhookSyncStats"
AUDIT_LOG_KEY = "auditLog"
SCHEDULED_STATS_KEY = "scheduledSyncStats"

SYNC_CREATE = "create"
SYNC_UPDATE = "update"
SYNC_COMMENT = "comment"
SYNC_DELETE = "delete"
SYNC_SKIP = "skip"
SYNC_LOOP_PREVENTED = "loop_prevented"
SYNC_LINK_DELETE = "link_delete"

HISTORY_HOURS = 24


def _empty_api_usage() -> Dict[str, Any]:
    return {
        "totalCalls": 0,
        "successfulCalls": 0,
        "failedCalls": 0,
        "rateLimitHits": 0,
        "lastRateLimitHit": None,
        "callsThisHour": 0,
        "rateLimitHitsThisHour": 0,
        "hourStarted": None,
        "byEndpoint": {},
        "history": [],
    }


def _empty_webhook_stats() -> Dict[str, Any]:
    return {
        "totalSyncs": 0,
        "issuesCreated": 0,
        "issuesUpdated": 0,
        "issuesDeleted": 0,
        "commentsSynced": 0,
        "issuesSkipped": 0,
        "loopPreventedSkips": 0,
        "errors": [],
        "lastSync": None,
    }


def empty_scheduled_stats() -> Dict[str, Any]:
    return {
        "lastRun": None,
        "issuesChecked": 0,
        "issuesCreated": 0,
        "issuesUpdated": 0,
        "issuesSkipped": 0,
        "errors": [],
    }


def categorize_endpoint(endpoint: Optional[str]) -> str:
    """Bucket a REST path for the per-endpoint usage breakdown."""
    if not endpoint:
        return "other"
    if "/issue/" in endpoint and "/comment" in endpoint:
        return "comments"
    if "/issue/" in endpoint and "/attachments" in endpoint:
        return "attachments"
    if "/attachment/" in endpoint:
        return "attachments"
    if "/issueLink" in endpoint:
        return "links"
    if "/issue/" in endpoint or endpoint.rstrip("/").endswith("/issue"):
        return "issues"
    if "/search" in endpoint:
        return "search"
    if "/project" in endpoint:
        return "projects"
    if "/user" in endpoint:
        return "users"
    if "/field" in endpoint:
        return "fields"
    if "/status" in endpoint:
        return "statuses"
    return "other"


class StatsStore:
    """Accessors for every statistics record."""

    def __init__(self, kv: SqlKeyValueStore):
        self.kv = kv

    # ---------------------------------------------------------------------
    # API usage
    # ---------------------------------------------------------------------

    async def record_api_call(self, endpoint: str, success: bool, rate_limited: bool = False) -> None:
        stats = await self.kv.get(API_USAGE_KEY) or _empty_api_usage()
        now = datetime.utcnow()
        current_hour = now.isoformat()[:13]

        if stats.get("hourStarted") != current_hour:
            if stats.get("hourStarted") and stats.get("callsThisHour", 0) > 0:
                stats["history"].insert(0, {
                    "hour": stats["hourStarted"],
                    "calls": stats["callsThisHour"],
                    "rateLimits": stats.get("rateLimitHitsThisHour", 0),
                })
                stats["history"] = stats["history"][:HISTORY_HOURS]
            stats["hourStarted"] = current_hour
            stats["callsThisHour"] = 0
            stats["rateLimitHitsThisHour"] = 0

        stats["totalCalls"] += 1
        stats["callsThisHour"] += 1
        if success:
            stats["successfulCalls"] += 1
        else:
            stats["failedCalls"] += 1

        if rate_limited:
            stats["rateLimitHits"] += 1
            stats["rateLimitHitsThisHour"] = stats.get("rateLimitHitsThisHour", 0) + 1
            stats["lastRateLimitHit"] = now.isoformat()

        category = categorize_endpoint(endpoint)
        bucket = stats["byEndpoint"].setdefault(category, {"calls": 0, "rateLimits": 0})
        bucket["calls"] += 1
        if rate_limited:
            bucket["rateLimits"] += 1

        stats["lastUpdated"] = now.isoformat()
        await self.kv.set(API_USAGE_KEY, stats)

    async def get_api_usage(self) -> Dict[str, Any]:
        stats = await self.kv.get(API_USAGE_KEY) or _empty_api_usage()
        total = stats["totalCalls"]
        quota = settings.api_usage_hourly_quota
        stats["successRate"] = round(stats["successfulCalls"] / total * 100) if total else 100
        stats["estimatedHourlyLimit"] = quota
        stats["estimatedRemainingQuota"] = max(0, quota - stats["callsThisHour"])
        stats["quotaUsagePercent"] = round(stats["callsThisHour"] / quota * 100) if quota else 0
        return stats

    async def reset_api_usage(self) -> None:
        await self.kv.set(API_USAGE_KEY, _empty_api_usage())
        logger.info("API usage statistics reset")

    # ---------------------------------------------------------------------
    # Webhook / event sync statistics
    # ---------------------------------------------------------------------

    async def record_sync(
        self,
        sync_type: str,
        success: bool,
        error: Optional[str] = None,
        issue_key: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        """
        Count one event-driven sync.

        Loop-prevented skips are counted separately and never recorded as
        errors.
        """
        try:
            stats = await self.kv.get(WEBHOOK_STATS_KEY) or _empty_webhook_stats()
            now = datetime.utcnow().isoformat()
            stats["totalSyncs"] += 1
            stats["lastSync"] = now

            if sync_type == SYNC_LOOP_PREVENTED:
                stats["issuesSkipped"] += 1
                stats["loopPreventedSkips"] = stats.get("loopPreventedSkips", 0) + 1
            elif success:
                counter = {
                    SYNC_CREATE: "issuesCreated",
                    SYNC_UPDATE: "issuesUpdated",
                    SYNC_DELETE: "issuesDeleted",
                    SYNC_COMMENT: "commentsSynced",
                }.get(sync_type)
                if counter:
                    stats[counter] = stats.get(counter, 0) + 1
            else:
                stats["issuesSkipped"] += 1
                if error:
                    entry: Dict[str, Any] = {
                        "timestamp": now,
                        "error": error,
                        "issueKey": issue_key or "unknown",
                        "operation": sync_type,
                    }
                    if details:
                        entry["details"] = details
                    stats["errors"].insert(0, entry)
                    stats["errors"] = stats["errors"][:settings.max_error_entries]

            await self.kv.set(WEBHOOK_STATS_KEY, stats)
        except Exception as e:
            logger.error(f"Error tracking sync stats: {e}", exc_info=True)

    async def get_sync_stats(self) -> Dict[str, Any]:
        return await self.kv.get(WEBHOOK_STATS_KEY) or _empty_webhook_stats()

    # ---------------------------------------------------------------------
    # Audit log
    # ---------------------------------------------------------------------

    async def log_audit_entry(
        self,
        action: str,
        source_issue: Optional[str],
        target_issue: Optional[str],
        success: bool,
        errors: Optional[List[str]] = None,
    ) -> None:
        try:
            log = await self.kv.get(AUDIT_LOG_KEY) or []
            log.insert(0, {
                "timestamp": datetime.utcnow().isoformat(),
                "action": action,
                "sourceIssue": source_issue,
                "targetIssue": target_issue,
                "success": bool(success),
                "errors": list(errors or []),
            })
            await self.kv.set(AUDIT_LOG_KEY, log[:settings.max_audit_log_entries])
        except Exception as e:
            logger.error(f"Error writing audit entry: {e}", exc_info=True)

    async def get_audit_log(self, limit: int = 50) -> List[Dict[str, Any]]:
        log = await self.kv.get(AUDIT_LOG_KEY) or []
        return log[:limit]

    # ---------------------------------------------------------------------
    # Reconciliation scanner
    # ---------------------------------------------------------------------

    async def save_scheduled_stats(self, stats: Dict[str, Any]) -> None:
        await self.kv.set(SCHEDULED_STATS_KEY, stats)

    async def get_scheduled_stats(self) -> Dict[str, Any]:
        return await self.kv.get(SCHEDULED_STATS_KEY) or empty_scheduled_stats()

    # ---------------------------------------------------------------------
    # Maintenance
    # ---------------------------------------------------------------------

    async def clear_sync_errors(self) -> None:
        stats = await self.kv.get(WEBHOOK_STATS_KEY)
        if stats:
            stats["errors"] = []
            await self.kv.set(WEBHOOK_STATS_KEY, stats)
        logger.info("Webhook sync errors cleared")

    async def clear_scheduled_errors(self) -> None:
        stats = await self.kv.get(SCHEDULED_STATS_KEY)
        if stats:
            stats["errors"] = []
            await self.kv.set(SCHEDULED_STATS_KEY, stats)
        logger.info("Scheduled sync errors cleared")

    async def clear_audit_log(self) -> None:
        await self.kv.set(AUDIT_LOG_KEY, [])
        logger.info("Audit log cleared")
