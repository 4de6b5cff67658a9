"""
Issue link propagation.

A link whose other end has no remote counterpart yet is parked as a
pending link and retried by the reconciliation scanner; it is dropped once
its attempt counter reaches ``max_pending_link_attempts``.
"""

import logging
from typing import Any, Dict, Optional, Tuple

from app.config import settings
from app.core.mapping_store import MappingStore
from app.core.rate_limiter import RetryExecutor, throttle
from app.core.sync_result import SyncResult
from app.core.tracker_client import TrackerClient


logger = logging.getLogger(__name__)

OUTWARD = "outward"
INWARD = "inward"


def link_endpoints(link: Dict[str, Any]) -> Tuple[Optional[str], Optional[str]]:
    """Return ``(linked issue key, direction)`` for a link as seen from its owning issue."""
    if link.get("outwardIssue"):
        return link["outwardIssue"].get("key"), OUTWARD
    if link.get("inwardIssue"):
        return link["inwardIssue"].get("key"), INWARD
    return None, None


async def create_remote_link(
    remote: TrackerClient,
    retry: RetryExecutor,
    remote_key: str,
    linked_remote_key: str,
    link_type: str,
    direction: str,
) -> None:
    """Create the link on the remote tracker, oriented as it is locally."""
    if direction == OUTWARD:
        inward_key, outward_key = remote_key, linked_remote_key
    else:
        inward_key, outward_key = linked_remote_key, remote_key

    logger.info(f"Creating link: {inward_key} -> {outward_key} ({link_type})")
    await retry.execute(
        lambda: remote.create_issue_link(link_type, inward_key, outward_key),
        f"Create link {link_type} between {remote_key} and {linked_remote_key}",
    )


async def sync_issue_links(
    remote: TrackerClient,
    mappings: MappingStore,
    retry: RetryExecutor,
    issue: Dict[str, Any],
    remote_key: str,
    result: SyncResult,
) -> None:
    """Propagate every not-yet-synced link of ``issue``."""
    links = issue.get("fields", {}).get("issuelinks") or []
    if not links:
        return

    issue_key = issue.get("key")
    logger.info(f"Found {len(links)} issue link(s) on {issue_key}")

    for link in links:
        link_id = str(link.get("id"))
        linked_key, direction = link_endpoints(link)
        link_type = (link.get("type") or {}).get("name", "Relates")

        try:
            if await mappings.is_link_synced(link_id):
                result.add_link_skipped(linked_key or "unknown", "already synced")
                continue

            if not linked_key:
                logger.warning(f"No linked issue found for link {link_id}")
                result.add_link_skipped("unknown", "no linked issue found")
                continue

            linked_remote_key = await mappings.get_remote_key(linked_key)
            if not linked_remote_key:
                await mappings.store_pending_link(issue_key, {
                    "linkId": link_id,
                    "linkedIssueKey": linked_key,
                    "direction": direction,
                    "linkTypeName": link_type,
                })
                result.add_link_skipped(linked_key, "linked issue not synced yet - stored as pending")
                continue

            await create_remote_link(remote, retry, remote_key, linked_remote_key, link_type, direction)
            await mappings.mark_link_synced(link_id)
            await mappings.remove_pending_link(issue_key, link_id)
            result.add_link_success(linked_key, link_type)

        except Exception as e:
            logger.error(f"Error syncing link {link_id} on {issue_key}: {e}", exc_info=True)
            result.add_link_failure(linked_key or link_id, str(e))


async def retry_pending_links(
    remote: TrackerClient,
    mappings: MappingStore,
    retry: RetryExecutor,
    max_attempts: Optional[int] = None,
    delay_ms: Optional[int] = None,
) -> Dict[str, int]:
    """
    Retry every parked link whose target now has a counterpart.

    Links still waiting get their attempt counter bumped; at the ceiling
    they are dropped and counted as failed.

    Returns:
        ``{retried, success, failed, stillPending}``
    """
    max_attempts = settings.max_pending_link_attempts if max_attempts is None else max_attempts
    delay_ms = settings.pending_link_retry_delay_ms if delay_ms is None else delay_ms
    totals = {"retried": 0, "success": 0, "failed": 0, "stillPending": 0}

    issue_keys = await mappings.issues_with_pending_links()
    if not issue_keys:
        logger.debug("No pending links to retry")
        return totals

    logger.info(f"Found {len(issue_keys)} issue(s) with pending links")

    for issue_key in issue_keys:
        remote_key = await mappings.get_remote_key(issue_key)
        if not remote_key:
            logger.debug(f"Skipping pending links of {issue_key} - not synced to remote yet")
            continue

        for pending in await mappings.get_pending_links(issue_key):
            totals["retried"] += 1
            link_id = pending.get("linkId")
            linked_key = pending.get("linkedIssueKey")

            linked_remote_key = await mappings.get_remote_key(linked_key) if linked_key else None
            if not linked_remote_key:
                if int(pending.get("attempts", 0)) >= max_attempts:
                    logger.warning(
                        f"Dropping pending link {issue_key} -> {linked_key} after {pending.get('attempts')} attempts"
                    )
                    await mappings.remove_pending_link(issue_key, link_id)
                    totals["failed"] += 1
                else:
                    await mappings.store_pending_link(issue_key, pending)
                    totals["stillPending"] += 1
                continue

            try:
                if await mappings.is_link_synced(link_id):
                    await mappings.remove_pending_link(issue_key, link_id)
                    continue
                await create_remote_link(
                    remote,
                    retry,
                    remote_key,
                    linked_remote_key,
                    pending.get("linkTypeName", "Relates"),
                    pending.get("direction", OUTWARD),
                )
                await mappings.mark_link_synced(link_id)
                await mappings.remove_pending_link(issue_key, link_id)
                totals["success"] += 1
            except Exception as e:
                logger.error(f"Error creating pending link {issue_key} -> {linked_key}: {e}")
                totals["failed"] += 1

            await throttle(delay_ms)

    logger.info(
        f"Pending link retry complete: {totals['success']} success, {totals['failed']} failed, "
        f"{totals['stillPending']} still pending"
    )
    return totals
