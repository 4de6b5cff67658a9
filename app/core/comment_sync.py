"""Copy local comments onto the remote issue, each at most once."""

import logging
import re
from typing import Any, Dict, Optional

from app.config import settings
from app.core.adf import text_with_author, to_plain_text
from app.core.mapping_store import MappingStore
from app.core.rate_limiter import RetryExecutor
from app.core.sync_result import SyncResult
from app.core.tracker_client import TrackerClient


logger = logging.getLogger(__name__)

DEFAULT_ORG_NAME = "Jira"
_SUBDOMAIN_RE = re.compile(r"https?://([^./:]+)")


def derive_org_name(base_url: Optional[str]) -> str:
    """``https://acme.atlassian.net`` -> ``acme``."""
    if settings.local_org_name:
        return settings.local_org_name
    match = _SUBDOMAIN_RE.match(base_url or "")
    return match.group(1) if match else DEFAULT_ORG_NAME


def comment_author(comment: Dict[str, Any]) -> str:
    author = comment.get("author") or {}
    return author.get("displayName") or author.get("emailAddress") or "Unknown User"


def comment_text(comment: Dict[str, Any]) -> str:
    body = comment.get("body")
    if isinstance(body, dict):
        return to_plain_text(body)
    return body or ""


async def sync_comment(
    remote: TrackerClient,
    mappings: MappingStore,
    retry: RetryExecutor,
    comment: Dict[str, Any],
    remote_key: str,
    org_name: str,
    result: SyncResult,
) -> bool:
    """
    Post one local comment to ``remote_key`` unless it was already posted.

    Returns:
        True when a new remote comment was created
    """
    comment_id = str(comment.get("id"))
    try:
        if await mappings.get_comment_mapping(comment_id):
            logger.debug(f"Comment {comment_id} already synced")
            return False

        body = text_with_author(comment_text(comment), org_name, comment_author(comment))
        created = await retry.execute(
            lambda: remote.add_comment(remote_key, body),
            f"Sync comment {comment_id} to {remote_key}",
        )
        await mappings.store_comment_mapping(comment_id, created.id)
        result.add_comment_success()
        logger.info(f"Comment {comment_id} synced to {remote_key} (remote id: {created.id})")
        return True
    except Exception as e:
        logger.error(f"Error syncing comment {comment_id} to {remote_key}: {e}", exc_info=True)
        result.add_comment_failure(comment_id, str(e))
        return False


async def sync_all_comments(
    local: TrackerClient,
    remote: TrackerClient,
    mappings: MappingStore,
    retry: RetryExecutor,
    issue_key: str,
    remote_key: str,
    result: SyncResult,
    org_name: Optional[str] = None,
) -> int:
    """Post every not-yet-synced comment of ``issue_key``. Returns the number posted."""
    try:
        comments = await local.get_comments(issue_key)
    except Exception as e:
        result.add_warning(f"Could not fetch comments for {issue_key}: {e}")
        return 0

    org_name = org_name or derive_org_name(local.base_url)
    posted = 0
    for comment in comments:
        if await sync_comment(remote, mappings, retry, comment, remote_key, org_name, result):
            posted += 1
    return posted
