"""Copy issue attachments from the local tracker to the remote tracker."""

import logging
from typing import Any, Dict, List, Optional

from app.config import settings
from app.core.mapping_store import MappingStore
from app.core.rate_limiter import RetryExecutor
from app.core.sync_result import SyncResult
from app.core.tracker_client import TrackerClient


logger = logging.getLogger(__name__)


def _format_size(size: int) -> str:
    return f"{size / 1024 / 1024:.2f}MB"


async def _remote_attachments(remote: TrackerClient, remote_key: str) -> List[Dict[str, Any]]:
    try:
        issue = await remote.get_issue(remote_key)
    except Exception as e:
        logger.warning(f"Could not list attachments on {remote_key}: {e}")
        return []
    if not issue:
        return []
    return issue.get("fields", {}).get("attachment") or []


async def sync_attachments(
    local: TrackerClient,
    remote: TrackerClient,
    mappings: MappingStore,
    retry: RetryExecutor,
    issue: Dict[str, Any],
    remote_key: str,
    result: SyncResult,
    max_size_bytes: Optional[int] = None,
) -> Dict[str, str]:
    """
    Transfer every not-yet-synced attachment of ``issue`` to ``remote_key``.

    Each attachment is handled independently: a failure is recorded on
    ``result`` and the loop moves on.

    Returns:
        ``{local attachment id: remote attachment id}`` for every attachment
        known on the remote side after this call
    """
    max_size = settings.max_attachment_size_bytes if max_size_bytes is None else max_size_bytes
    attachments = issue.get("fields", {}).get("attachment") or []
    id_map: Dict[str, str] = {}
    if not attachments:
        return id_map

    issue_key = issue.get("key")
    logger.info(f"Found {len(attachments)} attachment(s) on {issue_key}")
    existing_remote = await _remote_attachments(remote, remote_key)

    for attachment in attachments:
        local_id = str(attachment.get("id"))
        filename = attachment.get("filename") or local_id
        size = int(attachment.get("size") or 0)

        try:
            mapped = await mappings.get_attachment_mapping(local_id)
            if mapped:
                id_map[local_id] = mapped
                result.add_attachment_skipped(filename, "already synced")
                continue

            duplicate = next(
                (
                    remote_attachment for remote_attachment in existing_remote
                    if remote_attachment.get("filename") == filename
                    and int(remote_attachment.get("size") or 0) == size
                ),
                None,
            )
            if duplicate:
                remote_id = str(duplicate.get("id"))
                await mappings.store_attachment_mapping(local_id, remote_id)
                id_map[local_id] = remote_id
                result.add_attachment_skipped(filename, "already exists on remote")
                continue

            if size > max_size:
                reason = f"too large ({_format_size(size)} > {_format_size(max_size)})"
                result.add_attachment_skipped(filename, reason)
                result.add_warning(f"Attachment skipped: {filename} - {reason}")
                continue

            content = await local.download_attachment(local_id)
            if content is None:
                result.add_attachment_failure(filename, "download failed")
                continue

            mime_type = attachment.get("mimeType") or "application/octet-stream"
            uploaded = await retry.execute(
                lambda: remote.upload_attachment(remote_key, filename, content, mime_type),
                f"Upload {filename} to {remote_key}",
            )
            if not uploaded:
                result.add_attachment_failure(filename, "upload failed")
                continue

            remote_id = uploaded[0].id
            await mappings.store_attachment_mapping(local_id, remote_id)
            id_map[local_id] = remote_id
            result.add_attachment_success(filename)
            logger.info(f"Synced attachment {filename} to {remote_key} (remote id: {remote_id})")

        except Exception as e:
            logger.error(f"Error syncing attachment {filename}: {e}", exc_info=True)
            result.add_attachment_failure(filename, str(e))

    return id_map
