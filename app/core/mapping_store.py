"""
Durable associations between local and remote tracker records.

Pure storage: issue key mappings (two inverse entries), attachment and link
mappings, comment mappings, pending links, pending child issues and the
creation bookkeeping used by loop prevention.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from app.core.kv_store import SqlKeyValueStore


logger = logging.getLogger(__name__)


# -------------------------------------------------------------------------
# Key prefixes
# -------------------------------------------------------------------------

LOCAL_TO_REMOTE_PREFIX = "local-to-remote:"
REMOTE_TO_LOCAL_PREFIX = "remote-to-local:"
CREATED_BY_COUNTERPART_PREFIX = "created-by-counterpart:"
ATTACHMENT_MAPPING_PREFIX = "attachment-mapping:"
LINK_MAPPING_PREFIX = "link-mapping:"
COMMENT_MAPPING_PREFIX = "comment-mapping:"
PENDING_LINKS_PREFIX = "pending-links:"
PENDING_CHILDREN_PREFIX = "pending-children:"
CREATED_TIMESTAMP_PREFIX = "created-timestamp:"
SYNCING_PREFIX = "syncing:"

LINK_SYNCED_MARKER = "synced"


class MappingStore:
    """Typed accessors over the key-value store for every mapping record."""

    def __init__(self, kv: SqlKeyValueStore):
        self.kv = kv

    # ---------------------------------------------------------------------
    # Issue mappings
    # ---------------------------------------------------------------------

    async def get_remote_key(self, local_key: str) -> Optional[str]:
        return await self.kv.get(f"{LOCAL_TO_REMOTE_PREFIX}{local_key}")

    async def get_local_key(self, remote_key: str) -> Optional[str]:
        return await self.kv.get(f"{REMOTE_TO_LOCAL_PREFIX}{remote_key}")

    async def store_mapping(self, local_key: str, remote_key: str) -> None:
        """Store both directions of a local/remote issue association."""
        await self.kv.set(f"{LOCAL_TO_REMOTE_PREFIX}{local_key}", remote_key)
        await self.kv.set(f"{REMOTE_TO_LOCAL_PREFIX}{remote_key}", local_key)
        logger.info(f"Stored issue mapping {local_key} <-> {remote_key}")

    async def remove_mapping(self, local_key: Optional[str], remote_key: Optional[str]) -> None:
        if local_key:
            await self.kv.delete(f"{LOCAL_TO_REMOTE_PREFIX}{local_key}")
        if remote_key:
            await self.kv.delete(f"{REMOTE_TO_LOCAL_PREFIX}{remote_key}")

    async def list_mappings(self) -> List[Dict[str, str]]:
        """Return every stored issue mapping as ``{localKey, remoteKey}`` pairs."""
        mappings = []
        for key in await self.kv.keys_with_prefix(LOCAL_TO_REMOTE_PREFIX):
            remote_key = await self.kv.get(key)
            if remote_key:
                mappings.append({
                    "localKey": key[len(LOCAL_TO_REMOTE_PREFIX):],
                    "remoteKey": remote_key,
                })
        return mappings

    # ---------------------------------------------------------------------
    # Origin markers and creation timestamps
    # ---------------------------------------------------------------------

    async def mark_created_by_counterpart(self, local_key: str, remote_key: str) -> None:
        await self.kv.set(f"{CREATED_BY_COUNTERPART_PREFIX}{local_key}", remote_key)

    async def get_counterpart_origin(self, local_key: str) -> Optional[str]:
        return await self.kv.get(f"{CREATED_BY_COUNTERPART_PREFIX}{local_key}")

    async def store_created_timestamp(self, local_key: str, timestamp_ms: int) -> None:
        await self.kv.set(f"{CREATED_TIMESTAMP_PREFIX}{local_key}", timestamp_ms)

    async def get_created_timestamp(self, local_key: str) -> Optional[int]:
        return await self.kv.get(f"{CREATED_TIMESTAMP_PREFIX}{local_key}")

    # ---------------------------------------------------------------------
    # Attachment, link and comment mappings
    # ---------------------------------------------------------------------

    async def get_attachment_mapping(self, local_attachment_id: str) -> Optional[str]:
        return await self.kv.get(f"{ATTACHMENT_MAPPING_PREFIX}{local_attachment_id}")

    async def store_attachment_mapping(self, local_attachment_id: str, remote_attachment_id: str) -> None:
        await self.kv.set(f"{ATTACHMENT_MAPPING_PREFIX}{local_attachment_id}", remote_attachment_id)

    async def is_link_synced(self, local_link_id: str) -> bool:
        return await self.kv.get(f"{LINK_MAPPING_PREFIX}{local_link_id}") is not None

    async def mark_link_synced(self, local_link_id: str) -> None:
        await self.kv.set(f"{LINK_MAPPING_PREFIX}{local_link_id}", LINK_SYNCED_MARKER)

    async def remove_link_mapping(self, local_link_id: str) -> None:
        await self.kv.delete(f"{LINK_MAPPING_PREFIX}{local_link_id}")

    async def get_comment_mapping(self, local_comment_id: str) -> Optional[str]:
        return await self.kv.get(f"{COMMENT_MAPPING_PREFIX}{local_comment_id}")

    async def store_comment_mapping(self, local_comment_id: str, remote_comment_id: str) -> None:
        await self.kv.set(f"{COMMENT_MAPPING_PREFIX}{local_comment_id}", remote_comment_id)

    # ---------------------------------------------------------------------
    # Pending links
    # ---------------------------------------------------------------------

    async def get_pending_links(self, local_key: str) -> List[Dict[str, Any]]:
        return await self.kv.get(f"{PENDING_LINKS_PREFIX}{local_key}") or []

    async def store_pending_link(self, local_key: str, link: Dict[str, Any]) -> Dict[str, Any]:
        """
        Record a link whose target issue has no counterpart yet.

        A link that is already pending has its attempt counter incremented
        instead of being added twice.

        Returns:
            The stored pending link record
        """
        pending = await self.get_pending_links(local_key)
        now = datetime.utcnow().isoformat()

        for index, existing in enumerate(pending):
            if existing.get("linkId") == link["linkId"]:
                record = {**link, "attempts": existing.get("attempts", 0) + 1, "lastAttempt": now}
                pending[index] = record
                break
        else:
            record = {**link, "attempts": 1, "lastAttempt": now}
            pending.append(record)

        await self.kv.set(f"{PENDING_LINKS_PREFIX}{local_key}", pending)
        logger.info(f"Stored pending link: {local_key} -> {link.get('linkedIssueKey')}")
        return record

    async def remove_pending_link(self, local_key: str, link_id: str) -> None:
        pending = await self.get_pending_links(local_key)
        remaining = [link for link in pending if link.get("linkId") != link_id]
        if remaining:
            await self.kv.set(f"{PENDING_LINKS_PREFIX}{local_key}", remaining)
        else:
            await self.kv.delete(f"{PENDING_LINKS_PREFIX}{local_key}")

    async def issues_with_pending_links(self) -> List[str]:
        keys = await self.kv.keys_with_prefix(PENDING_LINKS_PREFIX)
        return [key[len(PENDING_LINKS_PREFIX):] for key in keys]

    # ---------------------------------------------------------------------
    # Pending child issues (children created before their parent was mapped)
    # ---------------------------------------------------------------------

    async def enqueue_pending_child(self, parent_key: str, child_key: str) -> None:
        key = f"{PENDING_CHILDREN_PREFIX}{parent_key}"
        children = await self.kv.get(key) or []
        if child_key not in children:
            children.append(child_key)
            await self.kv.set(key, children)

    async def consume_pending_children(self, parent_key: str) -> List[str]:
        key = f"{PENDING_CHILDREN_PREFIX}{parent_key}"
        children = await self.kv.get(key) or []
        if children:
            await self.kv.delete(key)
        return children

    # ---------------------------------------------------------------------
    # Cleanup
    # ---------------------------------------------------------------------

    async def cleanup_issue_data(self, local_key: str, remote_key: Optional[str]) -> None:
        """Remove every record tied to a deleted issue."""
        logger.info(f"Cleaning up storage for issue {local_key}")
        await self.remove_mapping(local_key, remote_key)
        await self.kv.delete(f"{CREATED_BY_COUNTERPART_PREFIX}{local_key}")
        await self.kv.delete(f"{PENDING_LINKS_PREFIX}{local_key}")
        await self.kv.delete(f"{PENDING_CHILDREN_PREFIX}{local_key}")
        await self.kv.delete(f"{CREATED_TIMESTAMP_PREFIX}{local_key}")
        await self.kv.delete(f"{SYNCING_PREFIX}{local_key}")
