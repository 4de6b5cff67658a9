"""Core local-to-remote issue sync engine."""

import logging
from typing import Any, Dict, List, Optional

from app.core.adf import description_to_document, has_media, rewrite_media_references
from app.core.attachment_sync import sync_attachments
from app.core.comment_sync import derive_org_name, sync_all_comments, sync_comment
from app.core.kv_store import SqlKeyValueStore
from app.core.link_sync import link_endpoints, sync_issue_links
from app.core.loop_guard import LoopGuard
from app.core.mapping_store import MappingStore
from app.core.rate_limiter import RetryExecutor
from app.core.stats import (
    StatsStore,
    SYNC_COMMENT,
    SYNC_CREATE,
    SYNC_DELETE,
    SYNC_LINK_DELETE,
    SYNC_LOOP_PREVENTED,
    SYNC_SKIP,
    SYNC_UPDATE,
)
from app.core.sync_config import (
    ConfigStore,
    SyncConfig,
    SyncConfigurationError,
    SyncOptions,
    is_project_allowed,
)
from app.core.sync_result import SyncResult
from app.core.tracker_client import TrackerClient
from app.core.transition_sync import already_in_status, transition_remote_issue
from app.core.translation import (
    DROP,
    FIELD_TABLE,
    ID_LIST,
    STATUS_TABLE,
    USER_TABLE,
    TranslationTable,
    normalize_field_value,
)


logger = logging.getLogger(__name__)


# -------------------------------------------------------------------------
# Constants
# -------------------------------------------------------------------------

INITIAL_STATUS = "To Do"
DEFAULT_ISSUE_TYPE = "Task"
MEDIA_DESCRIPTION_WARNING = "Could not update description with media - using text-only"

EVENT_ISSUE_CREATED = "jira:issue_created"
EVENT_ISSUE_UPDATED = "jira:issue_updated"
EVENT_ISSUE_DELETED = "jira:issue_deleted"
EVENT_COMMENT_CREATED = "comment_created"
EVENT_LINK_CREATED = "issuelink_created"
EVENT_LINK_DELETED = "issuelink_deleted"
EVENT_MANUAL = "manual"

SKIP_ISSUE_NOT_FOUND = "Could not fetch issue data"

NAMED_LIST_FIELDS = ("components", "fixVersions", "versions")


# -------------------------------------------------------------------------
# Payload helpers
# -------------------------------------------------------------------------

def _named(values: Optional[List[Dict[str, Any]]]) -> List[Dict[str, str]]:
    return [{"name": value["name"]} for value in values or [] if value.get("name")]


def _timetracking(value: Optional[Dict[str, Any]]) -> Optional[Dict[str, str]]:
    if not value:
        return None
    estimates = {
        name: value[name]
        for name in ("originalEstimate", "remainingEstimate")
        if value.get(name)
    }
    return estimates or None


def _account_id(user: Optional[Dict[str, Any]]) -> Optional[str]:
    return (user or {}).get("accountId")


class IssueSyncEngine:
    """
    Propagate local issues to the remote tracker.

    One engine is built per invocation from the stored configuration. All
    state shared across invocations lives in the key-value store behind
    ``mappings``, ``guard`` and ``stats``.
    """

    def __init__(
        self,
        local: TrackerClient,
        remote: TrackerClient,
        kv: SqlKeyValueStore,
        config: SyncConfig,
        options: Optional[SyncOptions] = None,
        tables: Optional[Dict[str, TranslationTable]] = None,
        retry: Optional[RetryExecutor] = None,
    ):
        self.local = local
        self.remote = remote
        self.kv = kv
        self.config = config
        self.options = options or SyncOptions()
        tables = tables or {}
        self.user_table = tables.get(USER_TABLE) or TranslationTable()
        self.field_table = tables.get(FIELD_TABLE) or TranslationTable()
        self.status_table = tables.get(STATUS_TABLE) or TranslationTable()

        self.mappings = MappingStore(kv)
        self.guard = LoopGuard(kv, self.mappings)
        self.stats = StatsStore(kv)
        self.retry = retry or RetryExecutor()
        self.org_name = derive_org_name(local.base_url)

    @classmethod
    async def from_store(
        cls,
        local: TrackerClient,
        remote: TrackerClient,
        kv: SqlKeyValueStore,
        retry: Optional[RetryExecutor] = None,
    ) -> "IssueSyncEngine":
        """Build an engine from the configuration currently stored in ``kv``."""
        store = ConfigStore(kv)
        tables = {
            name: await store.get_table(name)
            for name in (USER_TABLE, FIELD_TABLE, STATUS_TABLE)
        }
        return cls(
            local,
            remote,
            kv,
            await store.get_sync_config(),
            options=await store.get_sync_options(),
            tables=tables,
            retry=retry,
        )

    # ---------------------------------------------------------------------
    # Entry points
    # ---------------------------------------------------------------------

    async def sync_issue(self, issue_key: str, event_type: str = EVENT_ISSUE_UPDATED) -> SyncResult:
        """
        Sync one local issue, creating or updating its remote counterpart.

        Args:
            issue_key: Local issue key
            event_type: Event that triggered the sync, used by the loop guard

        Returns:
            The SyncResult of the attempt; skipped attempts carry a skip reason
        """
        skip_reason = await self.guard.should_skip(issue_key, event_type)
        if skip_reason:
            result = SyncResult(SYNC_SKIP)
            result.mark_skipped(skip_reason)
            logger.info(f"Skipping {issue_key} ({event_type}): {skip_reason}")
            await self.stats.record_sync(
                SYNC_LOOP_PREVENTED,
                False,
                issue_key=issue_key,
                details={"reason": skip_reason, "eventType": event_type},
            )
            return result

        try:
            self.config.require_configured()
        except SyncConfigurationError as e:
            result = SyncResult(SYNC_SKIP)
            result.add_error(str(e))
            await self.stats.record_sync(SYNC_SKIP, False, error=str(e), issue_key=issue_key)
            return result

        issue = await self.local.get_issue(issue_key)
        if not issue:
            result = SyncResult(SYNC_SKIP)
            result.mark_skipped(SKIP_ISSUE_NOT_FOUND)
            await self.stats.record_sync(
                SYNC_SKIP,
                False,
                error=SKIP_ISSUE_NOT_FOUND,
                issue_key=issue_key,
                details={"eventType": event_type},
            )
            return result

        fields = issue.get("fields", {})
        project_key = (fields.get("project") or {}).get("key")
        if not is_project_allowed(project_key, self.config):
            result = SyncResult(SYNC_SKIP)
            result.mark_skipped(f"Project {project_key} is not in the allowed list")
            return result

        logger.info(f"Processing {issue_key}, event: {event_type}")
        remote_key = await self.mappings.get_remote_key(issue_key)
        details = {
            "projectKey": project_key,
            "issueType": (fields.get("issuetype") or {}).get("name", "unknown"),
        }

        if remote_key:
            result = SyncResult(SYNC_UPDATE)
            try:
                await self.update_remote_issue(issue_key, remote_key, issue, result)
            except Exception as e:
                logger.error(f"Error syncing {issue_key}: {e}", exc_info=True)
                result.add_error(f"Error updating remote issue: {e}")
        else:
            result = SyncResult(SYNC_CREATE)
            try:
                remote_key = await self.create_remote_issue(issue, result)
            except Exception as e:
                logger.error(f"Error syncing {issue_key}: {e}", exc_info=True)
                result.add_error(f"Error creating remote issue: {e}")

        success = result.success and remote_key is not None
        details.update({
            "remoteKey": remote_key or "failed",
            "fieldsUpdated": list(result.fields_updated),
            "warnings": list(result.warnings),
        })
        await self.stats.record_sync(
            result.operation,
            success,
            error="; ".join(result.errors) or None,
            issue_key=issue_key,
            details=details,
        )
        await self.stats.log_audit_entry(result.operation, issue_key, remote_key, success, result.errors)
        result.log_summary(issue_key, remote_key)
        return result

    async def handle_local_event(self, payload: Dict[str, Any]) -> Optional[SyncResult]:
        """
        Dispatch a local tracker webhook payload.

        Returns None for events that are acknowledged but not acted on.
        """
        event_type = payload.get("webhookEvent") or ""
        issue_key = (payload.get("issue") or {}).get("key")

        if event_type == EVENT_ISSUE_CREATED and issue_key:
            await self.guard.mark_created(issue_key)
            return await self.sync_issue(issue_key, event_type)

        if event_type == EVENT_ISSUE_UPDATED and issue_key:
            return await self.sync_issue(issue_key, event_type)

        if event_type == EVENT_ISSUE_DELETED and issue_key:
            return await self.delete_remote_for_local(issue_key)

        if event_type == EVENT_COMMENT_CREATED and issue_key:
            comment_id = (payload.get("comment") or {}).get("id")
            if comment_id:
                return await self.sync_comment_event(issue_key, str(comment_id))

        if event_type == EVENT_LINK_CREATED:
            return await self.sync_link_event(payload.get("issueLink") or {})

        if event_type == EVENT_LINK_DELETED:
            return await self.delete_link_event(payload.get("issueLink") or {})

        logger.info(f"Ignoring local event '{event_type}'")
        return None

    # ---------------------------------------------------------------------
    # Create path
    # ---------------------------------------------------------------------

    async def build_create_fields(self, issue: Dict[str, Any], result: SyncResult) -> Dict[str, Any]:
        """Remote create payload for ``issue``. Unmapped parents are queued, not created."""
        fields = issue.get("fields", {})
        payload: Dict[str, Any] = {
            "project": {"key": self.config.remote_project_key},
            "summary": fields.get("summary") or "",
            "description": description_to_document(fields.get("description")),
            "issuetype": {"name": (fields.get("issuetype") or {}).get("name") or DEFAULT_ISSUE_TYPE},
        }

        if fields.get("priority"):
            payload["priority"] = {"name": fields["priority"].get("name")}
        if fields.get("labels"):
            payload["labels"] = list(fields["labels"])
        if fields.get("duedate"):
            payload["duedate"] = fields["duedate"]

        for name in NAMED_LIST_FIELDS:
            named = _named(fields.get(name))
            if named:
                payload[name] = named
                logger.debug(f"Syncing {len(named)} {name}: {', '.join(n['name'] for n in named)}")

        timetracking = _timetracking(fields.get("timetracking"))
        if timetracking:
            payload["timetracking"] = timetracking

        parent_key = (fields.get("parent") or {}).get("key")
        if parent_key:
            remote_parent = await self.mappings.get_remote_key(parent_key)
            if remote_parent:
                payload["parent"] = {"key": remote_parent}
                logger.info(f"Mapped parent: {parent_key} -> {remote_parent}")
            else:
                await self.mappings.enqueue_pending_child(parent_key, issue["key"])
                logger.info(
                    f"Parent {parent_key} not synced yet, creating {issue['key']} without parent "
                    f"(queued for re-parenting)"
                )

        for role in ("assignee", "reporter"):
            remote_account = self.user_table.to_outbound(_account_id(fields.get(role)))
            if remote_account:
                payload[role] = {"accountId": remote_account}

        self._apply_custom_fields(fields, payload, result)
        return payload

    async def create_remote_issue(self, issue: Dict[str, Any], result: SyncResult) -> Optional[str]:
        """
        Create the remote counterpart of ``issue``.

        Returns:
            The new remote key, or None when the create itself failed
        """
        issue_key = issue["key"]
        fields = issue.get("fields", {})
        payload = await self.build_create_fields(issue, result)

        try:
            logger.info(f"Creating remote issue for {issue_key}")
            await self.guard.mark_syncing(issue_key)
            created = await self.retry.execute(
                lambda: self.remote.create_issue(payload),
                f"Create issue {issue_key}",
            )
        except Exception as e:
            result.add_error(f"Create failed: {e}")
            return None

        remote_key = created.key
        logger.info(f"Created {issue_key} -> {remote_key}")
        await self.mappings.store_mapping(issue_key, remote_key)
        result.fields_updated.extend(sorted(payload.keys()))

        status = fields.get("status") or {}
        if status.get("name") and status["name"] != INITIAL_STATUS:
            await transition_remote_issue(
                self.remote, self.retry, remote_key, status["name"], self.status_table, result,
                status_id=status.get("id"),
            )

        attachment_map: Dict[str, str] = {}
        if self.options.sync_attachments:
            attachment_map = await sync_attachments(
                self.local, self.remote, self.mappings, self.retry, issue, remote_key, result
            )
        if self.options.sync_links:
            await sync_issue_links(self.remote, self.mappings, self.retry, issue, remote_key, result)
        if self.options.sync_comments:
            await sync_all_comments(
                self.local, self.remote, self.mappings, self.retry, issue_key, remote_key, result,
                org_name=self.org_name,
            )

        description = fields.get("description")
        if attachment_map and has_media(description):
            try:
                rewritten = rewrite_media_references(description, attachment_map)
                await self.retry.execute(
                    lambda: self.remote.update_issue(remote_key, {"description": rewritten}),
                    f"Update description of {remote_key} with media",
                )
                logger.info(f"Updated {remote_key} description with media references")
            except Exception as e:
                logger.warning(f"Media description update failed for {remote_key}: {e}")
                result.add_warning(MEDIA_DESCRIPTION_WARNING)

        await self._reparent_pending_children(issue_key, remote_key, result)
        return remote_key

    async def _reparent_pending_children(self, parent_key: str, remote_parent: str, result: SyncResult) -> None:
        for child_key in await self.mappings.consume_pending_children(parent_key):
            remote_child = await self.mappings.get_remote_key(child_key)
            if not remote_child:
                logger.debug(f"Pending child {child_key} has no remote counterpart, dropping")
                continue
            try:
                await self.guard.mark_syncing(child_key)
                await self.retry.execute(
                    lambda: self.remote.update_issue(remote_child, {"parent": {"key": remote_parent}}),
                    f"Re-parent {remote_child} under {remote_parent}",
                )
                logger.info(f"Re-parented {remote_child} under {remote_parent}")
            except Exception as e:
                result.add_warning(f"Could not set parent of {remote_child}: {e}")

    # ---------------------------------------------------------------------
    # Update path
    # ---------------------------------------------------------------------

    async def build_update_fields(self, issue: Dict[str, Any], result: SyncResult) -> Dict[str, Any]:
        """
        Remote update payload for ``issue``.

        Fields present locally but cleared are sent as explicit clears:
        ``None`` for assignee and parent, ``[]`` for the named list fields.
        """
        fields = issue.get("fields", {})
        payload: Dict[str, Any] = {
            "summary": fields.get("summary") or "",
            "description": description_to_document(fields.get("description")),
        }

        if fields.get("priority"):
            payload["priority"] = {"name": fields["priority"].get("name")}
        if "labels" in fields:
            payload["labels"] = list(fields.get("labels") or [])
        if fields.get("duedate"):
            payload["duedate"] = fields["duedate"]

        for name in NAMED_LIST_FIELDS:
            if name in fields:
                payload[name] = _named(fields.get(name))

        timetracking = _timetracking(fields.get("timetracking"))
        if timetracking:
            payload["timetracking"] = timetracking

        if "parent" in fields:
            parent_key = (fields.get("parent") or {}).get("key")
            if not parent_key:
                payload["parent"] = None
            else:
                remote_parent = await self.mappings.get_remote_key(parent_key)
                if remote_parent:
                    payload["parent"] = {"key": remote_parent}
                else:
                    await self.mappings.enqueue_pending_child(parent_key, issue["key"])

        if "assignee" in fields:
            local_account = _account_id(fields.get("assignee"))
            if not local_account:
                payload["assignee"] = None
            else:
                remote_account = self.user_table.to_outbound(local_account)
                if remote_account:
                    payload["assignee"] = {"accountId": remote_account}

        self._apply_custom_fields(fields, payload, result)
        return payload

    async def update_remote_issue(
        self,
        local_key: str,
        remote_key: str,
        issue: Dict[str, Any],
        result: SyncResult,
    ) -> None:
        """Bring ``remote_key`` in line with ``issue``. Only the field update can fail the sync."""
        await self.guard.mark_syncing(local_key)

        if self.options.sync_attachments:
            await sync_attachments(self.local, self.remote, self.mappings, self.retry, issue, remote_key, result)
        if self.options.sync_links:
            await sync_issue_links(self.remote, self.mappings, self.retry, issue, remote_key, result)
        if self.options.sync_comments:
            await sync_all_comments(
                self.local, self.remote, self.mappings, self.retry, local_key, remote_key, result,
                org_name=self.org_name,
            )

        payload = await self.build_update_fields(issue, result)
        try:
            logger.info(f"Updating remote issue: {local_key} -> {remote_key}")
            await self.retry.execute(
                lambda: self.remote.update_issue(remote_key, payload),
                f"Update issue {remote_key}",
            )
        except Exception as e:
            result.add_error(f"Update failed: {e}")
            return

        result.fields_updated.extend(sorted(payload.keys()))
        status = issue.get("fields", {}).get("status") or {}
        if not status.get("name"):
            return
        current = await self._remote_status(remote_key)
        if already_in_status(current, status["name"], self.status_table, status_id=status.get("id")):
            logger.debug(f"{remote_key} is already in status {current.get('name')}")
        else:
            await transition_remote_issue(
                self.remote, self.retry, remote_key, status["name"], self.status_table, result,
                status_id=status.get("id"),
            )

    async def _remote_status(self, remote_key: str) -> Optional[Dict[str, Any]]:
        try:
            remote_issue = await self.remote.get_issue(remote_key)
        except Exception as e:
            logger.warning(f"Could not read current status of {remote_key}: {e}")
            return None
        if not remote_issue:
            return None
        return remote_issue.get("fields", {}).get("status")

    def _apply_custom_fields(self, fields: Dict[str, Any], payload: Dict[str, Any], result: SyncResult) -> None:
        for local_field, remote_field in self.field_table.invert().items():
            value = fields.get(local_field)
            if value is None:
                continue

            normalized = normalize_field_value(value)
            if normalized.action == DROP:
                if normalized.warning:
                    result.add_warning(f"Skipping field {local_field}: {normalized.warning}")
                continue
            if normalized.action == ID_LIST and not self.options.sync_sprints:
                logger.debug(f"Skipping sprint field {local_field} - sprint sync disabled")
                continue

            payload[remote_field] = normalized.value

    # ---------------------------------------------------------------------
    # Comments, links and deletes
    # ---------------------------------------------------------------------

    async def sync_comment_event(self, issue_key: str, comment_id: str) -> SyncResult:
        """Propagate a single newly created local comment."""
        result = SyncResult(SYNC_COMMENT)

        if not self.options.sync_comments:
            result.mark_skipped("Comment sync disabled")
            return result
        if await self.guard.was_created_by_counterpart(issue_key):
            result.mark_skipped("Issue was created by remote sync")
            return result

        remote_key = await self.mappings.get_remote_key(issue_key)
        if not remote_key:
            result.mark_skipped(f"No remote issue found for {issue_key}")
            return result

        comment = await self.local.get_comment(issue_key, comment_id)
        if not comment:
            result.add_error("Could not fetch comment data")
        else:
            await sync_comment(
                self.remote, self.mappings, self.retry, comment, remote_key, self.org_name, result
            )
            if result.comments.failed:
                result.add_error(f"Comment sync failed: {'; '.join(result.comments.errors)}")

        await self.stats.record_sync(
            SYNC_COMMENT,
            result.success,
            error="; ".join(result.errors) or None,
            issue_key=issue_key,
            details={"remoteKey": remote_key, "commentId": comment_id},
        )
        result.log_summary(issue_key, remote_key)
        return result

    async def sync_link_event(self, link: Dict[str, Any]) -> Optional[SyncResult]:
        """
        Sync both ends of a newly created local link.

        The destination is synced first so the source's link finds it mapped.
        """
        source_key = await self._issue_key_for_id(link.get("sourceIssueId"))
        destination_key = await self._issue_key_for_id(link.get("destinationIssueId"))
        if not source_key and not destination_key:
            logger.warning("Could not determine issue keys from link event")
            return None

        result = None
        for issue_key in (destination_key, source_key):
            if issue_key:
                result = await self.sync_issue(issue_key, EVENT_ISSUE_UPDATED)
        return result

    async def delete_link_event(self, link: Dict[str, Any]) -> Optional[SyncResult]:
        """
        Remove the remote counterpart of a deleted local link.

        The remote link is found among the remote source issue's links by the
        remote destination key and, when the event names it, the link type.
        """
        link_id = link.get("id")
        if not link_id:
            logger.warning("Could not determine link id from delete event")
            return None
        link_id = str(link_id)
        link_type = (link.get("issueLinkType") or {}).get("name")

        source_key = await self._issue_key_for_id(link.get("sourceIssueId"))
        destination_key = await self._issue_key_for_id(link.get("destinationIssueId"))
        if not source_key or not destination_key:
            logger.warning(f"Could not determine both issue keys for deleted link {link_id}")
            return None

        result = SyncResult(SYNC_LINK_DELETE)
        for issue_key in (source_key, destination_key):
            await self.mappings.remove_pending_link(issue_key, link_id)

        remote_source = await self.mappings.get_remote_key(source_key)
        remote_destination = await self.mappings.get_remote_key(destination_key)
        if not remote_source or not remote_destination:
            await self.mappings.remove_link_mapping(link_id)
            result.mark_skipped(f"Link {source_key} -> {destination_key} was never synced")
            return result

        logger.info(f"Link deleted: {source_key} -> {destination_key} ({link_type or 'any type'})")
        try:
            self.config.require_configured()
            remote_issue = await self.remote.get_issue(remote_source)
            remote_links = (remote_issue or {}).get("fields", {}).get("issuelinks") or []
            matching = next(
                (
                    remote_link for remote_link in remote_links
                    if link_endpoints(remote_link)[0] == remote_destination
                    and (not link_type or (remote_link.get("type") or {}).get("name") == link_type)
                ),
                None,
            )
            if matching is None:
                logger.info(f"Link {remote_source} -> {remote_destination} not found on remote, already deleted")
                await self.mappings.remove_link_mapping(link_id)
                result.add_link_skipped(destination_key, "not found on remote")
                return result

            await self.retry.execute(
                lambda: self.remote.delete_issue_link(str(matching.get("id"))),
                f"Delete link {matching.get('id')} from {remote_source}",
            )
            await self.mappings.remove_link_mapping(link_id)
            result.add_link_success(destination_key, link_type or "")
            logger.info(f"Deleted remote link {matching.get('id')} ({remote_source} -> {remote_destination})")
        except Exception as e:
            logger.error(f"Error deleting remote link for {link_id}: {e}", exc_info=True)
            result.add_error(f"Link delete failed: {e}")

        await self.stats.record_sync(
            SYNC_LINK_DELETE,
            result.success,
            error="; ".join(result.errors) or None,
            issue_key=source_key,
            details={"remoteKey": remote_source, "linkedIssue": destination_key},
        )
        return result

    async def _issue_key_for_id(self, issue_id: Any) -> Optional[str]:
        if not issue_id:
            return None
        try:
            issue = await self.local.get_issue(str(issue_id))
        except Exception as e:
            logger.warning(f"Could not resolve issue {issue_id}: {e}")
            return None
        return issue.get("key") if issue else None

    async def delete_remote_for_local(self, issue_key: str) -> SyncResult:
        """Delete the remote counterpart of a deleted local issue and clean up its records."""
        result = SyncResult(SYNC_DELETE)
        remote_key = await self.mappings.get_remote_key(issue_key)
        if not remote_key:
            result.mark_skipped(f"Issue {issue_key} was never synced")
            return result

        try:
            self.config.require_configured()
            deleted = await self.retry.execute(
                lambda: self.remote.delete_issue(remote_key),
                f"Delete issue {remote_key}",
            )
            if not deleted:
                logger.info(f"Remote issue {remote_key} was already gone")
            await self.mappings.cleanup_issue_data(issue_key, remote_key)
            logger.info(f"Deleted remote issue {remote_key}")
        except Exception as e:
            logger.error(f"Error deleting remote issue {remote_key}: {e}", exc_info=True)
            result.add_error(f"Delete failed: {e}")

        await self.stats.record_sync(
            SYNC_DELETE,
            result.success,
            error="; ".join(result.errors) or None,
            issue_key=issue_key,
            details={"remoteKey": remote_key},
        )
        await self.stats.log_audit_entry(SYNC_DELETE, issue_key, remote_key, result.success, result.errors)
        return result
