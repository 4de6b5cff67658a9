"""Tests for remote-to-local webhook handling."""

import pytest

from app.core.adf import to_plain_text
from app.core.inbound_sync import InboundSyncHandler, WebhookRejected, verify_webhook_secret
from app.core.loop_guard import LoopGuard
from app.core.mapping_store import MappingStore
from app.core.stats import StatsStore
from app.core.translation import TranslationTable


@pytest.fixture
def bidirectional_config(sync_config):
    return sync_config.model_copy(update={"sync_direction": "bidirectional"})


@pytest.fixture
def handler(kv_store, local_tracker, bidirectional_config, fast_retry):
    users = TranslationTable.from_raw({"remote-acc": "local-acc"})
    return InboundSyncHandler(local_tracker, kv_store, bidirectional_config, user_table=users, retry=fast_retry)


def _event(event_type, key="REM-5", **fields):
    return {"webhookEvent": event_type, "issue": {"key": key, "fields": fields}}


def test_secret_checks():
    verify_webhook_secret("s3cret", "s3cret")

    with pytest.raises(WebhookRejected) as missing:
        verify_webhook_secret(None, "s3cret")
    assert (missing.value.status_code, missing.value.detail) == (401, "Missing secret")

    with pytest.raises(WebhookRejected) as wrong:
        verify_webhook_secret("guess", "s3cret")
    assert wrong.value.detail == "Invalid secret"

    with pytest.raises(WebhookRejected):
        verify_webhook_secret("anything", "")


@pytest.mark.asyncio
async def test_one_way_configuration_rejected(kv_store, local_tracker, sync_config):
    handler = InboundSyncHandler(local_tracker, kv_store, sync_config)

    with pytest.raises(WebhookRejected) as exc_info:
        await handler.process(_event("jira:issue_updated"), "s3cret")
    assert exc_info.value.status_code == 403


@pytest.mark.asyncio
async def test_payload_without_issue_rejected(handler):
    with pytest.raises(WebhookRejected) as exc_info:
        await handler.process({"webhookEvent": "jira:issue_updated"}, "s3cret")
    assert exc_info.value.status_code == 400


@pytest.mark.asyncio
async def test_unknown_event_ignored(handler):
    response = await handler.process(_event("comment_created"), "s3cret")
    assert response == {"message": "Ignored", "event": "comment_created"}


@pytest.mark.asyncio
async def test_remote_create_makes_local_issue(handler, local_tracker, kv_store):
    response = await handler.process(
        _event("jira:issue_created", summary="From partner", description="Plain description"),
        "s3cret",
    )

    assert response == {"message": "Processed", "event": "jira:issue_created"}
    payload = local_tracker.created[0]
    assert payload["project"] == {"key": "LOC"}
    assert payload["issuetype"] == {"name": "Task"}
    assert to_plain_text(payload["description"]) == "Plain description"

    mappings = MappingStore(kv_store)
    assert await mappings.get_remote_key("LOC-1") == "REM-5"
    assert await mappings.get_counterpart_origin("LOC-1") == "REM-5"

    issue_key, body = local_tracker.added_comments[0]
    assert issue_key == "LOC-1"
    assert to_plain_text(body) == "Synced from remote issue: https://remote-org.atlassian.net/browse/REM-5"


@pytest.mark.asyncio
async def test_remote_create_survives_comment_failure(handler, local_tracker, kv_store):
    local_tracker.failures["add_comment"] = RuntimeError("comments disabled")

    local_key = await handler.handle_created({"key": "REM-5", "fields": {"summary": "x"}})

    assert local_key == "LOC-1"
    assert await MappingStore(kv_store).get_local_key("REM-5") == "LOC-1"


@pytest.mark.asyncio
async def test_remote_create_for_mapped_issue_updates(handler, local_tracker, kv_store):
    await MappingStore(kv_store).store_mapping("LOC-9", "REM-5")

    local_key = await handler.handle_created({"key": "REM-5", "fields": {"summary": "Renamed"}})

    assert local_key == "LOC-9"
    assert local_tracker.created == []
    assert local_tracker.updates == [("LOC-9", {"summary": "Renamed"})]


@pytest.mark.asyncio
async def test_remote_update_applies_fields(handler, local_tracker, kv_store):
    await MappingStore(kv_store).store_mapping("LOC-9", "REM-5")

    applied = await handler.handle_updated({
        "key": "REM-5",
        "fields": {"summary": "New title", "description": None, "assignee": {"accountId": "remote-acc"}},
    })

    assert applied is True
    key, fields = local_tracker.updates[0]
    assert key == "LOC-9"
    assert fields["summary"] == "New title"
    assert fields["description"]["content"] == []
    assert fields["assignee"] == {"accountId": "local-acc"}
    assert await LoopGuard(kv_store, MappingStore(kv_store)).is_syncing("LOC-9")


@pytest.mark.asyncio
async def test_remote_update_clears_assignee(handler, local_tracker, kv_store):
    await MappingStore(kv_store).store_mapping("LOC-9", "REM-5")

    await handler.handle_updated({"key": "REM-5", "fields": {"assignee": None}})

    assert local_tracker.updates == [("LOC-9", {"assignee": None})]


@pytest.mark.asyncio
async def test_remote_update_of_unmapped_issue_ignored(handler, local_tracker):
    assert await handler.handle_updated({"key": "REM-404", "fields": {"summary": "x"}}) is False
    assert local_tracker.updates == []


@pytest.mark.asyncio
async def test_echo_of_outbound_write_suppressed(handler, local_tracker, kv_store):
    mappings = MappingStore(kv_store)
    await mappings.store_mapping("LOC-9", "REM-5")
    await LoopGuard(kv_store, mappings).mark_syncing("LOC-9")

    response = await handler.process(_event("jira:issue_updated", summary="echo"), "s3cret")

    assert response["message"] == "Processed"
    assert local_tracker.updates == []
    stats = await StatsStore(kv_store).get_sync_stats()
    assert stats["loopPreventedSkips"] == 1


@pytest.mark.asyncio
async def test_remote_delete_removes_local_issue(handler, local_tracker, kv_store):
    mappings = MappingStore(kv_store)
    await mappings.store_mapping("LOC-9", "REM-5")
    await mappings.mark_created_by_counterpart("LOC-9", "REM-5")
    local_tracker.add_issue("LOC-9", summary="doomed")

    assert await handler.handle_deleted({"key": "REM-5"}) is True

    assert local_tracker.deleted == ["LOC-9"]
    assert await mappings.get_local_key("REM-5") is None
    assert await mappings.get_counterpart_origin("LOC-9") is None
    assert await LoopGuard(kv_store, mappings).is_syncing("LOC-9")


@pytest.mark.asyncio
async def test_create_without_allowed_project_fails(kv_store, local_tracker, bidirectional_config, fast_retry):
    config = bidirectional_config.model_copy(update={"allowed_projects": []})
    handler = InboundSyncHandler(local_tracker, kv_store, config, retry=fast_retry)

    with pytest.raises(ValueError):
        await handler.handle_created({"key": "REM-5", "fields": {}})
