"""Tests for the background bulk job runner."""

from datetime import datetime, timedelta

import pytest

from app.config import settings
from app.core.bulk_sync import (
    BULK_STATUS_KEY,
    BulkJobAlreadyRunning,
    STATUS_CANCELLED,
    STATUS_COMPLETE,
    STATUS_ERROR,
    STATUS_IDLE,
    STATUS_RUNNING,
    _escape_jql_text,
)
from app.core.mapping_store import MappingStore
from tests.tracker_fakes import block_issue_fetch


def _add(tracker, key, summary, project="LOC"):
    return tracker.add_issue(
        key,
        project={"key": project},
        summary=summary,
        issuetype={"name": "Task"},
        status={"name": "To Do"},
    )


def test_escape_jql_text():
    assert _escape_jql_text('say "hi" \\ bye') == 'say \\"hi\\" \\\\ bye'


@pytest.mark.asyncio
async def test_idle_slot(bulk_runner):
    assert await bulk_runner.poll() == {"status": STATUS_IDLE}


@pytest.mark.asyncio
async def test_bulk_creates_every_issue(bulk_runner, configured_store, local_tracker, remote_tracker):
    _add(local_tracker, "LOC-1", "first")
    _add(local_tracker, "LOC-2", "second")

    slot = await bulk_runner.start()
    assert slot["status"] == STATUS_RUNNING
    await bulk_runner.wait()

    slot = await bulk_runner.poll()
    assert slot["status"] == STATUS_COMPLETE
    assert slot["results"]["scanned"] == 2
    assert slot["results"]["created"] == 2
    assert slot["results"]["errors"] == 0
    assert slot["progress"]["processed"] == 2
    assert local_tracker.searches == ["project = LOC ORDER BY key ASC"]
    assert await MappingStore(configured_store).get_remote_key("LOC-2") == "REM-2"


@pytest.mark.asyncio
async def test_bulk_adopts_remote_duplicate(bulk_runner, configured_store, local_tracker, remote_tracker):
    _add(local_tracker, "LOC-1", "Shared summary")
    remote_tracker.add_issue("REM-77", summary="Shared summary")

    await bulk_runner.start(issue_keys=["LOC-1"])
    await bulk_runner.wait()

    slot = await bulk_runner.poll()
    assert slot["results"]["alreadySynced"] == 1
    assert remote_tracker.created == []
    assert await MappingStore(configured_store).get_remote_key("LOC-1") == "REM-77"


@pytest.mark.asyncio
async def test_bulk_updates_existing_when_asked(bulk_runner, configured_store, local_tracker, remote_tracker):
    _add(local_tracker, "LOC-1", "renamed")
    await MappingStore(configured_store).store_mapping("LOC-1", "REM-1")

    await bulk_runner.start(issue_keys=["LOC-1"], update_existing=True)
    await bulk_runner.wait()

    slot = await bulk_runner.poll()
    assert slot["results"]["updated"] == 1
    assert remote_tracker.updates[0][0] == "REM-1"


@pytest.mark.asyncio
async def test_bulk_leaves_mapped_issue_alone_by_default(bulk_runner, configured_store, local_tracker, remote_tracker):
    _add(local_tracker, "LOC-1", "mapped")
    await MappingStore(configured_store).store_mapping("LOC-1", "REM-1")

    await bulk_runner.start(issue_keys=["LOC-1"])
    await bulk_runner.wait()

    assert (await bulk_runner.poll())["results"]["alreadySynced"] == 1
    assert remote_tracker.updates == []


@pytest.mark.asyncio
async def test_bulk_recreates_deleted_remote(bulk_runner, configured_store, local_tracker, remote_tracker):
    _add(local_tracker, "LOC-1", "lost remote")
    mappings = MappingStore(configured_store)
    await mappings.store_mapping("LOC-1", "REM-99")

    await bulk_runner.start(issue_keys=["LOC-1"], sync_missing_data=True)
    await bulk_runner.wait()

    slot = await bulk_runner.poll()
    assert slot["results"]["recreated"] == 1
    assert await mappings.get_remote_key("LOC-1") == "REM-1"
    assert await mappings.get_local_key("REM-99") is None


@pytest.mark.asyncio
async def test_bulk_fills_missing_comments(bulk_runner, configured_store, local_tracker, remote_tracker):
    _add(local_tracker, "LOC-1", "present")
    remote_tracker.add_issue("REM-1", summary="present")
    local_tracker.comments["LOC-1"] = [{"id": "1", "body": "late comment", "author": {"displayName": "Ann"}}]
    await MappingStore(configured_store).store_mapping("LOC-1", "REM-1")

    await bulk_runner.start(issue_keys=["LOC-1"], sync_missing_data=True)
    await bulk_runner.wait()

    assert (await bulk_runner.poll())["results"]["alreadySynced"] == 1
    assert [key for key, _ in remote_tracker.added_comments] == ["REM-1"]


@pytest.mark.asyncio
async def test_bulk_counts_per_issue_errors(bulk_runner, configured_store, local_tracker):
    _add(local_tracker, "LOC-1", "exists")

    await bulk_runner.start(issue_keys=["LOC-404", "LOC-1"])
    await bulk_runner.wait()

    slot = await bulk_runner.poll()
    assert slot["status"] == STATUS_COMPLETE
    assert slot["results"]["errors"] == 1
    assert slot["results"]["created"] == 1


@pytest.mark.asyncio
async def test_bulk_without_configuration_errors(bulk_runner, kv_store):
    await bulk_runner.start()
    await bulk_runner.wait()

    slot = await bulk_runner.poll()
    assert slot["status"] == STATUS_ERROR
    assert "Sync not configured" in slot["error"]


@pytest.mark.asyncio
async def test_bulk_cancel_stops_before_next_issue(bulk_runner, configured_store, local_tracker, remote_tracker):
    _add(local_tracker, "LOC-1", "one")
    _add(local_tracker, "LOC-2", "two")
    entered, release = block_issue_fetch(local_tracker)

    await bulk_runner.start(issue_keys=["LOC-1", "LOC-2"])
    await entered.wait()
    slot = await bulk_runner.cancel()
    assert slot["cancelRequested"] is True
    release.set()
    await bulk_runner.wait()

    slot = await bulk_runner.poll()
    assert slot["status"] == STATUS_CANCELLED
    assert slot["results"]["stoppedEarly"] is True
    assert slot["results"]["scanned"] == 1
    assert len(remote_tracker.created) == 1


@pytest.mark.asyncio
async def test_second_start_rejected_while_running(bulk_runner, configured_store, local_tracker):
    _add(local_tracker, "LOC-1", "one")

    await bulk_runner.start(issue_keys=["LOC-1"])
    with pytest.raises(BulkJobAlreadyRunning):
        await bulk_runner.start()
    await bulk_runner.wait()


@pytest.mark.asyncio
async def test_running_slot_from_another_worker_blocks_start(bulk_runner, configured_store, local_tracker):
    """Test a fresh running slot written elsewhere is respected."""
    now = datetime.utcnow().isoformat()
    other_job = {
        "status": STATUS_RUNNING,
        "startedAt": now,
        "updatedAt": now,
        "cancelRequested": False,
        "results": {"scanned": 3},
    }
    await configured_store.set(BULK_STATUS_KEY, other_job)
    _add(local_tracker, "LOC-1", "one")

    with pytest.raises(BulkJobAlreadyRunning):
        await bulk_runner.start(issue_keys=["LOC-1"])

    assert bulk_runner.task is None
    assert await bulk_runner.poll() == other_job


@pytest.mark.asyncio
async def test_stale_running_slot_is_taken_over(bulk_runner, configured_store, local_tracker):
    last_update = (datetime.utcnow() - timedelta(seconds=settings.bulk_sync_stale_seconds + 60)).isoformat()
    await configured_store.set(
        BULK_STATUS_KEY,
        {"status": STATUS_RUNNING, "startedAt": "2024-01-01T00:00:00", "updatedAt": last_update},
    )
    _add(local_tracker, "LOC-1", "one")

    await bulk_runner.start(issue_keys=["LOC-1"])
    await bulk_runner.wait()

    slot = await bulk_runner.poll()
    assert slot["status"] == STATUS_COMPLETE
    assert slot["results"]["created"] == 1


@pytest.mark.asyncio
async def test_cancel_when_idle_is_noop(bulk_runner):
    assert (await bulk_runner.cancel())["status"] == STATUS_IDLE
