"""Tests for the configuration and translation table API."""

import pytest

from app.core.sync_config import ConfigStore
from app.core.translation import FIELD_TABLE, USER_TABLE


@pytest.mark.asyncio
async def test_get_config_empty(client):
    """Test an empty store reports an unconfigured connection."""
    response = await client.get("/api/config")
    assert response.status_code == 200
    data = response.json()
    assert data["is_configured"] is False
    assert data["sync_direction"] == "one-way"
    assert data["has_api_token"] is False


@pytest.mark.asyncio
async def test_update_config_normalizes_and_hides_secrets(client, kv_store):
    """Test saving the connection settings."""
    response = await client.put("/api/config", json={
        "remote_url": "https://partner.atlassian.net/",
        "remote_email": "bot@partner.com",
        "remote_api_token": "tok",
        "remote_project_key": "prt",
        "allowed_projects": ["loc", "LOC", "ops"],
        "webhook_secret": "hush",
    })
    assert response.status_code == 200
    data = response.json()
    assert data["remote_url"] == "https://partner.atlassian.net"
    assert data["remote_project_key"] == "PRT"
    assert data["allowed_projects"] == ["LOC", "OPS"]
    assert data["is_configured"] is True
    assert data["has_webhook_secret"] is True
    assert "remote_api_token" not in data
    assert "webhook_secret" not in data

    stored = await ConfigStore(kv_store).get_sync_config()
    assert stored.remote_api_token == "tok"


@pytest.mark.asyncio
async def test_partial_update_keeps_token(client, configured_store):
    """Test an empty token in an update leaves the stored token alone."""
    response = await client.put("/api/config", json={"sync_direction": "bidirectional", "remote_api_token": ""})
    assert response.status_code == 200

    stored = await ConfigStore(configured_store).get_sync_config()
    assert stored.is_bidirectional
    assert stored.remote_api_token == "remote-token"
    assert stored.remote_project_key == "REM"


@pytest.mark.asyncio
async def test_update_config_rejects_bad_values(client):
    response = await client.put("/api/config", json={"remote_url": "ftp://example.com"})
    assert response.status_code == 422
    assert "http or https" in response.json()["detail"]

    response = await client.put("/api/config", json={"remote_email": "not-an-email"})
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_options_round_trip(client):
    """Test the feature switches default on, except sprints."""
    response = await client.get("/api/config/options")
    assert response.json() == {
        "syncComments": True,
        "syncAttachments": True,
        "syncLinks": True,
        "syncSprints": False,
    }

    response = await client.put("/api/config/options", json={"syncComments": False, "syncSprints": True})
    assert response.status_code == 200

    data = (await client.get("/api/config/options")).json()
    assert data["syncComments"] is False
    assert data["syncSprints"] is True


@pytest.mark.asyncio
async def test_scheduled_config_validation(client):
    response = await client.put("/api/config/scheduled", json={"enabled": True, "intervalMinutes": 0})
    assert response.status_code == 422

    response = await client.put(
        "/api/config/scheduled", json={"enabled": True, "intervalMinutes": 15, "syncScope": "all"}
    )
    assert response.status_code == 200

    data = (await client.get("/api/config/scheduled")).json()
    assert data == {"enabled": True, "intervalMinutes": 15, "syncScope": "all"}


# -------------------------------------------------------------------------
# Translation tables
# -------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_unknown_table_is_404(client):
    response = await client.get("/api/translations/priorities")
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_replace_table_accepts_both_entry_forms(client, kv_store):
    """Test full entries and bare local ids are both stored as entries."""
    response = await client.put("/api/translations/users", json={
        "remote-1": {"localId": "local-1", "remoteName": "Ann (partner)", "localName": "Ann"},
        "remote-2": "local-2",
    })
    assert response.status_code == 200
    data = response.json()
    assert data["entries"]["remote-2"] == {"localId": "local-2", "remoteName": "", "localName": ""}
    assert data["duplicate_local_ids"] == []

    table = await ConfigStore(kv_store).get_table(USER_TABLE)
    assert table.to_outbound("local-1") == "remote-1"
    assert table.to_inbound("remote-2") == "local-2"


@pytest.mark.asyncio
async def test_replace_table_reports_duplicates(client, kv_store):
    """Test a table with a repeated local id is saved and flagged."""
    response = await client.put("/api/translations/fields", json={
        "customfield_1": "customfield_9",
        "customfield_2": "customfield_9",
    })
    assert response.status_code == 200
    assert response.json()["duplicate_local_ids"] == ["customfield_9"]

    table = await ConfigStore(kv_store).get_table(FIELD_TABLE)
    assert len(table.entries) == 2

    data = (await client.get("/api/translations/fields")).json()
    assert data["duplicate_local_ids"] == ["customfield_9"]
