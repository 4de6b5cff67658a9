"""Tests for the tracker REST client against a mocked transport."""

import base64
import json

import httpx
import pytest

from app.core.tracker_client import TrackerApiError, TrackerClient


def _client(handler, recorder=None):
    return TrackerClient(
        "https://acme.atlassian.net/",
        "me@acme.io",
        "token",
        usage_recorder=recorder,
        transport=httpx.MockTransport(handler),
    )


@pytest.mark.asyncio
async def test_requests_use_basic_auth_and_base_url():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"key": "PROJ-1", "fields": {}})

    async with _client(handler) as client:
        assert client.base_url == "https://acme.atlassian.net"
        issue = await client.get_issue("PROJ-1")

    assert issue["key"] == "PROJ-1"
    expected = base64.b64encode(b"me@acme.io:token").decode()
    assert seen[0].headers["Authorization"] == f"Basic {expected}"
    assert seen[0].url.path == "/rest/api/3/issue/PROJ-1"


@pytest.mark.asyncio
async def test_get_issue_not_found_returns_none():
    async with _client(lambda request: httpx.Response(404, json={})) as client:
        assert await client.get_issue("PROJ-404") is None


@pytest.mark.asyncio
async def test_delete_issue_reports_missing():
    async with _client(lambda request: httpx.Response(404)) as client:
        assert await client.delete_issue("PROJ-1") is False
    async with _client(lambda request: httpx.Response(204)) as client:
        assert await client.delete_issue("PROJ-1") is True


@pytest.mark.asyncio
async def test_delete_issue_link():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(204)

    async with _client(handler) as client:
        assert await client.delete_issue_link("8002") is True

    assert seen[0].method == "DELETE"
    assert seen[0].url.path == "/rest/api/3/issueLink/8002"

    async with _client(lambda request: httpx.Response(404)) as client:
        assert await client.delete_issue_link("8002") is False


@pytest.mark.asyncio
async def test_create_issue_parses_response():
    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        assert body["fields"]["summary"] == "Hello"
        return httpx.Response(201, json={"id": 10001, "key": "REM-1", "self": "https://..."})

    async with _client(handler) as client:
        created = await client.create_issue({"summary": "Hello"})

    assert created.key == "REM-1"
    assert created.id == "10001"


@pytest.mark.asyncio
async def test_unexpected_shape_raises():
    async with _client(lambda request: httpx.Response(201, json={"unexpected": True})) as client:
        with pytest.raises(TrackerApiError, match="Unexpected create issue response shape"):
            await client.create_issue({"summary": "Hello"})


@pytest.mark.asyncio
async def test_error_response_carries_status_code():
    async with _client(lambda request: httpx.Response(429, text="Too many requests")) as client:
        with pytest.raises(TrackerApiError) as exc_info:
            await client.update_issue("PROJ-1", {"summary": "x"})

    assert exc_info.value.status_code == 429
    assert exc_info.value.is_rate_limited


@pytest.mark.asyncio
async def test_transport_error_wrapped():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    async with _client(handler) as client:
        with pytest.raises(TrackerApiError) as exc_info:
            await client.get_projects()
    assert exc_info.value.status_code is None


@pytest.mark.asyncio
async def test_usage_recorder_sees_every_call():
    calls = []

    async def recorder(endpoint, success, rate_limited):
        calls.append((endpoint, success, rate_limited))

    responses = iter([httpx.Response(200, json=[]), httpx.Response(429)])

    async with _client(lambda request: next(responses), recorder) as client:
        await client.get_projects()
        with pytest.raises(TrackerApiError):
            await client.get_projects()

    assert calls == [
        ("/rest/api/3/project", True, False),
        ("/rest/api/3/project", False, True),
    ]


@pytest.mark.asyncio
async def test_search_follows_page_tokens():
    def handler(request: httpx.Request) -> httpx.Response:
        token = request.url.params.get("nextPageToken")
        if token is None:
            return httpx.Response(200, json={
                "issues": [{"key": "A-1"}, {"key": "A-2"}],
                "nextPageToken": "page-2",
                "isLast": False,
            })
        return httpx.Response(200, json={"issues": [{"key": "A-3"}], "isLast": True})

    async with _client(handler) as client:
        issues = await client.search_issues("project = A", max_results=10)

    assert [issue["key"] for issue in issues] == ["A-1", "A-2", "A-3"]


@pytest.mark.asyncio
async def test_get_comments_pages_by_offset():
    def handler(request: httpx.Request) -> httpx.Response:
        start = int(request.url.params["startAt"])
        page = [{"id": str(start + n)} for n in range(2)] if start < 4 else []
        return httpx.Response(200, json={"comments": page, "total": 4})

    async with _client(handler) as client:
        comments = await client.get_comments("A-1")

    assert [comment["id"] for comment in comments] == ["0", "1", "2", "3"]


@pytest.mark.asyncio
async def test_upload_attachment_sends_multipart():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.headers["X-Atlassian-Token"] == "no-check"
        assert b"file-bytes" in request.content
        return httpx.Response(200, json=[{"id": 77, "filename": "log.txt", "size": 10}])

    async with _client(handler) as client:
        uploaded = await client.upload_attachment("A-1", "log.txt", b"file-bytes", "text/plain")

    assert uploaded[0].id == "77"


@pytest.mark.asyncio
async def test_transitions_parsed():
    payload = {"transitions": [{"id": "31", "name": "Close", "to": {"id": 6, "name": "Closed"}}]}
    async with _client(lambda request: httpx.Response(200, json=payload)) as client:
        transitions = await client.get_transitions("A-1")

    assert transitions[0].id == "31"
    assert transitions[0].to.name == "Closed"
    assert transitions[0].to.id == "6"


@pytest.mark.asyncio
async def test_project_statuses_deduplicated():
    payload = [
        {"name": "Task", "statuses": [{"id": "1", "name": "To Do"}, {"id": "3", "name": "Done"}]},
        {"name": "Bug", "statuses": [{"id": "1", "name": "To Do"}]},
    ]
    async with _client(lambda request: httpx.Response(200, json=payload)) as client:
        statuses = await client.get_project_statuses("A")

    assert statuses == [{"id": "1", "name": "To Do"}, {"id": "3", "name": "Done"}]
