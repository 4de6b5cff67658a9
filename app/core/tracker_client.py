"""
Async REST client for a Jira-style tracker (REST API v3).

The same client talks to both the local and the remote tracker. Responses
the sync engine depends on are validated against small pydantic models so
an unexpected shape fails loudly instead of surfacing later as a KeyError.
"Not found" on reads and deletes is returned as ``None`` / ``False`` rather
than raised.
"""

import base64
import logging
from typing import Annotated, Any, Awaitable, Callable, Dict, List, Optional, Type, TypeVar

import httpx
from pydantic import BaseModel, BeforeValidator, ConfigDict, ValidationError

from app.config import settings
from app.core.logging_utils import sanitize_for_logging


logger = logging.getLogger(__name__)

UsageRecorder = Callable[[str, bool, bool], Awaitable[None]]

ModelT = TypeVar("ModelT", bound=BaseModel)

IdStr = Annotated[str, BeforeValidator(lambda value: str(value))]


class TrackerApiError(Exception):
    """A tracker request failed (non-2xx response, transport error or bad payload)."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code

    @property
    def is_rate_limited(self) -> bool:
        return self.status_code == 429

    @property
    def is_not_found(self) -> bool:
        return self.status_code == 404


# -------------------------------------------------------------------------
# Response schemas
# -------------------------------------------------------------------------

class _Response(BaseModel):
    model_config = ConfigDict(extra="ignore")


class CreatedIssue(_Response):
    id: IdStr
    key: str


class TransitionTarget(_Response):
    id: IdStr
    name: str


class Transition(_Response):
    id: IdStr
    name: str = ""
    to: TransitionTarget


class RemoteAttachment(_Response):
    id: IdStr
    filename: str
    size: int = 0


class CreatedComment(_Response):
    id: IdStr


def _parse(model: Type[ModelT], data: Any, what: str) -> ModelT:
    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise TrackerApiError(f"Unexpected {what} response shape: {e.error_count()} validation error(s)") from e


class TrackerClient:
    """
    Tracker REST client using httpx with Basic Auth.

    Example:
        >>> async with TrackerClient("https://acme.atlassian.net", "me@acme.io", "token") as client:
        ...     issue = await client.get_issue("PROJ-1")
    """

    def __init__(
        self,
        base_url: str,
        email: str,
        api_token: str,
        timeout: Optional[float] = None,
        usage_recorder: Optional[UsageRecorder] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.usage_recorder = usage_recorder

        credentials = f"{email}:{api_token}"
        encoded = base64.b64encode(credentials.encode()).decode()

        self.client = httpx.AsyncClient(
            timeout=httpx.Timeout(timeout or settings.tracker_api_timeout),
            limits=httpx.Limits(max_keepalive_connections=10, max_connections=50),
            headers={
                "Authorization": f"Basic {encoded}",
                "Accept": "application/json",
            },
            transport=transport,
        )

    async def __aenter__(self) -> "TrackerClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def close(self) -> None:
        await self.client.aclose()

    # ---------------------------------------------------------------------
    # Transport
    # ---------------------------------------------------------------------

    async def _record(self, endpoint: str, success: bool, rate_limited: bool) -> None:
        if self.usage_recorder is None:
            return
        try:
            await self.usage_recorder(endpoint, success, rate_limited)
        except Exception as e:
            logger.warning(f"Failed to record API usage for {endpoint}: {e}")

    async def _request(
        self,
        method: str,
        path: str,
        *,
        allow_not_found: bool = False,
        **kwargs: Any,
    ) -> Optional[httpx.Response]:
        """
        Send a request and raise TrackerApiError for failures.

        Returns None for a 404 when ``allow_not_found`` is set.
        """
        url = f"{self.base_url}{path}"
        try:
            response = await self.client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            await self._record(path, False, False)
            raise TrackerApiError(f"{method} {path} failed: {e}") from e

        if response.status_code == 404 and allow_not_found:
            await self._record(path, True, False)
            return None

        if response.status_code >= 400:
            rate_limited = response.status_code == 429
            await self._record(path, False, rate_limited)
            detail = sanitize_for_logging(response.text, max_length=300)
            raise TrackerApiError(
                f"{method} {path} returned {response.status_code}: {detail}",
                status_code=response.status_code,
            )

        await self._record(path, True, False)
        return response

    @staticmethod
    def _json(response: httpx.Response) -> Any:
        if response.status_code == 204 or not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise TrackerApiError(f"Invalid JSON from {response.request.url}") from e

    # ---------------------------------------------------------------------
    # Issues
    # ---------------------------------------------------------------------

    async def get_issue(self, issue_key: str) -> Optional[Dict[str, Any]]:
        """Full issue including attachments and links, or None if it does not exist."""
        response = await self._request(
            "GET",
            f"/rest/api/3/issue/{issue_key}",
            params={"fields": "*all,-comment", "expand": "renderedFields"},
            allow_not_found=True,
        )
        if response is None:
            return None
        return self._json(response)

    async def create_issue(self, fields: Dict[str, Any]) -> CreatedIssue:
        response = await self._request("POST", "/rest/api/3/issue", json={"fields": fields})
        return _parse(CreatedIssue, self._json(response), "create issue")

    async def update_issue(self, issue_key: str, fields: Dict[str, Any]) -> None:
        await self._request("PUT", f"/rest/api/3/issue/{issue_key}", json={"fields": fields})

    async def delete_issue(self, issue_key: str) -> bool:
        """Delete an issue with its subtasks. False when it was already gone."""
        response = await self._request(
            "DELETE",
            f"/rest/api/3/issue/{issue_key}",
            params={"deleteSubtasks": "true"},
            allow_not_found=True,
        )
        return response is not None

    async def search_issues(
        self,
        jql: str,
        max_results: int = 100,
        fields: Optional[List[str]] = None,
    ) -> List[Dict[str, Any]]:
        """JQL search following ``nextPageToken`` until ``max_results`` issues are collected."""
        issues: List[Dict[str, Any]] = []
        next_page_token: Optional[str] = None

        while len(issues) < max_results:
            params: Dict[str, Any] = {
                "jql": jql,
                "maxResults": min(100, max_results - len(issues)),
                "fields": ",".join(fields or ["key", "summary", "updated", "project"]),
            }
            if next_page_token:
                params["nextPageToken"] = next_page_token

            response = await self._request("GET", "/rest/api/3/search/jql", params=params)
            data = self._json(response) or {}
            page = data.get("issues", [])
            issues.extend(page)

            next_page_token = data.get("nextPageToken")
            if data.get("isLast", True) or not next_page_token or not page:
                break

        return issues[:max_results]

    # ---------------------------------------------------------------------
    # Comments
    # ---------------------------------------------------------------------

    async def get_comments(self, issue_key: str) -> List[Dict[str, Any]]:
        comments: List[Dict[str, Any]] = []
        start_at = 0
        while True:
            response = await self._request(
                "GET",
                f"/rest/api/3/issue/{issue_key}/comment",
                params={"startAt": start_at, "maxResults": 100},
            )
            data = self._json(response) or {}
            page = data.get("comments", [])
            comments.extend(page)
            start_at += len(page)
            if not page or start_at >= data.get("total", 0):
                return comments

    async def get_comment(self, issue_key: str, comment_id: str) -> Optional[Dict[str, Any]]:
        response = await self._request(
            "GET",
            f"/rest/api/3/issue/{issue_key}/comment/{comment_id}",
            allow_not_found=True,
        )
        if response is None:
            return None
        return self._json(response)

    async def add_comment(self, issue_key: str, body: Dict[str, Any]) -> CreatedComment:
        response = await self._request(
            "POST",
            f"/rest/api/3/issue/{issue_key}/comment",
            json={"body": body},
        )
        return _parse(CreatedComment, self._json(response), "add comment")

    # ---------------------------------------------------------------------
    # Attachments
    # ---------------------------------------------------------------------

    async def download_attachment(self, attachment_id: str) -> Optional[bytes]:
        response = await self._request(
            "GET",
            f"/rest/api/3/attachment/content/{attachment_id}",
            headers={"Accept": "*/*"},
            follow_redirects=True,
            allow_not_found=True,
        )
        if response is None:
            return None
        return response.content

    async def upload_attachment(
        self,
        issue_key: str,
        filename: str,
        content: bytes,
        mime_type: str = "application/octet-stream",
    ) -> List[RemoteAttachment]:
        response = await self._request(
            "POST",
            f"/rest/api/3/issue/{issue_key}/attachments",
            headers={"X-Atlassian-Token": "no-check"},
            files={"file": (filename, content, mime_type)},
        )
        data = self._json(response)
        if not isinstance(data, list):
            raise TrackerApiError("Unexpected upload attachment response shape: expected a list")
        return [_parse(RemoteAttachment, item, "upload attachment") for item in data]

    # ---------------------------------------------------------------------
    # Transitions and links
    # ---------------------------------------------------------------------

    async def get_transitions(self, issue_key: str) -> List[Transition]:
        response = await self._request("GET", f"/rest/api/3/issue/{issue_key}/transitions")
        data = self._json(response) or {}
        return [_parse(Transition, item, "transitions") for item in data.get("transitions", [])]

    async def transition_issue(self, issue_key: str, transition_id: str) -> None:
        await self._request(
            "POST",
            f"/rest/api/3/issue/{issue_key}/transitions",
            json={"transition": {"id": transition_id}},
        )

    async def create_issue_link(self, link_type: str, inward_key: str, outward_key: str) -> None:
        await self._request(
            "POST",
            "/rest/api/3/issueLink",
            json={
                "type": {"name": link_type},
                "inwardIssue": {"key": inward_key},
                "outwardIssue": {"key": outward_key},
            },
        )

    async def delete_issue_link(self, link_id: str) -> bool:
        """Delete a link by id. False when it was already gone."""
        response = await self._request(
            "DELETE",
            f"/rest/api/3/issueLink/{link_id}",
            allow_not_found=True,
        )
        return response is not None

    # ---------------------------------------------------------------------
    # Metadata
    # ---------------------------------------------------------------------

    async def get_projects(self) -> List[Dict[str, Any]]:
        response = await self._request("GET", "/rest/api/3/project")
        return self._json(response) or []

    async def get_project_statuses(self, project_key: str) -> List[Dict[str, Any]]:
        """Distinct statuses used by a project's issue types."""
        response = await self._request("GET", f"/rest/api/3/project/{project_key}/statuses")
        statuses: Dict[str, Dict[str, Any]] = {}
        for issue_type in self._json(response) or []:
            for status in issue_type.get("statuses", []):
                statuses[str(status.get("id"))] = {"id": str(status.get("id")), "name": status.get("name")}
        return list(statuses.values())

    async def get_fields(self) -> List[Dict[str, Any]]:
        response = await self._request("GET", "/rest/api/3/field")
        return self._json(response) or []

    async def search_users(self, query: str, max_results: int = 50) -> List[Dict[str, Any]]:
        response = await self._request(
            "GET",
            "/rest/api/3/user/search",
            params={"query": query, "maxResults": max_results},
        )
        return self._json(response) or []

    async def get_server_info(self) -> Dict[str, Any]:
        response = await self._request("GET", "/rest/api/3/serverInfo")
        return self._json(response) or {}
