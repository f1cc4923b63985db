"""
HTTP page fetchers for GitLab merge requests and Jira work items.

Both fetchers speak the ``PageFetcher`` protocol and translate HTTP failures
into ``FetchError`` codes: network errors and 5xx responses are transient,
other 4xx responses are client errors. Retrying is left to the fetch client.
"""

from __future__ import annotations

import logging
from typing import Any
from urllib.parse import quote

import httpx

from .fetch_client import CLIENT_ERROR, TRANSIENT, FetchError, Page
from .models import MergeRequest, WorkItem

logger = logging.getLogger(__name__)

GITLAB = "gitlab"
JIRA = "jira"

DEFAULT_TIMEOUT = 30.0


def is_relevant_merge_request(mr: MergeRequest, ids: set[str]) -> bool:
    """True if the author, an assignee or a reviewer is in ``ids``."""
    return bool(mr.participant_ids & ids)


def _to_fetch_error(source: str, exc: Exception) -> FetchError:
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        code = TRANSIENT if status >= 500 or status == 429 else CLIENT_ERROR
        return FetchError(code, f"{source} returned HTTP {status}", source)
    return FetchError(TRANSIENT, f"{source} request failed: {exc}", source)


class _HttpFetcher:
    source = ""

    def __init__(
        self,
        base_url: str,
        *,
        client: httpx.AsyncClient | None = None,
        headers: dict[str, str] | None = None,
        auth: httpx.Auth | tuple[str, str] | None = None,
        timeout: float = DEFAULT_TIMEOUT,
    ):
        self._base_url = base_url.rstrip("/")
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            headers=headers, auth=auth, timeout=timeout
        )
        if client is not None:
            if headers:
                self._client.headers.update(headers)
            if auth is not None:
                self._client.auth = auth

    async def _get(self, path: str, params: dict[str, Any] | None = None) -> httpx.Response:
        url = f"{self._base_url}{path}"
        try:
            response = await self._client.get(url, params=params)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise _to_fetch_error(self.source, exc) from exc
        return response

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


class GitLabMergeRequestFetcher(_HttpFetcher):
    """Lists a group's merge requests page by page.

    Base params: ``group_id`` (required), ``state`` (default ``opened``),
    ``include_subgroups`` (default true). The page token is the GitLab page
    number taken from the ``x-next-page`` header.
    """

    source = GITLAB

    def __init__(
        self,
        base_url: str,
        token: str = "",
        *,
        per_page: int = 100,
        client: httpx.AsyncClient | None = None,
        timeout: float = DEFAULT_TIMEOUT,
    ):
        headers = {"PRIVATE-TOKEN": token} if token else None
        super().__init__(base_url, client=client, headers=headers, timeout=timeout)
        self._per_page = per_page

    async def fetch_page(self, params: dict[str, Any]) -> Page:
        group_id = str(params["group_id"])
        page = int(params.get("page_token") or 1)
        query = {
            "state": params.get("state", "opened"),
            "scope": "all",
            "include_subgroups": str(params.get("include_subgroups", True)).lower(),
            "per_page": self._per_page,
            "page": page,
        }
        if params.get("updated_after"):
            query["updated_after"] = params["updated_after"]

        response = await self._get(
            f"/groups/{quote(group_id, safe='')}/merge_requests", params=query
        )
        payload = response.json()
        if not isinstance(payload, list):
            raise FetchError(CLIENT_ERROR, "unexpected GitLab response shape", self.source)

        next_page = response.headers.get("x-next-page") or None
        total = response.headers.get("x-total")
        return Page(
            records=tuple(MergeRequest.from_gitlab(item) for item in payload),
            next_page_token=int(next_page) if next_page else None,
            total_count=int(total) if total and total.isdigit() else None,
        )


class JiraWorkItemFetcher(_HttpFetcher):
    """Searches Jira issues with JQL and looks single issues up by key."""

    source = JIRA

    def __init__(
        self,
        host: str,
        email: str = "",
        token: str = "",
        *,
        max_results: int = 100,
        epic_field: str = "customfield_10014",
        sprint_field: str = "customfield_10017",
        client: httpx.AsyncClient | None = None,
        timeout: float = DEFAULT_TIMEOUT,
    ):
        auth = (email, token) if email and token else None
        super().__init__(
            host,
            client=client,
            headers={"Accept": "application/json"},
            auth=auth,
            timeout=timeout,
        )
        self._host = host
        self._max_results = max_results
        self._epic_field = epic_field
        self._sprint_field = sprint_field

    def _to_work_item(self, data: dict[str, Any]) -> WorkItem:
        return WorkItem.from_jira(
            data,
            host=self._host,
            epic_field=self._epic_field,
            sprint_field=self._sprint_field,
        )

    async def fetch_page(self, params: dict[str, Any]) -> Page:
        start_at = int(params.get("page_token") or 0)
        query = {
            "jql": params["jql"],
            "startAt": start_at,
            "maxResults": self._max_results,
        }
        response = await self._get("/rest/api/2/search", params=query)
        payload = response.json()
        issues = payload.get("issues") or []
        total = payload.get("total")

        next_start = start_at + len(issues)
        has_more = bool(issues) and (total is None or next_start < int(total))
        return Page(
            records=tuple(self._to_work_item(issue) for issue in issues),
            next_page_token=next_start if has_more else None,
            total_count=int(total) if total is not None else None,
        )

    async def fetch_one(self, key: str) -> WorkItem | None:
        try:
            response = await self._get(f"/rest/api/2/issue/{quote(key, safe='')}")
        except FetchError as exc:
            cause = exc.__cause__
            if isinstance(cause, httpx.HTTPStatusError) and cause.response.status_code == 404:
                logger.warning("Jira issue %s not found", key)
                return None
            raise
        return self._to_work_item(response.json())
