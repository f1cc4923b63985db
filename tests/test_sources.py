from __future__ import annotations

import asyncio
from typing import Any

import httpx
import pytest

from fakes import make_mr
from mrsync.fetch_client import CLIENT_ERROR, TRANSIENT, FetchError
from mrsync.models import MergeRequestState
from mrsync.sources import (
    GitLabMergeRequestFetcher,
    JiraWorkItemFetcher,
    is_relevant_merge_request,
)


def _gitlab_mr(mr_id: int, title: str = "Fix ABC-42 crash") -> dict[str, Any]:
    return {
        "id": mr_id,
        "iid": mr_id,
        "project_id": 7,
        "title": title,
        "description": "",
        "state": "opened",
        "source_branch": f"feature/ABC-{mr_id}",
        "target_branch": "main",
        "created_at": "2026-02-01T10:00:00.000Z",
        "updated_at": "2026-02-03T10:00:00.000Z",
        "author": {"id": 11, "name": "Ann", "username": "ann"},
        "assignees": [{"id": 12, "name": "Bob", "username": "bob"}],
        "reviewers": [],
        "labels": ["backend"],
        "web_url": f"https://gitlab.example.com/mr/{mr_id}",
    }


def _jira_issue(key: str) -> dict[str, Any]:
    return {
        "id": "1000",
        "key": key,
        "fields": {
            "summary": "Crash on start",
            "status": {"name": "In Progress"},
            "priority": {"name": "High"},
            "issuetype": {"name": "Bug"},
            "created": "2026-01-20T09:00:00.000+0000",
            "updated": "2026-02-02T09:00:00.000+0000",
            "assignee": {"accountId": "acc-1", "displayName": "Cy"},
            "labels": ["mobile"],
            "customfield_10017": [{"name": "Sprint 9"}],
        },
    }


def _client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def test_gitlab_fetch_page_reads_pagination_headers():
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(
            200,
            json=[_gitlab_mr(1), _gitlab_mr(2)],
            headers={"x-next-page": "3", "x-total": "250"},
        )

    fetcher = GitLabMergeRequestFetcher(
        "https://gitlab.example.com/api/v4", "secret", client=_client(handler)
    )
    page = asyncio.run(fetcher.fetch_page({"group_id": "my/group", "page_token": 2}))

    assert [mr.id for mr in page.records] == ["1", "2"]
    assert page.next_page_token == 3
    assert page.total_count == 250
    assert page.records[0].state is MergeRequestState.OPENED
    assert page.records[0].author.id == "11"

    request = seen[0]
    assert request.url.raw_path.split(b"?")[0] == b"/api/v4/groups/my%2Fgroup/merge_requests"
    assert request.url.params["page"] == "2"
    assert request.url.params["per_page"] == "100"
    assert request.url.params["scope"] == "all"
    assert request.headers["PRIVATE-TOKEN"] == "secret"


def test_gitlab_last_page_has_no_next_token():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=[_gitlab_mr(1)], headers={"x-next-page": ""})

    fetcher = GitLabMergeRequestFetcher("https://gitlab.example.com/api/v4", client=_client(handler))
    page = asyncio.run(fetcher.fetch_page({"group_id": "1"}))

    assert page.next_page_token is None


@pytest.mark.parametrize(
    ("status", "code"),
    [(500, TRANSIENT), (503, TRANSIENT), (429, TRANSIENT), (401, CLIENT_ERROR), (404, CLIENT_ERROR)],
)
def test_http_status_maps_to_fetch_error_code(status: int, code: str):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status, json={"message": "nope"})

    fetcher = GitLabMergeRequestFetcher("https://gitlab.example.com/api/v4", client=_client(handler))

    with pytest.raises(FetchError) as exc_info:
        asyncio.run(fetcher.fetch_page({"group_id": "1"}))
    assert exc_info.value.code == code


def test_transport_error_is_transient():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    fetcher = GitLabMergeRequestFetcher("https://gitlab.example.com/api/v4", client=_client(handler))

    with pytest.raises(FetchError) as exc_info:
        asyncio.run(fetcher.fetch_page({"group_id": "1"}))
    assert exc_info.value.code == TRANSIENT


def test_jira_search_pages_by_start_at():
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        start = int(request.url.params["startAt"])
        issues = [_jira_issue(f"ABC-{start + i}") for i in range(2)]
        return httpx.Response(200, json={"issues": issues, "total": 3, "startAt": start})

    fetcher = JiraWorkItemFetcher(
        "https://jira.example.com", "me@example.com", "token", client=_client(handler)
    )

    async def scenario():
        first = await fetcher.fetch_page({"jql": "project = ABC"})
        second = await fetcher.fetch_page({"jql": "project = ABC", "page_token": first.next_page_token})
        return first, second

    first, second = asyncio.run(scenario())

    assert first.next_page_token == 2
    assert second.next_page_token is None
    assert first.total_count == 3
    assert first.records[0].key == "ABC-0"
    assert first.records[0].sprint_name == "Sprint 9"
    assert first.records[0].url == "https://jira.example.com/browse/ABC-0"
    assert seen[0].url.path == "/rest/api/2/search"
    assert seen[0].url.params["jql"] == "project = ABC"
    assert seen[0].headers["Authorization"].startswith("Basic ")


def test_jira_fetch_one_returns_none_on_404():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/ABC-42"):
            return httpx.Response(200, json=_jira_issue("ABC-42"))
        return httpx.Response(404, json={"errorMessages": ["Issue does not exist"]})

    fetcher = JiraWorkItemFetcher("https://jira.example.com", client=_client(handler))

    async def scenario():
        return await fetcher.fetch_one("ABC-42"), await fetcher.fetch_one("ABC-404")

    found, missing = asyncio.run(scenario())
    assert found.key == "ABC-42"
    assert found.status == "In Progress"
    assert missing is None


def test_jira_fetch_one_propagates_server_errors():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(502)

    fetcher = JiraWorkItemFetcher("https://jira.example.com", client=_client(handler))

    with pytest.raises(FetchError) as exc_info:
        asyncio.run(fetcher.fetch_one("ABC-1"))
    assert exc_info.value.code == TRANSIENT


def test_relevance_matches_author_assignee_or_reviewer():
    mr = make_mr(author_id="a", reviewer_ids=("r",))
    assert is_relevant_merge_request(mr, {"a"})
    assert is_relevant_merge_request(mr, {"r"})
    assert not is_relevant_merge_request(mr, {"z"})
    assert not is_relevant_merge_request(mr, set())
