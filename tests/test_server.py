from __future__ import annotations

import asyncio

import pytest

from fakes import FakeClock, FakePageFetcher, make_mr, make_work_item
from mrsync import server
from mrsync.cache import TieredCache
from mrsync.config import SyncSettings
from mrsync.scheduler import SyncScheduler
from mrsync.sources import GITLAB, JIRA

SETTINGS = SyncSettings(
    gitlab_group_id="42",
    gitlab_user_ids=frozenset({"u1"}),
    jira_host="https://jira.example.com",
    retry_base_seconds=0.0,
)


@pytest.fixture
def gitlab() -> FakePageFetcher:
    return FakePageFetcher(pages=[[make_mr("1", "Fix ABC-1")]])


@pytest.fixture(autouse=True)
def _wired(monkeypatch: pytest.MonkeyPatch, gitlab: FakePageFetcher):
    service = server.build_service(
        SETTINGS,
        fetchers={
            GITLAB: gitlab,
            JIRA: FakePageFetcher(records_by_key={"ABC-1": make_work_item("ABC-1")}),
        },
        cache=TieredCache(clock=FakeClock()),
    )
    scheduler = SyncScheduler(service.refresh_data_type, clock=FakeClock())
    monkeypatch.setattr(server, "_settings", SETTINGS)
    monkeypatch.setattr(server, "_service", service)
    monkeypatch.setattr(server, "_scheduler", scheduler)


def test_get_derived_tool_returns_items_and_metadata():
    result = asyncio.run(server.get_derived("mrsWithJira"))

    assert result["items"][0]["jiraKey"] == "ABC-1"
    assert result["_metadata"]["operation"] == "mrsWithJira"


def test_refresh_tool_refetches(gitlab: FakePageFetcher):
    async def scenario():
        await server.get_derived("baseMRs")
        await server.refresh("baseMRs")

    asyncio.run(scenario())
    assert len(gitlab.page_calls) == 2


def test_threshold_tools():
    assert server.get_thresholds()["stalled"] == 14

    updated = server.update_threshold("stalled", 7)

    assert updated["stalled"] == 7
    assert server.get_thresholds()["stalled"] == 7
    with pytest.raises(ValueError):
        server.update_threshold("stalled", 0)


def test_set_active_context_reports_scheduler_state():
    health = server.set_active_context("po")

    assert health["activeContext"] == "po"
    assert health["jobs"]["jiraTickets"]["priority"] > health["jobs"]["jiraTickets"]["basePriority"]


def test_refresh_now_runs_the_job(gitlab: FakePageFetcher):
    result = asyncio.run(server.refresh_now("tooOld"))

    assert result["started"] is True
    assert result["job"]["dataType"] == "tooOld"
    assert result["job"]["failureCount"] == 0
    assert len(gitlab.page_calls) == 1


def test_override_tools_normalise_the_key():
    async def scenario():
        set_result = await server.set_override("1", " def-2 ")
        candidates = await server.get_candidates("1")
        cleared = await server.clear_override("1")
        return set_result, candidates, cleared

    set_result, candidates, cleared = asyncio.run(scenario())

    assert set_result == {"mrId": "1", "jiraKey": "DEF-2"}
    assert candidates[0]["key"] == "DEF-2"
    assert candidates[0]["source"] == "manual"
    assert cleared == {"mrId": "1", "removed": True}


def test_invalidate_tools_report_removed_counts():
    asyncio.run(server.get_derived("baseMRs"))

    removed = server.invalidate_all()["removed"]

    assert removed > 0
    assert server.invalidate_all() == {"removed": 0}
    assert server.invalidate_source(GITLAB) == {"source": GITLAB, "removed": 0}


def test_sync_health_combines_scheduler_and_service():
    health = server.get_sync_health()

    assert set(health) == {"scheduler", "service"}
    assert health["service"]["identityCount"] == 1
    assert "jobs" in health["scheduler"]
