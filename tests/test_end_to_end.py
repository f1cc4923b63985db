from __future__ import annotations

import asyncio

from fakes import FakeClock, FakePageFetcher, make_mr, make_work_item
from mrsync import aggregation
from mrsync.association import AssociationEngine, InMemoryOverrideStore
from mrsync.cache import TieredCache
from mrsync.config import SyncSettings, Thresholds
from mrsync.fetch_client import SourceFetchClient, StaticIdentitySet
from mrsync.server import build_service
from mrsync.sources import GITLAB, JIRA, is_relevant_merge_request


def test_fetch_enhance_group_pipeline_yields_one_ticket_group():
    ticket = make_work_item("ABC-42")
    gitlab = FakePageFetcher(pages=[[make_mr("1", "Fix ABC-42 crash")]])
    jira = FakePageFetcher(pages=[[ticket]], records_by_key={"ABC-42": ticket})
    client = SourceFetchClient(
        TieredCache(clock=FakeClock()),
        {GITLAB: gitlab, JIRA: jira},
        StaticIdentitySet({"u1"}),
        relevance={GITLAB: is_relevant_merge_request},
    )
    engine = AssociationEngine(
        InMemoryOverrideStore(),
        lambda key, bypass_cache=False: client.lookup(JIRA, key, bypass_cache=bypass_cache),
    )

    async def pipeline():
        mrs = await client.fetch_all(GITLAB, {"group_id": "1"})
        tickets = await client.fetch_all(JIRA, {"jql": "project = ABC"})
        enriched = await engine.enhance(mrs)
        return tickets, aggregation.group_by_reference(enriched, Thresholds())

    tickets, groups = asyncio.run(pipeline())

    assert [t.key for t in tickets] == ["ABC-42"]
    assert len(groups) == 1
    assert groups[0].key == "ABC-42"
    assert groups[0].total == 1
    assert groups[0].to_dict()["totalMRs"] == 1


def test_service_serves_the_same_scenario():
    ticket = make_work_item("ABC-42")
    service = build_service(
        SyncSettings(
            gitlab_group_id="1",
            gitlab_user_ids=frozenset({"u1"}),
            jira_host="https://jira.example.com",
        ),
        fetchers={
            GITLAB: FakePageFetcher(pages=[[make_mr("1", "Fix ABC-42 crash")]]),
            JIRA: FakePageFetcher(records_by_key={"ABC-42": ticket}),
        },
        cache=TieredCache(clock=FakeClock()),
    )

    result = asyncio.run(service.get_derived("jiraWithMRs"))

    assert len(result["items"]) == 1
    assert result["items"][0]["key"] == "ABC-42"
    assert result["items"][0]["totalMRs"] == 1
    assert result["_metadata"]["thresholds"] == {"overdue": 28, "stalled": 14}
