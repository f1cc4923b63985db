"""
MCP server exposing the merge request / work item dashboard data.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from mcp.server.fastmcp import FastMCP

from .association import AssociationEngine, InMemoryOverrideStore
from .cache import TieredCache
from .config import SyncSettings, Thresholds
from .fetch_client import SourceFetchClient, StaticIdentitySet
from .scheduler import SyncScheduler
from .service import UnifiedDataService
from .sources import (
    GITLAB,
    JIRA,
    GitLabMergeRequestFetcher,
    JiraWorkItemFetcher,
    is_relevant_merge_request,
)

logger = logging.getLogger(__name__)


def build_fetchers(settings: SyncSettings) -> dict[str, Any]:
    return {
        GITLAB: GitLabMergeRequestFetcher(settings.gitlab_api_url, settings.gitlab_token),
        JIRA: JiraWorkItemFetcher(settings.jira_host, settings.jira_email, settings.jira_token),
    }


def build_service(
    settings: SyncSettings,
    fetchers: dict[str, Any] | None = None,
    cache: TieredCache | None = None,
) -> UnifiedDataService:
    """Wire cache, fetch client, association engine and service together."""
    cache = cache or TieredCache()
    identities = StaticIdentitySet(settings.gitlab_user_ids)
    disabled = {}
    if not settings.jira_host:
        disabled[JIRA] = "missing JIRA_HOST"
    fetch_client = SourceFetchClient(
        cache,
        fetchers if fetchers is not None else build_fetchers(settings),
        identities,
        max_retries=settings.max_retries,
        retry_base=settings.retry_base_seconds,
        relevance={GITLAB: is_relevant_merge_request},
        required_params={GITLAB: ("group_id",), JIRA: ("jql",)},
        disabled=disabled,
        raw_ttl=settings.raw_ttl_seconds,
    )
    engine = AssociationEngine(
        InMemoryOverrideStore(),
        lambda key, bypass_cache=False: fetch_client.lookup(
            JIRA, key, bypass_cache=bypass_cache
        ),
        settings.preferred_projects,
    )
    return UnifiedDataService(cache, fetch_client, engine, Thresholds(), identities, settings)


_settings: SyncSettings | None = None
_service: UnifiedDataService | None = None
_scheduler: SyncScheduler | None = None


def get_settings() -> SyncSettings:
    global _settings
    if _settings is None:
        _settings = SyncSettings.from_env()
    return _settings


def get_service() -> UnifiedDataService:
    global _service
    if _service is None:
        _service = build_service(get_settings())
    return _service


def get_scheduler() -> SyncScheduler:
    global _scheduler
    if _scheduler is None:
        settings = get_settings()
        _scheduler = SyncScheduler(
            get_service().refresh_data_type,
            tick_seconds=settings.tick_seconds,
            max_concurrent=settings.max_concurrent_jobs,
            min_failure_backoff=settings.min_failure_backoff_seconds,
        )
    return _scheduler


@asynccontextmanager
async def _lifespan(server: FastMCP) -> AsyncIterator[None]:
    """Run the background sync scheduler for the lifetime of the server."""
    scheduler = get_scheduler()
    scheduler.start()
    try:
        yield
    finally:
        await scheduler.stop()
        await get_service().aclose()


mcp = FastMCP(
    "mrsync",
    instructions=(
        "GitLab merge requests joined with the Jira work items they reference. "
        "Reads are served from a tiered cache that a background scheduler keeps "
        "fresh. Results carry _metadata.notConfigured when a source is missing "
        "configuration, which is different from an error."
    ),
    lifespan=_lifespan,
)


@mcp.tool()
async def get_derived(operation: str, options: dict[str, Any] | None = None) -> dict[str, Any]:
    """Read a dashboard view through the cache.

    Args:
        operation: One of baseMRs, mrsWithJira, tooOldMRs, notUpdatedMRs,
            pendingReviewMRs, jiraTickets, jiraWithMRs.
        options: View options. ``page``/``per_page`` paginate; jiraWithMRs also
            accepts statuses, priorities, types, assignees, labels, search,
            sprintName, epicKey, authors, reviewers, mrLabels, min_age_days,
            max_age_days; jiraTickets accepts ``jql``.
    """
    return await get_service().get_derived(operation, options)


@mcp.tool()
async def refresh(operation: str, options: dict[str, Any] | None = None) -> dict[str, Any]:
    """Recompute a view from fresh source data, bypassing every cache read."""
    return await get_service().refresh(operation, options, bypass_cache=True)


@mcp.tool()
def set_active_context(context: str | None = None) -> dict[str, Any]:
    """Boost background refresh for a view context: po, dev, team or hygiene.

    Pass nothing to reset priorities.
    """
    scheduler = get_scheduler()
    scheduler.set_active_context(context)
    return scheduler.get_health()


@mcp.tool()
async def refresh_now(dataType: str) -> dict[str, Any]:
    """Run one background sync job immediately."""
    scheduler = get_scheduler()
    started = await scheduler.refresh_now(dataType)
    job = next(j for j in scheduler.jobs() if j.data_type == dataType)
    return {"started": started, "job": job.to_dict()}


@mcp.tool()
def invalidate_all() -> dict[str, Any]:
    """Drop every cached entry in every tier."""
    return {"removed": get_service().invalidate_all()}


@mcp.tool()
def invalidate_source(source: str) -> dict[str, Any]:
    """Drop one source's raw data and everything derived from any source."""
    return {"source": source, "removed": get_service().invalidate_source(source)}


@mcp.tool()
async def set_override(mrId: str, jiraKey: str) -> dict[str, Any]:
    """Manually associate a merge request with a work item key."""
    await get_service().set_override(mrId, jiraKey)
    return {"mrId": mrId, "jiraKey": jiraKey.strip().upper()}


@mcp.tool()
async def clear_override(mrId: str) -> dict[str, Any]:
    """Remove a manual association."""
    return {"mrId": mrId, "removed": await get_service().clear_override(mrId)}


@mcp.tool()
async def get_candidates(mrId: str) -> list[dict[str, Any]]:
    """Ranked work item keys for a merge request, manual override first."""
    return await get_service().candidates_for(mrId)


@mcp.tool()
def get_thresholds() -> dict[str, int]:
    """Age thresholds in days."""
    return get_service().thresholds.snapshot()


@mcp.tool()
def update_threshold(name: str, value: int) -> dict[str, int]:
    """Set one age threshold (positive whole days). Affects the next read."""
    thresholds = get_service().thresholds
    thresholds.update(name, value)
    return thresholds.snapshot()


@mcp.tool()
def get_sync_health() -> dict[str, Any]:
    """Scheduler job table, fetch failures and cache statistics."""
    return {
        "scheduler": get_scheduler().get_health(),
        "service": get_service().get_health(),
    }


def main() -> None:
    mcp.run()
