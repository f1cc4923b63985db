"""
Read-through data service behind the dashboard views.

Each operation is computed from the raw source data, cached in the derived
tier, shaped for presentation and cached again in the client tier. Reads go
client -> derived -> compute. ``refresh`` skips every cache read, including
the raw source pages, and overwrites what it computes.
"""

from __future__ import annotations

import copy
import logging
import time
from collections.abc import Awaitable, Callable, Iterable
from typing import Any

from . import aggregation
from .association import AssociationEngine
from .cache import CLIENT, DERIVED, NOT_FOUND, TieredCache, generate_key
from .config import SyncSettings, Thresholds
from .fetch_client import SourceFetchClient, StaticIdentitySet
from .models import (
    EnrichedMergeRequest,
    MergeRequest,
    TicketGroup,
    WorkItem,
    enriched_to_dict,
    merge_request_to_dict,
    work_item_to_dict,
)
from .sources import GITLAB, JIRA

logger = logging.getLogger(__name__)

DERIVED_TIER = "derived"
CLIENT_TIER = "client"

BASE_MRS = "baseMRs"
MRS_WITH_JIRA = "mrsWithJira"
TOO_OLD_MRS = "tooOldMRs"
NOT_UPDATED_MRS = "notUpdatedMRs"
PENDING_REVIEW_MRS = "pendingReviewMRs"
JIRA_TICKETS = "jiraTickets"
JIRA_WITH_MRS = "jiraWithMRs"

OPERATIONS = (
    BASE_MRS,
    MRS_WITH_JIRA,
    TOO_OLD_MRS,
    NOT_UPDATED_MRS,
    PENDING_REVIEW_MRS,
    JIRA_TICKETS,
    JIRA_WITH_MRS,
)

# Scheduler data types use short names; map them onto operations.
DATA_TYPE_OPERATIONS = {
    "tooOld": TOO_OLD_MRS,
    "notUpdated": NOT_UPDATED_MRS,
    "pendingReview": PENDING_REVIEW_MRS,
    "mrsWithJira": MRS_WITH_JIRA,
    "jiraTickets": JIRA_TICKETS,
    "jiraWithMRs": JIRA_WITH_MRS,
}

OPERATION_SOURCES = {
    BASE_MRS: (GITLAB,),
    MRS_WITH_JIRA: (GITLAB, JIRA),
    TOO_OLD_MRS: (GITLAB,),
    NOT_UPDATED_MRS: (GITLAB,),
    PENDING_REVIEW_MRS: (GITLAB,),
    JIRA_TICKETS: (JIRA,),
    JIRA_WITH_MRS: (GITLAB, JIRA),
}

OPERATION_THRESHOLDS = {
    TOO_OLD_MRS: ("too_old",),
    NOT_UPDATED_MRS: ("not_updated",),
    PENDING_REVIEW_MRS: ("pending_review",),
    JIRA_WITH_MRS: ("overdue", "stalled"),
}

PAGINATION_KEYS = frozenset({"page", "per_page"})


class UnknownOperationError(KeyError):
    def __init__(self, operation: str):
        super().__init__(operation)
        self.operation = operation

    def __str__(self) -> str:
        return f"unknown operation '{self.operation}'"


class UnifiedDataService:
    def __init__(
        self,
        cache: TieredCache,
        fetch_client: SourceFetchClient,
        engine: AssociationEngine,
        thresholds: Thresholds,
        identities: StaticIdentitySet,
        settings: SyncSettings,
        clock: Callable[[], float] = time.time,
    ):
        self._cache = cache
        self._fetch = fetch_client
        self._engine = engine
        self.thresholds = thresholds
        self._identities = identities
        self._settings = settings
        self._clock = clock
        cache.add_tier(DERIVED_TIER, settings.derived_ttl_seconds, kind=DERIVED)
        cache.add_tier(CLIENT_TIER, settings.client_ttl_seconds, kind=CLIENT)

        self._compute: dict[str, Callable[[dict[str, Any], bool], Awaitable[list[Any]]]] = {
            BASE_MRS: self._compute_base_mrs,
            MRS_WITH_JIRA: self._compute_mrs_with_jira,
            TOO_OLD_MRS: self._compute_too_old,
            NOT_UPDATED_MRS: self._compute_not_updated,
            PENDING_REVIEW_MRS: self._compute_pending_review,
            JIRA_TICKETS: self._compute_jira_tickets,
            JIRA_WITH_MRS: self._compute_jira_with_mrs,
        }

    @property
    def engine(self) -> AssociationEngine:
        return self._engine

    # -- keys --------------------------------------------------------------

    def _resolve_operation(self, operation: str) -> str:
        operation = DATA_TYPE_OPERATIONS.get(operation, operation)
        if operation not in self._compute:
            raise UnknownOperationError(operation)
        return operation

    def _key_params(self, operation: str, options: dict[str, Any]) -> dict[str, Any]:
        params = dict(options)
        names = OPERATION_THRESHOLDS.get(operation, ())
        if names:
            params["thresholds"] = {name: getattr(self.thresholds, name) for name in names}
        return params

    def _derived_key(self, operation: str, options: dict[str, Any]) -> str:
        params = {k: v for k, v in options.items() if k not in PAGINATION_KEYS}
        return generate_key(f"derived:{operation}", self._key_params(operation, params))

    def _client_key(self, operation: str, options: dict[str, Any]) -> str:
        return generate_key(f"client:{operation}", self._key_params(operation, options))

    # -- source access -----------------------------------------------------

    def _gitlab_params(self) -> dict[str, Any]:
        return {"group_id": self._settings.gitlab_group_id, "state": "opened"}

    def _jira_params(self, options: dict[str, Any]) -> dict[str, Any]:
        return {"jql": options.get("jql") or self._settings.jira_jql}

    async def _base_mrs(self, bypass_cache: bool) -> list[MergeRequest]:
        return await self._fetch.fetch_all(
            GITLAB, self._gitlab_params(), bypass_cache=bypass_cache
        )

    async def _derived(self, operation: str, options: dict[str, Any], bypass_cache: bool) -> list[Any]:
        key = self._derived_key(operation, options)
        if not bypass_cache:
            cached = self._cache.get(DERIVED_TIER, key)
            if cached is not NOT_FOUND:
                return list(cached)
        value = await self._compute[operation](options, bypass_cache)
        if self._is_configured(operation):
            self._cache.set(DERIVED_TIER, key, tuple(value))
        return value

    # -- operations --------------------------------------------------------

    async def _compute_base_mrs(self, options: dict[str, Any], bypass_cache: bool) -> list[MergeRequest]:
        return await self._base_mrs(bypass_cache)

    async def _compute_mrs_with_jira(
        self, options: dict[str, Any], bypass_cache: bool
    ) -> list[EnrichedMergeRequest]:
        mrs = await self._base_mrs(bypass_cache)
        return await self._engine.enhance(mrs, bypass_cache=bypass_cache)

    async def _compute_too_old(self, options: dict[str, Any], bypass_cache: bool) -> list[MergeRequest]:
        mrs = await self._base_mrs(bypass_cache)
        return aggregation.too_old(mrs, self.thresholds.too_old)

    async def _compute_not_updated(
        self, options: dict[str, Any], bypass_cache: bool
    ) -> list[MergeRequest]:
        mrs = await self._base_mrs(bypass_cache)
        return aggregation.not_updated(mrs, self.thresholds.not_updated)

    async def _compute_pending_review(
        self, options: dict[str, Any], bypass_cache: bool
    ) -> list[MergeRequest]:
        mrs = await self._base_mrs(bypass_cache)
        return aggregation.pending_review(
            mrs, self.thresholds.pending_review, self._identities.current_ids()
        )

    async def _compute_jira_tickets(self, options: dict[str, Any], bypass_cache: bool) -> list[WorkItem]:
        return await self._fetch.fetch_all(
            JIRA, self._jira_params(options), bypass_cache=bypass_cache
        )

    async def _compute_jira_with_mrs(
        self, options: dict[str, Any], bypass_cache: bool
    ) -> list[TicketGroup]:
        enriched = await self._derived(MRS_WITH_JIRA, {}, bypass_cache)
        groups = aggregation.group_by_reference(enriched, self.thresholds)
        groups = aggregation.filter_groups(groups, aggregation.GroupCriteria.from_options(options))
        members = aggregation.MemberCriteria.from_options(options)
        if not members.is_empty():
            groups = aggregation.filter_group_members(groups, members, self.thresholds)
        return groups

    # -- presentation ------------------------------------------------------

    def _is_configured(self, operation: str) -> bool:
        gaps = self._fetch.not_configured()
        return not any(source in gaps for source in OPERATION_SOURCES[operation])

    def _present(self, operation: str, value: list[Any], options: dict[str, Any]) -> dict[str, Any]:
        if operation == MRS_WITH_JIRA:
            items = [enriched_to_dict(item) for item in value]
        elif operation == JIRA_TICKETS:
            items = [work_item_to_dict(item) for item in value]
        elif operation == JIRA_WITH_MRS:
            items = [group.to_dict() for group in value]
        else:
            items = [merge_request_to_dict(mr) for mr in value]

        if PAGINATION_KEYS & options.keys():
            result = aggregation.paginate(
                items, int(options.get("page", 1)), int(options.get("per_page", 25))
            )
        else:
            result = {"items": items, "totalItems": len(items)}

        metadata: dict[str, Any] = {
            "operation": operation,
            "lastRefreshed": self._clock(),
        }
        names = OPERATION_THRESHOLDS.get(operation, ())
        if names:
            metadata["thresholds"] = {name: getattr(self.thresholds, name) for name in names}
        gaps = self._fetch.not_configured()
        not_configured = {s: gaps[s] for s in OPERATION_SOURCES[operation] if s in gaps}
        if not_configured:
            metadata["notConfigured"] = not_configured
        result["_metadata"] = metadata
        return result

    async def _run(self, operation: str, options: dict[str, Any], bypass_cache: bool) -> dict[str, Any]:
        value = await self._derived(operation, options, bypass_cache)
        result = self._present(operation, value, options)
        if self._is_configured(operation):
            # The tier keeps its own copy.
            self._cache.set(
                CLIENT_TIER, self._client_key(operation, options), copy.deepcopy(result)
            )
        return result

    async def get_derived(self, operation: str, options: dict[str, Any] | None = None) -> dict[str, Any]:
        """Read-through accessor: client tier, then derived tier, then compute."""
        operation = self._resolve_operation(operation)
        options = dict(options or {})
        cached = self._cache.get(CLIENT_TIER, self._client_key(operation, options))
        if cached is not NOT_FOUND:
            return copy.deepcopy(cached)
        return await self._run(operation, options, bypass_cache=False)

    async def refresh(
        self,
        operation: str,
        options: dict[str, Any] | None = None,
        *,
        bypass_cache: bool = True,
    ) -> dict[str, Any]:
        operation = self._resolve_operation(operation)
        logger.info("Refreshing %s (bypass_cache=%s)", operation, bypass_cache)
        return await self._run(operation, dict(options or {}), bypass_cache=bypass_cache)

    async def refresh_data_type(self, data_type: str) -> None:
        """Scheduler entry point; the result lands in the caches."""
        await self.refresh(data_type)

    # -- invalidation and overrides ----------------------------------------

    def invalidate_all(self) -> int:
        removed = self._cache.invalidate_all()
        logger.info("All data caches invalidated (%d entries)", removed)
        return removed

    def invalidate_source(self, source: str) -> int:
        return self._fetch.invalidate_source(source)

    def set_identities(self, ids: Iterable[Any]) -> None:
        """Swap the identity set and drop the data filtered with the old one."""
        self._identities.replace(ids)
        self._fetch.invalidate_source(GITLAB)

    async def set_override(self, record_id: str, reference_key: str) -> None:
        await self._engine.set_override(record_id, reference_key)

    async def clear_override(self, record_id: str) -> bool:
        return await self._engine.clear_override(record_id)

    async def candidates_for(self, record_id: str) -> list[dict[str, Any]]:
        mrs = await self._base_mrs(bypass_cache=False)
        mr = next((m for m in mrs if m.id == str(record_id)), None)
        if mr is None:
            raise KeyError(f"merge request '{record_id}' not found")
        candidates = await self._engine.candidates_for(mr)
        return [
            {"key": c.key, "confidence": c.confidence, "source": c.source.value}
            for c in candidates
        ]

    def not_configured(self) -> dict[str, str]:
        return self._fetch.not_configured()

    async def aclose(self) -> None:
        await self._fetch.aclose()

    def get_health(self) -> dict[str, Any]:
        return {
            "fetch": self._fetch.get_health(),
            "cache": {
                name: {k: v for k, v in stats.items() if k != "keys"}
                for name, stats in self._cache.stats().items()
            },
            "thresholds": self.thresholds.snapshot(),
            "identityCount": len(self._identities.current_ids()),
        }
