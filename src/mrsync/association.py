"""
Association of merge requests with work items.

A manual override always wins over automatic extraction. Overrides live behind
the ``OverrideStore`` protocol; changing one never touches any cache, so
callers decide what to refresh.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Awaitable, Callable, Iterable, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Protocol

from .fetch_client import CLIENT_ERROR, FetchError
from .models import (
    AssociationCandidate,
    CandidateSource,
    EnrichedMergeRequest,
    ManualOverride,
    MergeRequest,
    WorkItem,
)
from .references import CONFIDENCE, extract_candidates, is_valid_key

logger = logging.getLogger(__name__)

RECENT_LIMIT = 10

# Called as lookup(key, bypass_cache=...).
WorkItemLookup = Callable[..., Awaitable[WorkItem | None]]


class OverrideStore(Protocol):
    async def get(self, record_id: str) -> str | None:
        ...

    async def set(self, record_id: str, reference_key: str) -> None:
        ...

    async def remove(self, record_id: str) -> None:
        ...


class InMemoryOverrideStore:
    """Process-local override store."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._overrides: dict[str, ManualOverride] = {}

    async def get(self, record_id: str) -> str | None:
        override = self._overrides.get(record_id)
        return override.reference_key if override else None

    async def set(self, record_id: str, reference_key: str) -> None:
        self._overrides[record_id] = ManualOverride(
            record_id=record_id, reference_key=reference_key, set_at=self._clock()
        )

    async def remove(self, record_id: str) -> None:
        self._overrides.pop(record_id, None)

    def all(self) -> list[ManualOverride]:
        return sorted(self._overrides.values(), key=lambda o: o.set_at, reverse=True)


class AssociationEventType(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    REMOVED = "removed"


@dataclass(frozen=True)
class AssociationEvent:
    type: AssociationEventType
    record_id: str
    reference_key: str | None = None


Subscriber = Callable[[AssociationEvent], None]


def _push_recent(items: list[str], value: str) -> None:
    if value in items:
        items.remove(value)
    items.insert(0, value)
    del items[RECENT_LIMIT:]


class AssociationEngine:
    def __init__(
        self,
        store: OverrideStore,
        lookup: WorkItemLookup,
        preferred_projects: Iterable[str] = (),
    ):
        self._store = store
        self._lookup = lookup
        self.preferred_projects = tuple(p.upper() for p in preferred_projects)
        self._subscribers: list[Subscriber] = []
        self._recent_records: list[str] = []
        self._recent_keys: list[str] = []

    async def candidates_for(self, mr: MergeRequest) -> list[AssociationCandidate]:
        """Ranked candidate keys; a manual override comes first at 1.0."""
        automatic = extract_candidates(
            mr.title, mr.description, mr.source_branch, self.preferred_projects
        )
        manual_key = await self._store.get(mr.id)
        if not manual_key:
            return automatic
        manual = AssociationCandidate(
            key=manual_key,
            confidence=CONFIDENCE[CandidateSource.MANUAL],
            source=CandidateSource.MANUAL,
        )
        return [manual] + [c for c in automatic if c.key != manual_key]

    async def resolve(self, mr: MergeRequest) -> str | None:
        candidates = await self.candidates_for(mr)
        return candidates[0].key if candidates else None

    async def _lookup_work_item(self, key: str, bypass_cache: bool) -> WorkItem | None:
        try:
            item = await self._lookup(key, bypass_cache=bypass_cache)
        except FetchError as exc:
            if exc.code != CLIENT_ERROR:
                raise
            logger.warning("Work item lookup for %s failed: %s", key, exc.message)
            return None
        if item is None:
            logger.warning("No work item found for reference %s", key)
        return item

    async def enhance(
        self, mrs: Sequence[MergeRequest], *, bypass_cache: bool = False
    ) -> list[EnrichedMergeRequest]:
        """Attach the resolved key and work item to each merge request.

        Each distinct key is looked up once per call. A lookup miss leaves
        ``work_item`` empty; an exhausted transient failure fails the call.
        ``bypass_cache`` is handed to every lookup.
        """
        memo: dict[str, WorkItem | None] = {}
        keys = [await self.resolve(mr) for mr in mrs]
        for key in keys:
            if key is not None and key not in memo:
                memo[key] = await self._lookup_work_item(key, bypass_cache)
        enriched = [
            EnrichedMergeRequest(
                merge_request=mr,
                reference_key=key,
                work_item=memo.get(key) if key else None,
            )
            for mr, key in zip(mrs, keys)
        ]
        logger.info(
            "Enhanced %d merge requests, %d with a work item",
            len(enriched),
            sum(1 for item in enriched if item.work_item is not None),
        )
        return enriched

    async def get_override(self, record_id: str) -> str | None:
        return await self._store.get(record_id)

    async def set_override(self, record_id: str, reference_key: str) -> None:
        key = (reference_key or "").strip().upper()
        if not is_valid_key(key):
            raise ValueError(f"invalid reference key '{reference_key}'")
        previous = await self._store.get(record_id)
        await self._store.set(record_id, key)
        _push_recent(self._recent_records, record_id)
        _push_recent(self._recent_keys, key)
        event_type = AssociationEventType.UPDATED if previous else AssociationEventType.CREATED
        logger.info("Manual association %s: %s -> %s", event_type.value, record_id, key)
        self._notify(AssociationEvent(event_type, record_id, key))

    async def clear_override(self, record_id: str) -> bool:
        previous = await self._store.get(record_id)
        if previous is None:
            return False
        await self._store.remove(record_id)
        logger.info("Manual association removed for %s", record_id)
        self._notify(AssociationEvent(AssociationEventType.REMOVED, record_id, None))
        return True

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def _notify(self, event: AssociationEvent) -> None:
        for callback in list(self._subscribers):
            try:
                callback(event)
            except Exception:
                logger.exception("Association subscriber failed on %s", event.type.value)

    def recent_records(self) -> list[str]:
        return list(self._recent_records)

    def recent_keys(self) -> list[str]:
        return list(self._recent_keys)
