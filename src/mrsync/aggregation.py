"""
Grouping, metrics and filters over enriched merge requests.

All functions are pure. Thresholds are read from the live ``Thresholds`` object
each time a function runs, and ``now`` can be pinned for deterministic results.
"""

from __future__ import annotations

import math
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, TypeVar

from .config import Thresholds
from .models import (
    EnrichedMergeRequest,
    MergeRequest,
    MergeRequestState,
    TicketGroup,
    WorkItem,
)

SECONDS_PER_DAY = 86400

T = TypeVar("T")


def _now(now: datetime | None) -> datetime:
    return now or datetime.now(timezone.utc)


def age_days(timestamp: datetime, now: datetime) -> float:
    return (now - timestamp).total_seconds() / SECONDS_PER_DAY


def _build_group(
    work_item: WorkItem,
    members: Sequence[EnrichedMergeRequest],
    thresholds: Thresholds,
    now: datetime,
) -> TicketGroup:
    overdue_days = thresholds.overdue
    stalled_days = thresholds.stalled
    return TicketGroup(
        work_item=work_item,
        merge_requests=tuple(members),
        total=len(members),
        open=sum(1 for m in members if m.merge_request.state == MergeRequestState.OPENED),
        overdue=sum(
            1 for m in members if age_days(m.merge_request.created_at, now) > overdue_days
        ),
        stalled=sum(
            1 for m in members if age_days(m.merge_request.updated_at, now) > stalled_days
        ),
    )


def group_by_reference(
    enriched: Iterable[EnrichedMergeRequest],
    thresholds: Thresholds,
    now: datetime | None = None,
) -> list[TicketGroup]:
    """One group per resolved work item, in order of first appearance.

    Merge requests without a reference key or whose work item could not be
    found are left out.
    """
    now = _now(now)
    members: dict[str, list[EnrichedMergeRequest]] = {}
    work_items: dict[str, WorkItem] = {}
    for item in enriched:
        if not item.reference_key or item.work_item is None:
            continue
        if item.reference_key not in members:
            members[item.reference_key] = []
            work_items[item.reference_key] = item.work_item
        members[item.reference_key].append(item)

    return [_build_group(work_items[key], group, thresholds, now) for key, group in members.items()]


@dataclass(frozen=True)
class GroupCriteria:
    statuses: tuple[str, ...] = ()
    priorities: tuple[str, ...] = ()
    types: tuple[str, ...] = ()
    assignees: tuple[str, ...] = ()
    labels: tuple[str, ...] = ()
    search: str = ""
    sprint_name: str | None = None
    epic_key: str | None = None

    @classmethod
    def from_options(cls, options: dict[str, Any] | None) -> GroupCriteria:
        options = options or {}
        return cls(
            statuses=tuple(options.get("statuses") or ()),
            priorities=tuple(options.get("priorities") or ()),
            types=tuple(options.get("types") or ()),
            assignees=tuple(options.get("assignees") or ()),
            labels=tuple(options.get("labels") or ()),
            search=options.get("search") or "",
            sprint_name=options.get("sprint_name") or options.get("sprintName"),
            epic_key=options.get("epic_key") or options.get("epicKey"),
        )


def _group_matches(group: TicketGroup, criteria: GroupCriteria) -> bool:
    ticket = group.work_item
    if criteria.statuses and ticket.status not in criteria.statuses:
        return False
    if criteria.types and ticket.type not in criteria.types:
        return False
    if criteria.priorities and ticket.priority not in criteria.priorities:
        return False
    if criteria.assignees and (
        ticket.assignee is None or ticket.assignee.id not in criteria.assignees
    ):
        return False
    if criteria.sprint_name and ticket.sprint_name != criteria.sprint_name:
        return False
    if criteria.epic_key and ticket.epic_key != criteria.epic_key:
        return False
    if criteria.search:
        needle = criteria.search.lower()
        if needle not in ticket.title.lower() and needle not in ticket.key.lower():
            return False
    if criteria.labels and not set(criteria.labels) & set(ticket.labels):
        return False
    return True


def filter_groups(groups: Iterable[TicketGroup], criteria: GroupCriteria) -> list[TicketGroup]:
    return [group for group in groups if _group_matches(group, criteria)]


@dataclass(frozen=True)
class MemberCriteria:
    """Filters applied to the merge requests inside each group.

    Ages are days since creation; ``min_age_days`` is exclusive (older than),
    ``max_age_days`` is exclusive (younger than).
    """

    authors: tuple[str, ...] = ()
    reviewers: tuple[str, ...] = ()
    labels: tuple[str, ...] = ()
    states: tuple[str, ...] = ()
    min_age_days: float | None = None
    max_age_days: float | None = None

    @classmethod
    def from_options(cls, options: dict[str, Any] | None) -> MemberCriteria:
        options = options or {}
        return cls(
            authors=tuple(str(a) for a in options.get("authors") or ()),
            reviewers=tuple(str(r) for r in options.get("reviewers") or ()),
            labels=tuple(options.get("mr_labels") or options.get("mrLabels") or ()),
            states=tuple(options.get("mr_states") or options.get("mrStates") or ()),
            min_age_days=options.get("min_age_days"),
            max_age_days=options.get("max_age_days"),
        )

    def is_empty(self) -> bool:
        return self == MemberCriteria()


def _member_matches(mr: MergeRequest, criteria: MemberCriteria, now: datetime) -> bool:
    if criteria.authors and (mr.author is None or mr.author.id not in criteria.authors):
        return False
    if criteria.reviewers and not {r.id for r in mr.reviewers} & set(criteria.reviewers):
        return False
    if criteria.labels and not set(criteria.labels) & set(mr.labels):
        return False
    if criteria.states and mr.state.value not in criteria.states:
        return False
    age = age_days(mr.created_at, now)
    if criteria.min_age_days is not None and not age > criteria.min_age_days:
        return False
    if criteria.max_age_days is not None and not age < criteria.max_age_days:
        return False
    return True


def filter_group_members(
    groups: Iterable[TicketGroup],
    criteria: MemberCriteria,
    thresholds: Thresholds,
    now: datetime | None = None,
) -> list[TicketGroup]:
    """Keep groups with at least one matching member; counts cover kept members only."""
    now = _now(now)
    result = []
    for group in groups:
        kept = [m for m in group.merge_requests if _member_matches(m.merge_request, criteria, now)]
        if kept:
            result.append(_build_group(group.work_item, kept, thresholds, now))
    return result


def too_old(mrs: Iterable[MergeRequest], days: int, now: datetime | None = None) -> list[MergeRequest]:
    """Merge requests created more than ``days`` ago."""
    now = _now(now)
    return [mr for mr in mrs if age_days(mr.created_at, now) > days]


def not_updated(
    mrs: Iterable[MergeRequest], days: int, now: datetime | None = None
) -> list[MergeRequest]:
    """Merge requests with no update in the last ``days``."""
    now = _now(now)
    return [mr for mr in mrs if age_days(mr.updated_at, now) > days]


def pending_review(
    mrs: Iterable[MergeRequest],
    days: int,
    ids: set[str],
    now: datetime | None = None,
) -> list[MergeRequest]:
    """Merge requests waiting on a reviewer from ``ids`` with no update in ``days``."""
    now = _now(now)
    return [
        mr
        for mr in mrs
        if {r.id for r in mr.reviewers} & ids and age_days(mr.updated_at, now) > days
    ]


def paginate(items: Sequence[T], page: int = 1, per_page: int = 25) -> dict[str, Any]:
    if page < 1 or per_page < 1:
        raise ValueError("page and per_page must be positive")
    total = len(items)
    start = (page - 1) * per_page
    return {
        "items": list(items[start : start + per_page]),
        "currentPage": page,
        "perPage": per_page,
        "totalItems": total,
        "totalPages": math.ceil(total / per_page) if total else 0,
    }
