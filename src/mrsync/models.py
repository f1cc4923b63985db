"""
Record types shared across the sync layer.

Merge requests come from GitLab, work items from Jira. Both are read-only once
returned by the fetch client; enrichment and aggregation build new objects
instead of mutating these.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class MergeRequestState(str, Enum):
    OPENED = "opened"
    CLOSED = "closed"
    LOCKED = "locked"
    MERGED = "merged"


class CandidateSource(str, Enum):
    """Where a reference key was found, in descending order of reliability."""

    MANUAL = "manual"
    TITLE = "title"
    DESCRIPTION = "description"
    BRANCH = "branch"


def parse_timestamp(value: Any) -> datetime:
    """Parse an ISO-8601 timestamp as returned by GitLab or Jira.

    Naive values are taken as UTC. Jira's ``+0000`` offsets are accepted.
    """
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if not value:
        return datetime.fromtimestamp(0, tz=timezone.utc)
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    if len(text) > 5 and text[-5] in "+-" and text[-3] != ":":
        text = f"{text[:-2]}:{text[-2:]}"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass(frozen=True)
class Person:
    id: str
    name: str = ""
    username: str = ""

    @classmethod
    def from_gitlab(cls, data: dict[str, Any] | None) -> Person | None:
        if not data or data.get("id") is None:
            return None
        return cls(
            id=str(data["id"]),
            name=data.get("name") or "",
            username=data.get("username") or "",
        )

    @classmethod
    def from_jira(cls, data: dict[str, Any] | None) -> Person | None:
        if not data:
            return None
        person_id = data.get("accountId") or data.get("name") or data.get("key")
        if not person_id:
            return None
        return cls(
            id=str(person_id),
            name=data.get("displayName") or "",
            username=data.get("emailAddress") or "",
        )


@dataclass(frozen=True)
class MergeRequest:
    """A GitLab merge request (the code-review side of an association)."""

    id: str
    iid: int
    project_id: str
    title: str
    state: MergeRequestState
    created_at: datetime
    updated_at: datetime
    description: str = ""
    source_branch: str = ""
    target_branch: str = ""
    author: Person | None = None
    assignees: tuple[Person, ...] = ()
    reviewers: tuple[Person, ...] = ()
    labels: tuple[str, ...] = ()
    web_url: str = ""
    draft: bool = False

    @property
    def participant_ids(self) -> set[str]:
        ids = {p.id for p in self.assignees} | {p.id for p in self.reviewers}
        if self.author is not None:
            ids.add(self.author.id)
        return ids

    @classmethod
    def from_gitlab(cls, data: dict[str, Any]) -> MergeRequest:
        assignees = [Person.from_gitlab(a) for a in data.get("assignees") or []]
        single_assignee = Person.from_gitlab(data.get("assignee"))
        if single_assignee is not None and single_assignee not in assignees:
            assignees.append(single_assignee)
        reviewers = [Person.from_gitlab(r) for r in data.get("reviewers") or []]
        try:
            state = MergeRequestState(data.get("state", "opened"))
        except ValueError:
            state = MergeRequestState.OPENED
        return cls(
            id=str(data["id"]),
            iid=int(data.get("iid") or 0),
            project_id=str(data.get("project_id") or ""),
            title=data.get("title") or "",
            description=data.get("description") or "",
            source_branch=data.get("source_branch") or "",
            target_branch=data.get("target_branch") or "",
            state=state,
            created_at=parse_timestamp(data.get("created_at")),
            updated_at=parse_timestamp(data.get("updated_at")),
            author=Person.from_gitlab(data.get("author")),
            assignees=tuple(a for a in assignees if a is not None),
            reviewers=tuple(r for r in reviewers if r is not None),
            labels=tuple(data.get("labels") or ()),
            web_url=data.get("web_url") or "",
            draft=bool(data.get("draft") or data.get("work_in_progress")),
        )


@dataclass(frozen=True)
class WorkItem:
    """A Jira issue (the tracked-work side of an association)."""

    id: str
    key: str
    title: str
    status: str
    created_at: datetime
    updated_at: datetime
    priority: str = ""
    type: str = ""
    description: str = ""
    due_date: str | None = None
    assignee: Person | None = None
    reporter: Person | None = None
    labels: tuple[str, ...] = ()
    url: str = ""
    sprint_name: str | None = None
    epic_key: str | None = None

    @property
    def project(self) -> str:
        return self.key.split("-", 1)[0]

    @classmethod
    def from_jira(
        cls,
        data: dict[str, Any],
        host: str = "",
        epic_field: str = "customfield_10014",
        sprint_field: str = "customfield_10017",
    ) -> WorkItem:
        fields = data.get("fields") or {}
        description = fields.get("description")
        if description is not None and not isinstance(description, str):
            description = str(description)
        sprints = fields.get(sprint_field)
        sprint_name = None
        if isinstance(sprints, list) and sprints and isinstance(sprints[0], dict):
            sprint_name = sprints[0].get("name")
        key = data.get("key") or ""
        return cls(
            id=str(data.get("id") or key),
            key=key,
            title=fields.get("summary") or "",
            description=description or "",
            status=(fields.get("status") or {}).get("name") or "",
            priority=(fields.get("priority") or {}).get("name") or "",
            type=(fields.get("issuetype") or {}).get("name") or "",
            created_at=parse_timestamp(fields.get("created")),
            updated_at=parse_timestamp(fields.get("updated")),
            due_date=fields.get("duedate"),
            assignee=Person.from_jira(fields.get("assignee")),
            reporter=Person.from_jira(fields.get("reporter")),
            labels=tuple(fields.get("labels") or ()),
            url=f"{host.rstrip('/')}/browse/{key}" if host else "",
            sprint_name=sprint_name,
            epic_key=fields.get(epic_field),
        )


@dataclass(frozen=True)
class AssociationCandidate:
    key: str
    confidence: float
    source: CandidateSource


@dataclass(frozen=True)
class ManualOverride:
    record_id: str
    reference_key: str
    set_at: float


@dataclass(frozen=True)
class EnrichedMergeRequest:
    """A merge request with its resolved reference key and work item, if any."""

    merge_request: MergeRequest
    reference_key: str | None = None
    work_item: WorkItem | None = None


@dataclass(frozen=True)
class TicketGroup:
    work_item: WorkItem
    merge_requests: tuple[EnrichedMergeRequest, ...] = field(default_factory=tuple)
    total: int = 0
    open: int = 0
    overdue: int = 0
    stalled: int = 0

    @property
    def key(self) -> str:
        return self.work_item.key

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": self.work_item.key,
            "title": self.work_item.title,
            "status": self.work_item.status,
            "priority": self.work_item.priority,
            "type": self.work_item.type,
            "assignee": self.work_item.assignee.name if self.work_item.assignee else None,
            "url": self.work_item.url,
            "totalMRs": self.total,
            "openMRs": self.open,
            "overdueMRs": self.overdue,
            "stalledMRs": self.stalled,
            "mergeRequests": [
                merge_request_to_dict(item.merge_request) for item in self.merge_requests
            ],
        }


def merge_request_to_dict(mr: MergeRequest) -> dict[str, Any]:
    return {
        "id": mr.id,
        "iid": mr.iid,
        "projectId": mr.project_id,
        "title": mr.title,
        "state": mr.state.value,
        "sourceBranch": mr.source_branch,
        "author": mr.author.name if mr.author else None,
        "reviewers": [r.name for r in mr.reviewers],
        "labels": list(mr.labels),
        "createdAt": mr.created_at.isoformat(),
        "updatedAt": mr.updated_at.isoformat(),
        "webUrl": mr.web_url,
        "draft": mr.draft,
    }


def work_item_to_dict(item: WorkItem) -> dict[str, Any]:
    return {
        "key": item.key,
        "title": item.title,
        "status": item.status,
        "priority": item.priority,
        "type": item.type,
        "assignee": item.assignee.name if item.assignee else None,
        "labels": list(item.labels),
        "sprintName": item.sprint_name,
        "epicKey": item.epic_key,
        "createdAt": item.created_at.isoformat(),
        "updatedAt": item.updated_at.isoformat(),
        "dueDate": item.due_date,
        "url": item.url,
    }


def enriched_to_dict(item: EnrichedMergeRequest) -> dict[str, Any]:
    data = merge_request_to_dict(item.merge_request)
    data["jiraKey"] = item.reference_key
    data["jiraTicket"] = work_item_to_dict(item.work_item) if item.work_item else None
    return data
