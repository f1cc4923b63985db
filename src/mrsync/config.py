"""
Runtime configuration for the sync layer.

Everything is read from the environment with working defaults, so a missing
variable degrades to a "not configured" source rather than a startup failure.
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

DEFAULT_GITLAB_API_URL = "https://gitlab.com/api/v4"
DEFAULT_JIRA_JQL = "order by updated DESC"

RAW_TTL_SECONDS = 900  # 15 minutes
DERIVED_TTL_SECONDS = 3600  # 60 minutes
CLIENT_TTL_SECONDS = 3600

DEFAULT_THRESHOLDS = {
    "too_old": 1,
    "not_updated": 1,
    "pending_review": 1,
    "overdue": 28,
    "stalled": 14,
}


def _parse_csv_env(var_name: str) -> set[str]:
    raw = os.getenv(var_name, "")
    values = [item.strip() for item in re.split(r"[,:]", raw)]
    return {item for item in values if item}


def _int_env(var_name: str, default: int) -> int:
    raw = os.getenv(var_name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Ignoring invalid %s value %r", var_name, raw)
        return default


def _float_env(var_name: str, default: float) -> float:
    raw = os.getenv(var_name)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("Ignoring invalid %s value %r", var_name, raw)
        return default


@dataclass(frozen=True)
class SyncSettings:
    gitlab_api_url: str = DEFAULT_GITLAB_API_URL
    gitlab_token: str = ""
    gitlab_group_id: str = ""
    gitlab_user_ids: frozenset[str] = frozenset()
    jira_host: str = ""
    jira_email: str = ""
    jira_token: str = ""
    jira_jql: str = DEFAULT_JIRA_JQL
    raw_ttl_seconds: int = RAW_TTL_SECONDS
    derived_ttl_seconds: int = DERIVED_TTL_SECONDS
    client_ttl_seconds: int = CLIENT_TTL_SECONDS
    max_retries: int = 3
    retry_base_seconds: float = 1.0
    tick_seconds: float = 30.0
    max_concurrent_jobs: int = 2
    min_failure_backoff_seconds: float = 60.0
    preferred_projects: tuple[str, ...] = ()

    @classmethod
    def from_env(cls) -> SyncSettings:
        return cls(
            gitlab_api_url=os.getenv("GITLAB_API_URL", DEFAULT_GITLAB_API_URL),
            gitlab_token=os.getenv("GITLAB_API_TOKEN", ""),
            gitlab_group_id=os.getenv("GITLAB_GROUP_ID", ""),
            gitlab_user_ids=frozenset(_parse_csv_env("GITLAB_USER_IDS")),
            jira_host=os.getenv("JIRA_HOST", ""),
            jira_email=os.getenv("JIRA_EMAIL", ""),
            jira_token=os.getenv("JIRA_API_TOKEN", ""),
            jira_jql=os.getenv("JIRA_JQL", DEFAULT_JIRA_JQL),
            raw_ttl_seconds=_int_env("MRSYNC_RAW_TTL_SECONDS", RAW_TTL_SECONDS),
            derived_ttl_seconds=_int_env("MRSYNC_DERIVED_TTL_SECONDS", DERIVED_TTL_SECONDS),
            client_ttl_seconds=_int_env("MRSYNC_CLIENT_TTL_SECONDS", CLIENT_TTL_SECONDS),
            max_retries=_int_env("MRSYNC_MAX_RETRIES", 3),
            retry_base_seconds=_float_env("MRSYNC_RETRY_BASE_SECONDS", 1.0),
            tick_seconds=_float_env("MRSYNC_TICK_SECONDS", 30.0),
            max_concurrent_jobs=_int_env("MRSYNC_MAX_CONCURRENT_JOBS", 2),
            min_failure_backoff_seconds=_float_env(
                "MRSYNC_MIN_FAILURE_BACKOFF_SECONDS", 60.0
            ),
            preferred_projects=tuple(
                sorted(p.upper() for p in _parse_csv_env("MRSYNC_PREFERRED_PROJECTS"))
            ),
        )


@dataclass
class Thresholds:
    """Age thresholds in days, mutable at runtime.

    Callers read attributes at the moment they aggregate; nothing caches the
    values, so ``update`` takes effect on the next computation.
    """

    too_old: int = DEFAULT_THRESHOLDS["too_old"]
    not_updated: int = DEFAULT_THRESHOLDS["not_updated"]
    pending_review: int = DEFAULT_THRESHOLDS["pending_review"]
    overdue: int = DEFAULT_THRESHOLDS["overdue"]
    stalled: int = DEFAULT_THRESHOLDS["stalled"]
    _names: tuple[str, ...] = field(
        default=tuple(DEFAULT_THRESHOLDS), init=False, repr=False
    )

    def update(self, name: str, value: int) -> None:
        if name not in self._names:
            raise ValueError(f"unknown threshold '{name}'")
        if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
            raise ValueError(f"threshold '{name}' must be a positive integer")
        setattr(self, name, value)
        logger.info("Threshold %s set to %d days", name, value)

    def reset(self) -> None:
        for name, value in DEFAULT_THRESHOLDS.items():
            setattr(self, name, value)

    def snapshot(self) -> dict[str, int]:
        return {name: getattr(self, name) for name in self._names}
