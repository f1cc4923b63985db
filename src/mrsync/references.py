"""
Extract work-item reference keys (``ABC-123``) from merge request text.

Extraction is a pure function of the title, description and branch name.
Manual overrides are handled by the association engine, not here.
"""

from __future__ import annotations

import re
from collections.abc import Iterable

from .models import AssociationCandidate, CandidateSource

REFERENCE_KEY_PATTERN = re.compile(r"(?<![A-Za-z0-9])([A-Z][A-Z0-9_]+-[0-9]+)(?![0-9])")
_FULL_KEY_PATTERN = re.compile(r"^[A-Z][A-Z0-9_]+-[0-9]+$")

CONFIDENCE = {
    CandidateSource.MANUAL: 1.0,
    CandidateSource.TITLE: 0.8,
    CandidateSource.DESCRIPTION: 0.6,
    CandidateSource.BRANCH: 0.4,
}
PREFERRED_PROJECT_BOOST = 0.1
MAX_AUTOMATIC_CONFIDENCE = 0.95

# Highest-priority field first.
_FIELD_ORDER = (CandidateSource.TITLE, CandidateSource.DESCRIPTION, CandidateSource.BRANCH)


def is_valid_key(key: str) -> bool:
    return bool(key) and bool(_FULL_KEY_PATTERN.match(key))


def find_keys(text: str | None) -> list[str]:
    """All reference keys in ``text``, in order of appearance, without duplicates."""
    if not text:
        return []
    seen: dict[str, None] = {}
    for match in REFERENCE_KEY_PATTERN.finditer(text):
        seen.setdefault(match.group(1), None)
    return list(seen)


def _confidence(source: CandidateSource, key: str, preferred: set[str]) -> float:
    score = CONFIDENCE[source]
    if preferred and key.split("-", 1)[0] in preferred:
        score = min(score + PREFERRED_PROJECT_BOOST, MAX_AUTOMATIC_CONFIDENCE)
    return round(score, 4)


def extract_candidates(
    title: str | None,
    description: str | None = None,
    branch: str | None = None,
    preferred_projects: Iterable[str] = (),
) -> list[AssociationCandidate]:
    """Candidates from all fields, highest confidence first.

    A key found in several fields is reported once, from its highest-priority
    field. Ties keep field order, then order of appearance.
    """
    preferred = {p.upper() for p in preferred_projects}
    texts = {
        CandidateSource.TITLE: title,
        CandidateSource.DESCRIPTION: description,
        CandidateSource.BRANCH: branch,
    }
    candidates: list[AssociationCandidate] = []
    seen: set[str] = set()
    for source in _FIELD_ORDER:
        for key in find_keys(texts[source]):
            if key in seen:
                continue
            seen.add(key)
            candidates.append(
                AssociationCandidate(
                    key=key, confidence=_confidence(source, key, preferred), source=source
                )
            )
    # sorted() is stable, so equal scores keep field and appearance order.
    return sorted(candidates, key=lambda c: -c.confidence)


def most_likely_key(
    title: str | None,
    description: str | None = None,
    branch: str | None = None,
) -> str | None:
    for text in (title, description, branch):
        keys = find_keys(text)
        if keys:
            return keys[0]
    return None
