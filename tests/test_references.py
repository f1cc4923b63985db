from __future__ import annotations

import pytest

from mrsync.models import CandidateSource
from mrsync.references import extract_candidates, find_keys, is_valid_key, most_likely_key


@pytest.mark.parametrize(
    ("text", "keys"),
    [
        ("Fix ABC-42 crash", ["ABC-42"]),
        ("[ABC-1] and (DEF_2-7) and #GHI-3", ["ABC-1", "DEF_2-7", "GHI-3"]),
        ("feature/ABC-42-login", ["ABC-42"]),
        ("feature_ABC-42_login", ["ABC-42"]),
        ("ABC-1 again ABC-1", ["ABC-1"]),
        ("lowercase abc-42 is ignored", []),
        ("embedded xyzABC-42 is ignored", []),
        ("glued fixABC-1 is ignored", []),
        ("A-1 needs two letters", []),
        ("", []),
    ],
)
def test_find_keys(text: str, keys: list[str]):
    assert find_keys(text) == keys


def test_find_keys_handles_none():
    assert find_keys(None) == []


def test_candidates_are_ordered_title_description_branch():
    candidates = extract_candidates(
        "Fix ABC-1", "Relates to DEF-2", "feature/GHI-3-thing"
    )

    assert [(c.key, c.source, c.confidence) for c in candidates] == [
        ("ABC-1", CandidateSource.TITLE, 0.8),
        ("DEF-2", CandidateSource.DESCRIPTION, 0.6),
        ("GHI-3", CandidateSource.BRANCH, 0.4),
    ]


def test_duplicate_key_keeps_highest_priority_field():
    candidates = extract_candidates("ABC-1", "see ABC-1 and XYZ-9", "feature/ABC-1")

    assert [c.key for c in candidates] == ["ABC-1", "XYZ-9"]
    assert candidates[0].source is CandidateSource.TITLE


def test_preferred_project_boost_stays_below_manual():
    candidates = extract_candidates(
        "Fix OTHER-1 and CORE-2", branch="feature/CORE-3", preferred_projects=["core"]
    )

    by_key = {c.key: c.confidence for c in candidates}
    assert by_key["CORE-2"] == 0.9
    assert by_key["OTHER-1"] == 0.8
    assert by_key["CORE-3"] == 0.5
    assert candidates[0].key == "CORE-2"
    assert all(c.confidence <= 0.95 for c in candidates)


def test_most_likely_key_prefers_title_then_description_then_branch():
    assert most_likely_key("Fix ABC-1", "DEF-2", "GHI-3") == "ABC-1"
    assert most_likely_key("No key", "DEF-2 then XYZ-1", "GHI-3") == "DEF-2"
    assert most_likely_key("No key", None, "feature/GHI-3") == "GHI-3"
    assert most_likely_key("No key") is None


def test_is_valid_key():
    assert is_valid_key("ABC-42")
    assert is_valid_key("A1_B-7")
    assert not is_valid_key("abc-42")
    assert not is_valid_key("ABC-42 extra")
    assert not is_valid_key("")
