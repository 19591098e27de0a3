from __future__ import annotations

import pytest

from editcrew.orchestration.conflicts import (
    ConflictSelectionError,
    accepted_changes,
    auto_resolve,
    detect_conflicts,
    resolve_selection,
)
from editcrew.orchestration.types import CHANGE_ACCEPTED, CHANGE_PROPOSED, CHANGE_REJECTED, CodeChange


def _change(file_name: str, agent: str, body: str = "x") -> CodeChange:
    return CodeChange(
        file_id=file_name,
        file_name=file_name,
        original_content="",
        proposed_content=body,
        agent=agent,
    )


def test_two_specialists_on_same_file_auto_resolve_keeps_first():
    first = _change("hero-section", "liquid", "first")
    second = _change("hero-section", "css", "second")
    other = _change("footer.liquid", "liquid")

    conflicts = detect_conflicts([first, other, second])

    assert len(conflicts) == 1
    assert conflicts[0].file_name == "hero-section"
    assert conflicts[0].changes == [first, second]

    auto_resolve(conflicts)

    assert first.status == CHANGE_ACCEPTED
    assert second.status == CHANGE_REJECTED
    assert other.status == CHANGE_PROPOSED
    assert accepted_changes([first, other, second]) == [first, other]


def test_manual_selection_keeps_chosen_change():
    first = _change("theme.css", "css")
    second = _change("theme.css", "liquid")
    conflicts = detect_conflicts([first, second])

    resolve_selection(conflicts, {"theme.css": 1})

    assert conflicts[0].selected is second
    assert first.status == CHANGE_REJECTED
    assert second.status == CHANGE_ACCEPTED


def test_selection_errors():
    conflicts = detect_conflicts([_change("a.css", "css"), _change("a.css", "json")])
    with pytest.raises(ConflictSelectionError):
        resolve_selection(conflicts, {"a.css": 2})
    with pytest.raises(ConflictSelectionError):
        resolve_selection(conflicts, {"b.css": 0})


def test_rejected_changes_do_not_form_new_conflicts():
    first = _change("a.js", "javascript")
    second = _change("a.js", "javascript")
    auto_resolve(detect_conflicts([first, second]))

    assert detect_conflicts([first, second]) == []


def test_conflict_to_dict_lists_candidates():
    conflicts = detect_conflicts([_change("a.json", "json"), _change("a.json", "liquid")])
    data = conflicts[0].to_dict()
    assert data["file_name"] == "a.json"
    assert [candidate["agent"] for candidate in data["candidates"]] == ["json", "liquid"]
