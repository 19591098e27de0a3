from __future__ import annotations

import json

import pytest

from editcrew.orchestration.budget import TIER_SMART, TIER_STUB
from editcrew.orchestration.decode import Parsed, ParseFailure
from editcrew.orchestration.errors import PATCH_MISMATCH
from editcrew.orchestration.patches import POLICY_FAIL
from editcrew.orchestration.specialists import (
    WorkingCopy,
    aggregate_confidence,
    build_registry,
    css_specialist,
    liquid_specialist,
)
from editcrew.orchestration.types import CodeChange, FileContext, is_contained_path

FILES = [
    FileContext(file_id="1", file_name="hero.liquid", file_type="liquid", content="<h1>{{ title }}</h1>", path="sections/hero.liquid"),
    FileContext(file_id="2", file_name="base.css", file_type="css", content=".hero { color: red; }", path="assets/base.css"),
    FileContext(file_id="3", file_name="settings_data.json", file_type="json", content="{}", path="config/settings_data.json"),
]


def test_registry_is_explicit_and_ordered():
    registry = build_registry()
    assert registry.tags == ["liquid", "javascript", "css", "json"]
    assert "css" in registry
    assert len(build_registry(["css"])) == 1
    with pytest.raises(ValueError):
        build_registry(["python"])


def test_registry_resolves_owner_by_extension():
    registry = build_registry()
    assert registry.for_file("sections/hero.liquid").tag == "liquid"
    assert registry.for_file("assets/theme.scss").tag == "css"
    assert registry.for_file("assets/app.mjs").tag == "javascript"
    assert registry.for_file("README.md") is None
    assert registry.eligible_tags(FILES) == {"liquid", "css", "json"}


def test_specialist_bound_files_are_limited_to_its_domain():
    specialist = css_specialist()
    assert [item.file_id for item in specialist.bound_files(FILES)] == ["2"]
    assert "css" in specialist.system_prompt.lower()


def test_parse_response_builds_changes_from_full_bodies():
    specialist = liquid_specialist()
    working_copy = WorkingCopy.from_files(FILES, owns=specialist.owns)
    raw = json.dumps(
        {
            "changes": [
                {
                    "file_name": "sections/hero.liquid",
                    "proposed_content": "<h2>{{ title }}</h2>",
                    "reasoning": "Demote heading",
                    "confidence": 0.9,
                }
            ]
        }
    )

    result = specialist.parse_response(raw, working_copy)

    assert isinstance(result, Parsed)
    [change] = result.data["changes"]
    assert change.file_id == "1"
    assert change.agent == "liquid"
    assert change.original_content == "<h1>{{ title }}</h1>"
    assert change.proposed_content == "<h2>{{ title }}</h2>"


def test_later_patches_see_earlier_writes_in_same_response():
    specialist = css_specialist()
    working_copy = WorkingCopy.from_files(FILES, owns=specialist.owns)
    raw = json.dumps(
        {
            "changes": [
                {"file_name": "assets/base.css", "patches": [{"search": "red", "replace": "blue"}]},
                {"file_name": "assets/base.css", "patches": [{"search": "blue", "replace": "green"}]},
            ]
        }
    )

    result = specialist.parse_response(raw, working_copy)

    assert isinstance(result, Parsed)
    assert result.data["changes"][1].original_content == ".hero { color: blue; }"
    assert working_copy.read("assets/base.css") == ".hero { color: green; }"


def test_cross_domain_edit_is_a_parse_failure():
    specialist = css_specialist()
    working_copy = WorkingCopy.from_files(FILES, owns=specialist.owns)
    raw = json.dumps({"changes": [{"file_name": "sections/hero.liquid", "proposed_content": "x"}]})

    result = specialist.parse_response(raw, working_copy)

    assert isinstance(result, ParseFailure)
    assert "may not edit" in result.message


def test_stub_files_cannot_be_edited():
    stubbed = [FileContext(file_id="9", file_name="big.css", file_type="css", content="[90000 chars — over budget]")]
    specialist = css_specialist()
    working_copy = WorkingCopy.from_files(stubbed, owns=specialist.owns)
    raw = json.dumps({"changes": [{"file_name": "big.css", "proposed_content": "x"}]})

    result = specialist.parse_response(raw, working_copy)

    assert isinstance(result, ParseFailure)
    assert "not loaded" in result.message


def test_patch_mismatch_under_fail_policy():
    specialist = css_specialist()
    working_copy = WorkingCopy.from_files(FILES, owns=specialist.owns, patch_policy=POLICY_FAIL)
    raw = json.dumps(
        {"changes": [{"file_name": "assets/base.css", "patches": [{"search": "purple", "replace": "pink"}]}]}
    )

    result = specialist.parse_response(raw, working_copy)

    assert isinstance(result, ParseFailure)
    assert result.kind == PATCH_MISMATCH


def test_entry_without_body_or_patches_is_rejected():
    specialist = css_specialist()
    working_copy = WorkingCopy.from_files(FILES, owns=specialist.owns)
    result = specialist.parse_response('{"changes": [{"file_name": "assets/base.css"}]}', working_copy)
    assert isinstance(result, ParseFailure)

def test_truncated_files_accept_patches_but_not_full_bodies():
    specialist = css_specialist()
    working_copy = WorkingCopy.from_files(FILES, owns=specialist.owns, tiers={"2": TIER_SMART})

    rewrite = json.dumps({"changes": [{"file_name": "assets/base.css", "proposed_content": ".hero {}"}]})
    result = specialist.parse_response(rewrite, working_copy)
    assert isinstance(result, ParseFailure)
    assert "shown truncated" in result.message

    patch = json.dumps({"changes": [{"file_name": "assets/base.css", "patches": [{"search": "red", "replace": "blue"}]}]})
    result = specialist.parse_response(patch, working_copy)
    assert isinstance(result, Parsed)
    [change] = result.data["changes"]
    assert change.original_content == ".hero { color: red; }"


def test_budget_stubbed_files_cannot_be_edited():
    specialist = css_specialist()
    working_copy = WorkingCopy.from_files(FILES, owns=specialist.owns, tiers={"2": TIER_STUB})
    raw = json.dumps({"changes": [{"file_name": "assets/base.css", "patches": [{"search": "red", "replace": "blue"}]}]})

    result = specialist.parse_response(raw, working_copy)

    assert isinstance(result, ParseFailure)
    assert "not loaded" in result.message


def test_paths_outside_the_project_are_rejected():
    specialist = css_specialist()
    working_copy = WorkingCopy.from_files(FILES, owns=specialist.owns)

    for name in ("../escape.css", "/etc/theme.css", "assets/../../escape.css", "C:\\theme.css"):
        raw = json.dumps({"changes": [{"file_name": name, "proposed_content": "x"}]})
        result = specialist.parse_response(raw, working_copy)
        assert isinstance(result, ParseFailure), name
        assert "outside the project root" in result.message


def test_is_contained_path():
    assert is_contained_path("assets/base.css")
    assert is_contained_path("assets/..hidden.css")
    assert not is_contained_path("../base.css")
    assert not is_contained_path("assets\\..\\..\\base.css")
    assert not is_contained_path("/abs/base.css")



def test_aggregate_confidence_is_mean_or_default():
    def change(confidence: float) -> CodeChange:
        return CodeChange(file_id="x", file_name="x.css", original_content="", proposed_content="", confidence=confidence)

    assert aggregate_confidence([]) == pytest.approx(0.8)
    assert aggregate_confidence([change(0.4), change(1.0)]) == pytest.approx(0.7)
