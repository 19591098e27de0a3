from __future__ import annotations

from editcrew.orchestration.workflows import WORKFLOWS, match_workflows


def test_add_section_matches_and_orders_required_first():
    [match] = match_workflows("Please add a new section for testimonials")

    assert match.workflow.id == "add-a-section"
    assert match.suggested_agents == ["liquid", "css", "json"]
    assert match.workflow.required_agents == ["liquid", "css"]


def test_suggestions_are_limited_to_available_specialists():
    [match] = match_workflows("The layout breaks on mobile", available_agents={"css"})
    assert match.workflow.id == "fix-mobile-layout"
    assert match.suggested_agents == ["css"]


def test_instruction_can_match_several_workflows():
    matches = match_workflows("Redesign the header and improve performance")
    assert [m.workflow.id for m in matches] == ["redesign-header", "optimize-performance"]


def test_unmatched_and_blank_instructions():
    assert match_workflows("rename a variable") == []
    assert match_workflows("   ") == []


def test_hint_lists_steps_and_is_advisory():
    [match] = match_workflows("add a product feature for size charts")
    hint = match.hint()

    assert hint.startswith("Workflow: Add product feature")
    assert "- javascript: Variant switching, gallery, add-to-cart" in hint
    assert "- json (optional): Product section settings" in hint
    assert hint.endswith("deviate when the request needs something else.")


def test_workflow_ids_are_unique():
    ids = [workflow.id for workflow in WORKFLOWS]
    assert len(ids) == len(set(ids)) == 5
