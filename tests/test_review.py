from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass

from editcrew.config import EditcrewConfig
from editcrew.orchestration.checks import SEVERITY_INFO, SOURCE_LLM
from editcrew.orchestration.errors import LLMCallError
from editcrew.orchestration.review import ReviewGate
from editcrew.orchestration.types import CodeChange, FileContext


@dataclass
class FakeCompletion:
    text: str
    model: str = "review-model"
    prompt_tokens: int = 100
    completion_tokens: int = 20
    cost_usd: float = 0.002


class FakeReviewer:
    def __init__(self, text: str | None = None, error: Exception | None = None):
        self.text = text
        self.error = error
        self.prompts: list[str] = []

    async def complete(self, *, system, user, model=None, schema=None, stage="coordinator", max_tokens=None):
        self.prompts.append(user)
        if self.error is not None:
            raise self.error
        return FakeCompletion(text=self.text)


FILES = [FileContext(file_id="1", file_name="assets/base.css", file_type="css", content=".a { color: red; }")]
CHANGE = CodeChange(
    file_id="1",
    file_name="assets/base.css",
    original_content=".a { color: red; }",
    proposed_content=".a { color: blue; }",
    agent="css",
)


def test_llm_issues_are_added_and_errors_block_approval():
    reviewer = FakeReviewer(
        json.dumps(
            {
                "issues": [
                    {"severity": "error", "file": "assets/base.css", "description": "Contrast too low"},
                    {"severity": "critical", "file": "assets/base.css", "description": "Unknown severity"},
                    {"severity": "info", "file": "", "description": ""},
                ],
                "summary": "One blocking contrast problem.",
            }
        )
    )
    gate = ReviewGate(EditcrewConfig(), llm=reviewer)

    result = asyncio.run(gate.review([CHANGE], FILES))

    assert not result.approved
    assert result.llm_reviewed
    assert result.summary == "One blocking contrast problem."
    assert [(issue.severity, issue.description) for issue in result.issues] == [
        ("error", "Contrast too low"),
        ("warning", "Unknown severity"),
    ]
    assert all(issue.source == SOURCE_LLM for issue in result.issues)
    assert "PROPOSED CHANGES" in reviewer.prompts[0]
    assert gate.tally.calls == 1


def test_reviewer_failure_is_info_and_does_not_block():
    gate = ReviewGate(EditcrewConfig(), llm=FakeReviewer(error=LLMCallError("provider down")))

    result = asyncio.run(gate.review([CHANGE], FILES))

    assert result.approved
    assert not result.llm_reviewed
    [issue] = result.issues
    assert issue.severity == SEVERITY_INFO
    assert issue.category == "review_unavailable"
    assert "provider down" in issue.description
    assert result.summary == "0 error(s), 0 warning(s), 1 info."


def test_unreadable_review_is_info():
    result = asyncio.run(ReviewGate(EditcrewConfig(), llm=FakeReviewer("looks fine to me")).review([CHANGE], FILES))
    assert result.approved
    assert result.issues[0].category == "review_unavailable"


def test_programmatic_only_when_llm_disabled():
    config = EditcrewConfig()
    config.review.llm_enabled = False
    reviewer = FakeReviewer("{}")
    broken = CodeChange(file_id="2", file_name="config/x.json", original_content="", proposed_content="{oops")

    result = asyncio.run(ReviewGate(config, llm=reviewer).review([broken], FILES))

    assert reviewer.prompts == []
    assert not result.approved
    assert [issue.category for issue in result.errors] == ["json_syntax"]
    assert result.summary == "1 error(s), 0 warning(s), 0 info."


def test_empty_change_set_is_approved_without_llm_call():
    reviewer = FakeReviewer("{}")
    result = asyncio.run(ReviewGate(EditcrewConfig(), llm=reviewer).review([], FILES))
    assert result.approved
    assert result.summary == "No issues found."
    assert reviewer.prompts == []
