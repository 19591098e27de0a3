"""
Review gate: deterministic checks first, then an LLM reviewer.

The reviewer sees the programmatic findings as context and can only add
issues. A reviewer failure is recorded as an info issue and never blocks
approval by itself.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from .. import prompts
from ..config import EditcrewConfig
from .budget import allocate_text
from .checks import (
    SEVERITY_ERROR,
    SEVERITY_INFO,
    SEVERITY_WARNING,
    SOURCE_LLM,
    ReviewIssue,
    dedupe,
    validate_change_set,
)
from .decode import ContractSchema, ParseFailure, decode_json
from .rounds import CompletionClient
from .types import CodeChange, FileContext, TokenTally

logger = logging.getLogger(__name__)

REVIEW_SCHEMA = ContractSchema(
    required_fields={"issues": list},
    optional_fields={"summary": (str, "")},
)
SEVERITIES = {SEVERITY_ERROR, SEVERITY_WARNING, SEVERITY_INFO}


@dataclass
class ReviewResult:
    approved: bool
    issues: list[ReviewIssue] = field(default_factory=list)
    summary: str = ""
    llm_reviewed: bool = False

    @property
    def errors(self) -> list[ReviewIssue]:
        return [issue for issue in self.issues if issue.severity == SEVERITY_ERROR]

    def to_dict(self) -> dict[str, Any]:
        return {
            "approved": self.approved,
            "summary": self.summary,
            "llm_reviewed": self.llm_reviewed,
            "issues": [issue.to_dict() for issue in self.issues],
        }


def _diff_block(changes: list[CodeChange]) -> str:
    blocks = []
    for change in changes:
        header = f"--- {change.file_name} (by {change.agent or 'coordinator'}) ---"
        if change.patches:
            body = "\n".join(
                f"SEARCH:\n{patch.search}\nREPLACE:\n{patch.replace}" for patch in change.patches
            )
        else:
            body = change.proposed_content
        blocks.append(f"{header}\n{body}")
    return "\n\n".join(blocks)


def _issues_block(issues: list[ReviewIssue]) -> str:
    if not issues:
        return "(none)"
    return "\n".join(f"- [{issue.severity}] {issue.file}: {issue.description}" for issue in issues)


def _llm_issues(raw_issues: list[Any]) -> list[ReviewIssue]:
    issues = []
    for item in raw_issues:
        if not isinstance(item, dict):
            continue
        description = str(item.get("description", "")).strip()
        if not description:
            continue
        severity = str(item.get("severity", SEVERITY_WARNING)).lower()
        issues.append(
            ReviewIssue(
                severity=severity if severity in SEVERITIES else SEVERITY_WARNING,
                file=str(item.get("file", "")),
                description=description,
                category=str(item.get("category", "review")),
                source=SOURCE_LLM,
            )
        )
    return issues


def _summarize(issues: list[ReviewIssue]) -> str:
    counts = {severity: 0 for severity in (SEVERITY_ERROR, SEVERITY_WARNING, SEVERITY_INFO)}
    for issue in issues:
        counts[issue.severity] = counts.get(issue.severity, 0) + 1
    if not issues:
        return "No issues found."
    return f"{counts[SEVERITY_ERROR]} error(s), {counts[SEVERITY_WARNING]} warning(s), {counts[SEVERITY_INFO]} info."


class ReviewGate:
    def __init__(
        self,
        config: EditcrewConfig,
        llm: CompletionClient | None = None,
        tally: TokenTally | None = None,
    ):
        self.config = config
        self.llm = llm
        self.tally = tally or TokenTally()

    async def _llm_review(
        self,
        changes: list[CodeChange],
        programmatic: list[ReviewIssue],
    ) -> tuple[list[ReviewIssue], str, bool]:
        budget = self.config.budget.review_tokens
        issues_text, used = allocate_text(_issues_block(programmatic), budget, label="Issues")
        diff_text, _ = allocate_text(_diff_block(changes), budget - used, label="Changes")
        user_prompt = f"PROGRAMMATIC ISSUES:\n{issues_text}\n\nPROPOSED CHANGES:\n{diff_text}"
        try:
            completion = await self.llm.complete(
                system=prompts.REVIEW_SYSTEM_PROMPT,
                user=user_prompt,
                model=self.config.llm.review_model,
                schema=REVIEW_SCHEMA,
                stage="review",
            )
        except Exception as exc:  # noqa: BLE001
            logger.warning("LLM review failed: %s", exc)
            return [self._reviewer_unavailable(f"LLM review failed: {exc}")], "", False

        self.tally.add(completion.prompt_tokens, completion.completion_tokens, completion.cost_usd)
        decoded = decode_json(completion.text, REVIEW_SCHEMA)
        if isinstance(decoded, ParseFailure):
            logger.warning("LLM review response could not be decoded: %s", decoded.message)
            return [self._reviewer_unavailable(f"LLM review unreadable: {decoded.message}")], "", False
        return _llm_issues(decoded.data["issues"]), str(decoded.data.get("summary", "")).strip(), True

    @staticmethod
    def _reviewer_unavailable(description: str) -> ReviewIssue:
        return ReviewIssue(
            severity=SEVERITY_INFO,
            file="",
            description=description,
            category="review_unavailable",
            source=SOURCE_LLM,
        )

    async def review(self, changes: list[CodeChange], files: list[FileContext]) -> ReviewResult:
        programmatic = validate_change_set(changes, files)
        issues = list(programmatic)
        summary = ""
        llm_reviewed = False
        if changes and self.llm is not None and self.config.review.llm_enabled:
            llm_issues, summary, llm_reviewed = await self._llm_review(changes, programmatic)
            issues.extend(llm_issues)
        issues = dedupe(issues)
        return ReviewResult(
            approved=not any(issue.severity == SEVERITY_ERROR for issue in issues),
            issues=issues,
            summary=summary or _summarize(issues),
            llm_reviewed=llm_reviewed,
        )
