"""
Specialist lifecycle tracking and declarative reaction rules.

The tracker owns one record per specialist for a single round. The
reaction engine maps a terminal record to corrective decisions; it never
picks a winner among matching rules, it only orders them.
"""

from __future__ import annotations

from .errors import TIMEOUT
from .types import (
    ACTION_ESCALATE,
    ACTION_INJECT,
    ACTION_RETRY,
    COMPLETED_NO_CHANGES,
    FAILED,
    LIFECYCLE_STATES,
    QUEUED,
    TERMINAL_STATES,
    TRIGGER_FAILED,
    TRIGGER_NO_CHANGES,
    TRIGGER_STALLED,
    ReactionDecision,
    ReactionRule,
    SpecialistLifecycleRecord,
)

PRECEDENCE_DECLARATION = "declaration"
PRECEDENCE_ESCALATE_FIRST = "escalate_first"
PRECEDENCE_RETRY_FIRST = "retry_first"


class LifecycleTransitionError(RuntimeError):
    """Raised on an unknown lifecycle state."""


def default_reaction_rules() -> list[ReactionRule]:
    return [
        ReactionRule(
            id="retry-failed-narrow",
            trigger=TRIGGER_FAILED,
            action=ACTION_RETRY,
            max_retries=1,
            instruction=(
                "Your previous attempt failed. Retry with a narrower scope: edit only the files "
                "named in the task and return valid JSON."
            ),
        ),
        ReactionRule(
            id="retry-no-changes-narrow",
            trigger=TRIGGER_NO_CHANGES,
            action=ACTION_RETRY,
            max_retries=1,
            instruction=(
                "Your previous attempt returned no changes. Focus on the single most relevant file "
                "and make the smallest edit that satisfies the task."
            ),
        ),
        ReactionRule(
            id="escalate-failed",
            trigger=TRIGGER_FAILED,
            action=ACTION_ESCALATE,
            max_retries=1,
            instruction="The {agent} specialist kept failing ({details}). Which files should it focus on?",
        ),
        ReactionRule(
            id="escalate-no-changes",
            trigger=TRIGGER_NO_CHANGES,
            action=ACTION_ESCALATE,
            max_retries=1,
            instruction=(
                "The {agent} specialist found nothing to change after retrying. "
                "Can you point to the exact file or element you mean?"
            ),
        ),
    ]


class LifecycleTracker:
    def __init__(self) -> None:
        self._records: dict[str, SpecialistLifecycleRecord] = {}

    def record(self, agent: str) -> SpecialistLifecycleRecord:
        existing = self._records.get(agent)
        if existing is None:
            existing = SpecialistLifecycleRecord(agent=agent)
            self._records[agent] = existing
        return existing

    def transition(
        self,
        agent: str,
        state: str,
        details: str | None = None,
        error_kind: str | None = None,
    ) -> SpecialistLifecycleRecord:
        if state not in LIFECYCLE_STATES:
            raise LifecycleTransitionError(f"Unknown lifecycle state: {state}")
        record = self.record(agent)
        if state in {FAILED, COMPLETED_NO_CHANGES}:
            # Counts unsuccessful attempts, so the first miss already reads 1.
            record.retries += 1
        record.state = state
        record.details = details
        record.error_kind = error_kind if state == FAILED else None
        return record

    def requeue(self, agent: str) -> SpecialistLifecycleRecord:
        record = self.record(agent)
        record.state = QUEUED
        return record

    def records(self) -> list[SpecialistLifecycleRecord]:
        return list(self._records.values())

    def all_terminal(self) -> bool:
        return all(record.state in TERMINAL_STATES for record in self._records.values())


def trigger_for(record: SpecialistLifecycleRecord) -> str | None:
    if record.state == FAILED:
        return TRIGGER_STALLED if record.error_kind == TIMEOUT else TRIGGER_FAILED
    if record.state == COMPLETED_NO_CHANGES:
        return TRIGGER_NO_CHANGES
    return None


def _message(rule: ReactionRule, record: SpecialistLifecycleRecord) -> str:
    template = rule.instruction or f"{rule.action} for {record.agent}"
    try:
        return template.format(agent=record.agent, details=record.details or "no details", retries=record.retries)
    except (KeyError, IndexError, ValueError):
        return template


def _rank(decision: ReactionDecision, precedence: str) -> int:
    if precedence == PRECEDENCE_ESCALATE_FIRST:
        return 0 if decision.escalate else 1
    if precedence == PRECEDENCE_RETRY_FIRST:
        return 0 if decision.retry else 1
    return 0


def evaluate_reactions(
    record: SpecialistLifecycleRecord,
    rules: list[ReactionRule],
    trigger: str | None = None,
    precedence: str = PRECEDENCE_DECLARATION,
) -> list[ReactionDecision]:
    """Evaluate every enabled rule matching the record's trigger independently."""
    active_trigger = trigger or trigger_for(record)
    if active_trigger is None:
        return []

    decisions: list[ReactionDecision] = []
    for rule in rules:
        if not rule.enabled or rule.trigger != active_trigger:
            continue
        if rule.action == ACTION_RETRY and record.retries <= rule.max_retries:
            decisions.append(ReactionDecision(rule_id=rule.id, action=rule.action, message=_message(rule, record)))
        elif rule.action == ACTION_ESCALATE and record.retries > rule.max_retries:
            decisions.append(
                ReactionDecision(
                    rule_id=rule.id,
                    action=rule.action,
                    message=_message(rule, record),
                    escalate=True,
                )
            )
        elif rule.action == ACTION_INJECT:
            decisions.append(ReactionDecision(rule_id=rule.id, action=rule.action, message=_message(rule, record)))
    # sorted() is stable, so declaration order breaks ties.
    return sorted(decisions, key=lambda decision: _rank(decision, precedence))
