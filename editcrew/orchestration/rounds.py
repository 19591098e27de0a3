"""
One specialist round: fan out delegations, react to failures, join.

Every delegation runs as its own asyncio task behind a shared semaphore.
Each attempt gets a fresh ``WorkingCopy`` of the specialist's bound files,
so a failed attempt leaves nothing behind. Errors never escape an
attempt; they end the attempt in a lifecycle state and the reaction
engine decides what happens next.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

from ..config import EditcrewConfig
from .budget import budget_files
from .decode import ContractSchema, ParseFailure
from .errors import TIMEOUT, TOOL_ERROR, OrchestrationError, SpecialistTimeout, suggested_action
from .events import EventEmitter
from .lifecycle import LifecycleTracker, evaluate_reactions
from .specialists import CHANGE_SET_SCHEMA, Specialist, SpecialistRegistry, WorkingCopy, aggregate_confidence
from .types import (
    COMPLETED,
    COMPLETED_NO_CHANGES,
    FAILED,
    RUNNING,
    CodeChange,
    Delegation,
    FileContext,
    ReactionDecision,
    SpecialistLifecycleRecord,
    TokenTally,
)

logger = logging.getLogger(__name__)


class CompletionClient(Protocol):
    async def complete(
        self,
        *,
        system: str,
        user: str,
        model: str | None = None,
        schema: ContractSchema | None = None,
        stage: str = "coordinator",
        max_tokens: int | None = None,
    ) -> Any: ...


@dataclass
class SpecialistOutcome:
    agent: str
    changes: list[CodeChange] = field(default_factory=list)
    confidence: float = 0.0
    attempts: int = 0
    decisions: list[ReactionDecision] = field(default_factory=list)
    escalation: str | None = None
    failure: str | None = None
    error_kind: str | None = None


@dataclass
class RoundResult:
    outcomes: list[SpecialistOutcome] = field(default_factory=list)
    records: list[SpecialistLifecycleRecord] = field(default_factory=list)
    cancelled: bool = False

    @property
    def changes(self) -> list[CodeChange]:
        """Changes in delegation order, regardless of completion order."""
        return [change for outcome in self.outcomes for change in outcome.changes]

    @property
    def decisions(self) -> list[ReactionDecision]:
        return [decision for outcome in self.outcomes for decision in outcome.decisions]

    @property
    def escalation(self) -> str | None:
        messages = [outcome.escalation for outcome in self.outcomes if outcome.escalation]
        return "\n".join(messages) if messages else None

    @property
    def failure(self) -> str | None:
        messages = [outcome.failure for outcome in self.outcomes if outcome.failure]
        return "\n".join(messages) if messages else None


@dataclass
class _Attempt:
    changes: list[CodeChange] = field(default_factory=list)
    error: str | None = None
    error_kind: str | None = None


def _narrow(files: list[FileContext], affected: list[str]) -> list[FileContext]:
    if not affected:
        return files
    wanted = set(affected)
    narrowed = [item for item in files if item.file_name in wanted or (item.path and item.path in wanted)]
    return narrowed or files


def _task_text(instruction: str, delegation: Delegation, extra: list[str]) -> str:
    parts = [delegation.task or instruction]
    if delegation.task and delegation.task != instruction:
        parts.append(f"Original request: {instruction}")
    if delegation.affected_files:
        parts.append(f"Affected files: {', '.join(delegation.affected_files)}")
    parts.extend(extra)
    return "\n\n".join(parts)


class SpecialistRound:
    def __init__(
        self,
        registry: SpecialistRegistry,
        llm: CompletionClient,
        config: EditcrewConfig,
        emitter: EventEmitter | None = None,
        tally: TokenTally | None = None,
    ):
        self.registry = registry
        self.llm = llm
        self.config = config
        self.emitter = emitter or EventEmitter()
        self.tally = tally or TokenTally()
        self.tracker = LifecycleTracker()
        self._semaphore = asyncio.Semaphore(max(1, config.orchestration.max_parallel_specialists))
        self._tasks: list[asyncio.Task[SpecialistOutcome]] = []
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True
        for task in self._tasks:
            if not task.done():
                task.cancel()

    async def _transition(
        self,
        agent: str,
        state: str,
        details: str | None = None,
        error_kind: str | None = None,
    ) -> SpecialistLifecycleRecord:
        record = self.tracker.transition(agent, state, details=details, error_kind=error_kind)
        await self.emitter.emit(
            {
                "type": "specialist_state",
                "agent": agent,
                "state": state,
                "retries": record.retries,
                "details": details,
            }
        )
        return record

    async def _attempt(self, specialist: Specialist, task_text: str, files: list[FileContext]) -> _Attempt:
        orchestration = self.config.orchestration
        budgeted = budget_files(files, self.config.budget.specialist_tokens)
        working_copy = WorkingCopy.from_files(
            files,
            owns=specialist.owns,
            patch_policy=orchestration.patch_mismatch_policy,
            tiers=budgeted.tiers,
        )
        user_prompt = specialist.format_prompt(task_text, specialist.bound_files(budgeted.files))
        try:
            completion = await asyncio.wait_for(
                self.llm.complete(
                    system=specialist.system_prompt,
                    user=user_prompt,
                    model=self.config.llm.specialist_model,
                    schema=CHANGE_SET_SCHEMA,
                    stage=f"specialist:{specialist.tag}",
                ),
                timeout=orchestration.specialist_timeout_seconds,
            )
        except (asyncio.TimeoutError, SpecialistTimeout):
            return _Attempt(
                error=f"timed out after {orchestration.specialist_timeout_seconds}s",
                error_kind=TIMEOUT,
            )
        except OrchestrationError as exc:
            return _Attempt(error=str(exc), error_kind=exc.kind)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Specialist %s call failed: %s", specialist.tag, exc)
            return _Attempt(error=str(exc), error_kind=TOOL_ERROR)

        self.tally.add(
            getattr(completion, "prompt_tokens", 0),
            getattr(completion, "completion_tokens", 0),
            getattr(completion, "cost_usd", 0.0),
        )
        parsed = specialist.parse_response(completion.text, working_copy)
        if isinstance(parsed, ParseFailure):
            logger.info("Specialist %s response rejected: %s", specialist.tag, parsed.message)
            return _Attempt(error=parsed.message, error_kind=parsed.kind)
        return _Attempt(changes=list(parsed.data["changes"]))

    async def _run_specialist(
        self,
        specialist: Specialist,
        delegation: Delegation,
        instruction: str,
        files: list[FileContext],
    ) -> SpecialistOutcome:
        outcome = SpecialistOutcome(agent=specialist.tag)
        scope = specialist.bound_files(files)
        extra: list[str] = []
        rules = self.config.reactions
        precedence = self.config.orchestration.reaction_precedence

        while True:
            outcome.attempts += 1
            async with self._semaphore:
                await self._transition(specialist.tag, RUNNING)
                attempt = await self._attempt(specialist, _task_text(instruction, delegation, extra), scope)

            if attempt.error is not None:
                record = await self._transition(
                    specialist.tag,
                    FAILED,
                    details=attempt.error,
                    error_kind=attempt.error_kind,
                )
            elif not attempt.changes:
                record = await self._transition(specialist.tag, COMPLETED_NO_CHANGES, details="no changes proposed")
            else:
                await self._transition(specialist.tag, COMPLETED)
                outcome.changes = attempt.changes
                outcome.confidence = aggregate_confidence(attempt.changes)
                return outcome

            decisions = evaluate_reactions(record, rules, precedence=precedence)
            outcome.decisions.extend(decisions)
            for decision in decisions:
                await self.emitter.emit(
                    {
                        "type": "reaction",
                        "agent": specialist.tag,
                        "rule_id": decision.rule_id,
                        "action": decision.action,
                        "message": decision.message,
                    }
                )

            control: ReactionDecision | None = None
            for decision in decisions:
                if decision.retry or decision.escalate:
                    if control is None:
                        control = decision
                else:
                    extra.append(decision.message)

            if control is not None and control.retry:
                logger.info("Retrying %s (attempt %d): %s", specialist.tag, outcome.attempts + 1, control.rule_id)
                self.tracker.requeue(specialist.tag)
                extra.append(control.message)
                scope = _narrow(scope, delegation.affected_files)
                continue
            if control is not None and control.escalate:
                outcome.escalation = control.message
                await self.emitter.emit({"type": "escalation", "agent": specialist.tag, "message": control.message})
                return outcome
            if record.state == FAILED:
                kind = record.error_kind or TOOL_ERROR
                outcome.error_kind = kind
                outcome.failure = f"{specialist.tag} failed: {record.details}. {suggested_action(kind)}"
                await self.emitter.emit({"type": "error", "agent": specialist.tag, "message": outcome.failure})
            return outcome

    async def run(
        self,
        instruction: str,
        delegations: list[Delegation],
        files: list[FileContext],
    ) -> RoundResult:
        """Run every delegation and wait until each specialist is terminal."""
        planned: list[tuple[Specialist, Delegation]] = []
        for delegation in delegations:
            specialist = self.registry.get(delegation.agent)
            if specialist is None:
                logger.warning("No specialist registered for %s; delegation skipped", delegation.agent)
                continue
            self.tracker.record(specialist.tag)
            planned.append((specialist, delegation))

        self._tasks = [
            asyncio.create_task(self._run_specialist(specialist, delegation, instruction, files))
            for specialist, delegation in planned
        ]
        try:
            results = await asyncio.gather(*self._tasks, return_exceptions=True)
        except asyncio.CancelledError:
            self.cancel()
            raise

        result = RoundResult()
        for (specialist, _), item in zip(planned, results):
            if isinstance(item, asyncio.CancelledError):
                result.cancelled = True
                continue
            if isinstance(item, BaseException):
                logger.error("Specialist %s crashed: %s", specialist.tag, item)
                self.tracker.transition(specialist.tag, FAILED, details=str(item), error_kind=TOOL_ERROR)
                result.outcomes.append(
                    SpecialistOutcome(
                        agent=specialist.tag,
                        failure=f"{specialist.tag} failed: {item}. {suggested_action(TOOL_ERROR)}",
                        error_kind=TOOL_ERROR,
                    )
                )
                continue
            result.outcomes.append(item)
        if self._cancelled:
            result.cancelled = True
        result.records = self.tracker.records()
        return result
