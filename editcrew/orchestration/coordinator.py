"""
Coordinator: analyze a request, pick a strategy, run one specialist round.

The coordinator owns the request from analysis to stored outcome. It
edits files directly, delegates to specialists, or both; it asks for
clarification instead of guessing; and after the round it settles
conflicts, runs the review gate and records the outcome in memory.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, dataclass, field
from typing import Any

from .. import prompts
from ..config import EditcrewConfig
from ..memory import OUTCOME_FAILURE, OUTCOME_PARTIAL, OUTCOME_SUCCESS, OutcomeMemory, StoreOutcomeInput
from .budget import BudgetResult, allocate_text, budget_files
from .conflicts import Conflict, accepted_changes, auto_resolve, detect_conflicts, resolve_selection
from .decode import ContractSchema, ParseFailure, decode_json
from .errors import CoordinatorParseError, PatchMismatchError
from .events import EventEmitter
from .review import ReviewGate, ReviewResult
from .rounds import CompletionClient, RoundResult, SpecialistRound
from .specialists import ChangeContractError, SpecialistRegistry, WorkingCopy, build_changes, build_registry
from .types import (
    STRATEGY_DELEGATE,
    STRATEGY_HYBRID,
    STRATEGY_SELF_HANDLE,
    ClarificationOption,
    CodeChange,
    Delegation,
    FileContext,
    ReactionDecision,
    SpecialistLifecycleRecord,
    Task,
    TokenTally,
)
from .workflows import WorkflowMatch, match_workflows

logger = logging.getLogger(__name__)

COORDINATOR_AGENT = "coordinator"
MIN_CLARIFICATION_OPTIONS = 2
MAX_CLARIFICATION_OPTIONS = 5
PREFERENCE_MIN_CONFIDENCE = 0.5

COORDINATOR_SCHEMA = ContractSchema(
    required_fields={"analysis": str},
    optional_fields={
        "needs_clarification": (bool, False),
        "clarification_options": (list, list),
        "changes": (list, list),
        "delegations": (list, list),
        "referenced_files": (list, list),
    },
)


@dataclass
class CoordinatorAnalysis:
    analysis: str
    needs_clarification: bool = False
    clarification_options: list[ClarificationOption] = field(default_factory=list)
    changes: list[CodeChange] = field(default_factory=list)
    delegations: list[Delegation] = field(default_factory=list)
    referenced_files: list[str] = field(default_factory=list)
    dropped_delegations: list[Delegation] = field(default_factory=list)


@dataclass
class CoordinatorResult:
    analysis: str = ""
    strategy: str = STRATEGY_SELF_HANDLE
    needs_clarification: bool = False
    clarification_options: list[ClarificationOption] = field(default_factory=list)
    changes: list[CodeChange] = field(default_factory=list)
    delegations: list[Delegation] = field(default_factory=list)
    referenced_files: list[str] = field(default_factory=list)
    conflicts: list[Conflict] = field(default_factory=list)
    lifecycle: list[SpecialistLifecycleRecord] = field(default_factory=list)
    decisions: list[ReactionDecision] = field(default_factory=list)
    escalation: str | None = None
    failure: str | None = None
    review: ReviewResult | None = None
    token_usage: TokenTally = field(default_factory=TokenTally)
    cancelled: bool = False
    workflow: str | None = None
    outcome_id: str | None = None

    @property
    def accepted_changes(self) -> list[CodeChange]:
        return accepted_changes(self.changes)

    @property
    def pending_conflicts(self) -> list[Conflict]:
        return [conflict for conflict in self.conflicts if not any(change.rejected for change in conflict.changes)]

    def to_dict(self) -> dict[str, Any]:
        return {
            "analysis": self.analysis,
            "strategy": self.strategy,
            "needs_clarification": self.needs_clarification,
            "clarification_options": [asdict(option) for option in self.clarification_options],
            "changes": [change.to_dict() for change in self.changes],
            "delegations": [asdict(delegation) for delegation in self.delegations],
            "referenced_files": list(self.referenced_files),
            "conflicts": [conflict.to_dict() for conflict in self.conflicts],
            "lifecycle": [asdict(record) for record in self.lifecycle],
            "decisions": [{**asdict(decision), "retry": decision.retry} for decision in self.decisions],
            "escalation": self.escalation,
            "failure": self.failure,
            "review": self.review.to_dict() if self.review is not None else None,
            "token_usage": self.token_usage.to_dict(),
            "cancelled": self.cancelled,
            "workflow": self.workflow,
            "outcome_id": self.outcome_id,
        }


def decide_strategy(changes: list[CodeChange], delegations: list[Delegation]) -> str:
    if not delegations:
        return STRATEGY_SELF_HANDLE
    if not changes:
        return STRATEGY_DELEGATE
    return STRATEGY_HYBRID


def _clarification_options(raw: list[Any]) -> list[ClarificationOption]:
    options = []
    for item in raw:
        if isinstance(item, str) and item.strip():
            options.append(ClarificationOption(label=item.strip()))
        elif isinstance(item, dict) and str(item.get("label", "")).strip():
            reason = str(item.get("reason") or "").strip().splitlines()
            options.append(
                ClarificationOption(
                    label=str(item["label"]).strip(),
                    recommended=bool(item.get("recommended", False)),
                    reason=reason[0] if reason else "",
                )
            )
    return options[:MAX_CLARIFICATION_OPTIONS]


def _delegations(raw: list[Any]) -> list[Delegation]:
    """Decode delegations, merging repeated agents into one entry."""
    merged: dict[str, Delegation] = {}
    for item in raw:
        if not isinstance(item, dict):
            raise ChangeContractError("delegations entries must be objects")
        agent = str(item.get("agent", "")).strip().lower()
        if not agent:
            raise ChangeContractError("delegation is missing agent")
        task = str(item.get("task", "")).strip()
        affected = [str(name) for name in item.get("affected_files") or [] if str(name).strip()]
        existing = merged.get(agent)
        if existing is None:
            merged[agent] = Delegation(agent=agent, task=task, affected_files=affected)
            continue
        if task:
            existing.task = f"{existing.task}\n{task}" if existing.task else task
        existing.affected_files.extend(name for name in affected if name not in existing.affected_files)
    return list(merged.values())


def _section(title: str, body: str) -> str:
    return f"{title}:\n{body}" if body.strip() else ""


class Coordinator:
    def __init__(
        self,
        config: EditcrewConfig,
        llm: CompletionClient,
        registry: SpecialistRegistry | None = None,
        memory: OutcomeMemory | None = None,
        emitter: EventEmitter | None = None,
    ):
        self.config = config
        self.llm = llm
        self.registry = registry or build_registry()
        self.memory = memory
        self.emitter = emitter or EventEmitter()
        self._round: SpecialistRound | None = None
        self._aborted = False

    def abort(self) -> None:
        """Cancel in-flight specialists; the running round reports ``cancelled``."""
        self._aborted = True
        if self._round is not None:
            self._round.cancel()

    def _preferences_text(self, task: Task) -> str:
        lines = [f"- {item}" for item in task.context.preferences]
        if self.memory is not None:
            try:
                stored = self.memory.db.list_preferences(
                    task.project_id or self.config.project_id,
                    min_confidence=PREFERENCE_MIN_CONFIDENCE,
                )
            except Exception as exc:  # noqa: BLE001
                logger.warning("Could not load preferences: %s", exc)
                stored = []
            lines.extend(f"- {item.category}: {item.preference}" for item in stored)
        return "\n".join(lines)

    async def _memory_text(self, task: Task) -> str:
        if task.context.memory_context:
            return task.context.memory_context
        if self.memory is None or not self.config.memory.enabled:
            return ""
        return await asyncio.to_thread(
            self.memory.prompt_block,
            task.project_id or self.config.project_id,
            task.instruction,
        )

    async def build_prompt(self, task: Task, workflows: list[WorkflowMatch]) -> tuple[str, str, BudgetResult]:
        """Return system prompt, user prompt and the budget that shaped the file blocks."""
        budget = self.config.budget.coordinator_tokens
        context = task.context
        system = prompts.COORDINATOR_SYSTEM_PROMPT.format(specialists=self.registry.describe())

        sections = [f"REQUEST:\n{task.instruction}"]
        remaining = budget
        for title, body in (
            ("USER PREFERENCES", self._preferences_text(task)),
            ("DEPENDENCY CONTEXT", context.dependency_context),
            ("DESIGN CONTEXT", context.design_context),
            ("DOM CONTEXT", context.dom_context),
            ("PAST TASKS", await self._memory_text(task)),
            ("SUGGESTED WORKFLOW", "\n\n".join(match.hint() for match in workflows)),
        ):
            text, used = allocate_text(body, remaining // 2, label=title.title())
            remaining -= used
            if text:
                sections.append(_section(title, text))

        budgeted = budget_files(context.files, max(remaining, 0), context.priority_file_ids)
        if budgeted.truncated:
            await self.emitter.emit(
                {
                    "type": "context_budget",
                    "ceiling_tokens": budgeted.ceiling_tokens,
                    "used_tokens": budgeted.used_tokens,
                    "tiers": dict(budgeted.tiers),
                }
            )
        file_blocks = "\n\n".join(
            f"--- {item.path or item.file_name} ({item.file_type}) ---\n{item.content}" for item in budgeted.files
        )
        sections.append(_section("FILES", file_blocks or "(none)"))
        return system, "\n\n".join(section for section in sections if section), budgeted

    def _decode(self, raw: str, files: list[FileContext], tiers: dict[str, str]) -> CoordinatorAnalysis:
        decoded = decode_json(raw, COORDINATOR_SCHEMA)
        if isinstance(decoded, ParseFailure):
            raise CoordinatorParseError(decoded.message, raw=raw)
        data = decoded.data
        try:
            working_copy = WorkingCopy.from_files(
                files,
                patch_policy=self.config.orchestration.patch_mismatch_policy,
                tiers=tiers,
            )
            changes = build_changes(data["changes"], working_copy, COORDINATOR_AGENT)
            delegations = _delegations(data["delegations"])
        except (ChangeContractError, PatchMismatchError) as exc:
            raise CoordinatorParseError(str(exc), raw=raw) from exc

        options = _clarification_options(data["clarification_options"])
        needs_clarification = bool(data["needs_clarification"])
        if needs_clarification and len(options) < MIN_CLARIFICATION_OPTIONS:
            raise CoordinatorParseError(
                f"needs_clarification requires at least {MIN_CLARIFICATION_OPTIONS} options, got {len(options)}",
                raw=raw,
            )
        return CoordinatorAnalysis(
            analysis=data["analysis"].strip(),
            needs_clarification=needs_clarification,
            clarification_options=options if needs_clarification else [],
            changes=changes,
            delegations=delegations,
            referenced_files=[str(name) for name in data["referenced_files"]],
        )

    def _filter_delegations(self, analysis: CoordinatorAnalysis, files: list[FileContext]) -> None:
        eligible = self.registry.eligible_tags(files)
        kept = []
        for delegation in analysis.delegations:
            if delegation.agent in eligible:
                kept.append(delegation)
            else:
                logger.info("Dropping delegation to %s: no matching files in context", delegation.agent)
                analysis.dropped_delegations.append(delegation)
        analysis.delegations = kept

    async def analyze(
        self,
        task: Task,
        correction: str | None = None,
        tally: TokenTally | None = None,
        workflows: list[WorkflowMatch] | None = None,
    ) -> CoordinatorAnalysis:
        """One coordinator call. Raises ``CoordinatorParseError`` on unusable output."""
        system, user, budgeted = await self.build_prompt(task, workflows or [])
        if correction:
            user = f"{user}\n\n{correction}"
        completion = await self.llm.complete(
            system=system,
            user=user,
            model=self.config.llm.coordinator_model,
            schema=COORDINATOR_SCHEMA,
            stage=COORDINATOR_AGENT,
        )
        if tally is not None:
            tally.add(completion.prompt_tokens, completion.completion_tokens, completion.cost_usd)
        analysis = self._decode(completion.text, task.context.files, budgeted.tiers)
        self._filter_delegations(analysis, task.context.files)
        return analysis

    async def _analyze_with_retries(
        self,
        task: Task,
        tally: TokenTally,
        workflows: list[WorkflowMatch],
    ) -> tuple[CoordinatorAnalysis, int]:
        attempts = max(0, self.config.orchestration.parse_retries) + 1
        correction: str | None = None
        attempt = 0
        while True:
            attempt += 1
            try:
                return await self.analyze(task, correction=correction, tally=tally, workflows=workflows), attempt
            except CoordinatorParseError as exc:
                if attempt >= attempts:
                    raise
                logger.info("Coordinator output unusable (attempt %d/%d): %s", attempt, attempts, exc)
                await self.emitter.emit({"type": "warning", "message": f"Coordinator output unusable: {exc}"})
                correction = prompts.COORDINATOR_CORRECTION.format(error=exc)

    async def run(self, task: Task) -> CoordinatorResult:
        self._aborted = False
        tally = TokenTally()
        available = set(self.registry.eligible_tags(task.context.files))
        workflows = match_workflows(task.instruction, available)
        await self.emitter.emit({"type": "thinking", "message": "Analyzing request..."})

        analysis, analysis_attempts = await self._analyze_with_retries(task, tally, workflows)
        result = CoordinatorResult(
            analysis=analysis.analysis,
            strategy=decide_strategy(analysis.changes, analysis.delegations),
            needs_clarification=analysis.needs_clarification,
            clarification_options=analysis.clarification_options,
            changes=list(analysis.changes),
            delegations=analysis.delegations,
            referenced_files=analysis.referenced_files,
            token_usage=tally,
            workflow=workflows[0].workflow.id if workflows else None,
        )
        for dropped in analysis.dropped_delegations:
            await self.emitter.emit(
                {"type": "delegation_dropped", "agent": dropped.agent, "message": "no matching files in context"}
            )

        if self._aborted:
            result.cancelled = True
            return result
        if analysis.needs_clarification:
            await self.emitter.emit(
                {
                    "type": "clarification",
                    "message": analysis.analysis,
                    "options": [asdict(option) for option in analysis.clarification_options],
                }
            )
            return result

        await self.emitter.emit({"type": "strategy", "strategy": result.strategy})
        round_result = RoundResult()
        if analysis.delegations:
            self._round = SpecialistRound(self.registry, self.llm, self.config, emitter=self.emitter, tally=tally)
            try:
                round_result = await self._round.run(task.instruction, analysis.delegations, task.context.files)
            finally:
                self._round = None
        result.changes.extend(round_result.changes)
        result.lifecycle = round_result.records
        result.decisions = round_result.decisions
        result.escalation = round_result.escalation
        result.failure = round_result.failure

        if self._aborted or round_result.cancelled:
            result.cancelled = True
            await self.emitter.emit({"type": "cancelled", "message": "Run aborted"})
            return result

        result.conflicts = detect_conflicts(result.changes)
        if result.conflicts:
            if self.config.orchestration.conflict_mode == "auto":
                auto_resolve(result.conflicts)
            await self.emitter.emit(
                {
                    "type": "conflict",
                    "mode": self.config.orchestration.conflict_mode,
                    "conflicts": [conflict.to_dict() for conflict in result.conflicts],
                }
            )

        if self.config.review.enabled and result.accepted_changes:
            gate = ReviewGate(self.config, llm=self.llm, tally=tally)
            result.review = await gate.review(result.accepted_changes, task.context.files)
            await self.emitter.emit({"type": "review", **result.review.to_dict()})

        iterations = analysis_attempts + sum(outcome.attempts for outcome in round_result.outcomes)
        result.outcome_id = await self._store_outcome(task, result, iterations)
        await self.emitter.emit({"type": "complete", "message": "Run complete", "strategy": result.strategy})
        return result

    def resolve_conflicts(self, result: CoordinatorResult, selections: dict[str, int]) -> CoordinatorResult:
        """Apply per-file manual selections; raises ``ConflictSelectionError`` on a bad one."""
        resolve_selection(result.conflicts, selections)
        return result

    def _outcome_label(self, result: CoordinatorResult) -> str:
        if not result.accepted_changes:
            return OUTCOME_FAILURE
        if result.failure or result.escalation or (result.review is not None and not result.review.approved):
            return OUTCOME_PARTIAL
        return OUTCOME_SUCCESS

    async def _store_outcome(self, task: Task, result: CoordinatorResult, iterations: int) -> str | None:
        if self.memory is None or not self.config.memory.enabled:
            return None
        tools = [COORDINATOR_AGENT] + [delegation.agent for delegation in result.delegations]
        if result.review is not None:
            tools.append("review")
        files = list(dict.fromkeys(change.file_name for change in result.accepted_changes))
        return await self.memory.store(
            StoreOutcomeInput(
                project_id=task.project_id or self.config.project_id,
                user_id=task.user_id,
                task_summary=task.instruction,
                strategy=result.strategy,
                outcome=self._outcome_label(result),
                files_changed=files,
                tool_sequence=tools,
                iteration_count=iterations,
                token_usage=result.token_usage.to_dict(),
                role=COORDINATOR_AGENT,
            )
        )
