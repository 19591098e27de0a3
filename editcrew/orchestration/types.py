"""
Request-scoped data model for coordinator rounds.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from pathlib import PurePosixPath
from typing import Any

QUEUED = "queued"
RUNNING = "running"
COMPLETED = "completed"
COMPLETED_NO_CHANGES = "completed_no_changes"
FAILED = "failed"

LIFECYCLE_STATES = (QUEUED, RUNNING, COMPLETED, COMPLETED_NO_CHANGES, FAILED)
TERMINAL_STATES = {COMPLETED, COMPLETED_NO_CHANGES, FAILED}

TRIGGER_FAILED = "specialist.failed"
TRIGGER_NO_CHANGES = "specialist.no_changes"
TRIGGER_STALLED = "specialist.stalled"
REACTION_TRIGGERS = {TRIGGER_FAILED, TRIGGER_NO_CHANGES, TRIGGER_STALLED}

ACTION_RETRY = "retry_with_narrow_scope"
ACTION_INJECT = "inject_instruction"
ACTION_ESCALATE = "escalate_clarification"
REACTION_ACTIONS = {ACTION_RETRY, ACTION_INJECT, ACTION_ESCALATE}

STRATEGY_SELF_HANDLE = "self_handle"
STRATEGY_DELEGATE = "delegate"
STRATEGY_HYBRID = "hybrid"

CHANGE_PROPOSED = "proposed"
CHANGE_ACCEPTED = "accepted"
CHANGE_REJECTED = "rejected"

DEFAULT_CHANGE_CONFIDENCE = 0.8
LOW_CONFIDENCE = 0.3


def is_stub(content: str) -> bool:
    """A stub is a single-line bracket-delimited placeholder for unloaded content."""
    text = content.strip()
    return len(text) >= 2 and text.startswith("[") and text.endswith("]") and "\n" not in text


def file_extension(file_name: str) -> str:
    return PurePosixPath(file_name).suffix.lower()


def is_contained_path(file_name: str) -> bool:
    """True when ``file_name`` is relative and never climbs above the project root."""
    normalized = file_name.replace("\\", "/")
    if normalized.startswith("/") or normalized[1:2] == ":":
        return False
    return ".." not in PurePosixPath(normalized).parts


@dataclass
class FileContext:
    file_id: str
    file_name: str
    file_type: str
    content: str
    path: str | None = None

    @property
    def is_stub(self) -> bool:
        return is_stub(self.content)

    @property
    def extension(self) -> str:
        return file_extension(self.path or self.file_name)


@dataclass
class Patch:
    search: str
    replace: str


@dataclass
class CodeChange:
    file_id: str
    file_name: str
    original_content: str
    proposed_content: str
    reasoning: str = ""
    agent: str = ""
    confidence: float = DEFAULT_CHANGE_CONFIDENCE
    patches: list[Patch] | None = None
    status: str = CHANGE_PROPOSED
    low_confidence: bool = False
    skipped_patches: list[int] = field(default_factory=list)

    @property
    def rejected(self) -> bool:
        return self.status == CHANGE_REJECTED

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class Delegation:
    agent: str
    task: str
    affected_files: list[str] = field(default_factory=list)


@dataclass
class ClarificationOption:
    label: str
    recommended: bool = False
    reason: str = ""


@dataclass
class TaskContext:
    files: list[FileContext] = field(default_factory=list)
    preferences: list[str] = field(default_factory=list)
    dependency_context: str = ""
    design_context: str = ""
    dom_context: str = ""
    memory_context: str = ""
    priority_file_ids: set[str] = field(default_factory=set)


@dataclass
class Task:
    instruction: str
    context: TaskContext = field(default_factory=TaskContext)
    project_id: str = ""
    user_id: str = ""


@dataclass
class SpecialistLifecycleRecord:
    agent: str
    state: str = QUEUED
    retries: int = 0
    details: str | None = None
    error_kind: str | None = None


@dataclass
class ReactionRule:
    id: str
    trigger: str
    action: str
    max_retries: int = 1
    instruction: str = ""
    enabled: bool = True


@dataclass
class ReactionDecision:
    rule_id: str
    action: str
    message: str
    escalate: bool = False

    @property
    def retry(self) -> bool:
        return self.action == ACTION_RETRY


@dataclass
class TokenTally:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    cost_usd: float = 0.0
    calls: int = 0

    def add(self, prompt_tokens: int, completion_tokens: int, cost_usd: float) -> None:
        self.prompt_tokens += max(prompt_tokens, 0)
        self.completion_tokens += max(completion_tokens, 0)
        self.cost_usd += max(cost_usd, 0.0)
        self.calls += 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "input_tokens": self.prompt_tokens,
            "output_tokens": self.completion_tokens,
            "cost_usd": round(self.cost_usd, 6),
            "calls": self.calls,
        }
