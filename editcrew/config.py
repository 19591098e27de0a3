"""
Configuration management for Editcrew.

Loads and validates:
- editcrew.yml: Main configuration (models, budgets, orchestration policy,
  reaction rules, outcome memory, review gate)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from .orchestration.lifecycle import default_reaction_rules
from .orchestration.types import REACTION_ACTIONS, REACTION_TRIGGERS, ReactionRule

logger = logging.getLogger(__name__)

CONFIG_FILENAME = "editcrew.yml"
DB_FILENAME = "editcrew.db"

CONFLICT_MODES = {"auto", "manual"}
PATCH_MISMATCH_POLICIES = {"skip", "fail"}
REACTION_PRECEDENCES = {"declaration", "escalate_first", "retry_first"}


@dataclass
class ProjectConfig:
    """Project identity used to scope outcome memory."""

    id: str = ""
    name: str = ""
    description: str = ""


@dataclass
class LLMConfig:
    """LLM configuration using LiteLLM model strings."""

    coordinator_model: str = "gpt-4o"
    specialist_model: str = "gpt-4o-mini"
    review_model: str = "claude-3-5-sonnet-20241022"
    fallback_model: str = "gpt-4o-mini"
    embedding_model: str = "text-embedding-3-small"
    temperature: float = 0.2
    max_tokens: int = 4000
    request_timeout_seconds: int = 60


@dataclass
class BudgetConfig:
    """Token ceilings for file context per prompt."""

    coordinator_tokens: int = 24000
    specialist_tokens: int = 12000
    review_tokens: int = 16000


@dataclass
class OrchestrationConfig:
    """Round execution policy."""

    max_parallel_specialists: int = 4
    specialist_timeout_seconds: int = 120
    parse_retries: int = 1
    conflict_mode: str = "auto"  # auto, manual
    patch_mismatch_policy: str = "skip"  # skip, fail
    reaction_precedence: str = "declaration"  # declaration, escalate_first, retry_first


@dataclass
class MemoryConfig:
    """Outcome memory retrieval and prompt-injection settings."""

    enabled: bool = True
    db_path: str | None = None
    max_results: int = 5
    retrieve_threshold: float = 0.5
    prompt_threshold: float = 0.7
    prompt_max_results: int = 3
    max_age_days: int = 90
    decay_rate: float = 0.05
    backfill_max_attempts: int = 3
    backfill_workers: int = 1


@dataclass
class ReviewConfig:
    """Review gate settings."""

    enabled: bool = True
    llm_enabled: bool = True


@dataclass
class EditcrewConfig:
    """Complete Editcrew configuration."""

    project: ProjectConfig = field(default_factory=ProjectConfig)
    llm: LLMConfig = field(default_factory=LLMConfig)
    budget: BudgetConfig = field(default_factory=BudgetConfig)
    orchestration: OrchestrationConfig = field(default_factory=OrchestrationConfig)
    memory: MemoryConfig = field(default_factory=MemoryConfig)
    review: ReviewConfig = field(default_factory=ReviewConfig)
    reactions: list[ReactionRule] = field(default_factory=default_reaction_rules)
    project_root: Path | None = None

    @property
    def project_id(self) -> str:
        if self.project.id:
            return self.project.id
        if self.project.name:
            return self.project.name
        if self.project_root is not None:
            return self.project_root.name
        return "default"

    @property
    def resolved_db_path(self) -> Path:
        if self.memory.db_path:
            path = Path(self.memory.db_path).expanduser()
            if not path.is_absolute() and self.project_root is not None:
                path = self.project_root / path
            return path.resolve()
        return get_editcrew_dir(self.project_root) / DB_FILENAME

    @classmethod
    def load(cls, project_root: Path) -> "EditcrewConfig":
        """Load configuration from the project root directory."""
        config_path = project_root / CONFIG_FILENAME
        if not config_path.exists():
            return cls(project_root=project_root.resolve())
        with open(config_path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            logger.warning("Ignoring %s: top-level value is not a mapping.", config_path)
            return cls(project_root=project_root.resolve())
        return cls._parse_main_config(data, project_root=project_root.resolve())

    @staticmethod
    def _choice(value: Any, allowed: set[str], default: str, key: str) -> str:
        text = str(value).strip().lower()
        if text in allowed:
            return text
        logger.warning("Unknown %s '%s'; using '%s'.", key, value, default)
        return default

    @classmethod
    def _parse_reactions(cls, raw: Any) -> list[ReactionRule]:
        if raw is None:
            return default_reaction_rules()
        if not isinstance(raw, list):
            logger.warning("'reactions' must be a list; using default reaction rules.")
            return default_reaction_rules()

        rules: list[ReactionRule] = []
        for item in raw:
            if not isinstance(item, dict):
                continue
            rule_id = str(item.get("id", "")).strip()
            trigger = str(item.get("trigger", "")).strip()
            action = str(item.get("action", "")).strip()
            if not rule_id:
                continue
            if trigger not in REACTION_TRIGGERS or action not in REACTION_ACTIONS:
                logger.warning(
                    "Skipping reaction rule '%s': unsupported trigger '%s' or action '%s'.",
                    rule_id,
                    trigger,
                    action,
                )
                continue
            rules.append(
                ReactionRule(
                    id=rule_id,
                    enabled=bool(item.get("enabled", True)),
                    trigger=trigger,
                    action=action,
                    max_retries=max(0, int(item.get("max_retries", 1))),
                    instruction=str(item.get("instruction", "")),
                )
            )
        return rules

    @classmethod
    def _parse_main_config(cls, data: dict[str, Any], project_root: Path) -> "EditcrewConfig":
        config = cls(project_root=project_root)

        project_data = data.get("project", {}) or {}
        config.project = ProjectConfig(
            id=str(project_data.get("id", "") or ""),
            name=str(project_data.get("name", "") or ""),
            description=str(project_data.get("description", "") or ""),
        )

        llm_data = data.get("llm", {}) or {}
        config.llm = LLMConfig(
            coordinator_model=llm_data.get("coordinator_model", "gpt-4o"),
            specialist_model=llm_data.get("specialist_model", "gpt-4o-mini"),
            review_model=llm_data.get("review_model", "claude-3-5-sonnet-20241022"),
            fallback_model=llm_data.get("fallback_model", "gpt-4o-mini"),
            embedding_model=llm_data.get("embedding_model", "text-embedding-3-small"),
            temperature=llm_data.get("temperature", 0.2),
            max_tokens=llm_data.get("max_tokens", 4000),
            request_timeout_seconds=llm_data.get("request_timeout_seconds", 60),
        )

        budget_data = data.get("budget", {}) or {}
        config.budget = BudgetConfig(
            coordinator_tokens=budget_data.get("coordinator_tokens", 24000),
            specialist_tokens=budget_data.get("specialist_tokens", 12000),
            review_tokens=budget_data.get("review_tokens", 16000),
        )

        orchestration_data = data.get("orchestration", {}) or {}
        config.orchestration = OrchestrationConfig(
            max_parallel_specialists=max(1, int(orchestration_data.get("max_parallel_specialists", 4))),
            specialist_timeout_seconds=orchestration_data.get("specialist_timeout_seconds", 120),
            parse_retries=max(0, int(orchestration_data.get("parse_retries", 1))),
            conflict_mode=cls._choice(
                orchestration_data.get("conflict_mode", "auto"),
                CONFLICT_MODES,
                "auto",
                "conflict_mode",
            ),
            patch_mismatch_policy=cls._choice(
                orchestration_data.get("patch_mismatch_policy", "skip"),
                PATCH_MISMATCH_POLICIES,
                "skip",
                "patch_mismatch_policy",
            ),
            reaction_precedence=cls._choice(
                orchestration_data.get("reaction_precedence", "declaration"),
                REACTION_PRECEDENCES,
                "declaration",
                "reaction_precedence",
            ),
        )

        memory_data = data.get("memory", {}) or {}
        config.memory = MemoryConfig(
            enabled=memory_data.get("enabled", True),
            db_path=memory_data.get("db_path"),
            max_results=memory_data.get("max_results", 5),
            retrieve_threshold=memory_data.get("retrieve_threshold", 0.5),
            prompt_threshold=memory_data.get("prompt_threshold", 0.7),
            prompt_max_results=memory_data.get("prompt_max_results", 3),
            max_age_days=memory_data.get("max_age_days", 90),
            decay_rate=memory_data.get("decay_rate", 0.05),
            backfill_max_attempts=max(1, int(memory_data.get("backfill_max_attempts", 3))),
            backfill_workers=max(1, int(memory_data.get("backfill_workers", 1))),
        )

        review_data = data.get("review", {}) or {}
        config.review = ReviewConfig(
            enabled=review_data.get("enabled", True),
            llm_enabled=review_data.get("llm_enabled", True),
        )

        config.reactions = cls._parse_reactions(data.get("reactions"))
        return config


def get_project_root() -> Path:
    """Find the project root (directory containing .git)."""

    current = Path.cwd()
    while current != current.parent:
        if (current / ".git").exists():
            return current
        current = current.parent
    return Path.cwd()


def get_editcrew_dir(project_root: Path | None = None) -> Path:
    """Get the .editcrew state directory path."""

    if project_root is None:
        project_root = get_project_root()
    return project_root / ".editcrew"


def ensure_editcrew_dir(project_root: Path | None = None) -> Path:
    """Ensure .editcrew directory exists and return its path."""

    editcrew_dir = get_editcrew_dir(project_root)
    editcrew_dir.mkdir(parents=True, exist_ok=True)
    return editcrew_dir
