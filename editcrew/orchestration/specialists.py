"""
Specialist capabilities and the registry that composes them.

A specialist is a plain value: its domain tags, the extensions it may
edit, a prompt formatter and a response parser. The registry is built
explicitly from ``SPECIALIST_FACTORIES``; importing this module registers
nothing.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from functools import partial
from typing import Any, Callable, Iterable

from .. import prompts
from .budget import TIER_HEAD, TIER_SMART, TIER_STUB
from .decode import ContractSchema, DecodeResult, Parsed, ParseFailure, decode_json
from .errors import PATCH_MISMATCH, PatchMismatchError
from .patches import POLICY_SKIP, apply_patches
from .types import (
    DEFAULT_CHANGE_CONFIDENCE,
    CodeChange,
    FileContext,
    Patch,
    file_extension,
    is_contained_path,
)

CHANGE_SET_SCHEMA = ContractSchema(required_fields={"changes": list})


class ChangeContractError(ValueError):
    """Raised when a change entry is malformed or outside the author's domain."""


@dataclass
class WorkingCopy:
    """Isolated overlay of the files one specialist invocation may read and edit."""

    files: dict[str, FileContext] = field(default_factory=dict)
    patch_policy: str = POLICY_SKIP
    writes: dict[str, str] = field(default_factory=dict)
    # file_id -> budget tier the author was shown; content always stays untruncated
    tiers: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_files(
        cls,
        files: Iterable[FileContext],
        owns: Callable[[str], bool] | None = None,
        patch_policy: str = POLICY_SKIP,
        tiers: dict[str, str] | None = None,
    ) -> "WorkingCopy":
        selected: dict[str, FileContext] = {}
        for item in files:
            if owns is not None and not owns(item.path or item.file_name):
                continue
            selected[item.file_name] = item
            if item.path:
                selected.setdefault(item.path, item)
        return cls(files=selected, patch_policy=patch_policy, tiers=dict(tiers or {}))

    def get(self, file_name: str) -> FileContext | None:
        return self.files.get(file_name)

    def read(self, file_name: str) -> str:
        if file_name in self.writes:
            return self.writes[file_name]
        existing = self.files.get(file_name)
        return existing.content if existing is not None else ""

    def write(self, file_name: str, content: str) -> None:
        self.writes[file_name] = content

    def tier(self, file_name: str) -> str | None:
        existing = self.files.get(file_name)
        return self.tiers.get(existing.file_id) if existing is not None else None


def _confidence(value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return DEFAULT_CHANGE_CONFIDENCE
    return max(0.0, min(1.0, float(value)))


def build_changes(
    entries: list[Any],
    working_copy: WorkingCopy,
    agent: str,
    owns: Callable[[str], bool] | None = None,
) -> list[CodeChange]:
    """Turn decoded change entries into ``CodeChange`` objects against ``working_copy``."""
    changes: list[CodeChange] = []
    for position, entry in enumerate(entries):
        if not isinstance(entry, dict):
            raise ChangeContractError(f"changes[{position}] must be an object")
        file_name = str(entry.get("file_name") or entry.get("fileName") or "").strip()
        if not file_name:
            raise ChangeContractError(f"changes[{position}] is missing file_name")
        if not is_contained_path(file_name):
            raise ChangeContractError(f"{file_name} is outside the project root")
        if owns is not None and not owns(file_name):
            raise ChangeContractError(f"{agent} may not edit {file_name}")

        existing = working_copy.get(file_name)
        tier = working_copy.tier(file_name)
        if (existing is not None and existing.is_stub) or tier == TIER_STUB:
            raise ChangeContractError(f"{file_name} was not loaded; it cannot be edited")
        original = working_copy.read(file_name)
        raw_patches = entry.get("patches")
        change = CodeChange(
            file_id=existing.file_id if existing is not None else file_name,
            file_name=file_name,
            original_content=original,
            proposed_content=original,
            reasoning=str(entry.get("reasoning", "")),
            agent=agent,
            confidence=_confidence(entry.get("confidence")),
        )
        if isinstance(raw_patches, list) and raw_patches:
            change.patches = [
                Patch(search=str(item.get("search", "")), replace=str(item.get("replace", "")))
                for item in raw_patches
                if isinstance(item, dict)
            ]
            apply_patches(change, working_copy.patch_policy)
        elif isinstance(entry.get("proposed_content"), str):
            if tier in (TIER_SMART, TIER_HEAD):
                raise ChangeContractError(f"{file_name} was shown truncated; edit it with patches")
            change.proposed_content = entry["proposed_content"]
        else:
            raise ChangeContractError(f"change for {file_name} has neither patches nor proposed_content")
        working_copy.write(file_name, change.proposed_content)
        changes.append(change)
    return changes


def aggregate_confidence(changes: list[CodeChange]) -> float:
    if not changes:
        return DEFAULT_CHANGE_CONFIDENCE
    return sum(change.confidence for change in changes) / len(changes)


def _format_files(files: list[FileContext]) -> str:
    blocks = []
    for item in files:
        blocks.append(f"--- {item.path or item.file_name} ({item.file_type}) ---\n{item.content}")
    return "\n\n".join(blocks) if blocks else "(no files in scope)"


def format_specialist_prompt(task: str, files: list[FileContext]) -> str:
    return f"TASK:\n{task}\n\nFILES IN YOUR SCOPE:\n{_format_files(files)}"


def parse_specialist_response(
    raw: str,
    working_copy: WorkingCopy,
    *,
    agent: str,
    owns: Callable[[str], bool],
) -> DecodeResult:
    decoded = decode_json(raw, CHANGE_SET_SCHEMA)
    if isinstance(decoded, ParseFailure):
        return decoded
    try:
        changes = build_changes(decoded.data["changes"], working_copy, agent, owns=owns)
    except PatchMismatchError as exc:
        return ParseFailure(str(exc), raw=raw, kind=PATCH_MISMATCH)
    except ChangeContractError as exc:
        return ParseFailure(str(exc), raw=raw)
    return Parsed({"changes": changes}, stage=decoded.stage)


@dataclass(frozen=True)
class Specialist:
    tag: str
    name: str
    domain_tags: tuple[str, ...]
    extensions: frozenset[str]
    system_prompt: str
    format_prompt: Callable[[str, list[FileContext]], str]
    parse_response: Callable[[str, WorkingCopy], DecodeResult]

    def owns(self, file_name: str) -> bool:
        return file_extension(file_name) in self.extensions

    def bound_files(self, files: Iterable[FileContext]) -> list[FileContext]:
        return [item for item in files if self.owns(item.path or item.file_name)]


def make_specialist(tag: str, name: str, extensions: Iterable[str], guidance: str) -> Specialist:
    exts = frozenset(ext.lower() for ext in extensions)

    def owns(file_name: str) -> bool:
        return file_extension(file_name) in exts

    return Specialist(
        tag=tag,
        name=name,
        domain_tags=(tag,),
        extensions=exts,
        system_prompt=prompts.SPECIALIST_SYSTEM_PROMPT.format(
            name=name,
            extensions=", ".join(sorted(exts)),
            guidance=guidance,
        ),
        format_prompt=format_specialist_prompt,
        parse_response=partial(parse_specialist_response, agent=tag, owns=owns),
    )


def liquid_specialist() -> Specialist:
    return make_specialist("liquid", "Liquid template", [".liquid"], prompts.LIQUID_GUIDANCE)


def javascript_specialist() -> Specialist:
    return make_specialist(
        "javascript",
        "JavaScript",
        [".js", ".mjs", ".cjs", ".ts"],
        prompts.JAVASCRIPT_GUIDANCE,
    )


def css_specialist() -> Specialist:
    return make_specialist("css", "Stylesheet", [".css", ".scss"], prompts.CSS_GUIDANCE)


def json_specialist() -> Specialist:
    return make_specialist("json", "Structured config", [".json"], prompts.JSON_GUIDANCE)


SPECIALIST_FACTORIES: dict[str, Callable[[], Specialist]] = {
    "liquid": liquid_specialist,
    "javascript": javascript_specialist,
    "css": css_specialist,
    "json": json_specialist,
}


class SpecialistRegistry:
    def __init__(self, specialists: Iterable[Specialist]):
        self._specialists: dict[str, Specialist] = {}
        for specialist in specialists:
            self._specialists[specialist.tag] = specialist

    def __contains__(self, tag: object) -> bool:
        return tag in self._specialists

    def __len__(self) -> int:
        return len(self._specialists)

    def get(self, tag: str) -> Specialist | None:
        return self._specialists.get(tag)

    @property
    def tags(self) -> list[str]:
        return list(self._specialists)

    def for_file(self, file_name: str) -> Specialist | None:
        for specialist in self._specialists.values():
            if specialist.owns(file_name):
                return specialist
        return None

    def eligible_tags(self, files: Iterable[FileContext]) -> set[str]:
        """Tags bound to at least one of ``files``."""
        materialized = list(files)
        return {
            tag
            for tag, specialist in self._specialists.items()
            if specialist.bound_files(materialized)
        }

    def describe(self) -> str:
        return "\n".join(
            f"- {specialist.tag}: {specialist.name} ({', '.join(sorted(specialist.extensions))})"
            for specialist in self._specialists.values()
        )


def build_registry(
    tags: Iterable[str] | None = None,
    factories: dict[str, Callable[[], Specialist]] | None = None,
) -> SpecialistRegistry:
    table = factories if factories is not None else SPECIALIST_FACTORIES
    selected = list(tags) if tags is not None else list(table)
    unknown = [tag for tag in selected if tag not in table]
    if unknown:
        raise ValueError(f"Unknown specialist tags: {', '.join(unknown)}")
    return SpecialistRegistry(table[tag]() for tag in selected)
