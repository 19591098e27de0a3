"""
Conflict detection and resolution for changes proposed within one round.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from .types import CHANGE_ACCEPTED, CHANGE_REJECTED, CodeChange

logger = logging.getLogger(__name__)


class ConflictSelectionError(ValueError):
    """Raised when an explicit selection does not match a detected conflict."""


@dataclass
class Conflict:
    file_name: str
    changes: list[CodeChange]
    selected_index: int = 0

    @property
    def selected(self) -> CodeChange:
        return self.changes[self.selected_index]

    def to_dict(self) -> dict[str, Any]:
        return {
            "file_name": self.file_name,
            "selected_index": self.selected_index,
            "candidates": [
                {
                    "agent": change.agent,
                    "reasoning": change.reasoning,
                    "confidence": change.confidence,
                    "low_confidence": change.low_confidence,
                }
                for change in self.changes
            ],
        }


def detect_conflicts(changes: list[CodeChange]) -> list[Conflict]:
    """Group changes by file name in submission order; groups larger than one conflict."""
    groups: dict[str, list[CodeChange]] = {}
    for change in changes:
        if change.rejected:
            continue
        groups.setdefault(change.file_name, []).append(change)
    return [Conflict(file_name=name, changes=group) for name, group in groups.items() if len(group) > 1]


def _settle(conflict: Conflict, keep_index: int) -> None:
    conflict.selected_index = keep_index
    for index, change in enumerate(conflict.changes):
        change.status = CHANGE_ACCEPTED if index == keep_index else CHANGE_REJECTED


def resolve_selection(conflicts: list[Conflict], selections: dict[str, int]) -> list[Conflict]:
    """Keep the chosen change per file and reject the rest of that file's group."""
    by_file = {conflict.file_name: conflict for conflict in conflicts}
    for file_name, index in selections.items():
        conflict = by_file.get(file_name)
        if conflict is None:
            raise ConflictSelectionError(f"No conflict for {file_name}")
        if not 0 <= index < len(conflict.changes):
            raise ConflictSelectionError(
                f"Selection {index} out of range for {file_name} ({len(conflict.changes)} candidates)"
            )
        _settle(conflict, index)
    return conflicts


def auto_resolve(conflicts: list[Conflict]) -> list[Conflict]:
    """Keep the first-submitted change for every conflicting file."""
    for conflict in conflicts:
        _settle(conflict, 0)
        logger.info(
            "Auto-resolved conflict on %s: kept %s, rejected %d",
            conflict.file_name,
            conflict.selected.agent or "unknown",
            len(conflict.changes) - 1,
        )
    return conflicts


def accepted_changes(changes: list[CodeChange]) -> list[CodeChange]:
    return [change for change in changes if not change.rejected]
