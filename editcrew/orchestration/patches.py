"""
Deterministic search/replace reconciliation of proposed file bodies.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from .errors import PatchMismatchError
from .types import LOW_CONFIDENCE, CodeChange, Patch

logger = logging.getLogger(__name__)

POLICY_SKIP = "skip"
POLICY_FAIL = "fail"


@dataclass
class ReconcileResult:
    content: str
    applied: list[int] = field(default_factory=list)
    skipped: list[int] = field(default_factory=list)

    @property
    def clean(self) -> bool:
        return not self.skipped


def reconcile(original: str, patches: list[Patch]) -> ReconcileResult:
    """Apply patches in order; a patch whose search text is absent is skipped."""
    result = ReconcileResult(content=original)
    for index, patch in enumerate(patches):
        if not patch.search or patch.search not in result.content:
            result.skipped.append(index)
            continue
        result.content = result.content.replace(patch.search, patch.replace, 1)
        result.applied.append(index)
    return result


def apply_patches(change: CodeChange, policy: str = POLICY_SKIP) -> CodeChange:
    """Rebuild ``proposed_content`` from the change's patches under ``policy``."""
    if not change.patches:
        return change
    result = reconcile(change.original_content, change.patches)
    if result.skipped:
        if policy == POLICY_FAIL:
            raise PatchMismatchError(change.file_name, result.skipped[0])
        logger.warning(
            "Skipped %d of %d patches for %s (search text not found)",
            len(result.skipped),
            len(change.patches),
            change.file_name,
        )
        change.low_confidence = True
        change.confidence = min(change.confidence, LOW_CONFIDENCE)
    change.skipped_patches = result.skipped
    change.proposed_content = result.content
    return change
