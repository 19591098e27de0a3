"""
Token budget management for file context.

Files are never dropped: each one is kept verbatim, shrunk with a
head+tail window, cut to its head, or reduced to a length stub.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace

from .types import FileContext

HEAD_RATIO = 0.4
HEAD_MAX_LINES = 50
TAIL_RATIO = 0.15
TAIL_MAX_LINES = 20
CHARS_PER_TOKEN = 3.5

TIER_FULL = "full"
TIER_SMART = "smart"
TIER_HEAD = "head"
TIER_STUB = "stub"
TIER_PASSTHROUGH = "passthrough"


def estimate_tokens(text: str) -> int:
    # Conservative generic heuristic across code/prose content.
    return max(1, int(len(text) / CHARS_PER_TOKEN))


def length_stub(content: str) -> str:
    return f"[{len(content)} chars — over budget]"


def _window(line_count: int) -> tuple[int, int]:
    head = min(HEAD_MAX_LINES, max(1, int(line_count * HEAD_RATIO)))
    tail = min(TAIL_MAX_LINES, int(line_count * TAIL_RATIO))
    return head, tail


def smart_truncate(content: str) -> str | None:
    """Keep the head and tail of a file, replacing the middle with a marker."""
    lines = content.splitlines()
    head, tail = _window(len(lines))
    omitted = len(lines) - head - tail
    if omitted <= 0:
        return None
    kept = lines[:head] + [f"... {omitted} lines truncated ..."]
    if tail:
        kept += lines[-tail:]
    return "\n".join(kept)


def head_truncate(content: str) -> str | None:
    lines = content.splitlines()
    head, _ = _window(len(lines))
    omitted = len(lines) - head
    if omitted <= 0:
        return None
    return "\n".join(lines[:head] + [f"... {omitted} lines truncated (head only) ..."])


@dataclass
class BudgetResult:
    files: list[FileContext]
    ceiling_tokens: int
    used_tokens: int = 0
    tiers: dict[str, str] = field(default_factory=dict)

    @property
    def truncated(self) -> bool:
        return any(tier in {TIER_SMART, TIER_HEAD, TIER_STUB} for tier in self.tiers.values())


def _fit(content: str, remaining: int) -> tuple[str, str]:
    if remaining > 0:
        smart = smart_truncate(content)
        if smart is not None and estimate_tokens(smart) <= remaining:
            return smart, TIER_SMART
        head = head_truncate(content)
        if head is not None and estimate_tokens(head) <= remaining:
            return head, TIER_HEAD
    return length_stub(content), TIER_STUB


def budget_files(
    files: list[FileContext],
    ceiling_tokens: int,
    priority_ids: set[str] | None = None,
) -> BudgetResult:
    """Fit ``files`` into ``ceiling_tokens``; output order and count match the input."""
    priority = priority_ids or set()
    order = sorted(
        range(len(files)),
        key=lambda i: (
            0 if files[i].file_id in priority else 1,
            0 if files[i].file_id in priority else estimate_tokens(files[i].content),
            i,
        ),
    )

    output = list(files)
    result = BudgetResult(files=output, ceiling_tokens=ceiling_tokens)
    for index in order:
        current = files[index]
        if current.is_stub:
            result.tiers[current.file_id] = TIER_PASSTHROUGH
            continue
        cost = estimate_tokens(current.content)
        remaining = ceiling_tokens - result.used_tokens
        if cost <= remaining:
            result.used_tokens += cost
            result.tiers[current.file_id] = TIER_FULL
            continue
        content, tier = _fit(current.content, remaining)
        if tier != TIER_STUB:
            result.used_tokens += estimate_tokens(content)
        output[index] = replace(current, content=content)
        result.tiers[current.file_id] = tier
    return result


def allocate_text(text: str, remaining_tokens: int, label: str = "Context") -> tuple[str, int]:
    """Trim a free-text prompt block to the remaining token budget."""
    if remaining_tokens <= 0 or not text:
        return "", 0
    estimated = estimate_tokens(text)
    if estimated <= remaining_tokens:
        return text, estimated

    target_chars = int(remaining_tokens * CHARS_PER_TOKEN)
    marker = f"\n[{label} truncated to fit budget]\n"
    head = target_chars - len(marker)
    if head <= 0:
        return "", 0
    trimmed = text[:head] + marker
    return trimmed, estimate_tokens(trimmed)
