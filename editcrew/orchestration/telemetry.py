"""
Usage accounting for a single LLM call: token counts, cost and the
context-window pressure warning.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from ..pricing import call_cost_usd, context_window_for

CONTEXT_WARNING_SHARE = 0.75


@dataclass
class CallUsage:
    stage: str
    model: str
    prompt_tokens: int = 0
    completion_tokens: int = 0
    cost_usd: float = 0.0

    def to_event(self) -> dict[str, Any]:
        return {
            "type": "token_usage",
            "stage": self.stage,
            "model": self.model,
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "call_cost_usd": self.cost_usd,
        }

    def context_warning(self) -> str | None:
        window = context_window_for(self.model)
        if not window or self.prompt_tokens <= int(window * CONTEXT_WARNING_SHARE):
            return None
        return (
            f"Prompt tokens {self.prompt_tokens} exceed "
            f"{CONTEXT_WARNING_SHARE:.0%} of context window ({window}) for {self.model}"
        )


def _count(usage: Any, *names: str) -> int:
    for name in names:
        value = usage.get(name) if isinstance(usage, dict) else getattr(usage, name, None)
        if value:
            return int(value)
    return 0


def measure_call(response: Any, *, stage: str, model: str) -> CallUsage:
    """Read chat-completions or Responses API usage and price it."""
    usage = getattr(response, "usage", None)
    prompt_tokens = _count(usage, "prompt_tokens", "input_tokens")
    completion_tokens = _count(usage, "completion_tokens", "output_tokens")
    return CallUsage(
        stage=stage,
        model=model,
        prompt_tokens=prompt_tokens,
        completion_tokens=completion_tokens,
        cost_usd=call_cost_usd(model, prompt_tokens, completion_tokens),
    )
