"""
Per-model prices and context windows used to cost coordinator, specialist
and review calls.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class ModelInfo:
    input_per_million: float
    output_per_million: float
    context_window: int | None = None

    def cost_usd(self, prompt_tokens: int, completion_tokens: int) -> float:
        return (
            max(prompt_tokens, 0) * self.input_per_million
            + max(completion_tokens, 0) * self.output_per_million
        ) / 1_000_000.0


# USD per 1M tokens. Embedding models only bill input.
MODELS: dict[str, ModelInfo] = {
    "gpt-4o": ModelInfo(2.50, 10.00, 128_000),
    "gpt-4o-mini": ModelInfo(0.15, 0.60, 128_000),
    "gpt-4.1": ModelInfo(2.00, 8.00, 1_000_000),
    "gpt-4.1-mini": ModelInfo(0.40, 1.60, 1_000_000),
    "claude-3-5-sonnet-20241022": ModelInfo(3.00, 15.00, 200_000),
    "claude-3-5-haiku-20241022": ModelInfo(0.80, 4.00, 200_000),
    "claude-3-haiku-20240307": ModelInfo(0.25, 1.25, 200_000),
    "text-embedding-3-small": ModelInfo(0.02, 0.0),
}


def model_info(model: str) -> ModelInfo | None:
    """Look up a model, tolerating provider prefixes like ``openai/``."""
    if model in MODELS:
        return MODELS[model]
    _, _, bare = model.rpartition("/")
    return MODELS.get(bare)


def call_cost_usd(model: str, prompt_tokens: int, completion_tokens: int) -> float:
    info = model_info(model)
    return info.cost_usd(prompt_tokens, completion_tokens) if info else 0.0


def context_window_for(model: str) -> int | None:
    info = model_info(model)
    return info.context_window if info else None
