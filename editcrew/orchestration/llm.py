"""
LLM boundary: system + user prompt in, raw text out.

LiteLLM handles provider routing. Models that are not chat models (or are
only exposed through the OpenAI Responses API) are retried on that API,
and a configured fallback model is tried last.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any

from ..config import LLMConfig
from .decode import ContractSchema
from .errors import LLMCallError, SpecialistTimeout
from .events import EventEmitter
from .telemetry import measure_call

logger = logging.getLogger(__name__)

# Suppress LiteLLM's verbose logging
logging.getLogger("LiteLLM").setLevel(logging.WARNING)


@dataclass
class Completion:
    text: str
    model: str
    prompt_tokens: int = 0
    completion_tokens: int = 0
    cost_usd: float = 0.0


def _is_non_chat_model_error(exc: Exception) -> bool:
    err_text = str(exc).lower()
    return (
        "not a chat model" in err_text
        or "v1/chat/completions" in err_text
        or "did you mean to use v1/completions" in err_text
    )


def _prefer_responses_api(model: str) -> bool:
    return model.startswith("gpt-5")


def _as_responses_input(messages: list[dict[str, Any]]) -> list[dict[str, Any]]:
    return [
        {
            "role": str(message.get("role", "user")),
            "content": [{"type": "input_text", "text": str(message.get("content", ""))}],
        }
        for message in messages
    ]


def _extract_responses_text(response: Any) -> str:
    output_text = getattr(response, "output_text", None)
    if isinstance(output_text, str) and output_text.strip():
        return output_text.strip()
    chunks: list[str] = []
    for item in getattr(response, "output", None) or []:
        for part in getattr(item, "content", None) or []:
            text = getattr(part, "text", None)
            if isinstance(text, str) and text:
                chunks.append(text)
    return "\n".join(chunks).strip()


class LiteLLMClient:
    def __init__(self, config: LLMConfig, emitter: EventEmitter | None = None):
        self.config = config
        self.emitter = emitter or EventEmitter()

    def _responses_call(self, model: str, messages: list[dict[str, Any]], max_tokens: int) -> tuple[str, Any]:
        from openai import OpenAI

        client = OpenAI()
        response = client.responses.create(
            model=model,
            input=_as_responses_input(messages),
            max_output_tokens=max_tokens,
        )
        text = _extract_responses_text(response)
        if not text:
            raise RuntimeError("Empty response text from OpenAI Responses API")
        return text, response

    def _chat_call(
        self,
        model: str,
        messages: list[dict[str, Any]],
        max_tokens: int,
        schema: ContractSchema | None,
    ) -> tuple[str, Any]:
        import litellm

        litellm.drop_params = True  # not every provider accepts temperature/response_format
        kwargs: dict[str, Any] = {
            "model": model,
            "messages": messages,
            "max_tokens": max_tokens,
            "temperature": self.config.temperature,
        }
        if schema is not None:
            kwargs["response_format"] = {"type": "json_object"}
        response = litellm.completion(**kwargs)
        return str(response.choices[0].message.content or "").strip(), response

    def _call_model(
        self,
        model: str,
        messages: list[dict[str, Any]],
        max_tokens: int,
        schema: ContractSchema | None,
    ) -> tuple[str, Any]:
        if _prefer_responses_api(model):
            return self._responses_call(model, messages, max_tokens)
        try:
            return self._chat_call(model, messages, max_tokens, schema)
        except Exception as exc:  # noqa: BLE001
            if _is_non_chat_model_error(exc):
                return self._responses_call(model, messages, max_tokens)
            raise

    async def complete(
        self,
        *,
        system: str,
        user: str,
        model: str | None = None,
        schema: ContractSchema | None = None,
        stage: str = "coordinator",
        max_tokens: int | None = None,
    ) -> Completion:
        primary = model or self.config.coordinator_model
        models_to_try = [primary]
        if self.config.fallback_model and self.config.fallback_model != primary:
            models_to_try.append(self.config.fallback_model)
        output_cap = max(256, int(max_tokens or self.config.max_tokens))
        timeout = self.config.request_timeout_seconds
        messages = [
            {"role": "system", "content": system},
            {"role": "user", "content": user},
        ]

        last_error: Exception | None = None
        for candidate in models_to_try:
            try:
                text, response = await asyncio.wait_for(
                    asyncio.to_thread(self._call_model, candidate, messages, output_cap, schema),
                    timeout=timeout,
                )
            except asyncio.TimeoutError:
                last_error = SpecialistTimeout(f"Model '{candidate}' timed out after {timeout}s")
                logger.warning("%s call timed out on %s after %ss", stage, candidate, timeout)
                continue
            except Exception as exc:  # noqa: BLE001
                last_error = exc
                logger.warning("%s call failed on %s: %s", stage, candidate, exc)
                continue

            usage = measure_call(response, stage=stage, model=candidate)
            await self.emitter.emit(usage.to_event())
            warning = usage.context_warning()
            if warning:
                await self.emitter.emit({"type": "warning", "message": warning})
            return Completion(
                text=text,
                model=candidate,
                prompt_tokens=usage.prompt_tokens,
                completion_tokens=usage.completion_tokens,
                cost_usd=usage.cost_usd,
            )

        if isinstance(last_error, SpecialistTimeout):
            raise last_error
        raise LLMCallError(f"All models failed for {stage} call. Last error: {last_error}")
