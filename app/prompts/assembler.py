"""Builds the upstream completion request from a tenant's settings and input.

Prompt size is bounded in characters, not tokens: ``max_prompt_tokens * 4``
clamped to ``[1024, 120000]``. The instruction is truncated with a visible
marker; the serialized user payload is then hard-cut to the same bound,
which can leave it as invalid JSON. The model still receives it as text.
"""

import json
from dataclasses import dataclass
from typing import Any

from app.budget.ledger import estimate_tokens
from app.rag.chunking import clamp_integer
from app.store.types import CompanyAiSettings

TRUNCATION_MARKER = "\n\n[truncated]"

DEFAULT_MAX_PROMPT_TOKENS = 6000
DEFAULT_MAX_COMPLETION_TOKENS = 1200
MIN_OUTPUT_TOKENS = 64
MIN_PROMPT_CHARS = 1024
MAX_PROMPT_CHARS = 120000
DEFAULT_TEMPERATURE = 0.2


def truncate_text(value: str, max_chars: int) -> str:
    if len(value) <= max_chars:
        return value
    return value[:max_chars] + TRUNCATION_MARKER


def truncate_raw(value: str, max_chars: int) -> str:
    return value[:max_chars]


def max_prompt_chars(settings: CompanyAiSettings) -> int:
    tokens = settings.max_prompt_tokens or DEFAULT_MAX_PROMPT_TOKENS
    return clamp_integer(tokens * 4, MIN_PROMPT_CHARS, MAX_PROMPT_CHARS)


def max_output_tokens(settings: CompanyAiSettings, requested: int | None) -> int:
    ceiling = settings.max_completion_tokens or DEFAULT_MAX_COMPLETION_TOKENS
    value = requested if requested is not None else ceiling
    return clamp_integer(value, MIN_OUTPUT_TOKENS, ceiling)


def clamp_temperature(requested: float | None) -> float:
    if requested is None:
        return DEFAULT_TEMPERATURE
    return min(1.0, max(0.0, float(requested)))


def resolve_model(
    requested: str | None,
    integration_config: dict[str, Any],
    default_model: str,
    config_key: str = "model",
) -> str:
    if requested:
        return requested
    configured = integration_config.get(config_key)
    if isinstance(configured, str) and configured:
        return configured
    return default_model


@dataclass(frozen=True)
class CompletionPlan:
    model: str
    system_prompt: str
    user_payload_text: str
    temperature: float
    max_output_tokens: int

    @property
    def estimated_input_tokens(self) -> int:
        return estimate_tokens(self.system_prompt) + estimate_tokens(self.user_payload_text)

    @property
    def projected_total_tokens(self) -> int:
        return self.estimated_input_tokens + self.max_output_tokens

    def request_body(self) -> dict[str, Any]:
        return {
            "model": self.model,
            "temperature": self.temperature,
            "max_output_tokens": self.max_output_tokens,
            "input": [
                {
                    "role": "system",
                    "content": [{"type": "input_text", "text": self.system_prompt}],
                },
                {
                    "role": "user",
                    "content": [{"type": "input_text", "text": self.user_payload_text}],
                },
            ],
        }


def build_plan(
    *,
    system_prompt: str,
    user_prompt: str,
    context: dict[str, Any] | None,
    settings: CompanyAiSettings,
    model: str,
    temperature: float | None = None,
    requested_output_tokens: int | None = None,
) -> CompletionPlan:
    limit = max_prompt_chars(settings)
    user_payload = {
        "instruction": truncate_text(user_prompt.strip(), limit),
        "context": context or {},
        "constraints": {
            "return_json": True,
            "concise": True,
        },
    }
    user_payload_text = truncate_raw(
        json.dumps(user_payload, ensure_ascii=False, separators=(",", ":"), default=str),
        limit,
    )
    return CompletionPlan(
        model=model,
        system_prompt=system_prompt,
        user_payload_text=user_payload_text,
        temperature=clamp_temperature(temperature),
        max_output_tokens=max_output_tokens(settings, requested_output_tokens),
    )
