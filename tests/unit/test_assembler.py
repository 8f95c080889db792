import json

import pytest

from app.prompts.assembler import (
    TRUNCATION_MARKER,
    build_plan,
    clamp_temperature,
    max_output_tokens,
    max_prompt_chars,
    resolve_model,
    truncate_raw,
    truncate_text,
)
from app.store.types import CompanyAiSettings


def _settings(**overrides: object) -> CompanyAiSettings:
    return CompanyAiSettings(company_id="c1", **overrides)


def test_truncate_text_appends_marker() -> None:
    assert truncate_text("short", 10) == "short"
    assert truncate_text("abcdefghij", 4) == "abcd" + TRUNCATION_MARKER


def test_truncate_raw_hard_cuts() -> None:
    assert truncate_raw("abcdef", 3) == "abc"


@pytest.mark.parametrize(
    ("max_prompt_tokens", "expected"),
    [(6000, 24000), (100, 1024), (1_000_000, 120000), (None, 24000), (0, 24000)],
)
def test_max_prompt_chars(max_prompt_tokens, expected) -> None:
    assert max_prompt_chars(_settings(max_prompt_tokens=max_prompt_tokens)) == expected


@pytest.mark.parametrize(
    ("ceiling", "requested", "expected"),
    [(1200, None, 1200), (1200, 10, 64), (1200, 5000, 1200), (None, 500, 500), (800, 700, 700)],
)
def test_max_output_tokens(ceiling, requested, expected) -> None:
    assert max_output_tokens(_settings(max_completion_tokens=ceiling), requested) == expected


@pytest.mark.parametrize(
    ("requested", "expected"), [(None, 0.2), (-1, 0.0), (0.7, 0.7), (5, 1.0)]
)
def test_clamp_temperature(requested, expected) -> None:
    assert clamp_temperature(requested) == expected


def test_resolve_model_precedence() -> None:
    config = {"model": "gpt-4.1", "embedding_model": "text-embedding-3-large"}

    assert resolve_model("custom", config, "default") == "custom"
    assert resolve_model(None, config, "default") == "gpt-4.1"
    assert resolve_model("", {}, "default") == "default"
    assert resolve_model(None, {"model": 3}, "default") == "default"
    assert (
        resolve_model(None, config, "default", config_key="embedding_model")
        == "text-embedding-3-large"
    )


def test_build_plan_payload_and_projection() -> None:
    plan = build_plan(
        system_prompt="s" * 40,
        user_prompt="  Summarize ünicode sales  ",
        context={"region": "north"},
        settings=_settings(),
        model="gpt-4.1-mini",
    )

    payload = json.loads(plan.user_payload_text)
    assert payload == {
        "instruction": "Summarize ünicode sales",
        "context": {"region": "north"},
        "constraints": {"return_json": True, "concise": True},
    }
    assert "ü" in plan.user_payload_text
    assert plan.temperature == 0.2
    assert plan.max_output_tokens == 1200
    assert plan.estimated_input_tokens == 10 + -(-len(plan.user_payload_text) // 4)
    assert plan.projected_total_tokens == plan.estimated_input_tokens + 1200

    body = plan.request_body()
    assert body["model"] == "gpt-4.1-mini"
    assert body["input"][0]["content"][0] == {"type": "input_text", "text": "s" * 40}
    assert body["input"][1]["content"][0]["text"] == plan.user_payload_text


def test_build_plan_truncates_oversized_input() -> None:
    plan = build_plan(
        system_prompt="sys",
        user_prompt="x" * 5000,
        context=None,
        settings=_settings(max_prompt_tokens=100),
        model="m",
        requested_output_tokens=100,
    )

    assert len(plan.user_payload_text) == 1024
    assert plan.max_output_tokens == 100
