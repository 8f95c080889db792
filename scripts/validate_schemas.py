#!/usr/bin/env python3
import json
from pathlib import Path

from jsonschema import validate


def main() -> None:
    root = Path(__file__).resolve().parents[1]
    contracts = root / "docs" / "contracts" / "v1"

    usage_schema = json.loads(
        (contracts / "usage-log-entry.schema.json").read_text(encoding="utf-8")
    )

    success_fixture = {
        "request_id": "req-1",
        "company_id": "company-1",
        "user_id": "user-1",
        "provider_key": "openai",
        "feature_key": "workflow_copilot",
        "model": "gpt-4.1-mini",
        "prompt_tokens": 120,
        "completion_tokens": 80,
        "total_tokens": 200,
        "latency_ms": 840,
        "status": "success",
        "error_code": None,
        "metadata": {"temperature": 0.2, "max_output_tokens": 1200, "secret_scope": "company"},
        "created_at": "2026-02-17T00:00:00+00:00",
    }
    blocked_fixture = {
        "request_id": "req-2",
        "company_id": "company-1",
        "user_id": "user-1",
        "provider_key": "openai",
        "feature_key": "embedding_ingestion",
        "model": "text-embedding-3-small",
        "prompt_tokens": 250,
        "completion_tokens": None,
        "total_tokens": 250,
        "latency_ms": 3,
        "status": "blocked",
        "error_code": "daily_token_budget_exceeded",
        "metadata": {"used_today": 99900, "daily_budget": 100000, "requested_tokens": 250},
        "created_at": "2026-02-17T00:00:01+00:00",
    }

    validate(instance=success_fixture, schema=usage_schema)
    validate(instance=blocked_fixture, schema=usage_schema)
    print("Schema validation succeeded")


if __name__ == "__main__":
    main()
