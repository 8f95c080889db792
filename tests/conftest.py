import json
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

import httpx
import pytest
from fastapi.testclient import TestClient

from app.config.settings import clear_settings_cache, get_settings
from app.crypto.envelope import EnvelopeCodec
from app.main import create_app
from app.metrics import reset_metrics
from app.providers.openai_http import OpenAIProviderFactory
from app.store.memory import InMemoryDataStore
from app.store.types import (
    Company,
    CompanyAiSettings,
    EncryptedSecret,
    Integration,
    Membership,
    SiteMembership,
)

MASTER_KEY = "unit-test-master-key-0123456789abcdef"
API_KEY = "sk-test-company"

COMPANY_ID = "company-1"
SITE_ID = "site-1"

TOKENS = {
    "token-member": "user-member",
    "token-site-admin": "user-site-admin",
    "token-company-admin": "user-company-admin",
    "token-outsider": "user-outsider",
}


def bearer(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def workflow_output() -> dict[str, Any]:
    return {
        "title": "New hire onboarding",
        "description": "Collect paperwork and schedule training.",
        "trigger_type": "manual",
        "steps": [
            {
                "step_type": "task",
                "title": "Collect tax forms",
                "assignee_type": "role",
                "due_offset_days": 1,
            }
        ],
    }


class FakeOpenAI:
    """Scriptable stand-in for the completions and embeddings endpoints."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.authorizations: list[str | None] = []
        self.response_status = 200
        self.response_payload: dict[str, Any] = {
            "output_text": json.dumps(workflow_output()),
            "usage": {"input_tokens": 120, "output_tokens": 80, "total_tokens": 200},
        }
        self.embedding_status = 200
        self.embedding_override: Callable[[list[str]], dict[str, Any]] | None = None

    def paths(self) -> list[str]:
        return [path for path, _ in self.calls]

    def handler(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content.decode("utf-8"))
        self.calls.append((request.url.path, body))
        self.authorizations.append(request.headers.get("authorization"))
        if request.url.path == "/v1/responses":
            return httpx.Response(self.response_status, json=self.response_payload)

        inputs = body["input"]
        if self.embedding_override is not None:
            payload = self.embedding_override(inputs)
            return httpx.Response(self.embedding_status, json=payload)
        return httpx.Response(
            self.embedding_status,
            json={
                "data": [
                    {"index": index, "embedding": [0.1, 0.2, float(index)]}
                    for index in range(len(inputs))
                ],
                "usage": {"prompt_tokens": 5 * len(inputs), "total_tokens": 5 * len(inputs)},
            },
        )


@pytest.fixture
def codec() -> EnvelopeCodec:
    return EnvelopeCodec(MASTER_KEY)


@pytest.fixture
def store(codec: EnvelopeCodec) -> InMemoryDataStore:
    store = InMemoryDataStore()
    store.add_company(Company(id=COMPANY_ID, site_id=SITE_ID))
    store.add_membership(Membership(user_id="user-member", company_id=COMPANY_ID, role="member"))
    store.add_membership(
        Membership(user_id="user-company-admin", company_id=COMPANY_ID, role="company_admin")
    )
    store.add_site_membership(
        SiteMembership(user_id="user-site-admin", site_id=SITE_ID, role="site_admin")
    )
    store.put_ai_settings(
        CompanyAiSettings(
            company_id=COMPANY_ID,
            ai_enabled=True,
            insights_enabled=True,
            workflow_copilot_enabled=True,
            template_copilot_enabled=True,
            daily_token_budget=100_000,
            monthly_token_budget=1_000_000,
        )
    )
    store.put_integration(
        Integration(scope="company", scope_id=COMPANY_ID, provider_key="openai", is_enabled=True)
    )
    store.upsert_secret(
        EncryptedSecret(
            scope="company",
            scope_id=COMPANY_ID,
            provider_key="openai",
            secret_key="api_key",
            encrypted_value=codec.encrypt(API_KEY),
            updated_at=datetime.now(UTC),
        )
    )
    return store


@pytest.fixture
def fake_openai() -> FakeOpenAI:
    return FakeOpenAI()


@pytest.fixture
def client(
    monkeypatch: pytest.MonkeyPatch, store: InMemoryDataStore, fake_openai: FakeOpenAI
) -> TestClient:
    monkeypatch.setenv("OPSAI_SECRET_MASTER_KEY", MASTER_KEY)
    monkeypatch.setenv(
        "OPSAI_IDENTITY_TOKENS", ",".join(f"{token}:{user}" for token, user in TOKENS.items())
    )
    monkeypatch.setenv("OPSAI_STORE_BACKEND", "memory")
    clear_settings_cache()
    reset_metrics()
    app = create_app(
        settings=get_settings(),
        store=store,
        provider_factory=OpenAIProviderFactory(
            base_url="https://openai.test",
            transport=httpx.MockTransport(fake_openai.handler),
        ),
    )
    return TestClient(app)


@pytest.fixture
def auth_headers() -> dict[str, str]:
    return bearer("token-member")


@pytest.fixture
def headers_for() -> Callable[[str], dict[str, str]]:
    return bearer
