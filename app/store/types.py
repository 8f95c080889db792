from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal

Scope = Literal["company", "site"]
UsageStatus = Literal["success", "blocked", "error"]

SITE_ADMIN_ROLES = ("site_admin", "super_admin")


@dataclass(frozen=True)
class Company:
    id: str
    site_id: str


@dataclass(frozen=True)
class Membership:
    user_id: str
    company_id: str
    role: str
    status: str = "active"


@dataclass(frozen=True)
class SiteMembership:
    user_id: str
    site_id: str
    role: str


@dataclass(frozen=True)
class CompanyAiSettings:
    company_id: str
    ai_enabled: bool = False
    insights_enabled: bool = False
    workflow_copilot_enabled: bool = False
    template_copilot_enabled: bool = False
    max_prompt_tokens: int | None = 6000
    max_completion_tokens: int | None = 1200
    daily_token_budget: int = 0
    monthly_token_budget: int = 0


@dataclass(frozen=True)
class Integration:
    scope: Scope
    scope_id: str
    provider_key: str
    config_json: dict[str, Any] = field(default_factory=dict)
    is_enabled: bool = False
    secret_ref: str | None = None
    secret_configured_at: datetime | None = None


@dataclass(frozen=True)
class EncryptedSecret:
    scope: Scope
    scope_id: str
    provider_key: str
    secret_key: str
    encrypted_value: str
    updated_at: datetime


@dataclass
class UsageLogEntry:
    request_id: str
    provider_key: str
    model: str
    status: UsageStatus
    latency_ms: int
    company_id: str | None = None
    user_id: str | None = None
    feature_key: str | None = None
    prompt_tokens: int | None = None
    completion_tokens: int | None = None
    total_tokens: int | None = None
    error_code: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: datetime | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "request_id": self.request_id,
            "company_id": self.company_id,
            "user_id": self.user_id,
            "provider_key": self.provider_key,
            "feature_key": self.feature_key,
            "model": self.model,
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
            "latency_ms": self.latency_ms,
            "status": self.status,
            "error_code": self.error_code,
            "metadata": self.metadata,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


@dataclass(frozen=True)
class DocumentChunk:
    company_id: str
    source_table: str
    source_id: str
    chunk_index: int
    content: str
    token_count: int
    embedding: list[float]
    embedding_model: str
    embedded_at: datetime
    source_version: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def key(self) -> tuple[str, str, str, int]:
        return (self.company_id, self.source_table, self.source_id, self.chunk_index)
