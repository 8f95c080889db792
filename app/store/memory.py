"""In-process datastore.

Backs local development and the test suite. All state is guarded by a
``threading.Lock`` so concurrent thread-offloaded lookups stay consistent.
"""

import threading
from dataclasses import replace
from datetime import UTC, datetime
from typing import Any

from app.store.types import (
    SITE_ADMIN_ROLES,
    Company,
    CompanyAiSettings,
    DocumentChunk,
    EncryptedSecret,
    Integration,
    Membership,
    Scope,
    SiteMembership,
    UsageLogEntry,
)

SecretKey = tuple[str, str, str, str]
IntegrationKey = tuple[str, str, str]


class InMemoryDataStore:
    backend = "memory"

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._companies: dict[str, Company] = {}
        self._memberships: list[Membership] = []
        self._site_memberships: list[SiteMembership] = []
        self._ai_settings: dict[str, CompanyAiSettings] = {}
        self._integrations: dict[IntegrationKey, Integration] = {}
        self._secrets: dict[SecretKey, EncryptedSecret] = {}
        self._usage_logs: list[UsageLogEntry] = []
        self._chunks: dict[tuple[str, str, str, int], DocumentChunk] = {}

    # Seeding helpers for the read-only tables.

    def add_company(self, company: Company) -> None:
        with self._lock:
            self._companies[company.id] = company

    def add_membership(self, membership: Membership) -> None:
        with self._lock:
            self._memberships.append(membership)

    def add_site_membership(self, membership: SiteMembership) -> None:
        with self._lock:
            self._site_memberships.append(membership)

    def put_ai_settings(self, settings: CompanyAiSettings) -> None:
        with self._lock:
            self._ai_settings[settings.company_id] = settings

    def put_integration(self, integration: Integration) -> None:
        with self._lock:
            key = (integration.scope, integration.scope_id, integration.provider_key)
            self._integrations[key] = integration

    @property
    def usage_logs(self) -> list[UsageLogEntry]:
        with self._lock:
            return list(self._usage_logs)

    # DataStore protocol.

    def get_company(self, company_id: str) -> Company | None:
        with self._lock:
            return self._companies.get(company_id)

    def get_active_membership(self, user_id: str, company_id: str) -> Membership | None:
        with self._lock:
            for membership in self._memberships:
                if (
                    membership.user_id == user_id
                    and membership.company_id == company_id
                    and membership.status == "active"
                ):
                    return membership
        return None

    def get_site_admin_membership(self, user_id: str, site_id: str) -> SiteMembership | None:
        with self._lock:
            for membership in self._site_memberships:
                if (
                    membership.user_id == user_id
                    and membership.site_id == site_id
                    and membership.role in SITE_ADMIN_ROLES
                ):
                    return membership
        return None

    def list_site_memberships(self, user_id: str) -> list[SiteMembership]:
        with self._lock:
            return [item for item in self._site_memberships if item.user_id == user_id]

    def get_ai_settings(self, company_id: str) -> CompanyAiSettings | None:
        with self._lock:
            return self._ai_settings.get(company_id)

    def get_integration(
        self, scope: Scope, scope_id: str, provider_key: str
    ) -> Integration | None:
        with self._lock:
            return self._integrations.get((scope, scope_id, provider_key))

    def stamp_integration_secret(
        self, scope: Scope, scope_id: str, provider_key: str, configured_at: datetime
    ) -> None:
        key = (scope, scope_id, provider_key)
        with self._lock:
            current = self._integrations.get(key) or Integration(
                scope=scope, scope_id=scope_id, provider_key=provider_key
            )
            self._integrations[key] = replace(
                current,
                secret_ref=f"{scope}:{scope_id}:{provider_key}",
                secret_configured_at=configured_at,
            )

    def clear_integration_secret(self, scope: Scope, scope_id: str, provider_key: str) -> None:
        key = (scope, scope_id, provider_key)
        with self._lock:
            current = self._integrations.get(key)
            if current is None:
                return
            self._integrations[key] = replace(
                current, secret_ref=None, secret_configured_at=None
            )

    def upsert_secret(self, secret: EncryptedSecret) -> None:
        key = (secret.scope, secret.scope_id, secret.provider_key, secret.secret_key)
        with self._lock:
            self._secrets[key] = secret

    def get_secret(
        self, scope: Scope, scope_id: str, provider_key: str, secret_key: str
    ) -> EncryptedSecret | None:
        with self._lock:
            return self._secrets.get((scope, scope_id, provider_key, secret_key))

    def list_secrets(
        self, scope: Scope, scope_id: str, provider_key: str
    ) -> list[EncryptedSecret]:
        with self._lock:
            return [
                secret
                for key, secret in sorted(self._secrets.items())
                if key[:3] == (scope, scope_id, provider_key)
            ]

    def list_all_secrets(self) -> list[EncryptedSecret]:
        with self._lock:
            return [secret for _, secret in sorted(self._secrets.items())]

    def delete_secrets(self, scope: Scope, scope_id: str, provider_key: str) -> int:
        with self._lock:
            doomed = [key for key in self._secrets if key[:3] == (scope, scope_id, provider_key)]
            for key in doomed:
                del self._secrets[key]
            return len(doomed)

    def insert_usage_log(self, entry: UsageLogEntry) -> None:
        stored = replace(entry, created_at=entry.created_at or datetime.now(UTC))
        with self._lock:
            self._usage_logs.append(stored)

    def token_usage_in_window(self, company_id: str, start: datetime, end: datetime) -> int:
        with self._lock:
            return sum(
                entry.total_tokens or 0
                for entry in self._usage_logs
                if entry.company_id == company_id
                and entry.status != "blocked"
                and entry.created_at is not None
                and start <= entry.created_at <= end
            )

    def delete_chunks(self, company_id: str, source_table: str, source_id: str) -> int:
        prefix = (company_id, source_table, source_id)
        with self._lock:
            doomed = [key for key in self._chunks if key[:3] == prefix]
            for key in doomed:
                del self._chunks[key]
            return len(doomed)

    def upsert_chunks(self, chunks: list[DocumentChunk]) -> int:
        with self._lock:
            for chunk in chunks:
                self._chunks[chunk.key] = chunk
        return len(chunks)

    def list_chunks(
        self, company_id: str, source_table: str, source_id: str
    ) -> list[DocumentChunk]:
        prefix = (company_id, source_table, source_id)
        with self._lock:
            return [chunk for key, chunk in sorted(self._chunks.items()) if key[:3] == prefix]

    def ping(self) -> dict[str, Any]:
        return {"backend": self.backend, "status": "ok"}
