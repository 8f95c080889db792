"""Datastore contract for the tables the AI flows touch.

Every method is synchronous; async handlers offload calls with
``asyncio.to_thread`` so independent lookups can run concurrently.
"""

from datetime import datetime
from typing import Any, Protocol

from app.store.types import (
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


class StoreError(Exception):
    """Raised when the datastore backend fails or is misconfigured."""


class DataStore(Protocol):
    backend: str

    def get_company(self, company_id: str) -> Company | None:
        """Return the company with its parent site, if it exists."""

    def get_active_membership(self, user_id: str, company_id: str) -> Membership | None:
        """Return the user's active membership in the company."""

    def get_site_admin_membership(self, user_id: str, site_id: str) -> SiteMembership | None:
        """Return a site_admin/super_admin membership for the site."""

    def list_site_memberships(self, user_id: str) -> list[SiteMembership]:
        """Return every site membership the user holds."""

    def get_ai_settings(self, company_id: str) -> CompanyAiSettings | None:
        """Return the company's AI settings row."""

    def get_integration(
        self, scope: Scope, scope_id: str, provider_key: str
    ) -> Integration | None:
        """Return the integration record for the scope/provider."""

    def stamp_integration_secret(
        self, scope: Scope, scope_id: str, provider_key: str, configured_at: datetime
    ) -> None:
        """Upsert the integration and set ``secret_ref``/``secret_configured_at``."""

    def clear_integration_secret(self, scope: Scope, scope_id: str, provider_key: str) -> None:
        """Null out ``secret_ref``/``secret_configured_at`` on the integration."""

    def upsert_secret(self, secret: EncryptedSecret) -> None:
        """Insert or replace a secret keyed by scope/scope_id/provider/secret_key."""

    def get_secret(
        self, scope: Scope, scope_id: str, provider_key: str, secret_key: str
    ) -> EncryptedSecret | None:
        """Return one stored secret."""

    def list_secrets(
        self, scope: Scope, scope_id: str, provider_key: str
    ) -> list[EncryptedSecret]:
        """Return all stored secrets for the scope/provider."""

    def list_all_secrets(self) -> list[EncryptedSecret]:
        """Return every stored secret, for envelope migration."""

    def delete_secrets(self, scope: Scope, scope_id: str, provider_key: str) -> int:
        """Delete all secrets for the scope/provider and return the count."""

    def insert_usage_log(self, entry: UsageLogEntry) -> None:
        """Append one usage ledger row."""

    def token_usage_in_window(self, company_id: str, start: datetime, end: datetime) -> int:
        """Sum ``total_tokens`` of ledger rows created in ``[start, end]``."""

    def delete_chunks(self, company_id: str, source_table: str, source_id: str) -> int:
        """Delete every chunk row for the source and return the count."""

    def upsert_chunks(self, chunks: list[DocumentChunk]) -> int:
        """Insert or replace chunks keyed by company/source/chunk_index."""

    def list_chunks(
        self, company_id: str, source_table: str, source_id: str
    ) -> list[DocumentChunk]:
        """Return the source's chunks ordered by ``chunk_index``."""

    def ping(self) -> dict[str, Any]:
        """Return backend health details."""
