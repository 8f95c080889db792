import json
import re
from datetime import UTC, datetime
from typing import Any

import psycopg
from psycopg.rows import dict_row

from app.rag.embeddings import vector_literal
from app.store.base import StoreError
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

TABLE_NAME_RE = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_]*$")

_INTEGRATION_TABLES: dict[str, tuple[str, str]] = {
    "company": ("company_integrations", "company_id"),
    "site": ("site_integrations", "site_id"),
}


class PostgresDataStore:
    backend = "postgres"

    def __init__(
        self,
        dsn: str,
        chunk_table: str = "ai_document_chunks",
        usage_log_table: str = "ai_usage_logs",
    ):
        for table in (chunk_table, usage_log_table):
            if not TABLE_NAME_RE.match(table):
                raise ValueError(f"Invalid table name: {table}")
        self._dsn = dsn
        self._chunk_table = chunk_table
        self._usage_log_table = usage_log_table

    def _fetch_one(self, sql: str, params: list[Any]) -> dict[str, Any] | None:
        try:
            with psycopg.connect(self._dsn, row_factory=dict_row) as conn:
                with conn.cursor() as cursor:
                    cursor.execute(sql, params)
                    return cursor.fetchone()
        except psycopg.Error as exc:
            raise StoreError(f"Postgres read failed: {exc}") from exc

    def _fetch_all(self, sql: str, params: list[Any]) -> list[dict[str, Any]]:
        try:
            with psycopg.connect(self._dsn, row_factory=dict_row) as conn:
                with conn.cursor() as cursor:
                    cursor.execute(sql, params)
                    return list(cursor.fetchall())
        except psycopg.Error as exc:
            raise StoreError(f"Postgres read failed: {exc}") from exc

    def _execute(self, sql: str, params: list[Any] | None) -> int:
        try:
            with psycopg.connect(self._dsn) as conn:
                with conn.cursor() as cursor:
                    cursor.execute(sql, params)
                    rowcount = cursor.rowcount
                conn.commit()
        except psycopg.Error as exc:
            raise StoreError(f"Postgres write failed: {exc}") from exc
        return max(rowcount, 0)

    def get_company(self, company_id: str) -> Company | None:
        row = self._fetch_one("SELECT id, site_id FROM companies WHERE id = %s", [company_id])
        if row is None:
            return None
        return Company(id=str(row["id"]), site_id=str(row["site_id"]))

    def get_active_membership(self, user_id: str, company_id: str) -> Membership | None:
        row = self._fetch_one(
            "SELECT user_id, company_id, role, status FROM memberships "
            "WHERE user_id = %s AND company_id = %s AND status = 'active' LIMIT 1",
            [user_id, company_id],
        )
        if row is None:
            return None
        return Membership(
            user_id=str(row["user_id"]),
            company_id=str(row["company_id"]),
            role=str(row["role"]),
            status=str(row["status"]),
        )

    def get_site_admin_membership(self, user_id: str, site_id: str) -> SiteMembership | None:
        row = self._fetch_one(
            "SELECT user_id, site_id, role FROM site_memberships "
            "WHERE user_id = %s AND site_id = %s AND role = ANY(%s) LIMIT 1",
            [user_id, site_id, list(SITE_ADMIN_ROLES)],
        )
        if row is None:
            return None
        return SiteMembership(
            user_id=str(row["user_id"]), site_id=str(row["site_id"]), role=str(row["role"])
        )

    def list_site_memberships(self, user_id: str) -> list[SiteMembership]:
        rows = self._fetch_all(
            "SELECT user_id, site_id, role FROM site_memberships WHERE user_id = %s",
            [user_id],
        )
        return [
            SiteMembership(
                user_id=str(row["user_id"]), site_id=str(row["site_id"]), role=str(row["role"])
            )
            for row in rows
        ]

    def get_ai_settings(self, company_id: str) -> CompanyAiSettings | None:
        row = self._fetch_one(
            "SELECT company_id, ai_enabled, insights_enabled, workflow_copilot_enabled, "
            "template_copilot_enabled, max_prompt_tokens, max_completion_tokens, "
            "daily_token_budget, monthly_token_budget "
            "FROM company_ai_settings WHERE company_id = %s",
            [company_id],
        )
        if row is None:
            return None
        return CompanyAiSettings(
            company_id=str(row["company_id"]),
            ai_enabled=bool(row["ai_enabled"]),
            insights_enabled=bool(row["insights_enabled"]),
            workflow_copilot_enabled=bool(row["workflow_copilot_enabled"]),
            template_copilot_enabled=bool(row["template_copilot_enabled"]),
            max_prompt_tokens=row["max_prompt_tokens"],
            max_completion_tokens=row["max_completion_tokens"],
            daily_token_budget=int(row["daily_token_budget"] or 0),
            monthly_token_budget=int(row["monthly_token_budget"] or 0),
        )

    def get_integration(
        self, scope: Scope, scope_id: str, provider_key: str
    ) -> Integration | None:
        table, column = _INTEGRATION_TABLES[scope]
        row = self._fetch_one(
            f"SELECT config_json, is_enabled, secret_ref, secret_configured_at "
            f"FROM {table} WHERE {column} = %s AND provider_key = %s",
            [scope_id, provider_key],
        )
        if row is None:
            return None
        config = row.get("config_json")
        return Integration(
            scope=scope,
            scope_id=scope_id,
            provider_key=provider_key,
            config_json=config if isinstance(config, dict) else {},
            is_enabled=bool(row.get("is_enabled")),
            secret_ref=row.get("secret_ref"),
            secret_configured_at=row.get("secret_configured_at"),
        )

    def stamp_integration_secret(
        self, scope: Scope, scope_id: str, provider_key: str, configured_at: datetime
    ) -> None:
        table, column = _INTEGRATION_TABLES[scope]
        self._execute(
            f"INSERT INTO {table} ({column}, provider_key, secret_ref, secret_configured_at) "
            f"VALUES (%s, %s, %s, %s) "
            f"ON CONFLICT ({column}, provider_key) DO UPDATE SET "
            f"secret_ref = EXCLUDED.secret_ref, "
            f"secret_configured_at = EXCLUDED.secret_configured_at",
            [scope_id, provider_key, f"{scope}:{scope_id}:{provider_key}", configured_at],
        )

    def clear_integration_secret(self, scope: Scope, scope_id: str, provider_key: str) -> None:
        table, column = _INTEGRATION_TABLES[scope]
        self._execute(
            f"UPDATE {table} SET secret_ref = NULL, secret_configured_at = NULL "
            f"WHERE {column} = %s AND provider_key = %s",
            [scope_id, provider_key],
        )

    def upsert_secret(self, secret: EncryptedSecret) -> None:
        self._execute(
            "INSERT INTO integration_secrets "
            "(scope, scope_id, provider_key, secret_key, encrypted_value, updated_at) "
            "VALUES (%s, %s, %s, %s, %s, %s) "
            "ON CONFLICT (scope, scope_id, provider_key, secret_key) DO UPDATE SET "
            "encrypted_value = EXCLUDED.encrypted_value, "
            "updated_at = EXCLUDED.updated_at",
            [
                secret.scope,
                secret.scope_id,
                secret.provider_key,
                secret.secret_key,
                secret.encrypted_value,
                secret.updated_at,
            ],
        )

    def get_secret(
        self, scope: Scope, scope_id: str, provider_key: str, secret_key: str
    ) -> EncryptedSecret | None:
        row = self._fetch_one(
            "SELECT scope, scope_id, provider_key, secret_key, encrypted_value, updated_at "
            "FROM integration_secrets "
            "WHERE scope = %s AND scope_id = %s AND provider_key = %s AND secret_key = %s",
            [scope, scope_id, provider_key, secret_key],
        )
        return self._secret_from_row(row) if row else None

    def list_secrets(
        self, scope: Scope, scope_id: str, provider_key: str
    ) -> list[EncryptedSecret]:
        rows = self._fetch_all(
            "SELECT scope, scope_id, provider_key, secret_key, encrypted_value, updated_at "
            "FROM integration_secrets "
            "WHERE scope = %s AND scope_id = %s AND provider_key = %s ORDER BY secret_key",
            [scope, scope_id, provider_key],
        )
        return [self._secret_from_row(row) for row in rows]

    def list_all_secrets(self) -> list[EncryptedSecret]:
        rows = self._fetch_all(
            "SELECT scope, scope_id, provider_key, secret_key, encrypted_value, updated_at "
            "FROM integration_secrets ORDER BY scope, scope_id, provider_key, secret_key",
            [],
        )
        return [self._secret_from_row(row) for row in rows]

    def delete_secrets(self, scope: Scope, scope_id: str, provider_key: str) -> int:
        return self._execute(
            "DELETE FROM integration_secrets "
            "WHERE scope = %s AND scope_id = %s AND provider_key = %s",
            [scope, scope_id, provider_key],
        )

    def insert_usage_log(self, entry: UsageLogEntry) -> None:
        self._execute(
            f"INSERT INTO {self._usage_log_table} "
            "(request_id, company_id, user_id, provider_key, feature_key, model, "
            "prompt_tokens, completion_tokens, total_tokens, latency_ms, status, "
            "error_code, metadata, created_at) "
            "VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s::jsonb, %s)",
            [
                entry.request_id,
                entry.company_id,
                entry.user_id,
                entry.provider_key,
                entry.feature_key,
                entry.model,
                entry.prompt_tokens,
                entry.completion_tokens,
                entry.total_tokens,
                entry.latency_ms,
                entry.status,
                entry.error_code,
                json.dumps(entry.metadata, ensure_ascii=True, default=str),
                entry.created_at or datetime.now(UTC),
            ],
        )

    def token_usage_in_window(self, company_id: str, start: datetime, end: datetime) -> int:
        row = self._fetch_one(
            f"SELECT COALESCE(SUM(total_tokens), 0) AS used "
            f"FROM {self._usage_log_table} "
            f"WHERE company_id = %s AND status <> 'blocked' "
            f"AND created_at >= %s AND created_at <= %s",
            [company_id, start, end],
        )
        return int(row["used"]) if row else 0

    def delete_chunks(self, company_id: str, source_table: str, source_id: str) -> int:
        return self._execute(
            f"DELETE FROM {self._chunk_table} "
            f"WHERE company_id = %s AND source_table = %s AND source_id = %s",
            [company_id, source_table, source_id],
        )

    def upsert_chunks(self, chunks: list[DocumentChunk]) -> int:
        if not chunks:
            return 0
        sql = (
            f"INSERT INTO {self._chunk_table} "
            "(company_id, source_table, source_id, source_version, chunk_index, content, "
            "token_count, metadata, embedding, embedding_model, embedded_at) "
            "VALUES (%s, %s, %s, %s, %s, %s, %s, %s::jsonb, %s::vector, %s, %s) "
            "ON CONFLICT (company_id, source_table, source_id, chunk_index) DO UPDATE SET "
            "source_version = EXCLUDED.source_version, "
            "content = EXCLUDED.content, "
            "token_count = EXCLUDED.token_count, "
            "metadata = EXCLUDED.metadata, "
            "embedding = EXCLUDED.embedding, "
            "embedding_model = EXCLUDED.embedding_model, "
            "embedded_at = EXCLUDED.embedded_at"
        )
        try:
            with psycopg.connect(self._dsn) as conn:
                with conn.cursor() as cursor:
                    for chunk in chunks:
                        cursor.execute(
                            sql,
                            [
                                chunk.company_id,
                                chunk.source_table,
                                chunk.source_id,
                                chunk.source_version,
                                chunk.chunk_index,
                                chunk.content,
                                chunk.token_count,
                                json.dumps(chunk.metadata, ensure_ascii=True, default=str),
                                vector_literal(chunk.embedding),
                                chunk.embedding_model,
                                chunk.embedded_at,
                            ],
                        )
                conn.commit()
        except psycopg.Error as exc:
            raise StoreError(f"Postgres write failed: {exc}") from exc
        return len(chunks)

    def list_chunks(
        self, company_id: str, source_table: str, source_id: str
    ) -> list[DocumentChunk]:
        rows = self._fetch_all(
            f"SELECT company_id, source_table, source_id, source_version, chunk_index, "
            f"content, token_count, metadata, embedding::text AS embedding, "
            f"embedding_model, embedded_at "
            f"FROM {self._chunk_table} "
            f"WHERE company_id = %s AND source_table = %s AND source_id = %s "
            f"ORDER BY chunk_index",
            [company_id, source_table, source_id],
        )
        return [
            DocumentChunk(
                company_id=str(row["company_id"]),
                source_table=str(row["source_table"]),
                source_id=str(row["source_id"]),
                source_version=row.get("source_version"),
                chunk_index=int(row["chunk_index"]),
                content=str(row["content"]),
                token_count=int(row["token_count"]),
                metadata=row["metadata"] if isinstance(row.get("metadata"), dict) else {},
                embedding=self._parse_vector(row.get("embedding")),
                embedding_model=str(row["embedding_model"]),
                embedded_at=row["embedded_at"],
            )
            for row in rows
        ]

    def ensure_schema(self) -> None:
        ddl = f"""
        CREATE EXTENSION IF NOT EXISTS vector;
        CREATE TABLE IF NOT EXISTS integration_secrets (
            id BIGSERIAL PRIMARY KEY,
            scope TEXT NOT NULL CHECK (scope IN ('company', 'site')),
            scope_id TEXT NOT NULL,
            provider_key TEXT NOT NULL,
            secret_key TEXT NOT NULL,
            encrypted_value TEXT NOT NULL,
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            UNIQUE (scope, scope_id, provider_key, secret_key)
        );
        CREATE TABLE IF NOT EXISTS {self._usage_log_table} (
            id BIGSERIAL PRIMARY KEY,
            request_id TEXT NOT NULL,
            company_id TEXT,
            user_id TEXT,
            provider_key TEXT NOT NULL,
            feature_key TEXT,
            model TEXT NOT NULL,
            prompt_tokens INTEGER,
            completion_tokens INTEGER,
            total_tokens INTEGER,
            latency_ms INTEGER NOT NULL,
            status TEXT NOT NULL CHECK (status IN ('success', 'blocked', 'error')),
            error_code TEXT,
            metadata JSONB NOT NULL DEFAULT '{{}}'::jsonb,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now()
        );
        CREATE INDEX IF NOT EXISTS {self._usage_log_table}_company_created_idx
            ON {self._usage_log_table} (company_id, created_at);
        CREATE TABLE IF NOT EXISTS {self._chunk_table} (
            id BIGSERIAL PRIMARY KEY,
            company_id TEXT NOT NULL,
            source_table TEXT NOT NULL,
            source_id TEXT NOT NULL,
            source_version TEXT,
            chunk_index INTEGER NOT NULL,
            content TEXT NOT NULL,
            token_count INTEGER NOT NULL,
            metadata JSONB NOT NULL DEFAULT '{{}}'::jsonb,
            embedding VECTOR NOT NULL,
            embedding_model TEXT NOT NULL,
            embedded_at TIMESTAMPTZ NOT NULL,
            UNIQUE (company_id, source_table, source_id, chunk_index)
        );
        """
        self._execute(ddl, None)

    def ping(self) -> dict[str, Any]:
        row = self._fetch_one("SELECT 1 AS ok", [])
        return {"backend": self.backend, "status": "ok" if row else "degraded"}

    @staticmethod
    def _secret_from_row(row: dict[str, Any]) -> EncryptedSecret:
        return EncryptedSecret(
            scope=row["scope"],
            scope_id=str(row["scope_id"]),
            provider_key=str(row["provider_key"]),
            secret_key=str(row["secret_key"]),
            encrypted_value=str(row["encrypted_value"]),
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _parse_vector(raw: Any) -> list[float]:
        if isinstance(raw, list):
            return [float(value) for value in raw]
        if isinstance(raw, str) and raw.startswith("["):
            body = raw.strip("[]")
            return [float(value) for value in body.split(",") if value]
        return []
