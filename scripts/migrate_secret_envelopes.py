#!/usr/bin/env python3
"""Re-encrypt legacy secret envelopes into the current AEAD format.

Rows already in the current format are left untouched, so the script is
safe to re-run. ``--dry-run`` reports what would change without writing.
"""

from __future__ import annotations

import argparse
import json
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime

from app.config.settings import get_settings
from app.crypto.envelope import EnvelopeCodec, EnvelopeVersion, SecretDecryptionError
from app.store.base import DataStore
from app.store.postgres import PostgresDataStore


@dataclass
class MigrationReport:
    scanned: int = 0
    migrated: int = 0
    current: int = 0
    failed: list[str] = field(default_factory=list)
    by_version: dict[str, int] = field(default_factory=dict)

    def as_dict(self) -> dict[str, object]:
        return {
            "scanned": self.scanned,
            "migrated": self.migrated,
            "current": self.current,
            "failed": self.failed,
            "by_version": self.by_version,
        }


def migrate_envelopes(
    store: DataStore, codec: EnvelopeCodec, dry_run: bool = False
) -> MigrationReport:
    report = MigrationReport()
    for secret in store.list_all_secrets():
        report.scanned += 1
        version = EnvelopeVersion.detect(secret.encrypted_value)
        report.by_version[version.name] = report.by_version.get(version.name, 0) + 1

        if not codec.needs_migration(secret.encrypted_value):
            report.current += 1
            continue

        ref = f"{secret.scope}:{secret.scope_id}:{secret.provider_key}:{secret.secret_key}"
        try:
            migrated = codec.migrate(secret.encrypted_value)
        except SecretDecryptionError:
            report.failed.append(ref)
            continue

        if not dry_run:
            store.upsert_secret(
                replace(secret, encrypted_value=migrated, updated_at=datetime.now(UTC))
            )
        report.migrated += 1
    return report


def main() -> None:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("--dsn", help="Postgres DSN (defaults to OPSAI_POSTGRES_DSN)")
    parser.add_argument("--dry-run", action="store_true", help="Report without writing")
    parser.add_argument(
        "--ensure-schema", action="store_true", help="Create gateway-owned tables first"
    )
    args = parser.parse_args()

    settings = get_settings()
    dsn = args.dsn or settings.postgres_dsn
    if not dsn:
        raise SystemExit("A Postgres DSN is required (--dsn or OPSAI_POSTGRES_DSN)")

    store = PostgresDataStore(
        dsn=dsn,
        chunk_table=settings.chunk_table,
        usage_log_table=settings.usage_log_table,
    )
    codec = EnvelopeCodec(settings.secret_master_key, settings.secret_min_master_key_length)
    codec.ensure_configured()
    if args.ensure_schema:
        store.ensure_schema()

    report = migrate_envelopes(store, codec, dry_run=args.dry_run)
    print(json.dumps({**report.as_dict(), "dry_run": args.dry_run}, indent=2))
    if report.failed:
        raise SystemExit(1)


if __name__ == "__main__":
    main()
