import json
import logging
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from jsonschema import ValidationError, validate

from app.store.base import DataStore
from app.store.types import UsageLogEntry

logger = logging.getLogger("opsai.usage")


class UsageLogValidationError(Exception):
    """Raised when a usage row does not satisfy the ledger contract."""


class UsageLogger:
    """Append-only usage ledger writer.

    ``record`` never raises: a failed write is logged and dropped so the
    caller's real response is never replaced by a ledger error.
    """

    def __init__(self, store: DataStore, contracts_dir: Path):
        self._store = store
        schema_path = contracts_dir / "usage-log-entry.schema.json"
        self._schema = json.loads(schema_path.read_text(encoding="utf-8"))

    def validate(self, entry: UsageLogEntry) -> dict[str, Any]:
        payload = entry.as_dict()
        try:
            validate(instance=payload, schema=self._schema)
        except ValidationError as exc:
            raise UsageLogValidationError(exc.message) from exc
        return payload

    def record(self, entry: UsageLogEntry) -> bool:
        if entry.created_at is None:
            entry.created_at = datetime.now(UTC)
        try:
            self.validate(entry)
            self._store.insert_usage_log(entry)
        except Exception as exc:
            logger.warning(
                "usage_log_write_failed",
                extra={
                    "request_id": entry.request_id,
                    "company_id": entry.company_id,
                    "status": entry.status,
                    "error_code": entry.error_code,
                    "error": f"{type(exc).__name__}: {exc}",
                },
            )
            return False

        logger.info(
            "usage_logged",
            extra={
                "request_id": entry.request_id,
                "company_id": entry.company_id,
                "user_id": entry.user_id,
                "feature_key": entry.feature_key,
                "model": entry.model,
                "status": entry.status,
                "error_code": entry.error_code,
                "latency_ms": entry.latency_ms,
                "total_tokens": entry.total_tokens,
            },
        )
        return True
