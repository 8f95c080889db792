import logging

import pytest

from app.audit.usage_logger import UsageLogger, UsageLogValidationError
from app.config.settings import Settings
from app.store.memory import InMemoryDataStore
from app.store.types import UsageLogEntry


def _entry(**overrides: object) -> UsageLogEntry:
    values: dict[str, object] = {
        "request_id": "req-1",
        "provider_key": "openai",
        "model": "gpt-4.1-mini",
        "status": "success",
        "latency_ms": 12,
        "company_id": "c1",
        "user_id": "u1",
        "feature_key": "workflow_copilot",
        "prompt_tokens": 10,
        "completion_tokens": 5,
        "total_tokens": 15,
    }
    values.update(overrides)
    return UsageLogEntry(**values)


@pytest.fixture
def usage_logger() -> tuple[UsageLogger, InMemoryDataStore]:
    store = InMemoryDataStore()
    return UsageLogger(store, Settings().contracts_dir), store


def test_record_persists_valid_row(usage_logger) -> None:
    logger, store = usage_logger

    assert logger.record(_entry()) is True

    rows = store.usage_logs
    assert len(rows) == 1
    assert rows[0].created_at is not None


def test_blocked_row_requires_error_code(usage_logger) -> None:
    logger, _ = usage_logger

    with pytest.raises(UsageLogValidationError):
        logger.validate(_entry(status="blocked"))
    logger.validate(_entry(status="blocked", error_code="feature_disabled"))


def test_invalid_row_is_dropped_not_raised(
    usage_logger, caplog: pytest.LogCaptureFixture
) -> None:
    logger, store = usage_logger

    with caplog.at_level(logging.WARNING, logger="opsai.usage"):
        assert logger.record(_entry(total_tokens=-1)) is False

    assert store.usage_logs == []
    assert any(record.getMessage() == "usage_log_write_failed" for record in caplog.records)


def test_store_failure_is_swallowed() -> None:
    class FailingStore(InMemoryDataStore):
        def insert_usage_log(self, entry: UsageLogEntry) -> None:
            raise RuntimeError("disk full")

    logger = UsageLogger(FailingStore(), Settings().contracts_dir)

    assert logger.record(_entry()) is False
