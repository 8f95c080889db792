import asyncio
from dataclasses import dataclass, field
from time import perf_counter
from typing import Any

from app.audit.usage_logger import UsageLogger
from app.core.errors import AppError
from app.metrics import record_request
from app.store.types import UsageLogEntry, UsageStatus

# Outcomes a caller can fix by changing access, settings or spend.
BLOCKED_STATUS_CODES = frozenset({401, 403, 429})


def ledger_status(exc: AppError) -> UsageStatus:
    return "blocked" if exc.status_code in BLOCKED_STATUS_CODES else "error"


@dataclass
class Attempt:
    """Partial context of one AI request, filled in as the pipeline advances."""

    request_id: str
    provider_key: str
    model: str
    feature_key: str | None = None
    company_id: str | None = None
    user_id: str | None = None
    prompt_tokens: int | None = None
    completion_tokens: int | None = None
    total_tokens: int | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    started: float = field(default_factory=perf_counter)

    @property
    def latency_ms(self) -> int:
        return int((perf_counter() - self.started) * 1000)

    def set_tokens(self, prompt: int | None, completion: int | None, total: int | None) -> None:
        self.prompt_tokens = prompt
        self.completion_tokens = completion
        self.total_tokens = total

    def entry(self, status: UsageStatus, error_code: str | None = None) -> UsageLogEntry:
        return UsageLogEntry(
            request_id=self.request_id,
            company_id=self.company_id,
            user_id=self.user_id,
            provider_key=self.provider_key,
            feature_key=self.feature_key,
            model=self.model,
            prompt_tokens=self.prompt_tokens,
            completion_tokens=self.completion_tokens,
            total_tokens=self.total_tokens,
            latency_ms=self.latency_ms,
            status=status,
            error_code=error_code,
            metadata=dict(self.metadata),
        )


async def finish(
    usage_logger: UsageLogger,
    attempt: Attempt,
    endpoint: str,
    status: UsageStatus,
    http_status: int,
    error_code: str | None = None,
) -> None:
    """Write the terminal ledger row and request metrics for an attempt."""
    entry = attempt.entry(status, error_code)
    await asyncio.to_thread(usage_logger.record, entry)
    record_request(
        endpoint=endpoint,
        feature=attempt.feature_key or "unknown",
        model=attempt.model,
        status=status,
        status_code=http_status,
        latency_s=entry.latency_ms / 1000,
        tokens_in=attempt.prompt_tokens or 0,
        tokens_out=attempt.completion_tokens or 0,
    )


async def fail(
    usage_logger: UsageLogger, attempt: Attempt, endpoint: str, exc: AppError
) -> None:
    if not attempt.metadata:
        attempt.metadata = {"reason": exc.message}
    await finish(usage_logger, attempt, endpoint, ledger_status(exc), exc.status_code, exc.code)
