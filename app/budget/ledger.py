"""Per-company daily and monthly token budget admission.

Usage is never tracked in process: each window's consumption is summed
from the usage ledger, so every replica sees the same figures. Blocked rows
carry the refused estimate for reporting and are excluded from the sums.

Design notes
------------
* Windows are UTC-aligned: midnight to now, first-of-month to now.
* Admission uses the pre-flight estimate only. Two concurrent requests can
  both pass and jointly overshoot a window by the sum of their estimates.
* The daily window is checked first and wins when both would be exceeded.
"""

import asyncio
from dataclasses import dataclass
from datetime import UTC, datetime
from math import ceil

from app.core.errors import BudgetExceededError
from app.store.base import DataStore
from app.store.types import CompanyAiSettings

CHARS_PER_TOKEN = 4


def estimate_tokens(text: str) -> int:
    return ceil(len(text) / CHARS_PER_TOKEN)


def start_of_utc_day(now: datetime) -> datetime:
    now = now.astimezone(UTC)
    return datetime(now.year, now.month, now.day, tzinfo=UTC)


def start_of_utc_month(now: datetime) -> datetime:
    now = now.astimezone(UTC)
    return datetime(now.year, now.month, 1, tzinfo=UTC)


@dataclass(frozen=True)
class BudgetSnapshot:
    used_today: int
    used_month: int
    daily_budget: int
    monthly_budget: int
    requested: int

    def as_dict(self) -> dict[str, int]:
        return {
            "used_today": self.used_today,
            "used_month": self.used_month,
            "daily_budget": self.daily_budget,
            "monthly_budget": self.monthly_budget,
            "requested": self.requested,
        }


class BudgetLedger:
    def __init__(self, store: DataStore):
        self._store = store

    async def usage(self, company_id: str, now: datetime | None = None) -> tuple[int, int]:
        """Return tokens consumed today and this month."""
        now = now or datetime.now(UTC)
        used_today, used_month = await asyncio.gather(
            asyncio.to_thread(
                self._store.token_usage_in_window, company_id, start_of_utc_day(now), now
            ),
            asyncio.to_thread(
                self._store.token_usage_in_window, company_id, start_of_utc_month(now), now
            ),
        )
        return used_today, used_month

    async def admit(
        self,
        company_id: str,
        settings: CompanyAiSettings,
        requested_tokens: int,
        now: datetime | None = None,
    ) -> BudgetSnapshot:
        """Raise ``BudgetExceededError`` if the estimate would overrun either window."""
        used_today, used_month = await self.usage(company_id, now)
        snapshot = BudgetSnapshot(
            used_today=used_today,
            used_month=used_month,
            daily_budget=settings.daily_token_budget,
            monthly_budget=settings.monthly_token_budget,
            requested=requested_tokens,
        )
        if used_today + requested_tokens > settings.daily_token_budget:
            raise BudgetExceededError(
                window="daily",
                used=used_today,
                budget=settings.daily_token_budget,
                requested=requested_tokens,
            )
        if used_month + requested_tokens > settings.monthly_token_budget:
            raise BudgetExceededError(
                window="monthly",
                used=used_month,
                budget=settings.monthly_token_budget,
                requested=requested_tokens,
            )
        return snapshot
