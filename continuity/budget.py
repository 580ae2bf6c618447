"""Daily spend ledger gating generation calls."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime

from continuity.store import ContinuityStore, ContinuityStoreError

logger = logging.getLogger(__name__)

INPUT_DOLLARS_PER_MILLION = 3.0
OUTPUT_DOLLARS_PER_MILLION = 15.0
DEFAULT_DAILY_BUDGET_CENTS = 500


@dataclass(frozen=True)
class BudgetStatus:
    """Result of a budget check for the current UTC day."""

    allowed: bool
    spent_cents: int
    budget_cents: int


def estimate_cost_cents(input_tokens: int, output_tokens: int) -> int:
    dollars = (input_tokens / 1_000_000) * INPUT_DOLLARS_PER_MILLION + (
        output_tokens / 1_000_000
    ) * OUTPUT_DOLLARS_PER_MILLION
    return round(dollars * 100)


class BudgetGatekeeper:
    """Allow generation while today's recorded spend is under the daily budget."""

    def __init__(
        self,
        store: ContinuityStore,
        *,
        daily_budget_cents: int = DEFAULT_DAILY_BUDGET_CENTS,
    ) -> None:
        self._store = store
        self._daily_budget_cents = daily_budget_cents

    def check_budget(self, *, now: datetime | None = None) -> BudgetStatus:
        """Return today's status; an unreadable ledger denies generation."""
        try:
            usage = self._store.get_usage(_day_key(now))
        except ContinuityStoreError as exc:
            logger.warning("Budget check failed; denying generation: %s", exc)
            return BudgetStatus(
                allowed=False, spent_cents=0, budget_cents=self._daily_budget_cents
            )

        spent = usage.cost_cents if usage else 0
        return BudgetStatus(
            allowed=spent < self._daily_budget_cents,
            spent_cents=spent,
            budget_cents=self._daily_budget_cents,
        )

    def record_usage(
        self, input_tokens: int, output_tokens: int, *, now: datetime | None = None
    ) -> int:
        """Add one call's tokens to today's ledger and return its cost in cents."""
        cost = estimate_cost_cents(input_tokens, output_tokens)
        try:
            self._store.add_usage(_day_key(now), input_tokens, output_tokens, cost)
        except ContinuityStoreError as exc:
            logger.warning("Failed to record generation usage: %s", exc)
        return cost


def _day_key(now: datetime | None) -> str:
    return (now or datetime.now(UTC)).astimezone(UTC).date().isoformat()
