from __future__ import annotations

from dataclasses import dataclass


@dataclass(slots=True)
class QuotaDecision:
    kept: list[str]
    dropped_per_item: int
    dropped_per_run: int

    @property
    def dropped(self) -> int:
        return self.dropped_per_item + self.dropped_per_run


class QuotaEnforcer:
    """Two nested budgets: at most ``per_item_cap`` URLs from one item and
    ``per_run_cap`` URLs across the run. The per-item cut is applied first."""

    def __init__(self, *, per_item_cap: int, per_run_cap: int) -> None:
        self.per_item_cap = max(0, per_item_cap)
        self.per_run_cap = max(0, per_run_cap)
        self.kept_total = 0

    @property
    def remaining(self) -> int:
        return max(0, self.per_run_cap - self.kept_total)

    @property
    def exhausted(self) -> bool:
        return self.remaining == 0

    def apply(self, ranked_urls: list[str]) -> QuotaDecision:
        per_item = ranked_urls[: self.per_item_cap]
        kept = per_item[: self.remaining]
        self.kept_total += len(kept)
        return QuotaDecision(
            kept=kept,
            dropped_per_item=len(ranked_urls) - len(per_item),
            dropped_per_run=len(per_item) - len(kept),
        )
