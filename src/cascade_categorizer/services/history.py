import math
import threading
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from cascade_categorizer.domain.normalize import normalize_merchant
from cascade_categorizer.models import TransactionRecord
from cascade_categorizer.storage.base import Store

MERCHANTS = "merchants"
AMOUNTS = "amounts"


@dataclass(frozen=True)
class AmountStats:
    count: int = 0
    mean: float = 0.0
    std: float = 0.0


@dataclass(frozen=True)
class HistorySnapshot:
    """Read-only view of recent history used by the complexity analyzer."""

    known_merchants: frozenset[str] = frozenset()
    recent_outcomes: Mapping[str, tuple[int, int]] = field(default_factory=dict)
    amount_stats: AmountStats = AmountStats()
    rule_merchants: frozenset[str] = frozenset()

    def failure_rate(self, merchant: str) -> float | None:
        """Share of recent decisions for the merchant that were corrected."""
        decisions, corrections = self.recent_outcomes.get(merchant, (0, 0))
        if decisions <= 0:
            return None
        return min(1.0, corrections / decisions)


class HistoryTracker:
    """Keeps additive merchant and amount statistics in the store.

    Snapshots are rebuilt at most every ``refresh_seconds`` unless
    invalidated, so the request path rarely touches the store for them.
    Failure rates only look back ``window_days``.
    """

    def __init__(
        self,
        store: Store,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
        refresh_seconds: float = 2.0,
        window_days: int = 30,
    ) -> None:
        self.store = store
        self.clock = clock
        self.refresh_seconds = refresh_seconds
        self.window_days = window_days
        self._lock = threading.Lock()
        self._snapshot: HistorySnapshot | None = None
        self._built_at = 0.0

    def record_decision(self, record: TransactionRecord) -> None:
        amount = float(abs(record.amount))
        self.store.increment_stat(AMOUNTS, "all", "count")
        self.store.increment_stat(AMOUNTS, "all", "sum", amount)
        self.store.increment_stat(AMOUNTS, "all", "sumsq", amount * amount)

    def record_label(self, record: TransactionRecord) -> None:
        merchant = normalize_merchant(record.merchant_name)
        if merchant:
            self.store.increment_stat(MERCHANTS, merchant, "labeled")

    def invalidate(self) -> None:
        with self._lock:
            self._snapshot = None

    def snapshot(self) -> HistorySnapshot:
        with self._lock:
            snapshot = self._snapshot
            if snapshot is not None and time.monotonic() - self._built_at < self.refresh_seconds:
                return snapshot
        snapshot = self._build()
        with self._lock:
            self._snapshot = snapshot
            self._built_at = time.monotonic()
        return snapshot

    def _build(self) -> HistorySnapshot:
        merchants = self.store.get_stats(MERCHANTS)
        amounts = self.store.get_stats(AMOUNTS).get("all", {})
        count = int(amounts.get("count", 0))
        mean = std = 0.0
        if count:
            mean = amounts.get("sum", 0.0) / count
            variance = max(0.0, amounts.get("sumsq", 0.0) / count - mean * mean)
            std = math.sqrt(variance)

        now = self.clock()
        since = now - timedelta(days=self.window_days)
        outcomes: dict[str, tuple[int, int]] = {}
        for decision in self.store.recent_decisions(since):
            record = self.store.get_record(decision.record_id)
            merchant = normalize_merchant(record.merchant_name) if record else ""
            if merchant:
                decisions, corrections = outcomes.get(merchant, (0, 0))
                outcomes[merchant] = (decisions + 1, corrections)
        for event in self.store.recent_corrections(since):
            if event.merchant:
                decisions, corrections = outcomes.get(event.merchant, (0, 0))
                outcomes[event.merchant] = (decisions, corrections + 1)

        rule_merchants = frozenset(
            rule.conditions.get("merchant", "")
            for rule in self.store.list_rules()
            if rule.is_active(now) and rule.conditions.get("merchant")
        )
        return HistorySnapshot(
            known_merchants=frozenset(m for m, s in merchants.items() if s.get("labeled", 0) > 0),
            recent_outcomes=outcomes,
            amount_stats=AmountStats(count=count, mean=mean, std=std),
            rule_merchants=rule_merchants,
        )
