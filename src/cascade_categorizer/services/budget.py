import calendar
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from cascade_categorizer.errors import ConcurrencyConflict
from cascade_categorizer.logger import get_logger
from cascade_categorizer.models import BudgetStatus, UsageReport
from cascade_categorizer.storage.base import Store

logger = get_logger(__name__)

Clock = Callable[[], datetime]

ZERO = Decimal("0")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def daily_key(now: datetime) -> str:
    return f"spend:daily:{now:%Y-%m-%d}"


def monthly_key(now: datetime) -> str:
    return f"spend:monthly:{now:%Y-%m}"


def start_of_next_day(now: datetime) -> datetime:
    midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
    return midnight + timedelta(days=1)


class CostLedger:
    """Per-day and per-month spend accumulators kept in the store.

    Each period has its own counter key, so a new day starts a fresh daily
    counter while the monthly one keeps growing.
    """

    def __init__(
        self,
        store: Store,
        clock: Clock = utc_now,
        max_attempts: int = 6,
        base_delay: float = 0.001,
    ) -> None:
        self.store = store
        self.clock = clock
        self.max_attempts = max_attempts
        self.base_delay = base_delay

    def _increment(self, key: str, amount: Decimal) -> Decimal:
        delay = self.base_delay
        for _ in range(self.max_attempts):
            current = self.store.get_counter(key)
            new_value = current + amount
            if self.store.compare_and_set_counter(key, current, new_value):
                return new_value
            time.sleep(delay)
            delay *= 2
        raise ConcurrencyConflict(f"Could not increment {key} after {self.max_attempts} attempts")

    def add(self, amount: Decimal, now: datetime | None = None) -> tuple[Decimal, Decimal]:
        if amount < 0:
            raise ValueError("Spend amounts must be non-negative")
        now = now or self.clock()
        daily = self._increment(daily_key(now), amount)
        try:
            monthly = self._increment(monthly_key(now), amount)
        except ConcurrencyConflict:
            self._increment(daily_key(now), -amount)
            raise
        return daily, monthly

    def spent(self, now: datetime | None = None) -> tuple[Decimal, Decimal]:
        now = now or self.clock()
        return self.store.get_counter(daily_key(now)), self.store.get_counter(monthly_key(now))


@dataclass(frozen=True)
class Reservation:
    amount: Decimal


class BudgetGuard:
    """Admission control for paid remote calls."""

    def __init__(
        self,
        ledger: CostLedger,
        daily_limit: Decimal,
        monthly_limit: Decimal,
        warning_ratio: float = 0.8,
    ) -> None:
        self.ledger = ledger
        self.daily_limit = daily_limit
        self.monthly_limit = monthly_limit
        self.warning_ratio = Decimal(str(warning_ratio))
        self._lock = threading.Lock()
        self._reserved = ZERO
        self._warned: set[str] = set()
        self._disabled_until: datetime | None = None

    @property
    def clock(self) -> Clock:
        return self.ledger.clock

    def disabled_until(self, now: datetime | None = None) -> datetime | None:
        now = now or self.clock()
        until = self._disabled_until
        if until is not None and now >= until:
            return None
        return until

    def within_budget(self) -> bool:
        now = self.clock()
        if self.disabled_until(now) is not None:
            return False
        daily, monthly = self.ledger.spent(now)
        return daily < self.daily_limit and monthly < self.monthly_limit

    def reserve(self, estimate: Decimal) -> Reservation | None:
        """Claim headroom for one remote call.

        A call is admitted while committed spend plus outstanding
        reservations is still under both caps, so concurrent callers can
        overshoot a cap by at most one call.
        """
        now = self.clock()
        with self._lock:
            if self.disabled_until(now) is not None:
                return None
            daily, monthly = self.ledger.spent(now)
            if daily + self._reserved >= self.daily_limit:
                return None
            if monthly + self._reserved >= self.monthly_limit:
                return None
            self._reserved += estimate
        return Reservation(amount=estimate)

    def release(self, reservation: Reservation) -> None:
        with self._lock:
            self._reserved = max(ZERO, self._reserved - reservation.amount)

    def settle(self, reservation: Reservation, actual: Decimal) -> BudgetStatus:
        try:
            return self.track(actual)
        finally:
            self.release(reservation)

    def track(self, amount: Decimal) -> BudgetStatus:
        now = self.clock()
        daily, monthly = self.ledger.add(amount, now)
        self._check_thresholds(now, daily, monthly)
        return self._status(now, daily, monthly)

    def status(self) -> BudgetStatus:
        now = self.clock()
        daily, monthly = self.ledger.spent(now)
        return self._status(now, daily, monthly)

    def _check_thresholds(self, now: datetime, daily: Decimal, monthly: Decimal) -> None:
        checks = (
            (daily_key(now), daily, self.daily_limit, "daily"),
            (monthly_key(now), monthly, self.monthly_limit, "monthly"),
        )
        for key, spent, limit, label in checks:
            if spent >= limit * self.warning_ratio and key not in self._warned:
                self._warned.add(key)
                logger.warning(
                    "[BUDGET] %s spend %.4f reached %.0f%% of limit %.2f",
                    label.capitalize(),
                    spent,
                    self.warning_ratio * 100,
                    limit,
                )

        if daily >= self.daily_limit and self.disabled_until(now) is None:
            self._disabled_until = start_of_next_day(now)
            logger.error(
                "[BUDGET] Daily limit %.2f reached (spent %.4f). Remote layer disabled until %s.",
                self.daily_limit,
                daily,
                self._disabled_until.isoformat(),
            )

    def _status(self, now: datetime, daily: Decimal, monthly: Decimal) -> BudgetStatus:
        return BudgetStatus(
            daily_spent=daily,
            monthly_spent=monthly,
            daily_limit=self.daily_limit,
            monthly_limit=self.monthly_limit,
            daily_remaining=max(ZERO, self.daily_limit - daily),
            monthly_remaining=max(ZERO, self.monthly_limit - monthly),
            warning=(
                daily >= self.daily_limit * self.warning_ratio
                or monthly >= self.monthly_limit * self.warning_ratio
            ),
            remote_disabled=self.disabled_until(now) is not None,
        )

    def usage_report(self) -> UsageReport:
        now = self.clock()
        daily, monthly = self.ledger.spent(now)
        days_in_month = calendar.monthrange(now.year, now.month)[1]
        projected = (monthly / now.day * days_in_month).quantize(Decimal("0.0001"))
        remaining = min(
            max(ZERO, self.daily_limit - daily),
            max(ZERO, self.monthly_limit - monthly),
        )
        return UsageReport(
            daily_spent=daily,
            monthly_spent=monthly,
            remaining=remaining,
            projected_monthly=projected,
            daily_limit=self.daily_limit,
            monthly_limit=self.monthly_limit,
            remote_disabled_until=self.disabled_until(now),
        )
