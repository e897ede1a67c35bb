import logging
import threading
from decimal import Decimal
from unittest.mock import MagicMock

import pytest

from cascade_categorizer.errors import ConcurrencyConflict
from cascade_categorizer.services.budget import (
    BudgetGuard,
    CostLedger,
    daily_key,
    monthly_key,
    start_of_next_day,
)
from cascade_categorizer.storage.memory import InMemoryStore


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def guard(store, clock) -> BudgetGuard:
    ledger = CostLedger(store, clock=clock)
    return BudgetGuard(ledger, daily_limit=Decimal("5.00"), monthly_limit=Decimal("100.00"))


def test_call_crossing_daily_cap_disables_remote(guard, clock) -> None:
    guard.track(Decimal("4.99"))
    assert guard.within_budget()

    reservation = guard.reserve(Decimal("0.02"))
    assert reservation is not None
    status = guard.settle(reservation, Decimal("0.02"))

    assert status.daily_spent == Decimal("5.01")
    assert status.remote_disabled
    assert not guard.within_budget()
    assert guard.reserve(Decimal("0.001")) is None
    assert guard.disabled_until() == start_of_next_day(clock())


def test_new_day_reopens_remote_but_month_keeps_counting(guard, clock) -> None:
    guard.track(Decimal("5.00"))
    assert not guard.within_budget()

    clock.advance(days=1)

    assert guard.within_budget()
    status = guard.status()
    assert status.daily_spent == Decimal("0")
    assert status.monthly_spent == Decimal("5.00")
    assert not status.remote_disabled


def test_monthly_cap_also_blocks(store, clock) -> None:
    guard = BudgetGuard(
        CostLedger(store, clock=clock),
        daily_limit=Decimal("5.00"),
        monthly_limit=Decimal("3.00"),
    )
    guard.track(Decimal("3.00"))

    assert not guard.within_budget()
    assert guard.reserve(Decimal("0.01")) is None


def test_warning_logged_once_at_eighty_percent(guard, caplog) -> None:
    with caplog.at_level(logging.WARNING, logger="cascade_categorizer.services.budget"):
        guard.track(Decimal("3.00"))
        assert "Daily spend" not in caplog.text
        guard.track(Decimal("1.00"))
        guard.track(Decimal("0.10"))

    assert caplog.text.count("Daily spend") == 1
    assert guard.status().warning


def test_outstanding_reservations_count_against_cap(guard) -> None:
    guard.track(Decimal("4.90"))

    first = guard.reserve(Decimal("0.20"))
    assert first is not None
    assert guard.reserve(Decimal("0.20")) is None

    guard.release(first)
    assert guard.reserve(Decimal("0.20")) is not None


def test_ledger_uses_separate_period_counters(store, clock) -> None:
    ledger = CostLedger(store, clock=clock)
    ledger.add(Decimal("0.50"))
    clock.advance(days=1)
    ledger.add(Decimal("0.25"))

    assert store.get_counter(daily_key(clock())) == Decimal("0.25")
    assert store.get_counter(monthly_key(clock())) == Decimal("0.75")
    with pytest.raises(ValueError):
        ledger.add(Decimal("-1"))


def test_ledger_gives_up_after_repeated_conflicts(store, clock) -> None:
    store.compare_and_set_counter = MagicMock(return_value=False)
    ledger = CostLedger(store, clock=clock, max_attempts=3, base_delay=0)

    with pytest.raises(ConcurrencyConflict):
        ledger.add(Decimal("0.01"))
    assert store.compare_and_set_counter.call_count == 3


def test_failed_monthly_increment_leaves_counters_and_reservations_clean(store, clock) -> None:
    cas = store.compare_and_set_counter

    def refuse_monthly(key, expected, new):
        return False if key.startswith("spend:monthly:") else cas(key, expected, new)

    store.compare_and_set_counter = refuse_monthly
    guard = BudgetGuard(
        CostLedger(store, clock=clock, max_attempts=2, base_delay=0),
        daily_limit=Decimal("5.00"),
        monthly_limit=Decimal("100.00"),
    )
    reservation = guard.reserve(Decimal("4.00"))
    assert reservation is not None

    with pytest.raises(ConcurrencyConflict):
        guard.settle(reservation, Decimal("0.10"))

    assert guard.ledger.spent() == (Decimal("0"), Decimal("0"))
    store.compare_and_set_counter = cas
    assert all(guard.reserve(Decimal("2.00")) is not None for _ in range(3))


def test_concurrent_increments_are_not_lost(store, clock) -> None:
    ledger = CostLedger(store, clock=clock)

    def spend() -> None:
        for _ in range(25):
            ledger.add(Decimal("0.01"))

    threads = [threading.Thread(target=spend) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    daily, monthly = ledger.spent()
    assert daily == Decimal("1.00")
    assert monthly == Decimal("1.00")


def test_usage_report_projects_month(guard, clock) -> None:
    guard.track(Decimal("7.00"))

    report = guard.usage_report()

    assert report.daily_spent == Decimal("7.00")
    assert report.remaining == Decimal("0")
    # 7.00 over 14 days of a 31-day month
    assert report.projected_monthly == Decimal("15.5000")
    assert report.remote_disabled_until == start_of_next_day(clock())
