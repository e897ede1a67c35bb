from collections.abc import Callable
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Any

import pytest

from cascade_categorizer.models import Category, TransactionRecord


class FakeClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2024, 3, 14, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def categories() -> list[Category]:
    return [
        Category(id="1", name="Food"),
        Category(id="2", name="Transport"),
        Category(id="3", name="Dining"),
        Category(id="4", name="Shopping"),
    ]


@pytest.fixture
def make_record() -> Callable[..., TransactionRecord]:
    ids = iter(range(1, 1_000_000))

    def factory(
        merchant: str = "Corner Grocery",
        description: str = "weekly groceries",
        amount: str = "-42.50",
        **overrides: Any,
    ) -> TransactionRecord:
        data: dict[str, Any] = {
            "id": f"tx-{next(ids)}",
            "merchant_name": merchant,
            "description": description,
            "amount": Decimal(amount),
            "currency": "EUR",
            "transaction_date": date(2024, 3, 14),
        }
        data.update(overrides)
        return TransactionRecord(**data)

    return factory
