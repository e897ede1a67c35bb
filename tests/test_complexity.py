from datetime import timedelta
from decimal import Decimal

import pytest

from cascade_categorizer.models import ClassificationDecision, CorrectionEvent, Route
from cascade_categorizer.services.complexity import (
    FACTOR_WEIGHTS,
    ComplexityAnalyzer,
    amount_unusualness,
    category_margin,
    historical_difficulty,
    pattern_absence,
)
from cascade_categorizer.services.history import AmountStats, HistorySnapshot, HistoryTracker
from cascade_categorizer.storage.memory import InMemoryStore


@pytest.fixture
def snapshot() -> HistorySnapshot:
    return HistorySnapshot(
        known_merchants=frozenset({"corner grocery", "city transit"}),
        recent_outcomes={"corner grocery": (10, 1)},
        amount_stats=AmountStats(count=10, mean=50.0, std=10.0),
        rule_merchants=frozenset({"city transit"}),
    )


def test_weights_must_cover_all_factors_and_sum_to_one() -> None:
    assert sum(FACTOR_WEIGHTS.values()) == pytest.approx(1.0)
    with pytest.raises(ValueError):
        ComplexityAnalyzer({"merchant_ambiguity": 1.0})
    with pytest.raises(ValueError):
        ComplexityAnalyzer({name: 0.5 for name in FACTOR_WEIGHTS})


def test_unknown_cryptic_merchant_is_harder_than_known_one(snapshot, make_record) -> None:
    analyzer = ComplexityAnalyzer()

    known = analyzer.analyze(make_record(merchant="Corner Grocery", amount="-48.00"), snapshot)
    unknown = analyzer.analyze(make_record(merchant="XJ*77 QP", description="", amount="-48.00"), snapshot)

    assert 0.0 <= known.score <= 1.0
    assert 0.0 <= unknown.score <= 1.0
    assert unknown.score > known.score
    assert unknown.factors["merchant_ambiguity"] >= 0.6
    assert known.factors["merchant_ambiguity"] <= 0.4
    assert set(known.factors) == set(FACTOR_WEIGHTS)
    assert unknown.primary_issue in FACTOR_WEIGHTS


def test_fuzzy_known_merchant_counts_as_known(snapshot, make_record) -> None:
    analyzer = ComplexityAnalyzer()

    assessment = analyzer.analyze(make_record(merchant="Grocery Corner"), snapshot)

    assert assessment.factors["merchant_ambiguity"] < 0.6


def test_category_margin() -> None:
    assert category_margin(None) == 0.5
    assert category_margin({"1": 0.5, "2": 0.5}) == pytest.approx(1.0)
    assert category_margin({"1": 0.99, "2": 0.01}) == pytest.approx(0.02)


def test_amount_unusualness_uses_z_score(snapshot) -> None:
    assert amount_unusualness(50.0, snapshot) == 0.0
    assert amount_unusualness(65.0, snapshot) == pytest.approx(0.375)
    assert amount_unusualness(100.0, snapshot) > 0.9
    assert amount_unusualness(100.0, HistorySnapshot()) == 0.5


def test_pattern_absence(snapshot) -> None:
    assert pattern_absence("city transit", snapshot) == 0.0
    assert pattern_absence("corner grocery", snapshot) == 0.5
    assert pattern_absence("nowhere", snapshot) == 1.0


def test_probabilities_feed_the_margin_factor(snapshot, make_record) -> None:
    analyzer = ComplexityAnalyzer()
    record = make_record()

    confident = analyzer.analyze(record, snapshot, probabilities={"1": 0.95, "2": 0.05})
    torn = analyzer.analyze(record, snapshot, probabilities={"1": 0.51, "2": 0.49})

    assert torn.score > confident.score


def test_historical_difficulty_only_counts_the_recent_window(clock, make_record) -> None:
    store = InMemoryStore()
    tracker = HistoryTracker(store, clock=clock, window_days=30)
    now = clock()

    def decide(days_ago: int, corrected: bool) -> None:
        record = make_record(merchant="Blue Bottle Cafe")
        store.save_record(record)
        created_at = now - timedelta(days=days_ago)
        store.save_decision(
            ClassificationDecision(
                record_id=record.id,
                category_id="2",
                complexity_score=0.5,
                route=Route.STATISTICAL,
                confidence=0.6,
                created_at=created_at,
            )
        )
        if corrected:
            store.save_correction(
                CorrectionEvent(
                    record_id=record.id,
                    merchant="blue bottle cafe",
                    description="weekly groceries",
                    amount=Decimal("42.50"),
                    predicted_category_id="2",
                    actual_category_id="3",
                    created_at=created_at,
                )
            )

    for _ in range(4):
        decide(60, corrected=True)
    decide(2, corrected=True)
    for _ in range(3):
        decide(1, corrected=False)

    snapshot = tracker.snapshot()

    assert snapshot.recent_outcomes["blue bottle cafe"] == (4, 1)
    assert snapshot.failure_rate("blue bottle cafe") == pytest.approx(0.25)
    assert historical_difficulty("blue bottle cafe", snapshot) == pytest.approx(0.25)
    assert historical_difficulty("unknown shop", snapshot) == 0.5
