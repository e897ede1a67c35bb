import os
import time
from datetime import timedelta
from decimal import Decimal

import pytest

from cascade_categorizer.manager import CategorizerService
from cascade_categorizer.models import (
    CachedEntry,
    ClassificationDecision,
    CorrectionRule,
    Route,
)
from cascade_categorizer.storage.json_store import JsonFileStore


@pytest.fixture
def data_path(tmp_path) -> str:
    return str(tmp_path / "state.json")


def test_state_survives_reload(data_path, clock, make_record) -> None:
    store = JsonFileStore(data_path)
    record = make_record()
    now = clock()
    store.save_record(record)
    decision = ClassificationDecision(
        record_id=record.id,
        category_id="1",
        complexity_score=0.4,
        route=Route.STATISTICAL,
        confidence=0.9,
        cost=Decimal("0.0012"),
        created_at=now,
    )
    store.save_decision(decision)
    store.put_cache_entry(
        CachedEntry(key="abc", category_id="1", confidence=0.9, created_at=now, expires_at=now + timedelta(days=7))
    )
    assert store.compare_and_set_counter("spend:daily:2024-03-14", Decimal("0"), Decimal("1.25"))
    rule = CorrectionRule(
        from_category_id="2",
        to_category_id="3",
        conditions={"merchant": "blue bottle cafe"},
        confidence=0.9,
        support=3,
        created_at=now,
        expires_at=now + timedelta(days=30),
    )
    store.save_rule(rule)
    store.save_model("statistical", {"schema_version": 1, "alpha": 1.0})
    store.increment_stat("routes", "statistical", "decisions")
    store.close()

    reloaded = JsonFileStore(data_path)

    assert reloaded.get_record(record.id) == record
    assert reloaded.latest_decision_for(record.id) == decision
    assert reloaded.get_cache_entry("abc").category_id == "1"
    assert reloaded.get_counter("spend:daily:2024-03-14") == Decimal("1.25")
    assert reloaded.list_rules() == [rule]
    assert reloaded.load_model("statistical") == {"schema_version": 1, "alpha": 1.0}
    assert reloaded.get_stats("routes") == {"statistical": {"decisions": 1.0}}


def test_writes_are_batched_until_flush(data_path, make_record) -> None:
    store = JsonFileStore(data_path, flush_seconds=60)
    try:
        record = make_record()
        store.save_record(record)
        store.increment_stat("routes", "cache", "decisions")

        assert not os.path.exists(data_path)

        store.flush()
        assert JsonFileStore(data_path, flush_seconds=60).get_record(record.id) == record

        mtime = os.path.getmtime(data_path)
        store.flush()
        assert os.path.getmtime(data_path) == mtime
    finally:
        store.close()


def test_background_flush_persists_pending_writes(data_path, make_record) -> None:
    store = JsonFileStore(data_path, flush_seconds=0.05)
    try:
        record = make_record()
        store.save_record(record)
        for _ in range(100):
            if os.path.exists(data_path):
                break
            time.sleep(0.02)

        assert JsonFileStore(data_path, flush_seconds=60).get_record(record.id) == record
    finally:
        store.close()


def test_corrupt_file_starts_empty(data_path) -> None:
    with open(data_path, "w", encoding="utf-8") as handle:
        handle.write("{not json")

    store = JsonFileStore(data_path)

    assert store.get_record("anything") is None
    assert store.list_rules() == []


def test_service_restores_model_and_index(tmp_path, categories, clock, make_record, monkeypatch) -> None:
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    labeled = [
        (make_record(merchant="Corner Grocery", description="weekly groceries"), "1"),
        (make_record(merchant="City Transit", description="train ticket", amount="-3.40"), "2"),
        (make_record(merchant="Corner Grocery", description="milk and bread"), "1"),
        (make_record(merchant="City Transit", description="monthly pass", amount="-49.00"), "2"),
    ]
    first = CategorizerService(categories=categories, data_dir=str(tmp_path), clock=clock)
    try:
        first.train(labeled)
        version = first.context.models.current.version
    finally:
        first.close()

    second = CategorizerService(categories=categories, data_dir=str(tmp_path), clock=clock)
    try:
        assert second.context.models.current is not None
        assert second.context.models.current.version == version
        assert len(second.context.index) == len(labeled)
    finally:
        second.close()


def test_expired_rules_are_pruned_on_start(tmp_path, categories, clock, monkeypatch) -> None:
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    store = JsonFileStore(str(tmp_path / "categorizer_state.json"))
    store.save_rule(
        CorrectionRule(
            from_category_id="2",
            to_category_id="3",
            conditions={"merchant": "old cafe"},
            confidence=0.7,
            created_at=clock() - timedelta(days=40),
            expires_at=clock() - timedelta(days=10),
        )
    )
    store.close()

    service = CategorizerService(categories=categories, data_dir=str(tmp_path), clock=clock)
    try:
        assert service.context.store.list_rules() == []
    finally:
        service.close()
