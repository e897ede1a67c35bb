from decimal import Decimal
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest

from cascade_categorizer.core.settings import EngineConfig
from cascade_categorizer.errors import ValidationError
from cascade_categorizer.manager import CategorizerService
from cascade_categorizer.models import Route
from cascade_categorizer.storage.memory import InMemoryStore


def make_response(text: str, input_tokens: int = 1000, output_tokens: int = 100) -> SimpleNamespace:
    return SimpleNamespace(
        output_text=text,
        usage=SimpleNamespace(input_tokens=input_tokens, output_tokens=output_tokens),
    )


@pytest.fixture
def client() -> MagicMock:
    return MagicMock()


@pytest.fixture
def service(categories, clock, client, monkeypatch):
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    svc = CategorizerService(categories=categories, store=InMemoryStore(), client=client, clock=clock)
    yield svc
    svc.close()


@pytest.fixture
def offline_service(categories, clock, monkeypatch):
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    svc = CategorizerService(categories=categories, store=InMemoryStore(), clock=clock)
    yield svc
    svc.close()


def train_ambiguous(svc: CategorizerService, make_record) -> None:
    """Same text labeled both ways, so the statistical layer is a coin flip."""
    labeled = [
        (make_record(), "1"),
        (make_record(), "2"),
        (make_record(), "1"),
        (make_record(), "2"),
    ]
    result = svc.train(labeled)
    assert result["activated"]


def test_second_identical_request_is_served_from_cache(service, client, make_record) -> None:
    client.responses.create.return_value = make_response('{"category": "1", "confidence": 0.93}')

    first = service.classify(make_record())
    second = service.classify(make_record())

    assert first.route == Route.REMOTE
    assert first.cost > 0
    assert second.route == Route.CACHE
    assert second.cost == 0
    assert second.category_id == first.category_id == "1"
    assert second.category_name == "Food"
    assert second.confidence == first.confidence
    client.responses.create.assert_called_once()


def test_low_confidence_result_is_cached_on_short_ttl(offline_service, clock, make_record) -> None:
    train_ambiguous(offline_service, make_record)

    first = offline_service.classify(make_record())
    second = offline_service.classify(make_record())

    assert first.route == Route.STATISTICAL
    assert first.confidence == pytest.approx(0.5)
    assert second.route == Route.CACHE
    assert second.cost == 0
    assert second.category_id == first.category_id
    assert second.confidence == first.confidence

    clock.advance(hours=1, seconds=1)
    third = offline_service.classify(make_record())
    assert third.route == Route.STATISTICAL


def test_nothing_to_go_on_is_unresolved(offline_service, make_record) -> None:
    record = make_record()

    result = offline_service.classify(record)

    assert result.route == Route.UNRESOLVED
    assert result.category_id is None
    assert result.confidence == 0.0
    decision = offline_service.context.store.latest_decision_for(record.id)
    assert decision is not None
    assert decision.route == Route.UNRESOLVED


def test_exactly_one_decision_per_request(service, client, make_record) -> None:
    client.responses.create.return_value = make_response('{"category": "2", "confidence": 0.9}')
    store = service.context.store

    for amount in ("-1.00", "-2.00", "-2.00"):
        service.classify(make_record(amount=amount))

    assert len(store.decisions) == 3
    assert service.metrics()["decisions"] == 3


def test_spent_budget_forces_local_resolution(service, client, make_record) -> None:
    train_ambiguous(service, make_record)
    guard = service.context.guard
    guard.track(Decimal("4.99"))
    # 200k input tokens push the day past its cap on any tier
    client.responses.create.return_value = make_response(
        '{"category": "2", "confidence": 0.9}', input_tokens=200_000, output_tokens=0
    )

    first = service.classify(make_record())
    assert first.route == Route.REMOTE
    assert not guard.within_budget()

    second = service.classify(make_record(amount="-17.30"))

    assert second.route == Route.STATISTICAL
    assert second.cost == 0
    assert second.category_id == "1"
    assert client.responses.create.call_count == 1
    assert service.usage_report().remote_disabled_until is not None


def test_remote_failure_falls_back_to_best_local(service, client, make_record) -> None:
    train_ambiguous(service, make_record)
    client.responses.create.side_effect = RuntimeError("boom")

    result = service.classify(make_record())

    assert result.route == Route.STATISTICAL
    assert result.category_id == "1"
    assert result.confidence == pytest.approx(0.5)
    assert "remote: api error" in result.reasoning


def test_remote_must_beat_statistical_confidence(service, client, make_record) -> None:
    train_ambiguous(service, make_record)
    client.responses.create.return_value = make_response('{"category": "2", "confidence": 0.4}')

    result = service.classify(make_record())

    assert result.route == Route.STATISTICAL
    assert result.category_id == "1"
    assert result.cost > 0


def test_confident_statistical_result_skips_remote(service, client, make_record) -> None:
    labeled = []
    for i in range(6):
        labeled.append((make_record(merchant="Corner Grocery", description="weekly groceries", amount=f"-{20 + i}.00"), "1"))
        labeled.append((make_record(merchant="City Transit", description="monthly train pass", amount=f"-{60 + i}.00"), "2"))
    service.train(labeled)

    result = service.classify(make_record(merchant="Corner Grocery", description="weekly groceries", amount="-31.00"))

    assert result.category_id == "1"
    assert result.route in (Route.SIMILARITY, Route.STATISTICAL)
    client.responses.create.assert_not_called()


def test_classify_batch(service, client, make_record) -> None:
    client.responses.create.return_value = make_response('{"category": "4", "confidence": 0.88}')
    records = [make_record(amount=f"-{i * 10}.00") for i in range(1, 6)]

    results = service.classify_batch(records)

    assert [r.category_id for r in results] == ["4"] * 5
    assert service.classify_batch([]) == []


def test_invalid_records_are_rejected(offline_service, make_record) -> None:
    with pytest.raises(ValidationError) as excinfo:
        offline_service.classify(make_record(id=""))
    assert excinfo.value.field == "id"

    with pytest.raises(ValidationError):
        offline_service.classify(make_record(merchant="", description=" "))
    with pytest.raises(ValidationError):
        offline_service.classify(make_record(currency="EURO"))
    with pytest.raises(ValidationError):
        offline_service.classify_batch([make_record(), make_record(id=" ")])
    assert not offline_service.context.store.decisions


def test_health_and_metrics(offline_service, make_record) -> None:
    offline_service.classify(make_record())

    health = offline_service.health()
    assert health["status"] == "degraded"
    assert health["checks"]["catalog"]
    assert not health["checks"]["remote"]
    assert offline_service.healthy()

    metrics = offline_service.metrics()
    assert metrics["routes"]["unresolved"]["decisions"] == 1
    assert metrics["routes"]["unresolved"]["share"] == 1.0
    assert metrics["model_version"] is None


def test_empty_catalog_is_unhealthy(monkeypatch) -> None:
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    svc = CategorizerService(store=InMemoryStore(), config=EngineConfig())
    try:
        assert not svc.healthy()
    finally:
        svc.close()
