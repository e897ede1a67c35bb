import json
import math

import pytest

from cascade_categorizer.classifiers.naive_bayes import SCHEMA_VERSION, NaiveBayesModel
from cascade_categorizer.errors import ModelSchemaError


@pytest.fixture
def samples() -> list[tuple[dict[str, float], str]]:
    return [
        ({"word_grocery": 1.0, "word_market": 1.0, "amount_bucket_medium": 1.0}, "Food"),
        ({"word_grocery": 2.0, "amount_bucket_small": 1.0}, "Food"),
        ({"word_bakery": 1.0, "amount_bucket_small": 1.0}, "Food"),
        ({"word_uber": 1.0, "word_trip": 1.0, "amount_bucket_small": 1.0}, "Transport"),
        ({"word_train": 1.0, "word_ticket": 1.0, "amount_bucket_medium": 1.0}, "Transport"),
        ({"word_fuel": 1.0, "amount_bucket_medium": 1.0}, "Transport"),
        ({"word_taxi": 1.0, "amount_bucket_small": 1.0}, "Transport"),
    ]


def test_probabilities_sum_to_one(samples) -> None:
    model = NaiveBayesModel.fit(samples, alpha=0.5)
    inputs = [
        {},
        {"word_grocery": 1.0},
        {"word_uber": 3.0, "word_unknown": 1.0},
        {"word_grocery": 1.0, "word_train": 1.0, "amount_bucket_medium": 1.0},
        {"word_grocery": 500.0},
    ]
    for features in inputs:
        probabilities = model.predict_proba(features)
        assert set(probabilities) == {"Food", "Transport"}
        assert math.isclose(sum(probabilities.values()), 1.0, abs_tol=1e-6)


def test_grocery_features_beat_the_food_prior(samples) -> None:
    model = NaiveBayesModel.fit(samples, alpha=1.0)
    assert "word_grocery" in model.vocabulary

    category, confidence = model.predict({"word_grocery": 1.0, "amount_bucket_medium": 1.0})

    assert category == "Food"
    assert confidence > model.prior("Food")


def test_ties_go_to_the_lowest_class_id() -> None:
    model = NaiveBayesModel.fit([({"word_a": 1.0}, "10"), ({"word_b": 1.0}, "9")])

    category, confidence = model.predict({})

    assert category == "9"
    assert confidence == pytest.approx(0.5)


def test_serialization_round_trip_keeps_predictions(samples) -> None:
    model = NaiveBayesModel.fit(samples, alpha=0.1, version=3).with_metrics({"f1": 0.8})
    held_out = [
        {"word_grocery": 1.0},
        {"word_taxi": 1.0, "amount_bucket_medium": 1.0},
        {"word_bakery": 1.0, "word_fuel": 1.0},
        {"word_never_seen": 1.0},
    ]

    restored = NaiveBayesModel.from_dict(json.loads(json.dumps(model.to_dict())))

    assert restored.version == 3
    assert restored.metrics == {"f1": 0.8}
    for features in held_out:
        assert restored.predict(features) == model.predict(features)
        assert restored.predict_proba(features) == model.predict_proba(features)


def test_from_dict_rejects_unknown_schema(samples) -> None:
    payload = NaiveBayesModel.fit(samples).to_dict()
    payload["schema_version"] = SCHEMA_VERSION + 1
    with pytest.raises(ModelSchemaError):
        NaiveBayesModel.from_dict(payload)


def test_from_dict_rejects_missing_and_inconsistent_fields(samples) -> None:
    payload = NaiveBayesModel.fit(samples).to_dict()

    missing = dict(payload)
    del missing["likelihoods"]
    with pytest.raises(ModelSchemaError):
        NaiveBayesModel.from_dict(missing)

    mismatched = dict(payload)
    mismatched["priors"] = {"Food": -0.5}
    with pytest.raises(ModelSchemaError):
        NaiveBayesModel.from_dict(mismatched)

    wrong_count = dict(payload)
    wrong_count["sample_count"] = 99
    with pytest.raises(ModelSchemaError):
        NaiveBayesModel.from_dict(wrong_count)

    with pytest.raises(ModelSchemaError):
        NaiveBayesModel.from_dict(["not", "a", "mapping"])


def test_incremental_update_returns_new_version(samples) -> None:
    model = NaiveBayesModel.fit(samples)

    updated = model.updated([({"word_cinema": 1.0}, "Leisure")])

    assert updated.version == model.version + 1
    assert updated.sample_count == model.sample_count + 1
    assert "Leisure" in updated.classes
    assert "Leisure" not in model.classes


def test_fit_rejects_negative_features_and_bad_alpha(samples) -> None:
    with pytest.raises(ValueError):
        NaiveBayesModel.fit([({"word_a": -1.0}, "Food")])
    with pytest.raises(ValueError):
        NaiveBayesModel.fit(samples, alpha=0.0)
