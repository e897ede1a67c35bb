"""Multinomial Naive Bayes with Laplace smoothing over sparse feature maps.

Models are immutable. Training, incremental updates and re-weighting all
return a new instance, which lets a serving process swap versions by
rebinding a single reference.
"""

import math
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any

from cascade_categorizer.errors import ModelSchemaError

SCHEMA_VERSION = 1

Sample = tuple[Mapping[str, float], str]


def class_sort_key(class_id: str) -> tuple[int, int, str]:
    """Numeric ids sort numerically and before free-form ids."""
    if class_id.isdigit():
        return (0, int(class_id), class_id)
    return (1, 0, class_id)


def _accumulate(
    samples: Iterable[Sample],
    class_counts: dict[str, int],
    feature_counts: dict[str, dict[str, float]],
) -> None:
    for features, label in samples:
        class_counts[label] = class_counts.get(label, 0) + 1
        per_class = feature_counts.setdefault(label, {})
        for key, value in features.items():
            if value < 0:
                raise ValueError(f"Feature '{key}' has negative value {value}")
            if value:
                per_class[key] = per_class.get(key, 0.0) + float(value)


@dataclass(frozen=True)
class NaiveBayesModel:
    alpha: float
    class_counts: Mapping[str, int]
    feature_counts: Mapping[str, Mapping[str, float]]
    vocabulary: frozenset[str]
    log_priors: Mapping[str, float]
    log_likelihoods: Mapping[str, Mapping[str, float]]
    log_unseen: Mapping[str, float]
    sample_count: int
    version: int = 1
    metrics: Mapping[str, float] = field(default_factory=dict)
    trained_at: str | None = None

    @classmethod
    def fit(cls, samples: Iterable[Sample], alpha: float = 1.0, version: int = 1) -> "NaiveBayesModel":
        class_counts: dict[str, int] = {}
        feature_counts: dict[str, dict[str, float]] = {}
        _accumulate(samples, class_counts, feature_counts)
        return cls.from_counts(alpha, class_counts, feature_counts, version=version)

    @classmethod
    def from_counts(
        cls,
        alpha: float,
        class_counts: Mapping[str, int],
        feature_counts: Mapping[str, Mapping[str, float]],
        *,
        version: int = 1,
        metrics: Mapping[str, float] | None = None,
    ) -> "NaiveBayesModel":
        if alpha <= 0:
            raise ValueError("alpha must be positive")
        total = sum(class_counts.values())
        if total <= 0:
            raise ValueError("Cannot build a model without samples")

        vocabulary = frozenset(key for counts in feature_counts.values() for key in counts)
        smoothing_mass = alpha * max(len(vocabulary), 1)

        log_priors: dict[str, float] = {}
        log_likelihoods: dict[str, dict[str, float]] = {}
        log_unseen: dict[str, float] = {}
        for label, count in class_counts.items():
            log_priors[label] = math.log(count / total)
            counts = feature_counts.get(label, {})
            denominator = sum(counts.values()) + smoothing_mass
            log_likelihoods[label] = {
                key: math.log((value + alpha) / denominator) for key, value in counts.items()
            }
            log_unseen[label] = math.log(alpha / denominator)

        return cls(
            alpha=alpha,
            class_counts=dict(class_counts),
            feature_counts={label: dict(counts) for label, counts in feature_counts.items()},
            vocabulary=vocabulary,
            log_priors=log_priors,
            log_likelihoods=log_likelihoods,
            log_unseen=log_unseen,
            sample_count=total,
            version=version,
            metrics=dict(metrics or {}),
            trained_at=datetime.now(timezone.utc).isoformat(),
        )

    @property
    def classes(self) -> tuple[str, ...]:
        return tuple(sorted(self.class_counts, key=class_sort_key))

    def updated(self, samples: Iterable[Sample]) -> "NaiveBayesModel":
        """Fold new labeled samples into the running counts."""
        class_counts = dict(self.class_counts)
        feature_counts = {label: dict(counts) for label, counts in self.feature_counts.items()}
        _accumulate(samples, class_counts, feature_counts)
        return self.from_counts(
            self.alpha,
            class_counts,
            feature_counts,
            version=self.version + 1,
            metrics=self.metrics,
        )

    def with_metrics(self, metrics: Mapping[str, float]) -> "NaiveBayesModel":
        return replace(self, metrics=dict(metrics))

    def with_version(self, version: int) -> "NaiveBayesModel":
        return replace(self, version=version)

    def scores(self, features: Mapping[str, float]) -> dict[str, float]:
        known = [(key, value) for key, value in features.items() if key in self.vocabulary and value]
        result: dict[str, float] = {}
        for label in self.classes:
            likelihoods = self.log_likelihoods[label]
            unseen = self.log_unseen[label]
            score = self.log_priors[label]
            for key, value in known:
                score += likelihoods.get(key, unseen) * value
            result[label] = score
        return result

    def predict_proba(self, features: Mapping[str, float]) -> dict[str, float]:
        scores = self.scores(features)
        top = max(scores.values())
        exps = {label: math.exp(score - top) for label, score in scores.items()}
        total = sum(exps.values())
        return {label: value / total for label, value in exps.items()}

    def predict(self, features: Mapping[str, float]) -> tuple[str, float]:
        probabilities = self.predict_proba(features)
        # ties keep the lowest id
        best_label = min(probabilities, key=lambda label: (-probabilities[label], class_sort_key(label)))
        return best_label, probabilities[best_label]

    def prior(self, label: str) -> float:
        return math.exp(self.log_priors[label])

    def to_dict(self) -> dict[str, Any]:
        return {
            "schema_version": SCHEMA_VERSION,
            "version": self.version,
            "alpha": self.alpha,
            "sample_count": self.sample_count,
            "class_counts": dict(self.class_counts),
            "feature_counts": {label: dict(counts) for label, counts in self.feature_counts.items()},
            "vocabulary": sorted(self.vocabulary),
            "priors": dict(self.log_priors),
            "likelihoods": {label: dict(values) for label, values in self.log_likelihoods.items()},
            "unseen": dict(self.log_unseen),
            "metrics": dict(self.metrics),
            "trained_at": self.trained_at,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "NaiveBayesModel":
        if not isinstance(payload, Mapping):
            raise ModelSchemaError("Model payload must be a mapping")
        schema = payload.get("schema_version")
        if schema != SCHEMA_VERSION:
            raise ModelSchemaError(f"Unsupported schema version {schema!r}")
        required = (
            "version",
            "alpha",
            "sample_count",
            "class_counts",
            "feature_counts",
            "vocabulary",
            "priors",
            "likelihoods",
            "unseen",
        )
        missing = [key for key in required if key not in payload]
        if missing:
            raise ModelSchemaError(f"Model payload is missing {', '.join(missing)}")

        try:
            alpha = float(payload["alpha"])
            class_counts = {str(k): int(v) for k, v in payload["class_counts"].items()}
            feature_counts = {
                str(label): {str(k): float(v) for k, v in counts.items()}
                for label, counts in payload["feature_counts"].items()
            }
            vocabulary = frozenset(str(key) for key in payload["vocabulary"])
            priors = {str(k): float(v) for k, v in payload["priors"].items()}
            likelihoods = {
                str(label): {str(k): float(v) for k, v in values.items()}
                for label, values in payload["likelihoods"].items()
            }
            unseen = {str(k): float(v) for k, v in payload["unseen"].items()}
            metrics = {str(k): float(v) for k, v in (payload.get("metrics") or {}).items()}
            version = int(payload["version"])
            sample_count = int(payload["sample_count"])
        except (AttributeError, TypeError, ValueError) as exc:
            raise ModelSchemaError(f"Malformed model payload: {exc}") from exc

        if alpha <= 0:
            raise ModelSchemaError("alpha must be positive")
        labels = set(class_counts)
        if not labels or set(priors) != labels or set(likelihoods) != labels or set(unseen) != labels:
            raise ModelSchemaError("Class sets of counts, priors, likelihoods and unseen differ")
        if sample_count != sum(class_counts.values()):
            raise ModelSchemaError("sample_count does not match class counts")
        for label, values in likelihoods.items():
            if not set(values) <= vocabulary:
                raise ModelSchemaError(f"Likelihoods for class {label!r} reference unknown features")

        return cls(
            alpha=alpha,
            class_counts=class_counts,
            feature_counts=feature_counts,
            vocabulary=vocabulary,
            log_priors=priors,
            log_likelihoods=likelihoods,
            log_unseen=unseen,
            sample_count=sample_count,
            version=version,
            metrics=metrics,
            trained_at=payload.get("trained_at"),
        )
