from collections.abc import Sequence
from dataclasses import dataclass

import numpy as np
from sklearn.metrics import accuracy_score, f1_score
from sklearn.model_selection import KFold, train_test_split

from cascade_categorizer.classifiers.naive_bayes import NaiveBayesModel, Sample
from cascade_categorizer.logger import get_logger

logger = get_logger(__name__)

ALPHA_GRID: tuple[float, ...] = (0.001, 0.01, 0.1, 0.5, 1.0, 2.0)
DEFAULT_FOLDS = 5
MIN_HOLDOUT_SAMPLES = 10


@dataclass(frozen=True)
class CrossValidationResult:
    best_alpha: float
    mean_accuracy: dict[float, float]
    folds: int


def evaluate(model: NaiveBayesModel, samples: Sequence[Sample]) -> dict[str, float]:
    truth = [label for _, label in samples]
    predicted = [model.predict(features)[0] for features, _ in samples]
    return {
        "accuracy": float(accuracy_score(truth, predicted)),
        "f1": float(f1_score(truth, predicted, average="macro", zero_division=0)),
    }


def cross_validate(
    samples: Sequence[Sample],
    alphas: Sequence[float] = ALPHA_GRID,
    folds: int = DEFAULT_FOLDS,
    shuffle: bool = False,
    seed: int = 42,
) -> CrossValidationResult:
    """Pick the smoothing parameter with the best mean held-out accuracy.

    Folds are contiguous, non-overlapping slices of the (optionally
    shuffled) sample order, and every alpha is scored on the same folds.
    Ties keep the alpha listed first.
    """
    if len(samples) < 2:
        raise ValueError("Cross-validation needs at least two samples")
    if not alphas:
        raise ValueError("No alpha values to search")

    n_splits = max(2, min(folds, len(samples)))
    splitter = KFold(n_splits=n_splits, shuffle=shuffle, random_state=seed if shuffle else None)
    splits = list(splitter.split(np.arange(len(samples))))

    mean_accuracy: dict[float, float] = {}
    for alpha in alphas:
        fold_scores = []
        for train_idx, test_idx in splits:
            model = NaiveBayesModel.fit((samples[i] for i in train_idx), alpha=alpha)
            truth = [samples[i][1] for i in test_idx]
            predicted = [model.predict(samples[i][0])[0] for i in test_idx]
            fold_scores.append(accuracy_score(truth, predicted))
        mean_accuracy[alpha] = float(np.mean(fold_scores))

    best_alpha = alphas[0]
    for alpha in alphas[1:]:
        if mean_accuracy[alpha] > mean_accuracy[best_alpha]:
            best_alpha = alpha

    logger.debug("[TRAIN] Cross-validation accuracy by alpha: %s", mean_accuracy)
    return CrossValidationResult(best_alpha=best_alpha, mean_accuracy=mean_accuracy, folds=n_splits)


def train_candidate(
    samples: Sequence[Sample],
    alphas: Sequence[float] = ALPHA_GRID,
    folds: int = DEFAULT_FOLDS,
    holdout_fraction: float = 0.2,
    seed: int = 42,
    version: int = 1,
) -> NaiveBayesModel:
    """Train a new model version with tuned alpha and held-out metrics.

    Small datasets skip the holdout and report training-set metrics.
    """
    samples = list(samples)
    if len(samples) < 2:
        raise ValueError("Training needs at least two samples")

    if len(samples) >= MIN_HOLDOUT_SAMPLES:
        train_idx, test_idx = train_test_split(
            np.arange(len(samples)),
            test_size=holdout_fraction,
            random_state=seed,
            shuffle=True,
        )
        train = [samples[i] for i in train_idx]
        holdout = [samples[i] for i in test_idx]
    else:
        train = samples
        holdout = samples

    selection = cross_validate(train, alphas=alphas, folds=folds)
    metrics = evaluate(NaiveBayesModel.fit(train, alpha=selection.best_alpha), holdout)
    metrics["cv_accuracy"] = selection.mean_accuracy[selection.best_alpha]

    model = NaiveBayesModel.fit(samples, alpha=selection.best_alpha, version=version)
    logger.info(
        "[TRAIN] Candidate v%s: alpha=%s, held-out f1=%.3f, accuracy=%.3f on %s samples",
        version,
        selection.best_alpha,
        metrics["f1"],
        metrics["accuracy"],
        len(samples),
    )
    return model.with_metrics(metrics)
