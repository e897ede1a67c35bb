import threading
from collections.abc import Callable

from cascade_categorizer.classifiers.base import ClassificationRequest, Classifier
from cascade_categorizer.classifiers.naive_bayes import NaiveBayesModel
from cascade_categorizer.domain.features import FeatureProvider
from cascade_categorizer.errors import ModelSchemaError, ModelUnavailable
from cascade_categorizer.logger import get_logger
from cascade_categorizer.models import Candidate, Category, Route, TransactionRecord
from cascade_categorizer.storage.base import Store

logger = get_logger(__name__)

MODEL_KIND = "statistical"


class ModelHolder:
    """Reference to the active model version.

    Readers take ``current`` once per prediction. Writers serialize on a
    lock and publish by rebinding the reference, so a reader sees either
    the old or the new version, never a mix.
    """

    def __init__(self, model: NaiveBayesModel | None = None) -> None:
        self._model = model
        self._write_lock = threading.Lock()

    @property
    def current(self) -> NaiveBayesModel | None:
        return self._model

    def publish(self, model: NaiveBayesModel) -> None:
        with self._write_lock:
            self._model = model

    def publish_if_better(self, candidate: NaiveBayesModel) -> bool:
        with self._write_lock:
            active = self._model
            if active is not None:
                active_f1 = active.metrics.get("f1", 0.0)
                candidate_f1 = candidate.metrics.get("f1", 0.0)
                if candidate_f1 <= active_f1:
                    logger.info(
                        "[TRAIN] Keeping model v%s (f1 %.3f); candidate f1 %.3f is not better.",
                        active.version,
                        active_f1,
                        candidate_f1,
                    )
                    return False
                candidate = candidate.with_version(active.version + 1)
            self._model = candidate
            return True

    def update(self, fn: Callable[[NaiveBayesModel | None], NaiveBayesModel]) -> NaiveBayesModel:
        with self._write_lock:
            self._model = fn(self._model)
            return self._model


class StatisticalLayer(Classifier):
    route = Route.STATISTICAL

    def __init__(
        self,
        holder: ModelHolder,
        store: Store,
        provider: FeatureProvider,
        min_classes: int = 2,
        default_alpha: float = 1.0,
    ) -> None:
        self.holder = holder
        self.store = store
        self.provider = provider
        self.min_classes = min_classes
        self.default_alpha = default_alpha

    def load(self) -> bool:
        payload = self.store.load_model(MODEL_KIND)
        if payload is None:
            return False
        try:
            model = NaiveBayesModel.from_dict(payload)
        except ModelSchemaError as exc:
            logger.error("[STATISTICAL] Stored model rejected: %s", exc)
            return False
        self.holder.publish(model)
        logger.info(
            "[STATISTICAL] Loaded model v%s (%s samples, %s classes)",
            model.version,
            model.sample_count,
            len(model.class_counts),
        )
        return True

    def persist(self) -> None:
        model = self.holder.current
        if model is not None:
            self.store.save_model(MODEL_KIND, model.to_dict())

    def active_model(self) -> NaiveBayesModel:
        model = self.holder.current
        if model is None or len(model.class_counts) < self.min_classes:
            raise ModelUnavailable("No statistical model with enough classes has been published")
        return model

    def attempt(self, request: ClassificationRequest) -> Candidate | None:
        model = self.active_model()
        probabilities = model.predict_proba(request.features)
        category_id, confidence = model.predict(request.features)
        ranked = sorted(probabilities.values(), reverse=True)
        margin = ranked[0] - ranked[1] if len(ranked) > 1 else ranked[0]
        return Candidate(
            category_id=category_id,
            confidence=min(1.0, max(0.0, confidence)),
            route=Route.STATISTICAL,
            reasoning=f"Naive Bayes v{model.version} (margin {margin:.2f})",
            metadata={"probabilities": probabilities, "model_version": model.version},
        )

    def learn(self, record: TransactionRecord, category: Category) -> None:
        sample = (self.provider.features(record), category.id)

        def apply(model: NaiveBayesModel | None) -> NaiveBayesModel:
            if model is None:
                return NaiveBayesModel.fit([sample], alpha=self.default_alpha)
            return model.updated([sample])

        model = self.holder.update(apply)
        self.store.save_model(MODEL_KIND, model.to_dict())
        logger.debug("[STATISTICAL] Incremental update -> v%s", model.version)
