import asyncio
from collections.abc import Iterable
from time import perf_counter
from typing import Any

from cascade_categorizer.classifiers.naive_bayes import Sample
from cascade_categorizer.classifiers.statistical import StatisticalLayer
from cascade_categorizer.context import Context
from cascade_categorizer.errors import CategorizerError
from cascade_categorizer.logger import get_logger
from cascade_categorizer.models import TransactionRecord
from cascade_categorizer.services.learning import SIMILARITY_INDEX_KIND
from cascade_categorizer.services.model_selection import ALPHA_GRID, train_candidate

logger = get_logger(__name__)

LabeledRecord = tuple[TransactionRecord, str]


class TrainingManager:
    """Bulk (re)training of the statistical model from labeled history.

    A candidate is built off to the side and only replaces the active model
    when its held-out F1 is better.
    """

    def __init__(self, context: Context, statistical: StatisticalLayer, folds: int = 5) -> None:
        self.context = context
        self.statistical = statistical
        self.folds = folds
        self.active = False
        self.status: dict[str, Any] = {"stage": "idle", "active": False}

    def get_status(self) -> dict[str, Any]:
        status = dict(self.status)
        status["active"] = self.active
        return status

    async def train_bulk(self, labeled: Iterable[LabeledRecord]) -> dict[str, Any]:
        return await asyncio.to_thread(self.train, list(labeled))

    def train(self, labeled: list[LabeledRecord]) -> dict[str, Any]:
        if self.active:
            raise CategorizerError("Training already in progress")
        self.active = True
        self.status.clear()
        self.status.update({"stage": "start", "active": True})
        started = perf_counter()
        logger.info("[TRAIN] Starting bulk training on %s labeled records...", len(labeled))
        try:
            return self._train(labeled, started)
        finally:
            self.active = False
            self.status["active"] = False

    def _train(self, labeled: list[LabeledRecord], started: float) -> dict[str, Any]:
        context = self.context
        catalog = context.catalog
        samples: list[Sample] = []
        kept: list[LabeledRecord] = []
        skipped = 0
        for record, category_id in labeled:
            if len(catalog) and category_id not in catalog:
                skipped += 1
                continue
            samples.append((context.provider.features(record), category_id))
            kept.append((record, category_id))

        if len({label for _, label in samples}) < 2:
            logger.warning("[TRAIN] Need at least two categories to train; got %s samples.", len(samples))
            result = {"status": "skipped", "trained": 0, "skipped": skipped, "total": len(labeled)}
            self.status.update({"stage": "complete", **result})
            return result

        self.status.update({"stage": "training", "samples": len(samples)})
        active = context.models.current
        candidate = train_candidate(
            samples,
            alphas=ALPHA_GRID,
            folds=self.folds,
            version=(active.version + 1) if active else 1,
        )
        activated = context.models.publish_if_better(candidate)
        if activated:
            self.statistical.persist()

        self.status.update({"stage": "indexing"})
        embeddings = []
        for record, category_id in kept:
            context.store.save_record(record)
            context.history.record_label(record)
            vector = context.provider.embed(record)
            if vector is not None:
                embeddings.append((record.id, vector, category_id))
        indexed = context.index.add_many(embeddings)
        if indexed:
            context.store.save_model(SIMILARITY_INDEX_KIND, context.index.to_payload())
        context.history.invalidate()

        current = context.models.current
        result = {
            "status": "success",
            "trained": len(samples),
            "skipped": skipped,
            "total": len(labeled),
            "indexed": indexed,
            "activated": activated,
            "version": current.version if current else None,
            "alpha": candidate.alpha,
            "f1": candidate.metrics.get("f1"),
            "accuracy": candidate.metrics.get("accuracy"),
            "seconds": round(perf_counter() - started, 3),
        }
        logger.info(
            "[TRAIN] Complete! Trained: %s, Skipped: %s, Activated: %s (f1 %.3f)",
            len(samples),
            skipped,
            activated,
            candidate.metrics.get("f1", 0.0),
        )
        self.status.update({"stage": "complete", **result})
        return result
