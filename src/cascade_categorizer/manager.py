import os
from collections.abc import Callable, Iterable
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import Any

from cascade_categorizer.classifiers.base import Classifier
from cascade_categorizer.classifiers.remote import RemoteClassifier
from cascade_categorizer.classifiers.similarity import SimilarityLayer
from cascade_categorizer.classifiers.statistical import StatisticalLayer
from cascade_categorizer.context import Context
from cascade_categorizer.core.settings import EngineConfig
from cascade_categorizer.domain.catalog import CategoryCatalog
from cascade_categorizer.domain.features import FeatureProvider
from cascade_categorizer.errors import ValidationError
from cascade_categorizer.logger import get_logger
from cascade_categorizer.models import (
    Category,
    ClassificationResult,
    TransactionRecord,
    UsageReport,
)
from cascade_categorizer.services.budget import utc_now
from cascade_categorizer.services.learning import SIMILARITY_INDEX_KIND, Correction, LearningPipeline
from cascade_categorizer.services.routing import ROUTES, Router
from cascade_categorizer.services.rules import RuleBook
from cascade_categorizer.services.training import LabeledRecord, TrainingManager
from cascade_categorizer.storage.base import Store
from cascade_categorizer.storage.json_store import JsonFileStore
from cascade_categorizer.storage.memory import InMemoryStore

logger = get_logger(__name__)

STATE_FILENAME = "categorizer_state.json"


def validate(record: TransactionRecord) -> None:
    if not record.id or not record.id.strip():
        raise ValidationError("id", "must not be empty")
    if not (record.merchant_name or "").strip() and not (record.description or "").strip():
        raise ValidationError("merchant_name", "merchant name or description is required")
    if not record.amount.is_finite():
        raise ValidationError("amount", "must be a finite number")
    currency = (record.currency or "").strip()
    if len(currency) != 3 or not currency.isalpha():
        raise ValidationError("currency", f"'{record.currency}' is not a 3-letter currency code")


class CategorizerService:
    """Entry point of the engine.

    Wires the layer cascade (cache, similarity, statistical, remote) around
    one explicit ``Context`` and owns the background learning pipeline.
    """

    def __init__(
        self,
        categories: Iterable[Category] = (),
        config: EngineConfig | None = None,
        store: Store | None = None,
        data_dir: str | None = None,
        provider: FeatureProvider | None = None,
        client: Any | None = None,
        clock: Callable[[], datetime] = utc_now,
        batch_workers: int = 4,
    ) -> None:
        config = config or EngineConfig()
        if store is None:
            store = JsonFileStore(os.path.join(data_dir, STATE_FILENAME)) if data_dir else InMemoryStore()
        self.context = Context.build(
            store,
            CategoryCatalog(categories),
            config=config,
            provider=provider,
            clock=clock,
        )
        context = self.context

        self.rules = RuleBook(context.store)
        self.statistical = StatisticalLayer(
            context.models,
            context.store,
            context.provider,
            min_classes=config.statistical_min_classes,
        )
        self.similarity = SimilarityLayer(
            context.index,
            k=config.similarity_k,
            threshold=config.similarity_threshold,
            min_neighbors=config.similarity_min_neighbors,
            min_similarity=config.similarity_min_score,
            ambiguity_cutoff=config.similarity_ambiguity_cutoff,
        )
        self.layers: list[Classifier] = [context.cache, self.similarity, self.statistical]

        self.remote = RemoteClassifier(context.guard, context.catalog, config, client=client)
        if self.remote.client is None:
            logger.warning("OPENAI_API_KEY not found. Remote classifier disabled.")
        else:
            logger.info(
                "Remote classifier enabled: models=%s/%s/%s",
                config.model_cheap,
                config.model_standard,
                config.model_premium,
            )

        self.router = Router(context, self.layers, remote=self.remote, rules=self.rules)
        self.learning = LearningPipeline(context, self.statistical, rules=self.rules)
        self.trainer = TrainingManager(context, self.statistical)
        self._batch_executor = ThreadPoolExecutor(max_workers=batch_workers, thread_name_prefix="classify-batch")

        self._restore()

    def _restore(self) -> None:
        context = self.context
        self.statistical.load()
        payload = context.store.load_model(SIMILARITY_INDEX_KIND)
        if payload:
            context.index.load_payload(payload)
            logger.info("[SIMILARITY] Restored %s labeled embeddings", len(context.index))
        self.rules.prune_expired(context.clock())

    @property
    def catalog(self) -> CategoryCatalog:
        return self.context.catalog

    def classify(self, record: TransactionRecord) -> ClassificationResult:
        validate(record)
        return self.router.route(record)

    def classify_batch(self, records: Iterable[TransactionRecord]) -> list[ClassificationResult]:
        records = list(records)
        for record in records:
            validate(record)
        if not records:
            return []
        logger.info("[BATCH] Classifying %s records", len(records))
        return list(self._batch_executor.map(self.router.route, records))

    def submit_correction(
        self,
        record_id: str,
        predicted_category_id: str,
        actual_category_id: str,
    ) -> None:
        """Queue a user correction; learning happens off the request path."""
        if not record_id:
            raise ValidationError("record_id", "must not be empty")
        if not actual_category_id:
            raise ValidationError("actual_category_id", "must not be empty")
        if self.context.store.get_record(record_id) is None:
            raise ValidationError("record_id", f"unknown record '{record_id}'")
        if len(self.catalog) and actual_category_id not in self.catalog:
            raise ValidationError("actual_category_id", f"unknown category '{actual_category_id}'")
        self.learning.submit(
            Correction(
                record_id=record_id,
                predicted_category_id=predicted_category_id or "",
                actual_category_id=actual_category_id,
            )
        )

    def usage_report(self) -> UsageReport:
        return self.context.guard.usage_report()

    def train(self, labeled: Iterable[LabeledRecord]) -> dict[str, Any]:
        labeled = list(labeled)
        for record, _ in labeled:
            validate(record)
        return self.trainer.train(labeled)

    def metrics(self) -> dict[str, Any]:
        context = self.context
        routes = context.store.get_stats(ROUTES)
        decisions = sum(stats.get("decisions", 0) for stats in routes.values())
        model = context.models.current
        return {
            "decisions": int(decisions),
            "routes": {
                route: {
                    "decisions": int(stats.get("decisions", 0)),
                    "share": (stats.get("decisions", 0) / decisions) if decisions else 0.0,
                    "rewards": int(stats.get("rewards", 0)),
                    "penalties": int(stats.get("penalties", 0)),
                }
                for route, stats in sorted(routes.items())
            },
            "learning": {**self.learning.metrics, "backlog": self.learning.backlog},
            "model_version": model.version if model else None,
            "indexed_embeddings": len(context.index),
            "active_rules": len(self.rules.active(context.clock())),
            "budget": context.guard.status().model_dump(mode="json"),
            "remote_breaker": self.remote.breaker.state,
        }

    def health(self) -> dict[str, Any]:
        context = self.context
        status = context.guard.status()
        checks = {
            "catalog": len(context.catalog) > 0,
            "statistical_model": context.models.current is not None,
            "remote": self.remote.available,
            "budget": not status.remote_disabled,
        }
        # Only an empty catalog makes the engine unusable; the rest degrade.
        state = "ok" if all(checks.values()) else ("degraded" if checks["catalog"] else "unhealthy")
        return {"status": state, "checks": checks}

    def healthy(self) -> bool:
        return self.health()["status"] != "unhealthy"

    def close(self) -> None:
        self.learning.stop()
        self.remote.close()
        self._batch_executor.shutdown(wait=False, cancel_futures=True)
        self.context.store.close()
        logger.info("Categorizer service closed.")
