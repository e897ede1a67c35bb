import math
import queue
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any

from rapidfuzz import fuzz

from cascade_categorizer.classifiers.statistical import StatisticalLayer
from cascade_categorizer.context import Context
from cascade_categorizer.domain.normalize import normalize_description, normalize_merchant
from cascade_categorizer.logger import get_logger
from cascade_categorizer.models import (
    Category,
    ClassificationDecision,
    CorrectionEvent,
    CorrectionRule,
    TransactionRecord,
)
from cascade_categorizer.services.routing import ROUTES
from cascade_categorizer.services.rules import RuleBook

logger = get_logger(__name__)

AMOUNT_RATIO_THRESHOLD = 0.8
DESCRIPTION_SIMILARITY_THRESHOLD = 85.0
CONSISTENCY_WEIGHT = 0.6
RECENCY_WEIGHT = 0.4
RECENCY_HALF_LIFE_DAYS = 7.0
SIMILARITY_INDEX_KIND = "similarity_index"


@dataclass(frozen=True)
class Correction:
    record_id: str
    predicted_category_id: str
    actual_category_id: str


def amount_ratio(a: Decimal, b: Decimal) -> float:
    a, b = abs(a), abs(b)
    if a == 0 and b == 0:
        return 1.0
    if a == 0 or b == 0:
        return 0.0
    return float(min(a, b) / max(a, b))


def is_similar(event: CorrectionEvent, other: CorrectionEvent) -> bool:
    if event.merchant and event.merchant == other.merchant:
        return True
    if amount_ratio(event.amount, other.amount) > AMOUNT_RATIO_THRESHOLD:
        return True
    if event.description and other.description:
        score = fuzz.token_sort_ratio(event.description, other.description)
        return score >= DESCRIPTION_SIMILARITY_THRESHOLD
    return False


def recency_weight(created_at: datetime, now: datetime) -> float:
    age_days = max(0.0, (now - created_at).total_seconds() / 86400)
    return math.exp(-age_days / RECENCY_HALF_LIFE_DAYS)


class LearningPipeline:
    """Applies user corrections out of band from classification requests.

    ``submit`` only enqueues; a daemon worker thread does the work, so a
    backlog never delays live requests, which keep using whatever model
    version was last published.
    """

    def __init__(self, context: Context, statistical: StatisticalLayer, rules: RuleBook | None = None) -> None:
        self.context = context
        self.statistical = statistical
        self.rules = rules or RuleBook(context.store)
        self._queue: queue.Queue[Correction | None] = queue.Queue()
        self._worker: threading.Thread | None = None
        self._lock = threading.Lock()
        self.metrics: dict[str, int] = {
            "corrections_processed": 0,
            "confirmations": 0,
            "rules_created": 0,
            "rules_refreshed": 0,
            "failures": 0,
            "skipped_unknown_record": 0,
        }

    def start(self) -> None:
        with self._lock:
            if self._worker is not None and self._worker.is_alive():
                return
            self._worker = threading.Thread(target=self._run, name="learning-pipeline", daemon=True)
            self._worker.start()

    def stop(self, timeout: float | None = 5.0) -> None:
        with self._lock:
            worker = self._worker
            self._worker = None
        if worker is not None:
            self._queue.put(None)
            worker.join(timeout)

    def submit(self, correction: Correction) -> None:
        self.start()
        self._queue.put(correction)

    def join(self) -> None:
        """Block until every submitted correction has been processed."""
        self._queue.join()

    @property
    def backlog(self) -> int:
        return self._queue.qsize()

    def _run(self) -> None:
        while True:
            correction = self._queue.get()
            try:
                if correction is None:
                    return
                self.process(correction)
            except Exception:
                self.metrics["failures"] += 1
                logger.exception("[LEARN] Failed to apply correction %s", correction)
            finally:
                self._queue.task_done()

    def process(self, correction: Correction) -> CorrectionRule | None:
        context = self.context
        record = context.store.get_record(correction.record_id)
        if record is None:
            self.metrics["skipped_unknown_record"] += 1
            logger.warning("[LEARN] Unknown record %s; correction ignored.", correction.record_id)
            return None
        actual = context.catalog.get(correction.actual_category_id)
        if actual is None and len(context.catalog):
            logger.warning(
                "[LEARN] Unknown category '%s' for record %s; correction ignored.",
                correction.actual_category_id,
                record.id,
            )
            return None

        now = context.clock()
        is_correct = correction.predicted_category_id == correction.actual_category_id
        decision = context.store.latest_decision_for(record.id)
        if decision is not None:
            context.store.mark_decision(decision.id, is_correct)
            self._adjust_route_counters(decision, is_correct)

        rule = None
        if is_correct:
            self.metrics["confirmations"] += 1
        else:
            event = CorrectionEvent(
                record_id=record.id,
                merchant=normalize_merchant(record.merchant_name),
                description=normalize_description(record.description),
                amount=abs(record.amount),
                predicted_category_id=correction.predicted_category_id,
                actual_category_id=correction.actual_category_id,
                created_at=now,
            )
            context.store.save_correction(event)
            rule = self._synthesize_rule(event, now)

        self._learn_label(record, correction.actual_category_id)
        context.history.invalidate()
        self.metrics["corrections_processed"] += 1
        logger.info(
            "[LEARN] Record %s: %s -> %s (%s)",
            record.id,
            correction.predicted_category_id,
            correction.actual_category_id,
            "confirmed" if is_correct else "corrected",
        )
        return rule

    def _adjust_route_counters(self, decision: ClassificationDecision, is_correct: bool) -> None:
        field = "rewards" if is_correct else "penalties"
        self.context.store.increment_stat(ROUTES, decision.route.value, field)

    def _learn_label(self, record: TransactionRecord, category_id: str) -> None:
        context = self.context
        category = context.catalog.get(category_id)
        if category is None:
            category = Category(id=category_id, name=category_id)
        self.statistical.learn(record, category)
        context.history.record_label(record)
        context.cache.put(record, category.id, 1.0, {"route": "feedback"})

        embedding = context.provider.embed(record)
        if embedding is not None:
            context.index.add(record.id, embedding, category.id)
            context.store.save_model(SIMILARITY_INDEX_KIND, context.index.to_payload())

    def _synthesize_rule(self, event: CorrectionEvent, now: datetime) -> CorrectionRule | None:
        config = self.context.config
        window_start = now - timedelta(days=config.rule_window_days)
        recent = [
            other
            for other in self.context.store.recent_corrections(window_start)
            if other.predicted_category_id == event.predicted_category_id and is_similar(event, other)
        ]
        matching = [other for other in recent if other.actual_category_id == event.actual_category_id]
        if len(matching) < config.rule_min_corrections:
            return None

        consistency = len(matching) / len(recent)
        recency = sum(recency_weight(other.created_at, now) for other in matching) / len(matching)
        confidence = min(1.0, max(0.01, CONSISTENCY_WEIGHT * consistency + RECENCY_WEIGHT * recency))
        conditions = self._conditions(event, matching)
        expires_at = now + timedelta(days=config.rule_ttl_days)

        existing = self.rules.find(conditions["merchant"], event.predicted_category_id, event.actual_category_id)
        if existing is not None:
            rule = existing.model_copy(
                update={
                    "confidence": confidence,
                    "support": len(matching),
                    "conditions": conditions,
                    "expires_at": expires_at,
                }
            )
            self.context.store.save_rule(rule)
            self.metrics["rules_refreshed"] += 1
            logger.info("[LEARN] Refreshed correction rule %s (confidence %.2f)", rule.id, confidence)
            return rule

        rule = CorrectionRule(
            from_category_id=event.predicted_category_id,
            to_category_id=event.actual_category_id,
            conditions=conditions,
            confidence=confidence,
            support=len(matching),
            created_at=now,
            expires_at=expires_at,
        )
        self.context.store.save_rule(rule)
        self.metrics["rules_created"] += 1
        logger.info(
            "[LEARN] New correction rule %s: %s -> %s for '%s' (confidence %.2f, support %s)",
            rule.id,
            rule.from_category_id,
            rule.to_category_id,
            conditions["merchant"] or "*",
            confidence,
            len(matching),
        )
        return rule

    @staticmethod
    def _conditions(event: CorrectionEvent, matching: list[CorrectionEvent]) -> dict[str, Any]:
        amounts = [other.amount for other in matching]
        same_merchant = all(other.merchant == event.merchant for other in matching)
        conditions: dict[str, Any] = {
            "merchant": event.merchant if same_merchant else "",
            "description": event.description[:64],
        }
        if not same_merchant:
            # Without a shared merchant the amount band is the trigger.
            conditions["amount_min"] = str(min(amounts) * Decimal("0.8"))
            conditions["amount_max"] = str(max(amounts) * Decimal("1.25"))
        return conditions
