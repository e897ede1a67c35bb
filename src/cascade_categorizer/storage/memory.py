import copy
import threading
from datetime import datetime
from decimal import Decimal
from typing import Any

from cascade_categorizer.models import (
    CachedEntry,
    ClassificationDecision,
    CorrectionEvent,
    CorrectionRule,
    TransactionRecord,
)
from cascade_categorizer.storage.base import Store


class InMemoryStore(Store):
    def __init__(self, max_records: int = 50_000) -> None:
        self._lock = threading.RLock()
        self.max_records = max_records
        self.records: dict[str, TransactionRecord] = {}
        self.decisions: dict[str, ClassificationDecision] = {}
        self.latest_by_record: dict[str, str] = {}
        self.cache: dict[str, CachedEntry] = {}
        self.counters: dict[str, Decimal] = {}
        self.corrections: list[CorrectionEvent] = []
        self.rules: dict[str, CorrectionRule] = {}
        self.models: dict[str, dict[str, Any]] = {}
        self.stats: dict[str, dict[str, dict[str, float]]] = {}

    def _changed(self) -> None:
        """Hook for durable subclasses; called with the lock held."""

    def save_record(self, record: TransactionRecord) -> None:
        with self._lock:
            self.records.pop(record.id, None)
            self.records[record.id] = record
            while len(self.records) > self.max_records:
                self.records.pop(next(iter(self.records)))
            self._changed()

    def get_record(self, record_id: str) -> TransactionRecord | None:
        with self._lock:
            return self.records.get(record_id)

    def save_decision(self, decision: ClassificationDecision) -> None:
        with self._lock:
            self.decisions[decision.id] = decision
            self.latest_by_record[decision.record_id] = decision.id
            self._changed()

    def latest_decision_for(self, record_id: str) -> ClassificationDecision | None:
        with self._lock:
            decision_id = self.latest_by_record.get(record_id)
            return self.decisions.get(decision_id) if decision_id else None

    def mark_decision(self, decision_id: str, correct: bool) -> bool:
        with self._lock:
            decision = self.decisions.get(decision_id)
            if decision is None:
                return False
            self.decisions[decision_id] = decision.model_copy(update={"correct": correct})
            self._changed()
            return True

    def recent_decisions(self, since: datetime) -> list[ClassificationDecision]:
        with self._lock:
            return [d for d in self.decisions.values() if d.created_at >= since]

    def get_cache_entry(self, key: str) -> CachedEntry | None:
        with self._lock:
            return self.cache.get(key)

    def put_cache_entry(self, entry: CachedEntry) -> None:
        with self._lock:
            self.cache[entry.key] = entry
            self._changed()

    def get_counter(self, key: str) -> Decimal:
        with self._lock:
            return self.counters.get(key, Decimal("0"))

    def compare_and_set_counter(self, key: str, expected: Decimal, new: Decimal) -> bool:
        with self._lock:
            if self.counters.get(key, Decimal("0")) != expected:
                return False
            self.counters[key] = new
            self._changed()
            return True

    def save_correction(self, event: CorrectionEvent) -> None:
        with self._lock:
            self.corrections.append(event)
            self._changed()

    def recent_corrections(self, since: datetime) -> list[CorrectionEvent]:
        with self._lock:
            return [event for event in self.corrections if event.created_at >= since]

    def save_rule(self, rule: CorrectionRule) -> None:
        with self._lock:
            self.rules[rule.id] = rule
            self._changed()

    def list_rules(self) -> list[CorrectionRule]:
        with self._lock:
            return list(self.rules.values())

    def delete_rule(self, rule_id: str) -> None:
        with self._lock:
            if self.rules.pop(rule_id, None) is not None:
                self._changed()

    def save_model(self, kind: str, payload: dict[str, Any]) -> None:
        with self._lock:
            self.models[kind] = copy.deepcopy(payload)
            self._changed()

    def load_model(self, kind: str) -> dict[str, Any] | None:
        with self._lock:
            payload = self.models.get(kind)
            return copy.deepcopy(payload) if payload is not None else None

    def increment_stat(self, namespace: str, key: str, field: str, amount: float = 1.0) -> None:
        with self._lock:
            entry = self.stats.setdefault(namespace, {}).setdefault(key, {})
            entry[field] = entry.get(field, 0.0) + amount
            self._changed()

    def get_stats(self, namespace: str) -> dict[str, dict[str, float]]:
        with self._lock:
            return {key: dict(values) for key, values in self.stats.get(namespace, {}).items()}
