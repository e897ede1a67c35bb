from abc import ABC, abstractmethod
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


class Store(ABC):
    """Persistence boundary of the categorization core.

    Implementations only need read/write and compare-and-set semantics;
    every method must be safe to call from several threads.
    """

    @abstractmethod
    def save_record(self, record: TransactionRecord) -> None:
        pass

    @abstractmethod
    def get_record(self, record_id: str) -> TransactionRecord | None:
        pass

    @abstractmethod
    def save_decision(self, decision: ClassificationDecision) -> None:
        pass

    @abstractmethod
    def latest_decision_for(self, record_id: str) -> ClassificationDecision | None:
        pass

    @abstractmethod
    def mark_decision(self, decision_id: str, correct: bool) -> bool:
        """Set the correctness flag; returns False when the decision is unknown."""
        pass

    @abstractmethod
    def recent_decisions(self, since: datetime) -> list[ClassificationDecision]:
        pass

    @abstractmethod
    def get_cache_entry(self, key: str) -> CachedEntry | None:
        pass

    @abstractmethod
    def put_cache_entry(self, entry: CachedEntry) -> None:
        pass

    @abstractmethod
    def get_counter(self, key: str) -> Decimal:
        pass

    @abstractmethod
    def compare_and_set_counter(self, key: str, expected: Decimal, new: Decimal) -> bool:
        pass

    @abstractmethod
    def save_correction(self, event: CorrectionEvent) -> None:
        pass

    @abstractmethod
    def recent_corrections(self, since: datetime) -> list[CorrectionEvent]:
        pass

    @abstractmethod
    def save_rule(self, rule: CorrectionRule) -> None:
        pass

    @abstractmethod
    def list_rules(self) -> list[CorrectionRule]:
        pass

    @abstractmethod
    def delete_rule(self, rule_id: str) -> None:
        pass

    @abstractmethod
    def save_model(self, kind: str, payload: dict[str, Any]) -> None:
        pass

    @abstractmethod
    def load_model(self, kind: str) -> dict[str, Any] | None:
        pass

    @abstractmethod
    def increment_stat(self, namespace: str, key: str, field: str, amount: float = 1.0) -> None:
        pass

    @abstractmethod
    def get_stats(self, namespace: str) -> dict[str, dict[str, float]]:
        pass

    def flush(self) -> None:
        """Persist pending writes; stores without a backing file have none."""

    def close(self) -> None:
        self.flush()
