import json
import os
import threading
from decimal import Decimal
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from cascade_categorizer.logger import get_logger
from cascade_categorizer.models import (
    CachedEntry,
    ClassificationDecision,
    CorrectionEvent,
    CorrectionRule,
    TransactionRecord,
)
from cascade_categorizer.storage.memory import InMemoryStore

logger = get_logger(__name__)


class JsonFileStore(InMemoryStore):
    """In-memory store mirrored to a single JSON document.

    Writes only mark the state dirty; a background thread flushes at most
    every ``flush_seconds`` and ``close`` flushes whatever is left. The
    file is replaced atomically so a crash never leaves a half-written
    state behind.
    """

    def __init__(
        self,
        data_path: str = "categorizer_state.json",
        max_records: int = 50_000,
        flush_seconds: float = 1.0,
    ) -> None:
        super().__init__(max_records=max_records)
        self.data_path = data_path
        self.flush_seconds = flush_seconds
        self._dirty = False
        self._write_lock = threading.Lock()
        self._stop = threading.Event()
        self.load()
        self._flusher = threading.Thread(target=self._flush_loop, name="json-store-flush", daemon=True)
        self._flusher.start()

    def load(self) -> None:
        if not os.path.exists(self.data_path):
            return
        try:
            with open(self.data_path, encoding="utf-8") as handle:
                data = json.load(handle)
            self._restore(data)
        except (json.JSONDecodeError, PydanticValidationError, KeyError, TypeError) as exc:
            logger.error("[STORE] Could not load %s, starting empty: %s", self.data_path, exc)

    def _restore(self, data: dict[str, Any]) -> None:
        with self._lock:
            self.records = {
                item["id"]: TransactionRecord.model_validate(item)
                for item in data.get("records", [])
            }
            self.decisions = {}
            self.latest_by_record = {}
            for item in data.get("decisions", []):
                decision = ClassificationDecision.model_validate(item)
                self.decisions[decision.id] = decision
                self.latest_by_record[decision.record_id] = decision.id
            self.cache = {
                item["key"]: CachedEntry.model_validate(item)
                for item in data.get("cache", [])
            }
            self.counters = {key: Decimal(value) for key, value in data.get("counters", {}).items()}
            self.corrections = [CorrectionEvent.model_validate(item) for item in data.get("corrections", [])]
            self.rules = {
                item["id"]: CorrectionRule.model_validate(item)
                for item in data.get("rules", [])
            }
            self.models = data.get("models", {})
            self.stats = data.get("stats", {})

    def _changed(self) -> None:
        self._dirty = True

    def _capture(self) -> dict[str, Any]:
        # Stored models are replaced, never mutated, so shallow copies suffice
        # except for the nested stats counters.
        return {
            "records": list(self.records.values()),
            "decisions": list(self.decisions.values()),
            "cache": list(self.cache.values()),
            "counters": dict(self.counters),
            "corrections": list(self.corrections),
            "rules": list(self.rules.values()),
            "models": dict(self.models),
            "stats": {
                namespace: {key: dict(values) for key, values in entries.items()}
                for namespace, entries in self.stats.items()
            },
        }

    @staticmethod
    def _serialize(captured: dict[str, Any]) -> dict[str, Any]:
        return {
            "records": [record.model_dump(mode="json") for record in captured["records"]],
            "decisions": [decision.model_dump(mode="json") for decision in captured["decisions"]],
            "cache": [entry.model_dump(mode="json") for entry in captured["cache"]],
            "counters": {key: str(value) for key, value in captured["counters"].items()},
            "corrections": [event.model_dump(mode="json") for event in captured["corrections"]],
            "rules": [rule.model_dump(mode="json") for rule in captured["rules"]],
            "models": captured["models"],
            "stats": captured["stats"],
        }

    def flush(self) -> None:
        with self._write_lock:
            with self._lock:
                if not self._dirty:
                    return
                captured = self._capture()
                self._dirty = False
            tmp_path = f"{self.data_path}.tmp"
            try:
                with open(tmp_path, "w", encoding="utf-8") as handle:
                    json.dump(self._serialize(captured), handle)
                os.replace(tmp_path, self.data_path)
            except OSError:
                self._dirty = True
                raise

    def _flush_loop(self) -> None:
        while not self._stop.wait(self.flush_seconds):
            try:
                self.flush()
            except OSError as exc:
                logger.error("[STORE] Could not write %s: %s", self.data_path, exc)

    def close(self) -> None:
        self._stop.set()
        self._flusher.join(timeout=self.flush_seconds + 1.0)
        self.flush()
