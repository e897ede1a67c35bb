import threading
from collections import OrderedDict
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import Any

from cascade_categorizer.classifiers.base import ClassificationRequest, Classifier
from cascade_categorizer.domain.normalize import fingerprint
from cascade_categorizer.logger import get_logger
from cascade_categorizer.models import CachedEntry, Candidate, Route, TransactionRecord
from cascade_categorizer.storage.base import Store

logger = get_logger(__name__)

# (minimum confidence, time to live), highest tier first.
TTL_TIERS: tuple[tuple[float, timedelta], ...] = (
    (0.95, timedelta(days=30)),
    (0.90, timedelta(days=7)),
    (0.85, timedelta(days=1)),
)
DEFAULT_TTL = timedelta(hours=1)


def ttl_for(confidence: float) -> timedelta:
    for minimum, ttl in TTL_TIERS:
        if confidence >= minimum:
            return ttl
    return DEFAULT_TTL


class CacheLayer(Classifier):
    """Exact-match cache keyed by the record fingerprint.

    A bounded in-process LRU sits in front of the durable store. Reads fall
    through to the store on a local miss; expired entries count as misses
    and are left in place until overwritten.
    """

    route = Route.CACHE

    def __init__(
        self,
        store: Store,
        capacity: int = 2048,
        prefix_length: int = 32,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self.store = store
        self.capacity = capacity
        self.prefix_length = prefix_length
        self.clock = clock
        self._local: OrderedDict[str, CachedEntry] = OrderedDict()
        self._lock = threading.Lock()

    def key_for(self, record: TransactionRecord) -> str:
        return fingerprint(record, self.prefix_length)

    def _remember(self, entry: CachedEntry) -> None:
        with self._lock:
            self._local[entry.key] = entry
            self._local.move_to_end(entry.key)
            while len(self._local) > self.capacity:
                self._local.popitem(last=False)

    def get(self, record: TransactionRecord) -> CachedEntry | None:
        key = self.key_for(record)
        with self._lock:
            entry = self._local.get(key)
            if entry is not None:
                self._local.move_to_end(key)
        if entry is None:
            entry = self.store.get_cache_entry(key)
            if entry is None:
                return None
            self._remember(entry)
        if entry.is_expired(self.clock()):
            return None
        return entry

    def put(
        self,
        record: TransactionRecord,
        category_id: str,
        confidence: float,
        metadata: dict[str, Any] | None = None,
    ) -> CachedEntry:
        now = self.clock()
        entry = CachedEntry(
            key=self.key_for(record),
            category_id=category_id,
            confidence=confidence,
            metadata=metadata or {},
            created_at=now,
            expires_at=now + ttl_for(confidence),
        )
        self.store.put_cache_entry(entry)
        self._remember(entry)
        return entry

    def attempt(self, request: ClassificationRequest) -> Candidate | None:
        entry = self.get(request.record)
        if entry is None:
            return None
        return Candidate(
            category_id=entry.category_id,
            confidence=entry.confidence,
            route=Route.CACHE,
            reasoning=f"Cached result from {entry.metadata.get('route', 'unknown')} layer",
            metadata={"expires_at": entry.expires_at.isoformat()},
        )
