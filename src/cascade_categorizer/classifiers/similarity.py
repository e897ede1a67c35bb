import math
import threading
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

import numpy as np
from numpy.typing import NDArray

from cascade_categorizer.classifiers.base import ClassificationRequest, Classifier
from cascade_categorizer.logger import get_logger
from cascade_categorizer.models import Candidate, Route

logger = get_logger(__name__)

SIGMOID_STEEPNESS = 10.0
SIGMOID_MIDPOINT = 0.5


def squash(similarity: float) -> float:
    """Map a cosine similarity onto (0, 1), pushing scores away from the midpoint."""
    return 1.0 / (1.0 + math.exp(-SIGMOID_STEEPNESS * (similarity - SIGMOID_MIDPOINT)))


def _normalize_rows(matrix: NDArray[np.float32]) -> NDArray[np.float32]:
    norms = np.linalg.norm(matrix, axis=1, keepdims=True)
    norms[norms == 0] = 1.0
    return matrix / norms


@dataclass(frozen=True)
class SimilarityMatch:
    category_id: str
    confidence: float
    agreement: float
    mean_similarity: float
    neighbors: int


@dataclass(frozen=True)
class _IndexSnapshot:
    record_ids: tuple[str, ...]
    labels: tuple[str, ...]
    matrix: NDArray[np.float32]


class EmbeddingIndex:
    """Labeled embeddings for nearest-neighbour lookup.

    Writers build a new snapshot and swap it in; readers grab the current
    snapshot once and never see a partially built matrix.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._snapshot: _IndexSnapshot | None = None

    def __len__(self) -> int:
        snapshot = self._snapshot
        return len(snapshot.labels) if snapshot else 0

    @property
    def dimensions(self) -> int | None:
        snapshot = self._snapshot
        return int(snapshot.matrix.shape[1]) if snapshot else None

    def add(self, record_id: str, vector: NDArray[np.float32], category_id: str) -> None:
        self.add_many([(record_id, vector, category_id)])

    def add_many(self, items: Iterable[tuple[str, NDArray[np.float32], str]]) -> int:
        items = list(items)
        if not items:
            return 0
        with self._lock:
            current = self._snapshot
            rows: dict[str, tuple[NDArray[np.float32], str]] = {}
            if current is not None:
                for i, record_id in enumerate(current.record_ids):
                    rows[record_id] = (current.matrix[i], current.labels[i])
            dims = current.matrix.shape[1] if current is not None else None
            added = 0
            for record_id, vector, category_id in items:
                vector = np.asarray(vector, dtype=np.float32)
                if dims is None:
                    dims = vector.shape[0]
                if vector.shape != (dims,):
                    logger.warning(
                        "[SIMILARITY] Skipping embedding for %s: expected %s dims, got %s",
                        record_id,
                        dims,
                        vector.shape,
                    )
                    continue
                # Re-labeling a record replaces its previous row.
                rows.pop(record_id, None)
                rows[record_id] = (vector, category_id)
                added += 1
            if rows:
                record_ids = tuple(rows)
                matrix = np.vstack([rows[r][0] for r in record_ids]).astype(np.float32)
                self._snapshot = _IndexSnapshot(
                    record_ids=record_ids,
                    labels=tuple(rows[r][1] for r in record_ids),
                    matrix=_normalize_rows(matrix),
                )
        return added

    def find_similar(
        self,
        embedding: NDArray[np.float32],
        k: int,
        threshold: float,
        *,
        min_neighbors: int = 3,
        min_similarity: float = 0.5,
        merchant_ambiguity: float = 0.0,
        ambiguity_cutoff: float = 0.8,
    ) -> SimilarityMatch | None:
        if merchant_ambiguity > ambiguity_cutoff:
            return None
        snapshot = self._snapshot
        if snapshot is None or len(snapshot.labels) < min_neighbors:
            return None

        query = np.asarray(embedding, dtype=np.float32)
        if query.shape != (snapshot.matrix.shape[1],):
            logger.warning(
                "[SIMILARITY] Query has %s dims, index has %s",
                query.shape,
                snapshot.matrix.shape[1],
            )
            return None
        norm = float(np.linalg.norm(query))
        if norm == 0.0:
            return None

        similarities = snapshot.matrix @ (query / norm)
        order = np.argsort(-similarities, kind="stable")[:k]
        neighbors = [
            (snapshot.labels[i], float(similarities[i]))
            for i in order
            if similarities[i] >= min_similarity
        ]
        if len(neighbors) < min_neighbors:
            return None

        votes: dict[str, list[float]] = {}
        for label, score in neighbors:
            votes.setdefault(label, []).append(score)
        majority = sorted(votes, key=lambda label: (-len(votes[label]), -sum(votes[label]), label))[0]

        agreeing = votes[majority]
        agreement = len(agreeing) / len(neighbors)
        mean_similarity = sum(agreeing) / len(agreeing)
        confidence = min(1.0, max(0.0, agreement * squash(mean_similarity)))
        if confidence < threshold:
            return None
        return SimilarityMatch(
            category_id=majority,
            confidence=confidence,
            agreement=agreement,
            mean_similarity=mean_similarity,
            neighbors=len(neighbors),
        )

    def to_payload(self) -> dict[str, Any]:
        snapshot = self._snapshot
        if snapshot is None:
            return {"record_ids": [], "labels": [], "vectors": []}
        return {
            "record_ids": list(snapshot.record_ids),
            "labels": list(snapshot.labels),
            "vectors": [[round(float(v), 6) for v in row] for row in snapshot.matrix],
        }

    def load_payload(self, payload: dict[str, Any]) -> int:
        return self.add_many(
            (record_id, np.asarray(vector, dtype=np.float32), label)
            for record_id, label, vector in zip(
                payload.get("record_ids", []),
                payload.get("labels", []),
                payload.get("vectors", []),
            )
        )

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "EmbeddingIndex":
        index = cls()
        index.load_payload(payload)
        return index


class SimilarityLayer(Classifier):
    route = Route.SIMILARITY

    def __init__(
        self,
        index: EmbeddingIndex,
        k: int = 5,
        threshold: float = 0.9,
        min_neighbors: int = 3,
        min_similarity: float = 0.5,
        ambiguity_cutoff: float = 0.8,
    ) -> None:
        self.index = index
        self.k = k
        self.threshold = threshold
        self.min_neighbors = min_neighbors
        self.min_similarity = min_similarity
        self.ambiguity_cutoff = ambiguity_cutoff

    def attempt(self, request: ClassificationRequest) -> Candidate | None:
        if len(self.index) < self.min_neighbors:
            return None
        embedding = request.embedding
        if embedding is None:
            return None
        match = self.index.find_similar(
            embedding,
            self.k,
            self.threshold,
            min_neighbors=self.min_neighbors,
            min_similarity=self.min_similarity,
            merchant_ambiguity=request.merchant_ambiguity,
            ambiguity_cutoff=self.ambiguity_cutoff,
        )
        if match is None:
            return None
        return Candidate(
            category_id=match.category_id,
            confidence=match.confidence,
            route=Route.SIMILARITY,
            reasoning=(
                f"{match.agreement:.0%} of {match.neighbors} similar transactions agree "
                f"(mean similarity {match.mean_similarity:.2f})"
            ),
            metadata={"neighbors": match.neighbors, "agreement": match.agreement},
        )
