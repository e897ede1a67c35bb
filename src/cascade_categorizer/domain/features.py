from collections.abc import Callable, Sequence
from decimal import Decimal

import numpy as np
from sklearn.feature_extraction.text import HashingVectorizer

from cascade_categorizer.domain.normalize import (
    normalize_description,
    normalize_merchant,
    record_text,
)
from cascade_categorizer.models import TransactionRecord

EmbeddingFunction = Callable[[str], Sequence[float]]

# Upper bounds (exclusive) on the absolute amount for each bucket.
AMOUNT_BUCKETS: tuple[tuple[Decimal, str], ...] = (
    (Decimal("20"), "small"),
    (Decimal("100"), "medium"),
    (Decimal("500"), "large"),
)


def amount_bucket(amount: Decimal) -> str:
    value = abs(amount)
    for upper, name in AMOUNT_BUCKETS:
        if value < upper:
            return name
    return "xlarge"


def extract_features(record: TransactionRecord) -> dict[str, float]:
    """Sparse bag-of-features for the statistical classifier."""
    features: dict[str, float] = {}
    merchant = normalize_merchant(record.merchant_name)
    text = f"{merchant} {normalize_description(record.description)}"
    for token in text.split():
        if len(token) < 2 or token.isdigit():
            continue
        key = f"word_{token}"
        features[key] = features.get(key, 0.0) + 1.0
    if merchant:
        features[f"merchant_{merchant.replace(' ', '_')}"] = 1.0
    features[f"amount_bucket_{amount_bucket(record.amount)}"] = 1.0
    features["direction_debit" if record.amount < 0 else "direction_credit"] = 1.0
    return features


class HashingEmbedder:
    """Character n-gram hashing embedder used when no external model is wired.

    Deterministic and stateless, so vectors stay comparable across restarts.
    """

    def __init__(self, dimensions: int = 384) -> None:
        self.dimensions = dimensions
        self._vectorizer = HashingVectorizer(
            analyzer="char_wb",
            ngram_range=(3, 5),
            n_features=dimensions,
            alternate_sign=False,
            norm="l2",
        )

    def __call__(self, text: str) -> list[float]:
        matrix = self._vectorizer.transform([text.casefold()])
        return matrix.toarray()[0].tolist()


class FeatureProvider:
    def __init__(self, embedding_function: EmbeddingFunction | None = None) -> None:
        self.embedding_function = embedding_function or HashingEmbedder()

    def features(self, record: TransactionRecord) -> dict[str, float]:
        return extract_features(record)

    def embed(self, record: TransactionRecord) -> np.ndarray | None:
        text = record_text(record)
        if not text.strip():
            return None
        vector = np.asarray(self.embedding_function(text), dtype=np.float32)
        if vector.ndim != 1 or not vector.size:
            return None
        return vector
