from abc import ABC, abstractmethod
from functools import cached_property

import numpy as np

from cascade_categorizer.domain.features import FeatureProvider
from cascade_categorizer.models import Candidate, Category, ComplexityAssessment, Route, TransactionRecord


class ClassificationRequest:
    """Per-request state handed to every layer; never shared across requests."""

    def __init__(
        self,
        record: TransactionRecord,
        provider: FeatureProvider,
        complexity: ComplexityAssessment,
    ) -> None:
        self.record = record
        self.provider = provider
        self.complexity = complexity

    @cached_property
    def features(self) -> dict[str, float]:
        return self.provider.features(self.record)

    @cached_property
    def embedding(self) -> np.ndarray | None:
        return self.provider.embed(self.record)

    @property
    def merchant_ambiguity(self) -> float:
        return self.complexity.factors.get("merchant_ambiguity", 0.0)


class Classifier(ABC):
    route: Route

    @abstractmethod
    def attempt(self, request: ClassificationRequest) -> Candidate | None:
        """Return this layer's best candidate, or None when it has no answer."""
        pass

    def learn(self, record: TransactionRecord, category: Category) -> None:
        """Learn from a confirmed record-category pair. Most layers ignore it."""
