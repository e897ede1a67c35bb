from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime

from cascade_categorizer.classifiers.cache import CacheLayer
from cascade_categorizer.classifiers.similarity import EmbeddingIndex
from cascade_categorizer.classifiers.statistical import ModelHolder
from cascade_categorizer.core.settings import EngineConfig
from cascade_categorizer.domain.catalog import CategoryCatalog
from cascade_categorizer.domain.features import FeatureProvider
from cascade_categorizer.services.budget import BudgetGuard, CostLedger, utc_now
from cascade_categorizer.services.history import HistoryTracker
from cascade_categorizer.storage.base import Store


@dataclass
class Context:
    """Shared handles passed explicitly to the router and every layer."""

    config: EngineConfig
    store: Store
    catalog: CategoryCatalog
    provider: FeatureProvider
    guard: BudgetGuard
    cache: CacheLayer
    models: ModelHolder
    index: EmbeddingIndex
    history: HistoryTracker
    clock: Callable[[], datetime] = field(default=utc_now)

    @classmethod
    def build(
        cls,
        store: Store,
        catalog: CategoryCatalog,
        config: EngineConfig | None = None,
        provider: FeatureProvider | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> "Context":
        config = config or EngineConfig()
        ledger = CostLedger(store, clock=clock)
        return cls(
            config=config,
            store=store,
            catalog=catalog,
            provider=provider or FeatureProvider(),
            guard=BudgetGuard(
                ledger,
                daily_limit=config.daily_budget,
                monthly_limit=config.monthly_budget,
                warning_ratio=config.budget_warning_ratio,
            ),
            cache=CacheLayer(
                store,
                capacity=config.cache_capacity,
                prefix_length=config.cache_description_prefix,
                clock=clock,
            ),
            models=ModelHolder(),
            index=EmbeddingIndex(),
            history=HistoryTracker(store, clock=clock, window_days=config.history_window_days),
            clock=clock,
        )
