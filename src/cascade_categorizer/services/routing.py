from collections.abc import Sequence
from decimal import Decimal
from enum import Enum
from time import perf_counter

from cascade_categorizer.classifiers.base import ClassificationRequest, Classifier
from cascade_categorizer.classifiers.remote import RemoteClassifier, RemotePolicy
from cascade_categorizer.context import Context
from cascade_categorizer.errors import BudgetExceeded, ModelUnavailable, RemoteUnavailable
from cascade_categorizer.logger import get_logger
from cascade_categorizer.models import (
    Candidate,
    ClassificationDecision,
    ClassificationResult,
    Route,
    TransactionRecord,
)
from cascade_categorizer.services.complexity import ComplexityAnalyzer
from cascade_categorizer.services.rules import RuleBook

logger = get_logger(__name__)

ROUTES = "routes"


class Stage(str, Enum):
    START = "start"
    CACHE = "cache"
    SIMILARITY = "similarity"
    STATISTICAL = "statistical"
    BUDGET_CHECK = "budget_check"
    REMOTE = "remote"
    DECISION_RECORDED = "decision_recorded"


STAGE_FOR_ROUTE = {
    Route.CACHE: Stage.CACHE,
    Route.SIMILARITY: Stage.SIMILARITY,
    Route.STATISTICAL: Stage.STATISTICAL,
}


class Router:
    """Runs one record through the layer cascade and records the decision.

    Local layers are tried cheapest first; the first candidate that clears
    its layer threshold wins. Otherwise the remote layer may be consulted,
    and failing that the best local candidate is used. Exactly one
    decision is stored per call.
    """

    def __init__(
        self,
        context: Context,
        layers: Sequence[Classifier],
        remote: RemoteClassifier | None = None,
        analyzer: ComplexityAnalyzer | None = None,
        policy: RemotePolicy | None = None,
        rules: RuleBook | None = None,
    ) -> None:
        self.context = context
        self.layers = list(layers)
        self.remote = remote
        self.analyzer = analyzer or ComplexityAnalyzer()
        self.policy = policy or RemotePolicy(context.config)
        self.rules = rules or RuleBook(context.store)
        config = context.config
        self.thresholds = {
            Route.CACHE: config.cache_threshold,
            Route.SIMILARITY: config.similarity_threshold,
            Route.STATISTICAL: config.statistical_threshold,
        }

    def route(self, record: TransactionRecord) -> ClassificationResult:
        started = perf_counter()
        stage = Stage.START
        context = self.context
        context.store.save_record(record)

        snapshot = context.history.snapshot()
        request = ClassificationRequest(
            record,
            context.provider,
            self.analyzer.analyze(record, snapshot),
        )
        trail: list[str] = []
        best: Candidate | None = None
        statistical: Candidate | None = None
        accepted: Candidate | None = None
        cost = Decimal("0")

        for layer in self.layers:
            stage = STAGE_FOR_ROUTE.get(layer.route, stage)
            candidate = self._attempt(layer, request, trail)
            if candidate is None:
                continue
            if layer.route is Route.STATISTICAL:
                request.complexity = self.analyzer.analyze(
                    record,
                    snapshot,
                    probabilities=candidate.metadata.get("probabilities"),
                )
                candidate = self._apply_rules(record, candidate, trail)
                statistical = candidate
            if best is None or candidate.confidence > best.confidence:
                best = candidate
            if candidate.confidence >= self.thresholds.get(layer.route, 1.0):
                accepted = candidate
                break
            trail.append(f"{layer.route.value}: {candidate.confidence:.2f} below threshold")

        if accepted is None:
            stage = Stage.BUDGET_CHECK
            floor = statistical.confidence if statistical else 0.0
            remote_candidate, cost = self._try_remote(request, floor, trail)
            if remote_candidate is not None:
                stage = Stage.REMOTE
                accepted = remote_candidate
            elif best is not None:
                accepted = best
                trail.append(f"fell back to best local result ({best.route.value})")

        latency_ms = (perf_counter() - started) * 1000
        result = self._record(record, request, accepted, cost, latency_ms, trail)
        stage = Stage.DECISION_RECORDED
        logger.info(
            "[ROUTER] %s -> %s via %s (confidence %.2f, cost %.6f, %.1f ms, stage %s)",
            record.id,
            result.category_name or result.category_id or "-",
            result.route.value,
            result.confidence,
            result.cost,
            latency_ms,
            stage.value,
        )
        return result

    def _attempt(
        self,
        layer: Classifier,
        request: ClassificationRequest,
        trail: list[str],
    ) -> Candidate | None:
        name = layer.route.value
        try:
            candidate = layer.attempt(request)
        except ModelUnavailable as exc:
            logger.debug("[ROUTER] %s layer unavailable: %s", name, exc)
            trail.append(f"{name}: no model")
            return None
        except Exception:
            logger.exception("[ROUTER] %s layer failed for %s", name, request.record.id)
            trail.append(f"{name}: error")
            return None
        if candidate is None:
            return None
        catalog = self.context.catalog
        if len(catalog) and candidate.category_id not in catalog:
            logger.warning(
                "[ROUTER] %s layer proposed unknown category '%s'; ignoring.",
                name,
                candidate.category_id,
            )
            return None
        return candidate

    def _apply_rules(self, record: TransactionRecord, candidate: Candidate, trail: list[str]) -> Candidate:
        rule = self.rules.match(record, candidate.category_id, self.context.clock())
        if rule is None:
            return candidate
        trail.append(f"correction rule {rule.id[:8]} applied")
        return candidate.model_copy(
            update={
                "category_id": rule.to_category_id,
                "confidence": max(rule.confidence, candidate.confidence * rule.confidence),
                "reasoning": (
                    f"Correction rule: {rule.from_category_id} -> {rule.to_category_id} "
                    f"(support {rule.support})"
                ),
                "metadata": {**candidate.metadata, "rule_id": rule.id},
            }
        )

    def _try_remote(
        self,
        request: ClassificationRequest,
        floor: float,
        trail: list[str],
    ) -> tuple[Candidate | None, Decimal]:
        zero = Decimal("0")
        remote = self.remote
        if remote is None or not remote.available:
            trail.append("remote: unavailable")
            return None, zero
        if not self.context.guard.within_budget():
            trail.append("remote: budget exhausted")
            return None, zero

        _, _, estimate = remote.prepare(request)
        if not self.policy.justifies(request.record, request.complexity.score, estimate):
            trail.append("remote: not worth the cost")
            return None, zero

        try:
            outcome = remote.classify(request)
        except BudgetExceeded:
            trail.append("remote: budget exhausted")
            return None, zero
        except RemoteUnavailable as exc:
            trail.append(f"remote: {exc}")
            return None, zero
        except Exception:
            logger.exception("[ROUTER] remote layer failed for %s", request.record.id)
            trail.append("remote: error")
            return None, zero

        candidate = outcome.candidate
        if candidate is None:
            trail.append(f"remote: {outcome.error}")
            return None, outcome.cost
        if len(self.context.catalog) and candidate.category_id not in self.context.catalog:
            trail.append("remote: unknown category")
            return None, outcome.cost
        if candidate.confidence <= floor:
            trail.append(f"remote: {candidate.confidence:.2f} not above statistical {floor:.2f}")
            return None, outcome.cost
        return candidate, outcome.cost

    def _record(
        self,
        record: TransactionRecord,
        request: ClassificationRequest,
        accepted: Candidate | None,
        cost: Decimal,
        latency_ms: float,
        trail: list[str],
    ) -> ClassificationResult:
        context = self.context
        if accepted is None:
            route = Route.UNRESOLVED
            category_id = None
            confidence = 0.0
            reasoning = "No layer produced a category"
        else:
            route = accepted.route
            category_id = accepted.category_id
            confidence = accepted.confidence
            reasoning = accepted.reasoning
        if trail:
            reasoning = f"{reasoning} [{'; '.join(trail)}]"

        decision = ClassificationDecision(
            record_id=record.id,
            category_id=category_id,
            complexity_score=request.complexity.score,
            route=route,
            confidence=confidence,
            cost=cost,
            latency_ms=latency_ms,
            reasoning=reasoning,
            created_at=context.clock(),
        )
        context.store.save_decision(decision)
        context.store.increment_stat(ROUTES, route.value, "decisions")
        context.history.record_decision(record)

        if (
            category_id is not None
            and route not in (Route.CACHE, Route.UNRESOLVED)
            and confidence >= context.config.cache_write_min_confidence
        ):
            context.cache.put(record, category_id, confidence, {"route": route.value})

        return ClassificationResult(
            category_id=category_id,
            category_name=context.catalog.name_of(category_id),
            confidence=confidence,
            route=route,
            cost=cost,
            reasoning=reasoning,
            decision_id=decision.id,
            complexity=request.complexity.score,
        )
