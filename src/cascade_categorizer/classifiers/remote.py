import json
import os
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass
from decimal import Decimal
from typing import Any

from openai import OpenAI

from cascade_categorizer.classifiers.base import ClassificationRequest
from cascade_categorizer.core.settings import EngineConfig
from cascade_categorizer.domain.anonymize import AnonymizedRecord, anonymize
from cascade_categorizer.domain.catalog import CategoryCatalog
from cascade_categorizer.errors import (
    BudgetExceeded,
    RemoteParseError,
    RemoteTimeout,
    RemoteUnavailable,
)
from cascade_categorizer.logger import get_logger
from cascade_categorizer.models import Candidate, Route, TransactionRecord
from cascade_categorizer.services.budget import BudgetGuard, Reservation

logger = get_logger(__name__)

# USD per one million (input, output) tokens.
MODEL_PRICING: dict[str, tuple[Decimal, Decimal]] = {
    "gpt-4.1-nano": (Decimal("0.10"), Decimal("0.40")),
    "gpt-4.1-mini": (Decimal("0.40"), Decimal("1.60")),
    "gpt-4.1": (Decimal("2.00"), Decimal("8.00")),
    "gpt-4o-mini": (Decimal("0.15"), Decimal("0.60")),
    "gpt-4o": (Decimal("2.50"), Decimal("10.00")),
}
FALLBACK_PRICING = (Decimal("2.50"), Decimal("10.00"))
EXPECTED_OUTPUT_TOKENS = 80
PER_MILLION = Decimal("1000000")

INSTRUCTIONS = (
    "You categorize personal finance transactions. "
    "Answer with a single JSON object: "
    '{"category": <category id>, "confidence": <number 0-1>, "reasoning": <short text>}. '
    "Use only the listed categories."
)


def price_tokens(model: str, input_tokens: int, output_tokens: int) -> Decimal:
    input_price, output_price = MODEL_PRICING.get(model, FALLBACK_PRICING)
    return (input_price * input_tokens + output_price * output_tokens) / PER_MILLION


class RemotePolicy:
    """Decides whether a record is worth a paid call."""

    def __init__(self, config: EngineConfig) -> None:
        self.config = config

    def justifies(self, record: TransactionRecord, complexity: float, estimated_cost: Decimal) -> bool:
        value_score = abs(record.amount) * Decimal(str(self.config.remote_value_rate))
        if value_score > estimated_cost * Decimal(str(self.config.remote_cost_weight)):
            return True
        return (
            complexity >= self.config.remote_complexity_cutoff
            and abs(record.amount) >= self.config.high_value_amount
        )


class FailureBreaker:
    """Opens after consecutive remote failures and closes again after a pause."""

    def __init__(self, failure_threshold: int = 5, reset_seconds: float = 30.0) -> None:
        self.failure_threshold = failure_threshold
        self.reset_seconds = reset_seconds
        self._lock = threading.Lock()
        self._failures = 0
        self._open_until = 0.0

    @property
    def state(self) -> str:
        return "open" if time.monotonic() < self._open_until else "closed"

    def allow(self) -> bool:
        return self.state == "closed"

    def record_success(self) -> None:
        with self._lock:
            self._failures = 0

    def record_failure(self) -> None:
        with self._lock:
            self._failures += 1
            if self._failures >= self.failure_threshold:
                self._open_until = time.monotonic() + self.reset_seconds
                self._failures = 0
                logger.warning("[REMOTE] Breaker opened for %.0fs after repeated failures.", self.reset_seconds)


@dataclass
class RemoteOutcome:
    candidate: Candidate | None
    cost: Decimal
    model: str
    error: str | None = None


class RemoteClassifier:
    """Last-resort classifier backed by an OpenAI-compatible API.

    Only anonymized record data is sent. Every call is budget-reserved,
    bounded by a hard timeout and a concurrency cap; a call that misses the
    timeout is abandoned and its late answer ignored, though its cost is
    still tracked.
    """

    route = Route.REMOTE

    def __init__(
        self,
        guard: BudgetGuard,
        catalog: CategoryCatalog,
        config: EngineConfig,
        client: Any | None = None,
        api_key: str | None = None,
        base_url: str | None = None,
    ) -> None:
        self.guard = guard
        self.catalog = catalog
        self.config = config
        self.timeout = config.remote_timeout_seconds
        if client is None:
            api_key = api_key or os.getenv("OPENAI_API_KEY")
            if api_key:
                client = OpenAI(
                    api_key=api_key,
                    base_url=base_url or os.getenv("OPENAI_BASE_URL") or None,
                    timeout=self.timeout,
                    max_retries=0,
                )
        self.client = client
        self.breaker = FailureBreaker(config.remote_breaker_failures, config.remote_breaker_seconds)
        self._slots = threading.BoundedSemaphore(config.remote_max_concurrency)
        self._executor = ThreadPoolExecutor(
            max_workers=config.remote_max_concurrency,
            thread_name_prefix="remote-classifier",
        )

    @property
    def available(self) -> bool:
        return self.client is not None and len(self.catalog) > 0 and self.breaker.allow()

    def select_model(self, complexity: float) -> str:
        if complexity < 0.4:
            return self.config.model_cheap
        if complexity < self.config.remote_complexity_cutoff:
            return self.config.model_standard
        return self.config.model_premium

    def build_prompt(self, anonymized: AnonymizedRecord) -> str:
        categories = "\n".join(f"- {category.id}: {category.name}" for category in self.catalog)
        return (
            f"Categories:\n{categories}\n\n"
            f"Transaction:\n"
            f"Merchant: {anonymized.merchant or 'unknown'}\n"
            f"Description: {anonymized.description or '-'}\n"
            f"Amount (approx.): {anonymized.amount} {anonymized.currency}\n"
        )

    def estimate_cost(self, model: str, prompt: str) -> Decimal:
        input_tokens = (len(INSTRUCTIONS) + len(prompt)) // 4 + 1
        return price_tokens(model, input_tokens, EXPECTED_OUTPUT_TOKENS)

    def prepare(self, request: ClassificationRequest) -> tuple[str, str, Decimal]:
        model = self.select_model(request.complexity.score)
        prompt = self.build_prompt(anonymize(request.record))
        return model, prompt, self.estimate_cost(model, prompt)

    def classify(self, request: ClassificationRequest) -> RemoteOutcome:
        if not self.available:
            raise RemoteUnavailable("Remote classifier is not configured or temporarily disabled")

        model, prompt, estimate = self.prepare(request)
        reservation = self.guard.reserve(estimate)
        if reservation is None:
            raise BudgetExceeded(f"No budget headroom for a {estimate:.6f} call")

        deadline = time.monotonic() + self.timeout
        if not self._slots.acquire(timeout=self.timeout):
            self.guard.release(reservation)
            self.breaker.record_failure()
            return RemoteOutcome(candidate=None, cost=Decimal("0"), model=model, error="concurrency limit")

        future = self._executor.submit(self._invoke, model, prompt, reservation, estimate)
        try:
            text, cost = self._await(future, reservation, deadline)
        except RemoteTimeout as exc:
            self.breaker.record_failure()
            logger.warning("[REMOTE] %s", exc)
            return RemoteOutcome(candidate=None, cost=Decimal("0"), model=model, error="timeout")
        except Exception as exc:
            self.breaker.record_failure()
            logger.warning("[REMOTE] Error from %s: %s", model, exc)
            return RemoteOutcome(candidate=None, cost=Decimal("0"), model=model, error="api error")

        try:
            candidate = self.parse_response(text, model)
        except RemoteParseError as exc:
            self.breaker.record_failure()
            logger.warning("[REMOTE] Unusable response from %s: %s", model, exc)
            return RemoteOutcome(candidate=None, cost=cost, model=model, error="parse error")

        self.breaker.record_success()
        return RemoteOutcome(candidate=candidate, cost=cost, model=model)

    def _await(self, future: Future, reservation: Reservation, deadline: float) -> tuple[str, Decimal]:
        try:
            return future.result(timeout=max(0.0, deadline - time.monotonic()))
        except FutureTimeout as exc:
            # A running call finishes in the background but is never read.
            if future.cancel():
                self._slots.release()
                self.guard.release(reservation)
            raise RemoteTimeout(f"Remote call exceeded {self.timeout:.1f}s") from exc

    def _invoke(
        self,
        model: str,
        prompt: str,
        reservation: Reservation,
        estimate: Decimal,
    ) -> tuple[str, Decimal]:
        try:
            response = self.client.responses.create(
                model=model,
                instructions=INSTRUCTIONS,
                input=prompt,
                temperature=0.0,
            )
        except Exception:
            self.guard.release(reservation)
            raise
        finally:
            self._slots.release()

        cost = self._usage_cost(response, model, estimate)
        status = self.guard.settle(reservation, cost)
        logger.info(
            "[REMOTE] %s call cost %.6f (daily %.4f / %.2f)",
            model,
            cost,
            status.daily_spent,
            status.daily_limit,
        )
        return self._extract_output_text(response) or "", cost

    @staticmethod
    def _usage_cost(response: object, model: str, estimate: Decimal) -> Decimal:
        usage = getattr(response, "usage", None)
        input_tokens = getattr(usage, "input_tokens", None)
        output_tokens = getattr(usage, "output_tokens", None)
        if isinstance(input_tokens, int) and isinstance(output_tokens, int):
            return price_tokens(model, input_tokens, output_tokens)
        return estimate

    def parse_response(self, text: str, model: str) -> Candidate:
        cleaned = text.strip()
        if cleaned.startswith("```"):
            cleaned = cleaned.strip("`")
            if cleaned.lower().startswith("json"):
                cleaned = cleaned[4:]
        try:
            payload = json.loads(cleaned)
        except json.JSONDecodeError as exc:
            raise RemoteParseError(f"Response is not JSON: {text[:80]!r}") from exc
        if not isinstance(payload, dict):
            raise RemoteParseError("Response JSON is not an object")

        category = self.catalog.resolve(str(payload.get("category", "")))
        if category is None:
            raise RemoteParseError(f"Unknown category {payload.get('category')!r}")
        try:
            confidence = float(payload.get("confidence", 0.0))
        except (TypeError, ValueError) as exc:
            raise RemoteParseError("Confidence is not a number") from exc
        if not 0.0 <= confidence <= 1.0:
            raise RemoteParseError(f"Confidence {confidence} outside [0, 1]")

        reasoning = str(payload.get("reasoning") or "").strip()
        return Candidate(
            category_id=category.id,
            confidence=confidence,
            route=Route.REMOTE,
            reasoning=f"{model}: {reasoning}" if reasoning else model,
            metadata={"model": model},
        )

    @staticmethod
    def _extract_output_text(response: object) -> str | None:
        output_text = getattr(response, "output_text", None)
        if isinstance(output_text, str) and output_text:
            return output_text

        output = getattr(response, "output", None)
        if not output:
            return None

        parts: list[str] = []
        for item in output:
            content = getattr(item, "content", None)
            if not content:
                continue
            for block in content:
                if getattr(block, "type", None) in {"output_text", "text"}:
                    text = getattr(block, "text", None)
                    if text:
                        parts.append(text)
        return "".join(parts) or None

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)
