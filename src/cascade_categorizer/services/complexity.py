"""Scores how hard a transaction is to categorize confidently.

The score is a weighted sum of six factors, each in [0, 1]. The analyzer
holds no mutable state and only reads the history snapshot it is given.
"""

import string
from collections.abc import Mapping

from rapidfuzz import fuzz, process

from cascade_categorizer.domain.normalize import normalize_merchant
from cascade_categorizer.models import ComplexityAssessment, TransactionRecord
from cascade_categorizer.services.history import HistorySnapshot

FACTOR_WEIGHTS: dict[str, float] = {
    "merchant_ambiguity": 0.25,
    "text_complexity": 0.10,
    "amount_unusualness": 0.10,
    "historical_difficulty": 0.20,
    "pattern_absence": 0.10,
    "category_margin": 0.25,
}

KNOWN_MERCHANT_SCORE = 90.0
MIN_AMOUNT_SAMPLES = 5
NEUTRAL = 0.5
_PUNCTUATION = set(string.punctuation)


def _clamp(value: float) -> float:
    return min(1.0, max(0.0, value))


def merchant_ambiguity(raw_name: str, snapshot: HistorySnapshot) -> float:
    merchant = normalize_merchant(raw_name)
    if not merchant:
        return 1.0

    stripped = raw_name.replace(" ", "")
    noise = sum(1 for ch in stripped if not ch.isalpha()) / max(len(stripped), 1)
    short_tokens = sum(1 for token in merchant.split() if len(token) <= 2) / len(merchant.split())
    crypticness = _clamp(0.6 * noise + 0.4 * short_tokens)
    if len(merchant) < 4:
        crypticness = max(crypticness, 0.6)

    if merchant in snapshot.known_merchants:
        return _clamp(0.1 + 0.3 * crypticness)
    if snapshot.known_merchants:
        match = process.extractOne(
            merchant,
            sorted(snapshot.known_merchants),
            scorer=fuzz.token_sort_ratio,
            score_cutoff=KNOWN_MERCHANT_SCORE,
        )
        if match is not None:
            return _clamp(0.2 + 0.3 * crypticness)
    return _clamp(0.6 + 0.4 * crypticness)


def text_complexity(text: str) -> float:
    if not text.strip():
        return NEUTRAL
    length_score = min(len(text) / 120.0, 1.0)
    punctuation = sum(1 for ch in text if ch in _PUNCTUATION) / len(text)
    non_ascii = sum(1 for ch in text if ord(ch) > 127) / len(text)
    return _clamp(0.4 * length_score + 0.3 * min(punctuation * 4, 1.0) + 0.3 * min(non_ascii * 5, 1.0))


def amount_unusualness(amount: float, snapshot: HistorySnapshot) -> float:
    stats = snapshot.amount_stats
    if stats.count < MIN_AMOUNT_SAMPLES:
        return NEUTRAL
    if stats.std == 0:
        return 0.0 if amount == stats.mean else 1.0

    z_score = abs(amount - stats.mean) / stats.std
    if z_score <= 1.0:
        return 0.0
    if z_score <= 2.0:
        return 0.25 + (z_score - 1.0) * 0.25
    if z_score <= 3.0:
        return 0.5 + (z_score - 2.0) * 0.3
    return _clamp(1.0 - min(0.2 / z_score, 0.2))


def historical_difficulty(merchant: str, snapshot: HistorySnapshot) -> float:
    rate = snapshot.failure_rate(merchant)
    return NEUTRAL if rate is None else _clamp(rate)


def pattern_absence(merchant: str, snapshot: HistorySnapshot) -> float:
    if merchant and merchant in snapshot.rule_merchants:
        return 0.0
    if merchant and merchant in snapshot.known_merchants:
        return NEUTRAL
    return 1.0


def category_margin(probabilities: Mapping[str, float] | None) -> float:
    if not probabilities:
        return NEUTRAL
    ranked = sorted(probabilities.values(), reverse=True)
    second = ranked[1] if len(ranked) > 1 else 0.0
    return _clamp(1.0 - (ranked[0] - second))


class ComplexityAnalyzer:
    def __init__(self, weights: Mapping[str, float] | None = None) -> None:
        weights = dict(weights or FACTOR_WEIGHTS)
        if set(weights) != set(FACTOR_WEIGHTS):
            raise ValueError(f"Weights must cover exactly {sorted(FACTOR_WEIGHTS)}")
        if abs(sum(weights.values()) - 1.0) > 1e-9:
            raise ValueError("Complexity weights must sum to 1")
        self.weights = weights

    def analyze(
        self,
        record: TransactionRecord,
        snapshot: HistorySnapshot,
        probabilities: Mapping[str, float] | None = None,
        raw_text: str | None = None,
    ) -> ComplexityAssessment:
        merchant = normalize_merchant(record.merchant_name)
        text = raw_text if raw_text is not None else f"{record.merchant_name} {record.description}"
        factors = {
            "merchant_ambiguity": merchant_ambiguity(record.merchant_name, snapshot),
            "text_complexity": text_complexity(text),
            "amount_unusualness": amount_unusualness(float(abs(record.amount)), snapshot),
            "historical_difficulty": historical_difficulty(merchant, snapshot),
            "pattern_absence": pattern_absence(merchant, snapshot),
            "category_margin": category_margin(probabilities),
        }
        weighted = {name: value * self.weights[name] for name, value in factors.items()}
        primary_issue = max(weighted, key=lambda name: (weighted[name], name))
        return ComplexityAssessment(
            score=_clamp(sum(weighted.values())),
            factors=factors,
            weighted=weighted,
            primary_issue=primary_issue,
        )
