import hashlib
import re

from cascade_categorizer.models import TransactionRecord

_NON_WORD_RE = re.compile(r"[^\w\s]+", re.UNICODE)
_DIGITS_RE = re.compile(r"\d+")
_SPACE_RE = re.compile(r"\s+")

_MERCHANT_SUFFIXES = {"inc", "llc", "ltd", "gmbh", "co", "corp", "sa", "bv", "ag"}


def normalize_text(value: str | None) -> str:
    if not value:
        return ""
    cleaned = _NON_WORD_RE.sub(" ", value.casefold())
    return _SPACE_RE.sub(" ", cleaned).strip()


def normalize_merchant(name: str | None) -> str:
    """Reduce a merchant name to a stable comparison key.

    Store numbers, punctuation and legal-form suffixes are dropped, so
    ``"STARBUCKS #1234, Inc."`` and ``"Starbucks"`` share a key.
    """
    text = _DIGITS_RE.sub(" ", normalize_text(name))
    tokens = [token for token in text.split() if token not in _MERCHANT_SUFFIXES]
    return " ".join(tokens)


def normalize_description(description: str | None) -> str:
    return normalize_text(description)


def fingerprint(record: TransactionRecord, prefix_length: int = 32) -> str:
    parts = (
        normalize_merchant(record.merchant_name),
        str(record.amount_cents),
        normalize_description(record.description)[:prefix_length],
    )
    return hashlib.sha256("|".join(parts).encode("utf-8")).hexdigest()


def record_text(record: TransactionRecord) -> str:
    """Text used for embeddings: merchant followed by description."""
    parts = [part for part in (record.merchant_name, record.description) if part]
    return " ".join(parts)
