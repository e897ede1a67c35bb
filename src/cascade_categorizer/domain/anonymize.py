import re
from decimal import ROUND_HALF_UP, Decimal

from pydantic import BaseModel

from cascade_categorizer.models import TransactionRecord

_EMAIL_RE = re.compile(r"[\w.+-]+@[\w-]+(?:\.[\w-]+)+")
_CARD_RE = re.compile(r"\b(?:\d[ -]?){12,18}\d\b")
_PHONE_RE = re.compile(r"(?:\+\d{1,3}[\s.-]?)?\(?\d{2,4}\)?[\s.-]\d{3,4}[\s.-]\d{3,4}")
_LONG_DIGITS_RE = re.compile(r"\d{6,}")
_SPACE_RE = re.compile(r"\s+")

MERCHANT_TOKENS = 2


class AnonymizedRecord(BaseModel):
    merchant: str
    description: str
    amount: Decimal
    currency: str


def redact(text: str | None) -> str:
    if not text:
        return ""
    # Order matters: cards and emails before the generic digit rule.
    redacted = _EMAIL_RE.sub("[EMAIL]", text)
    redacted = _CARD_RE.sub("[CARD]", redacted)
    redacted = _PHONE_RE.sub("[PHONE]", redacted)
    redacted = _LONG_DIGITS_RE.sub("[NUMBER]", redacted)
    return _SPACE_RE.sub(" ", redacted).strip()


def round_amount(amount: Decimal) -> Decimal:
    value = abs(amount)
    if value < 100:
        step = Decimal("5")
    elif value < 1000:
        step = Decimal("10")
    else:
        step = Decimal("100")
    rounded = (value / step).quantize(Decimal("1"), rounding=ROUND_HALF_UP) * step
    return rounded.copy_sign(amount) if rounded else rounded


def truncate_merchant(name: str | None, tokens: int = MERCHANT_TOKENS) -> str:
    return " ".join(redact(name).split()[:tokens])


def anonymize(record: TransactionRecord) -> AnonymizedRecord:
    return AnonymizedRecord(
        merchant=truncate_merchant(record.merchant_name),
        description=redact(record.description)[:120],
        amount=round_amount(record.amount),
        currency=record.currency,
    )
