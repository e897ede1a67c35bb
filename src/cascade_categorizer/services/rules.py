from datetime import datetime
from decimal import Decimal

from cascade_categorizer.domain.normalize import normalize_merchant
from cascade_categorizer.logger import get_logger
from cascade_categorizer.models import CorrectionRule, TransactionRecord
from cascade_categorizer.storage.base import Store

logger = get_logger(__name__)


def rule_matches(rule: CorrectionRule, record: TransactionRecord) -> bool:
    conditions = rule.conditions
    merchant = conditions.get("merchant")
    if merchant and normalize_merchant(record.merchant_name) != merchant:
        return False
    amount = abs(record.amount)
    low = conditions.get("amount_min")
    high = conditions.get("amount_max")
    if low is not None and amount < Decimal(str(low)):
        return False
    if high is not None and amount > Decimal(str(high)):
        return False
    return True


class RuleBook:
    """Active correction rules, read from the store on demand."""

    def __init__(self, store: Store) -> None:
        self.store = store

    def active(self, now: datetime) -> list[CorrectionRule]:
        return [rule for rule in self.store.list_rules() if rule.is_active(now)]

    def find(self, merchant: str, from_category_id: str, to_category_id: str) -> CorrectionRule | None:
        for rule in self.store.list_rules():
            if (
                rule.conditions.get("merchant") == merchant
                and rule.from_category_id == from_category_id
                and rule.to_category_id == to_category_id
            ):
                return rule
        return None

    def match(
        self,
        record: TransactionRecord,
        from_category_id: str,
        now: datetime,
    ) -> CorrectionRule | None:
        matches = [
            rule
            for rule in self.active(now)
            if rule.from_category_id == from_category_id and rule_matches(rule, record)
        ]
        if not matches:
            return None
        return max(matches, key=lambda rule: (rule.confidence, rule.created_at))

    def prune_expired(self, now: datetime) -> int:
        expired = [rule for rule in self.store.list_rules() if not rule.is_active(now)]
        for rule in expired:
            self.store.delete_rule(rule.id)
        if expired:
            logger.info("[RULES] Removed %s expired correction rules", len(expired))
        return len(expired)
