"""
Rule Store: read-only snapshots of pricing and discount rules.

Stored conditions are parsed into typed RuleConditions once per rule version;
the cache holds one entry per rule and refreshes it when updated_at changes.
A rule whose conditions cannot be parsed is logged and left out; it can never
match, and checkout carries on.
"""
import logging
from abc import ABC, abstractmethod
from dataclasses import replace
from datetime import datetime
from decimal import Decimal
from threading import Lock
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from pydantic import ValidationError as SchemaValidationError
from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from app.enums.rule_types import DiscountRuleType, PricingRuleType
from app.models.discount_rule import DiscountRule
from app.models.pricing_rule import PricingRule
from app.schemas.rule_conditions import RuleConditions, parse_conditions
from app.services.checkout.ledger import InMemoryRedemptionLedger
from app.services.checkout.types import DiscountRuleSnapshot, PricingRuleSnapshot, RuleScope

logger = logging.getLogger(__name__)


class RuleStore(ABC):
    @abstractmethod
    def pricing_rules(self) -> List[PricingRuleSnapshot]:
        ...

    @abstractmethod
    def discount_rules(self) -> List[DiscountRuleSnapshot]:
        ...


# ===================== PARSED CONDITIONS CACHE =====================

# (table, rule id) -> (updated_at, parsed conditions); None = malformed.
# An edited rule replaces its own entry.
_CONDITIONS_CACHE: Dict[Tuple[str, int], Tuple[Optional[datetime], Optional[RuleConditions]]] = {}
_CONDITIONS_LOCK = Lock()


def _conditions_for(table: str, row) -> Optional[RuleConditions]:
    key = (table, row.id)
    with _CONDITIONS_LOCK:
        cached = _CONDITIONS_CACHE.get(key)
    if cached is not None and cached[0] == row.updated_at:
        return cached[1]

    try:
        parsed: Optional[RuleConditions] = parse_conditions(row.conditions)
    except (SchemaValidationError, ValueError) as exc:
        logger.warning("Skipping %s %s: malformed conditions (%s)", table, row.id, exc)
        parsed = None

    with _CONDITIONS_LOCK:
        _CONDITIONS_CACHE[key] = (row.updated_at, parsed)
    return parsed


def _scope_for(row) -> RuleScope:
    return RuleScope(
        product_ids=frozenset(str(v) for v in (row.product_ids or [])),
        category_ids=frozenset(str(v) for v in (row.category_ids or [])),
        customer_ids=frozenset(str(v) for v in (row.customer_ids or [])),
    )


def pricing_snapshot(row: PricingRule) -> Optional[PricingRuleSnapshot]:
    conditions = _conditions_for(PricingRule.__tablename__, row)
    if conditions is None:
        return None
    try:
        rule_type = PricingRuleType(row.type)
    except ValueError:
        logger.warning("Skipping pricing rule %s: unknown type %r", row.id, row.type)
        return None
    return PricingRuleSnapshot(
        id=row.id,
        name=row.name,
        type=rule_type,
        value=Decimal(str(row.value)),
        start_date=row.start_date,
        end_date=row.end_date,
        is_active=bool(row.is_active),
        priority=row.priority if row.priority is not None else 0,
        conditions=conditions,
        scope=_scope_for(row),
    )


def discount_snapshot(row: DiscountRule) -> Optional[DiscountRuleSnapshot]:
    conditions = _conditions_for(DiscountRule.__tablename__, row)
    if conditions is None:
        return None
    try:
        rule_type = DiscountRuleType(row.type)
    except ValueError:
        logger.warning("Skipping discount rule %s: unknown type %r", row.id, row.type)
        return None
    return DiscountRuleSnapshot(
        id=row.id,
        name=row.name,
        type=rule_type,
        value=Decimal(str(row.value)),
        start_date=row.start_date,
        end_date=row.end_date,
        is_active=bool(row.is_active),
        priority=row.priority if row.priority is not None else 0,
        conditions=conditions,
        scope=_scope_for(row),
        usage_limit=row.usage_limit,
        used_count=row.used_count or 0,
        coupon_code=row.coupon_code or None,
        campaign_id=row.campaign_id,
    )


# ===================== STORES =====================


class SqlRuleStore(RuleStore):
    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory

    def pricing_rules(self) -> List[PricingRuleSnapshot]:
        db = self._session_factory()
        try:
            rows = db.execute(
                select(PricingRule).where(PricingRule.is_active.is_(True))
            ).scalars().all()
            snapshots = [pricing_snapshot(row) for row in rows]
        finally:
            db.close()
        return [s for s in snapshots if s is not None]

    def discount_rules(self) -> List[DiscountRuleSnapshot]:
        # inactive coupons are still loaded so an expired code is told apart from an unknown one
        db = self._session_factory()
        try:
            rows = db.execute(
                select(DiscountRule).where(
                    or_(DiscountRule.is_active.is_(True), DiscountRule.coupon_code.isnot(None))
                )
            ).scalars().all()
            snapshots = [discount_snapshot(row) for row in rows]
        finally:
            db.close()
        return [s for s in snapshots if s is not None]


class InMemoryRuleStore(RuleStore):
    """
    Rules held in process. With an InMemoryRedemptionLedger the usage
    counters are read from the ledger, which owns them.
    """

    def __init__(
        self,
        pricing_rules: Iterable[PricingRuleSnapshot] = (),
        discount_rules: Iterable[DiscountRuleSnapshot] = (),
        ledger: Optional[InMemoryRedemptionLedger] = None,
    ):
        self._pricing = list(pricing_rules)
        self._discounts = list(discount_rules)
        self._ledger = ledger
        if ledger is not None:
            for rule in self._discounts:
                ledger.register(rule.id, rule.usage_limit, rule.used_count)

    def pricing_rules(self) -> List[PricingRuleSnapshot]:
        return list(self._pricing)

    def discount_rules(self) -> List[DiscountRuleSnapshot]:
        if self._ledger is None:
            return list(self._discounts)
        return [replace(rule, used_count=self._ledger.used_count(rule.id)) for rule in self._discounts]
