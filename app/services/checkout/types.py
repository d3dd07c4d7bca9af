"""Immutable value types passed between the checkout engine components."""
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import FrozenSet, Optional, Tuple

from app.enums.rule_types import (
    DiscountRuleType,
    IneligibleReason,
    PricingRuleType,
    ReviewStatus,
    RiskLevel,
)
from app.schemas.rule_conditions import RuleConditions

CENT = Decimal("0.01")
ZERO = Decimal("0")


def quantize_money(amount: Decimal) -> Decimal:
    return Decimal(amount).quantize(CENT, rounding=ROUND_HALF_UP)


# ===================== RULES =====================


@dataclass(frozen=True)
class RuleScope:
    """Products/categories/customers a rule is linked to. All empty = global."""

    product_ids: FrozenSet[str] = frozenset()
    category_ids: FrozenSet[str] = frozenset()
    customer_ids: FrozenSet[str] = frozenset()

    @property
    def is_global(self) -> bool:
        return not (self.product_ids or self.category_ids or self.customer_ids)

    def covers_item(self, product_id: str, category_id: Optional[str]) -> bool:
        if not self.product_ids and not self.category_ids:
            return True
        return product_id in self.product_ids or category_id in self.category_ids

    def covers_customer(self, customer_id: Optional[str]) -> bool:
        if not self.customer_ids:
            return True
        return customer_id is not None and customer_id in self.customer_ids


@dataclass(frozen=True)
class _RuleSnapshot:
    id: int
    name: str
    value: Decimal
    start_date: datetime
    end_date: Optional[datetime] = None
    is_active: bool = True
    priority: int = 0
    conditions: RuleConditions = field(default_factory=RuleConditions)
    scope: RuleScope = field(default_factory=RuleScope)

    @property
    def sort_key(self) -> Tuple[int, int]:
        # lower priority number wins, ties by id
        return (self.priority, self.id)

    def is_live(self, now: datetime) -> bool:
        if not self.is_active:
            return False
        if self.start_date > now:
            return False
        return self.end_date is None or now <= self.end_date


@dataclass(frozen=True)
class PricingRuleSnapshot(_RuleSnapshot):
    type: PricingRuleType = PricingRuleType.percentage


@dataclass(frozen=True)
class DiscountRuleSnapshot(_RuleSnapshot):
    type: DiscountRuleType = DiscountRuleType.percentage
    usage_limit: Optional[int] = None
    used_count: int = 0
    coupon_code: Optional[str] = None
    campaign_id: Optional[int] = None

    @property
    def is_exhausted(self) -> bool:
        return self.usage_limit is not None and self.used_count >= self.usage_limit

    def matches_code(self, code: Optional[str]) -> bool:
        return (
            self.coupon_code is not None
            and code is not None
            and normalize_code(self.coupon_code) == normalize_code(code)
        )


def normalize_code(code: str) -> str:
    return code.strip().casefold()


# ===================== CART / ORDER =====================


@dataclass(frozen=True)
class CartLine:
    product_id: str
    quantity: int


@dataclass(frozen=True)
class LineItem:
    product_id: str
    category_id: Optional[str]
    unit_price: Decimal  # catalog price before rules
    quantity: int

    @property
    def catalog_total(self) -> Decimal:
        return self.unit_price * self.quantity


@dataclass(frozen=True)
class PricedLine:
    product_id: str
    category_id: Optional[str]
    quantity: int
    catalog_unit_price: Decimal
    unit_price: Decimal
    line_total: Decimal
    pricing_rule_id: Optional[int] = None


@dataclass(frozen=True)
class AppliedDiscount:
    rule_id: int
    amount: Decimal
    coupon_code: Optional[str] = None


@dataclass(frozen=True)
class IneligibleRule:
    rule_id: int
    reason: IneligibleReason
    coupon_code: Optional[str] = None


@dataclass(frozen=True)
class DiscountResolution:
    discount_total: Decimal
    applied: Tuple[AppliedDiscount, ...] = ()
    ineligible: Tuple[IneligibleRule, ...] = ()

    @property
    def applied_rule_ids(self) -> Tuple[int, ...]:
        return tuple(d.rule_id for d in self.applied)


@dataclass(frozen=True)
class ResolvedOrderPreview:
    customer_id: Optional[str]
    coupon_code: Optional[str]
    cart: Tuple[CartLine, ...]
    lines: Tuple[PricedLine, ...]
    catalog_subtotal: Decimal
    subtotal: Decimal
    discount_total: Decimal
    applied_discounts: Tuple[AppliedDiscount, ...]
    ineligible_rules: Tuple[IneligibleRule, ...]
    tax_amount: Decimal
    total: Decimal
    resolved_at: datetime

    @property
    def applied_rule_ids(self) -> Tuple[int, ...]:
        return tuple(d.rule_id for d in self.applied_discounts)

    @property
    def discount_percent(self) -> Decimal:
        if self.subtotal <= 0:
            return ZERO
        return self.discount_total / self.subtotal * 100

    def same_quote(self, other: "ResolvedOrderPreview") -> bool:
        """True when both previews would charge the customer the same way."""
        return (
            self.lines == other.lines
            and self.applied_discounts == other.applied_discounts
            and self.discount_total == other.discount_total
            and self.total == other.total
        )


# ===================== FRAUD =====================


@dataclass(frozen=True)
class CustomerHistory:
    order_count: int = 0
    trailing_average: Decimal = ZERO
    recent_order_times: Tuple[datetime, ...] = ()


@dataclass(frozen=True)
class RiskSignals:
    """Externally verified mismatch signals; address verification happens elsewhere."""

    shipping_address_mismatch: bool = False
    contact_mismatch: bool = False


@dataclass(frozen=True)
class FraudAssessment:
    risk_score: int
    risk_level: RiskLevel
    flags: Tuple[str, ...] = ()
    triggered: Tuple[str, ...] = ()


@dataclass(frozen=True)
class FinalizedOrder:
    attempt_id: str
    preview: ResolvedOrderPreview
    risk_score: int
    risk_level: RiskLevel
    flags: Tuple[str, ...]
    finalized_at: datetime
    review_status: ReviewStatus = ReviewStatus.pending


@dataclass(frozen=True)
class RedemptionResult:
    committed: bool
    failed_rule_id: Optional[int] = None
