"""
Deterministic, explainable fraud scoring.

Each check is an independent boolean with a configured weight. The score is
the clamped sum of the triggered weights and every triggered check adds one
human-readable flag in the same pass, so score and flags cannot disagree. The
scorer only annotates an order; accepting or rejecting it is an operator
decision made in the review workflow.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from statistics import median
from typing import Iterable, List, Optional, Tuple

from app.core.config import Settings, settings as default_settings
from app.enums.rule_types import DiscountRuleType, RiskLevel
from app.services.checkout.types import (
    ZERO,
    CustomerHistory,
    DiscountRuleSnapshot,
    FraudAssessment,
    ResolvedOrderPreview,
    RiskSignals,
    quantize_money,
)

MAX_SCORE = 100


@dataclass(frozen=True)
class FraudRules:
    """Weights and thresholds; configuration, not code."""

    weight_unusual_amount: int = 30
    weight_new_customer_high_value: int = 25
    weight_shipping_mismatch: int = 20
    weight_contact_mismatch: int = 10
    weight_high_discount: int = 15
    weight_velocity: int = 20

    amount_multiplier: Decimal = Decimal("5")
    high_value_amount: Decimal = Decimal("500")
    typical_discount_percent: Decimal = Decimal("20")
    discount_multiplier: Decimal = Decimal("1.5")
    velocity_max_orders: int = 3
    velocity_window: timedelta = timedelta(minutes=60)

    medium_risk_score: int = 50
    high_risk_score: int = 80

    @classmethod
    def from_settings(cls, s: Settings = default_settings) -> "FraudRules":
        return cls(
            weight_unusual_amount=s.FRAUD_WEIGHT_UNUSUAL_AMOUNT,
            weight_new_customer_high_value=s.FRAUD_WEIGHT_NEW_CUSTOMER_HIGH_VALUE,
            weight_shipping_mismatch=s.FRAUD_WEIGHT_SHIPPING_MISMATCH,
            weight_contact_mismatch=s.FRAUD_WEIGHT_CONTACT_MISMATCH,
            weight_high_discount=s.FRAUD_WEIGHT_HIGH_DISCOUNT,
            weight_velocity=s.FRAUD_WEIGHT_VELOCITY,
            amount_multiplier=s.FRAUD_AMOUNT_MULTIPLIER,
            high_value_amount=s.FRAUD_HIGH_VALUE_AMOUNT,
            typical_discount_percent=s.FRAUD_TYPICAL_DISCOUNT_PERCENT,
            discount_multiplier=s.FRAUD_DISCOUNT_MULTIPLIER,
            velocity_max_orders=s.FRAUD_VELOCITY_MAX_ORDERS,
            velocity_window=timedelta(minutes=s.FRAUD_VELOCITY_WINDOW_MINUTES),
            medium_risk_score=s.FRAUD_MEDIUM_RISK_SCORE,
            high_risk_score=s.FRAUD_HIGH_RISK_SCORE,
        )


def typical_discount_percent(
    rules: Iterable[DiscountRuleSnapshot],
    now: datetime,
    fallback: Decimal,
) -> Decimal:
    """Median value of the live percentage discount rules, or the fallback."""
    values = sorted(
        Decimal(rule.value)
        for rule in rules
        if rule.type == DiscountRuleType.percentage and rule.is_live(now)
    )
    if not values:
        return fallback
    return Decimal(median(values))


def risk_level_for(score: int, rules: FraudRules) -> RiskLevel:
    if score >= rules.high_risk_score:
        return RiskLevel.high
    if score >= rules.medium_risk_score:
        return RiskLevel.medium
    return RiskLevel.low


def score(
    order: ResolvedOrderPreview,
    history: CustomerHistory,
    now: datetime,
    rules: Optional[FraudRules] = None,
    signals: Optional[RiskSignals] = None,
    typical_discount: Optional[Decimal] = None,
) -> FraudAssessment:
    """
    Score a resolved order. Pure: the result depends only on the arguments.
    """
    rules = rules or FraudRules()
    signals = signals or RiskSignals()
    typical = typical_discount if typical_discount is not None else rules.typical_discount_percent

    triggered: List[Tuple[str, int, str]] = []
    total = order.total

    # ---- 1) Amount far above the customer's trailing average ----
    if history.trailing_average > ZERO:
        limit = history.trailing_average * rules.amount_multiplier
        if total > limit:
            triggered.append((
                "unusual_amount",
                rules.weight_unusual_amount,
                f"Order total {quantize_money(total)} exceeds {rules.amount_multiplier}x "
                f"the customer's trailing average of {quantize_money(history.trailing_average)}",
            ))

    # ---- 2) First order and a big one ----
    if history.order_count == 0 and total >= rules.high_value_amount:
        triggered.append((
            "new_customer_high_value",
            rules.weight_new_customer_high_value,
            f"New customer with no prior orders placing a high-value order of {quantize_money(total)}",
        ))

    # ---- 3) Externally verified mismatches ----
    if signals.shipping_address_mismatch:
        triggered.append((
            "shipping_address_mismatch",
            rules.weight_shipping_mismatch,
            "Shipping address does not match billing details",
        ))
    if signals.contact_mismatch:
        triggered.append((
            "contact_mismatch",
            rules.weight_contact_mismatch,
            "Contact details do not match the customer record",
        ))

    # ---- 4) Discount unusually deep for this rule catalog ----
    discount_limit = typical * rules.discount_multiplier
    if order.discount_total > ZERO and order.discount_percent > discount_limit:
        triggered.append((
            "high_discount",
            rules.weight_high_discount,
            f"Discount of {order.discount_percent.quantize(Decimal('0.1'))}% is above the "
            f"typical {typical.quantize(Decimal('0.1'))}% range",
        ))

    # ---- 5) Velocity ----
    window_start = now - rules.velocity_window
    recent = sum(1 for ts in history.recent_order_times if window_start <= ts <= now)
    if recent > rules.velocity_max_orders:
        minutes = int(rules.velocity_window.total_seconds() // 60)
        triggered.append((
            "velocity",
            rules.weight_velocity,
            f"{recent} orders from this customer in the last {minutes} minutes",
        ))

    risk_score = max(0, min(MAX_SCORE, sum(weight for _, weight, _ in triggered)))
    return FraudAssessment(
        risk_score=risk_score,
        risk_level=risk_level_for(risk_score, rules),
        flags=tuple(flag for _, _, flag in triggered),
        triggered=tuple(code for code, _, _ in triggered),
    )
