from decimal import Decimal
from typing import Iterable, Optional, Tuple

from app.enums.rule_types import PricingRuleType
from app.services.checkout.conditions import EvaluationContext, matches_line
from app.services.checkout.types import (
    ZERO,
    LineItem,
    PricedLine,
    PricingRuleSnapshot,
    quantize_money,
)


# ===================== PRICE RESOLUTION =====================


def resolve_line_price(
    line: LineItem,
    rules: Iterable[PricingRuleSnapshot],
    ctx: EvaluationContext,
) -> PricedLine:
    """
    Price one line.

    Pricing rules never stack: matching rules are ordered by
    (priority, id) and only the first one that yields a price is applied.
    No matching rule -> catalog price.
    """
    catalog_price = quantize_money(line.unit_price)

    candidates = sorted(
        (rule for rule in rules if matches_line(rule, line, ctx)),
        key=lambda r: r.sort_key,
    )

    for rule in candidates:
        price = _apply_rule(rule, catalog_price, line.quantity)
        if price is None:
            continue
        unit_price = quantize_money(price)
        return PricedLine(
            product_id=line.product_id,
            category_id=line.category_id,
            quantity=line.quantity,
            catalog_unit_price=catalog_price,
            unit_price=unit_price,
            line_total=unit_price * line.quantity,
            pricing_rule_id=rule.id,
        )

    return PricedLine(
        product_id=line.product_id,
        category_id=line.category_id,
        quantity=line.quantity,
        catalog_unit_price=catalog_price,
        unit_price=catalog_price,
        line_total=catalog_price * line.quantity,
    )


def resolve_prices(
    lines: Iterable[LineItem],
    rules: Iterable[PricingRuleSnapshot],
    ctx: EvaluationContext,
) -> Tuple[PricedLine, ...]:
    rules = list(rules)
    return tuple(resolve_line_price(line, rules, ctx) for line in lines)


# ===================== RULE TYPES =====================


def _apply_rule(rule: PricingRuleSnapshot, unit_price: Decimal, quantity: int) -> Optional[Decimal]:
    """
    Return the new unit price, or None when the rule does not yield one
    (e.g. a tiered rule with no qualifying tier).
    """
    value = Decimal(rule.value)

    if rule.type == PricingRuleType.percentage:
        return _clamp(_apply_percentage(unit_price, value), unit_price)

    if rule.type == PricingRuleType.fixed_amount:
        return _clamp(unit_price - value, unit_price)

    if rule.type == PricingRuleType.bulk:
        # threshold lives in conditions.min_quantity and is checked by matches_line
        threshold = rule.conditions.min_quantity
        if threshold is not None and quantity < threshold:
            return None
        return _clamp(value, unit_price)

    if rule.type == PricingRuleType.tiered:
        tier_price = _tier_price(rule, quantity)
        if tier_price is None:
            return None
        return _clamp(tier_price, unit_price)

    return None


def _apply_percentage(price: Decimal, percentage: Decimal) -> Decimal:
    """
    price=100, percentage=10 -> 90
    """
    return price * (Decimal("1") - percentage / Decimal("100"))


def _tier_price(rule: PricingRuleSnapshot, quantity: int) -> Optional[Decimal]:
    chosen = [tier for tier in rule.conditions.tiers if tier.min_quantity <= quantity]
    if not chosen:
        return None
    # tiers are sorted by min_quantity; the last qualifying one is the highest
    return Decimal(chosen[-1].value)


def _clamp(price: Decimal, ceiling: Decimal) -> Decimal:
    """Never below zero, never above the catalog price."""
    return max(ZERO, min(price, ceiling))
