"""
Order-level discount resolution.

Discount rules stack, but sequentially: every percentage/fixed rule is applied
to the balance left by the rules before it, so no combination of rules can
take the order below zero. buy_x_get_y rules run last as flat credits. Usage
counters are only read here; the Redemption Ledger is the one place that
changes them.
"""
from decimal import Decimal
from typing import Iterable, List, Optional, Sequence

from app.enums.rule_types import DiscountRuleType, IneligibleReason
from app.services.checkout.conditions import EvaluationContext, line_in_scope, matches_order
from app.services.checkout.errors import ValidationError
from app.services.checkout.types import (
    ZERO,
    AppliedDiscount,
    DiscountResolution,
    DiscountRuleSnapshot,
    IneligibleRule,
    PricedLine,
    normalize_code,
    quantize_money,
)


def resolve_discounts(
    rules: Iterable[DiscountRuleSnapshot],
    priced_lines: Sequence[PricedLine],
    ctx: EvaluationContext,
    coupon_code: Optional[str] = None,
) -> DiscountResolution:
    if len(priced_lines) != len(ctx.lines):
        raise ValueError("priced lines must align with the evaluation context lines")

    rules = list(rules)
    subtotal = sum((line.line_total for line in priced_lines), ZERO)
    code = normalize_code(coupon_code) if coupon_code and coupon_code.strip() else None

    if code is not None:
        _check_coupon_code(rules, code, coupon_code, ctx)

    # coupon rules only take part when their code was submitted
    candidates = sorted(
        (r for r in rules if r.coupon_code is None or r.matches_code(code)),
        key=lambda r: r.sort_key,
    )

    matching: List[DiscountRuleSnapshot] = []
    ineligible: List[IneligibleRule] = []
    for rule in candidates:
        if not matches_order(rule, ctx):
            if rule.coupon_code is not None and rule.is_live(ctx.now):
                ineligible.append(
                    IneligibleRule(rule.id, IneligibleReason.conditions_not_met, rule.coupon_code)
                )
            continue
        if rule.is_exhausted:
            ineligible.append(
                IneligibleRule(rule.id, IneligibleReason.usage_limit_reached, rule.coupon_code)
            )
            continue
        matching.append(rule)

    ordered = [r for r in matching if r.type != DiscountRuleType.buy_x_get_y]
    ordered += [r for r in matching if r.type == DiscountRuleType.buy_x_get_y]

    remaining = subtotal
    applied: List[AppliedDiscount] = []
    for rule in ordered:
        if rule.type == DiscountRuleType.buy_x_get_y:
            amount = _buy_x_get_y_credit(rule, priced_lines, ctx)
        else:
            base = _scoped_balance(rule, priced_lines, ctx, subtotal, remaining)
            amount = min(_rule_amount(rule, base), base)

        amount = max(ZERO, min(quantize_money(amount), remaining))
        if amount <= ZERO:
            continue
        remaining -= amount
        applied.append(AppliedDiscount(rule.id, amount, rule.coupon_code))

    discount_total = max(ZERO, min(subtotal - remaining, subtotal))
    return DiscountResolution(
        discount_total=discount_total,
        applied=tuple(applied),
        ineligible=tuple(ineligible),
    )


def _check_coupon_code(rules, code: str, submitted: str, ctx: EvaluationContext) -> None:
    coupon_rules = [r for r in rules if r.matches_code(code)]
    if not coupon_rules:
        raise ValidationError(f"Unknown coupon code '{submitted.strip()}'")
    if len(coupon_rules) > 1:
        raise ValidationError(
            f"Coupon code '{submitted.strip()}' is ambiguous: rules "
            f"{', '.join(str(r.id) for r in sorted(coupon_rules, key=lambda r: r.id))} share it"
        )
    if not any(r.is_live(ctx.now) for r in coupon_rules):
        raise ValidationError(f"Coupon code '{submitted.strip()}' is expired or inactive")


def _rule_amount(rule: DiscountRuleSnapshot, base: Decimal) -> Decimal:
    value = Decimal(rule.value)
    if rule.type == DiscountRuleType.percentage:
        return base * value / Decimal("100")
    if rule.type == DiscountRuleType.fixed_amount:
        return value
    return ZERO


def _scoped_balance(
    rule: DiscountRuleSnapshot,
    priced_lines: Sequence[PricedLine],
    ctx: EvaluationContext,
    subtotal: Decimal,
    remaining: Decimal,
) -> Decimal:
    """
    Share of the remaining balance this rule may discount: the whole balance
    for order-wide rules, the in-scope lines' share of it otherwise.
    """
    if subtotal <= ZERO:
        return ZERO
    in_scope = sum(
        (priced.line_total for item, priced in zip(ctx.lines, priced_lines) if line_in_scope(rule, item)),
        ZERO,
    )
    if in_scope >= subtotal:
        return remaining
    return quantize_money(remaining * in_scope / subtotal)


def _buy_x_get_y_credit(
    rule: DiscountRuleSnapshot,
    priced_lines: Sequence[PricedLine],
    ctx: EvaluationContext,
) -> Decimal:
    """
    Credit for the "free" units: for every (buy + get) units of an in-scope line,
    `get` units are credited at `value` percent of their price (100 = free).
    """
    offer = rule.conditions.buy_x_get_y
    if offer is None:
        return ZERO
    bundle = offer.buy_quantity + offer.get_quantity
    share = Decimal(rule.value) / Decimal("100")

    credit = ZERO
    for item, priced in zip(ctx.lines, priced_lines):
        if not line_in_scope(rule, item):
            continue
        free_units = (priced.quantity // bundle) * offer.get_quantity
        credit += priced.unit_price * free_units * share
    return credit
