"""
Condition evaluation for pricing and discount rules.

A rule matches when it is live (active and inside its date window), its scope
covers the line/order and the customer, and every predicate holds (AND).
Evaluation never mutates anything; segment membership answers are memoised per
EvaluationContext so one resolution sees a single consistent answer.
"""
from datetime import datetime
from decimal import Decimal
from threading import Lock
from typing import Callable, Dict, Optional, Sequence, Tuple

from app.schemas.rule_conditions import (
    CategoryIn,
    CustomerIn,
    InSegment,
    MinOrderValue,
    MinQuantity,
    ProductIn,
)
from app.services.checkout.types import LineItem, _RuleSnapshot


class EvaluationContext:
    """Customer/order facts a rule is evaluated against."""

    def __init__(
        self,
        customer_id: Optional[str],
        now: datetime,
        lines: Sequence[LineItem],
        is_member: Optional[Callable[[str, str], bool]] = None,
    ):
        self.customer_id = customer_id
        self.now = now
        self.lines: Tuple[LineItem, ...] = tuple(lines)
        # catalog-price subtotal; min_order_value never sees discounted amounts
        self.catalog_subtotal: Decimal = sum(
            (line.catalog_total for line in self.lines), Decimal("0")
        )
        self._is_member = is_member
        self._segments: Dict[str, bool] = {}
        self._segments_lock = Lock()

    def in_segment(self, segment_id: str) -> bool:
        if self.customer_id is None or self._is_member is None:
            return False
        with self._segments_lock:
            if segment_id not in self._segments:
                self._segments[segment_id] = bool(self._is_member(self.customer_id, segment_id))
            return self._segments[segment_id]


# ===================== PREDICATES =====================
# Each predicate gets the lines it is judged against: one line for pricing
# rules, every in-scope line for order-level discount rules.


def _min_order_value(p: MinOrderValue, lines, ctx: EvaluationContext) -> bool:
    return ctx.catalog_subtotal >= p.amount


def _product_in(p: ProductIn, lines, ctx: EvaluationContext) -> bool:
    return any(line.product_id in p.product_ids for line in lines)


def _category_in(p: CategoryIn, lines, ctx: EvaluationContext) -> bool:
    return any(line.category_id in p.category_ids for line in lines)


def _customer_in(p: CustomerIn, lines, ctx: EvaluationContext) -> bool:
    return ctx.customer_id is not None and ctx.customer_id in p.customer_ids


def _in_segment(p: InSegment, lines, ctx: EvaluationContext) -> bool:
    return ctx.in_segment(p.segment_id)


def _min_quantity(p: MinQuantity, lines, ctx: EvaluationContext) -> bool:
    return sum(line.quantity for line in lines) >= p.quantity


_PREDICATES = {
    MinOrderValue: _min_order_value,
    ProductIn: _product_in,
    CategoryIn: _category_in,
    CustomerIn: _customer_in,
    InSegment: _in_segment,
    MinQuantity: _min_quantity,
}


def predicate_lines(rule: _RuleSnapshot, lines: Sequence[LineItem]) -> Tuple[LineItem, ...]:
    """Lines that fall inside the rule's scope and its product/category predicates."""
    return tuple(line for line in lines if line_in_scope(rule, line))


def line_in_scope(rule: _RuleSnapshot, line: LineItem) -> bool:
    if not rule.scope.covers_item(line.product_id, line.category_id):
        return False
    return _line_passes_item_filters(rule, line)


def _line_passes_item_filters(rule: _RuleSnapshot, line: LineItem) -> bool:
    for predicate in rule.conditions.predicates:
        if isinstance(predicate, ProductIn) and line.product_id not in predicate.product_ids:
            return False
        if isinstance(predicate, CategoryIn) and line.category_id not in predicate.category_ids:
            return False
    return True


def _predicates_hold(rule: _RuleSnapshot, lines: Sequence[LineItem], ctx: EvaluationContext) -> bool:
    for predicate in rule.conditions.predicates:
        check = _PREDICATES[type(predicate)]
        if not check(predicate, lines, ctx):
            return False
    return True


def matches_line(rule: _RuleSnapshot, line: LineItem, ctx: EvaluationContext) -> bool:
    """Does a pricing rule apply to this single line?"""
    if not rule.is_live(ctx.now):
        return False
    if not rule.scope.covers_customer(ctx.customer_id):
        return False
    if not rule.scope.covers_item(line.product_id, line.category_id):
        return False
    return _predicates_hold(rule, (line,), ctx)


def matches_order(rule: _RuleSnapshot, ctx: EvaluationContext) -> bool:
    """Does an order-level rule apply to the whole cart?"""
    if not rule.is_live(ctx.now):
        return False
    if not rule.scope.covers_customer(ctx.customer_id):
        return False
    lines = predicate_lines(rule, ctx.lines)
    if not lines:
        return False
    return _predicates_hold(rule, lines, ctx)


def matches(rule: _RuleSnapshot, ctx: EvaluationContext, line: Optional[LineItem] = None) -> bool:
    if line is not None:
        return matches_line(rule, line, ctx)
    return matches_order(rule, ctx)
