"""
Checkout Orchestrator.

resolve_order is a pure read: it prices the cart and resolves discounts
against the current rule snapshots without touching any counter.
finalize_order re-resolves, refuses to finalize a quote that changed since the
preview, redeems usage through the ledger, scores the order and stores it.
"""
import logging
import time
from dataclasses import replace
from datetime import datetime
from typing import Callable, Iterable, List, Optional, Sequence

from app.core.config import Settings, settings as default_settings
from app.enums.rule_types import AttemptStatus, IneligibleReason, RiskLevel
from app.services.checkout import discount_resolver, fraud_scorer, price_resolver
from app.services.checkout.attempts import AttemptStore, InMemoryAttemptStore
from app.services.checkout.collaborators import (
    Catalog,
    CustomerHistoryProvider,
    SegmentOracle,
    call_with_timeout,
)
from app.services.checkout.conditions import EvaluationContext
from app.services.checkout.errors import RedemptionFailure, RuleConflictError, ValidationError
from app.services.checkout.ledger import RedemptionLedger
from app.services.checkout.rule_store import RuleStore
from app.services.checkout.types import (
    ZERO,
    CartLine,
    FinalizedOrder,
    IneligibleRule,
    LineItem,
    ResolvedOrderPreview,
    RiskSignals,
    quantize_money,
)

logger = logging.getLogger(__name__)


class CheckoutService:
    def __init__(
        self,
        rule_store: RuleStore,
        catalog: Catalog,
        segments: SegmentOracle,
        history: CustomerHistoryProvider,
        ledger: RedemptionLedger,
        attempts: Optional[AttemptStore] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
        settings: Settings = default_settings,
        fraud_rules: Optional[fraud_scorer.FraudRules] = None,
    ):
        self.rule_store = rule_store
        self.catalog = catalog
        self.segments = segments
        self.history = history
        self.ledger = ledger
        self.attempts = attempts or InMemoryAttemptStore()
        self.clock = clock
        self.settings = settings
        self.fraud_rules = fraud_rules or fraud_scorer.FraudRules.from_settings(settings)

    # ===================== RESOLVE =====================

    def resolve_order(
        self,
        cart: Iterable[CartLine],
        customer_id: Optional[str] = None,
        coupon_code: Optional[str] = None,
    ) -> ResolvedOrderPreview:
        return self._resolve(cart, customer_id, coupon_code)

    def _resolve(
        self,
        cart: Iterable[CartLine],
        customer_id: Optional[str],
        coupon_code: Optional[str],
        owned: Sequence[int] = (),
    ) -> ResolvedOrderPreview:
        """
        owned: rules the caller already holds a use of; their own use does not
        count against the usage limit.
        """
        started = time.perf_counter()
        cart = tuple(cart)
        self._validate_cart(cart)
        now = self.clock()
        timeout = self.settings.LOOKUP_TIMEOUT_SECONDS

        entries = call_with_timeout(
            "catalog", self.catalog.get_products, [line.product_id for line in cart], timeout=timeout
        )
        missing = sorted({line.product_id for line in cart if line.product_id not in entries})
        if missing:
            raise ValidationError(f"Unknown product(s): {', '.join(missing)}")

        lines = [
            LineItem(
                product_id=line.product_id,
                category_id=entries[line.product_id].category_id,
                unit_price=entries[line.product_id].price,
                quantity=line.quantity,
            )
            for line in cart
        ]

        pricing_rules = call_with_timeout("rule store", self.rule_store.pricing_rules, timeout=timeout)
        discount_rules = call_with_timeout("rule store", self.rule_store.discount_rules, timeout=timeout)
        if owned:
            discount_rules = [
                replace(rule, used_count=max(rule.used_count - 1, 0)) if rule.id in owned else rule
                for rule in discount_rules
            ]

        def is_member(customer: str, segment: str) -> bool:
            return call_with_timeout(
                "segment oracle", self.segments.is_member, customer, segment, timeout=timeout
            )

        ctx = EvaluationContext(customer_id=customer_id, now=now, lines=lines, is_member=is_member)
        priced = price_resolver.resolve_prices(lines, pricing_rules, ctx)
        subtotal = sum((p.line_total for p in priced), ZERO)
        discounts = discount_resolver.resolve_discounts(discount_rules, priced, ctx, coupon_code)

        taxable = subtotal - discounts.discount_total
        tax_amount = quantize_money(taxable * self.settings.TAX_RATE)

        preview = ResolvedOrderPreview(
            customer_id=customer_id,
            coupon_code=coupon_code.strip() if coupon_code and coupon_code.strip() else None,
            cart=cart,
            lines=priced,
            catalog_subtotal=quantize_money(ctx.catalog_subtotal),
            subtotal=subtotal,
            discount_total=discounts.discount_total,
            applied_discounts=discounts.applied,
            ineligible_rules=discounts.ineligible,
            tax_amount=tax_amount,
            total=taxable + tax_amount,
            resolved_at=now,
        )

        elapsed_ms = (time.perf_counter() - started) * 1000.0
        if elapsed_ms > self.settings.SLOW_RESOLUTION_MS:
            logger.warning(
                "Slow order resolution: %.1fms for %d line(s), %d pricing / %d discount rules",
                elapsed_ms, len(cart), len(pricing_rules), len(discount_rules),
            )
        return preview

    @staticmethod
    def _validate_cart(cart: Sequence[CartLine]) -> None:
        if not cart:
            raise ValidationError("Cart is empty")
        for line in cart:
            if not line.product_id:
                raise ValidationError("Cart line is missing a product id")
            if line.quantity <= 0:
                raise ValidationError(
                    f"Quantity for product {line.product_id} must be positive, got {line.quantity}"
                )

    # ===================== FINALIZE =====================

    def finalize_order(
        self,
        preview: ResolvedOrderPreview,
        attempt_id: str,
        signals: Optional[RiskSignals] = None,
    ) -> FinalizedOrder:
        if not attempt_id:
            raise ValidationError("attempt_id is required")

        existing = self.attempts.get(attempt_id)
        if existing is not None:
            if existing.status == AttemptStatus.cancelled:
                raise ValidationError(f"Checkout attempt {attempt_id} was cancelled")
            logger.info("Attempt %s already finalized; returning stored result", attempt_id)
            return existing.order

        # uses this attempt redeemed before a crash or a failed compensation
        held = tuple(self.ledger.held_rule_ids(attempt_id))
        if held:
            logger.info("Attempt %s already holds rules %s; resuming", attempt_id, list(held))

        current = self._resolve(preview.cart, preview.customer_id, preview.coupon_code, owned=held)
        if not current.same_quote(preview):
            logger.info(
                "Quote for attempt %s changed since preview (total %s -> %s)",
                attempt_id, preview.total, current.total,
            )
            if held:
                self.ledger.release(attempt_id)
                current = self.resolve_order(preview.cart, preview.customer_id, preview.coupon_code)
            raise RuleConflictError(
                "Prices or discounts changed since the preview; please review the updated order",
                failed_rule_id=_first_dropped_rule(preview, current),
                repriced=current,
            )

        refused = _refused_coupon_rule(current)
        if refused is not None:
            if held:
                self.ledger.release(attempt_id)
            logger.info(
                "Attempt %s submitted coupon %s that is %s",
                attempt_id, refused.coupon_code, refused.reason.value,
            )
            raise RuleConflictError(
                f"Coupon {refused.coupon_code} can no longer be redeemed ({refused.reason.value})",
                failed_rule_id=refused.rule_id,
                repriced=current,
            )

        now = self.clock()
        history = call_with_timeout(
            "customer history",
            self.history.summary,
            current.customer_id,
            now,
            timeout=self.settings.LOOKUP_TIMEOUT_SECONDS,
        )

        if held and set(held) != set(current.applied_rule_ids):
            self.ledger.release(attempt_id)
        result = self.ledger.try_redeem(current.applied_rule_ids, attempt_id)
        if not result.committed:
            failure = RedemptionFailure(result.failed_rule_id)
            logger.info("Attempt %s: %s", attempt_id, failure)
            repriced = self.resolve_order(preview.cart, preview.customer_id, preview.coupon_code)
            raise RuleConflictError(
                str(failure), failed_rule_id=result.failed_rule_id, repriced=repriced
            ) from failure

        try:
            typical = fraud_scorer.typical_discount_percent(
                self.rule_store.discount_rules(), now, self.fraud_rules.typical_discount_percent
            )
            assessment = fraud_scorer.score(
                current, history, now, rules=self.fraud_rules, signals=signals, typical_discount=typical
            )
            order = FinalizedOrder(
                attempt_id=attempt_id,
                preview=current,
                risk_score=assessment.risk_score,
                risk_level=assessment.risk_level,
                flags=assessment.flags,
                finalized_at=now,
            )
            stored = self.attempts.save(order)
        except Exception:
            logger.exception("Finalizing attempt %s failed after redemption; releasing usage", attempt_id)
            self.ledger.release(attempt_id)
            raise

        if assessment.risk_level != RiskLevel.low:
            logger.info(
                "Attempt %s queued for review: risk %s (%s)",
                attempt_id, assessment.risk_score, ", ".join(assessment.triggered),
            )
        return stored.order

    # ===================== CANCEL =====================

    def cancel_order(self, attempt_id: str) -> List[int]:
        """
        Compensating cancel: gives back the usage the attempt consumed.
        Idempotent; a second call releases nothing. Works for an attempt whose
        redemption committed but whose order was never stored.
        """
        record = self.attempts.get(attempt_id)
        if record is not None:
            self.attempts.mark_cancelled(attempt_id, self.clock())
        released = self.ledger.release(attempt_id)
        if record is None and not released:
            raise ValidationError(f"Unknown checkout attempt {attempt_id}")
        logger.info("Attempt %s cancelled; released rules %s", attempt_id, released)
        return released


def _refused_coupon_rule(order: ResolvedOrderPreview) -> Optional[IneligibleRule]:
    """The submitted coupon's rule when it was refused for running out of uses."""
    if order.coupon_code is None:
        return None
    for rule in order.ineligible_rules:
        if rule.reason == IneligibleReason.usage_limit_reached and rule.coupon_code is not None:
            return rule
    return None


def _first_dropped_rule(previewed: ResolvedOrderPreview, current: ResolvedOrderPreview) -> Optional[int]:
    """First discount applied in the preview that no longer applies."""
    still_applied = set(current.applied_rule_ids)
    for rule_id in previewed.applied_rule_ids:
        if rule_id not in still_applied:
            return rule_id
    return None
