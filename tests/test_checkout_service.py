import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace
from decimal import Decimal

import pytest

from app.core.config import Settings
from app.enums.rule_types import DiscountRuleType, PricingRuleType, ReviewStatus, RiskLevel
from app.services.checkout.attempts import InMemoryAttemptStore
from app.services.checkout.collaborators import Catalog, SegmentOracle, StaticCatalog
from app.services.checkout.errors import (
    DependencyTimeoutError,
    RuleConflictError,
    ValidationError,
)
from app.services.checkout.types import CartLine, CustomerHistory, RiskSignals
from conftest import CATALOG, discount_rule, pricing_rule

BOOK = [CartLine("BOOK", 1)]


def test_resolve_prices_with_single_pricing_rule_and_tax(make_service):
    service = make_service(
        pricing=[
            pricing_rule(1, type=PricingRuleType.percentage, value="20", priority=1),
            pricing_rule(2, type=PricingRuleType.fixed_amount, value="3", priority=2),
        ]
    )
    preview = service.resolve_order([CartLine("WIDGET", 1)], "cust-1")

    assert preview.lines[0].unit_price == Decimal("8.00")
    assert preview.subtotal == Decimal("8.00")
    assert preview.catalog_subtotal == Decimal("10.00")
    assert preview.tax_amount == Decimal("0.64")
    assert preview.total == Decimal("8.64")


def test_resolve_stacks_discounts_and_taxes_the_remainder(make_service):
    service = make_service(
        discounts=[
            discount_rule(1, type=DiscountRuleType.percentage, value="10", priority=1),
            discount_rule(2, type=DiscountRuleType.fixed_amount, value="5", priority=2),
        ]
    )
    preview = service.resolve_order(BOOK, "cust-1")

    assert preview.discount_total == Decimal("15.00")
    assert preview.applied_rule_ids == (1, 2)
    assert preview.tax_amount == Decimal("6.80")
    assert preview.total == Decimal("91.80")


def test_resolve_is_pure(make_service):
    service = make_service(discounts=[discount_rule(1, coupon_code="SAVE10", usage_limit=3)])

    first = service.resolve_order(BOOK, "cust-1", "SAVE10")
    second = service.resolve_order(BOOK, "cust-1", "SAVE10")

    assert first == second
    assert service.ledger.used_count(1) == 0


@pytest.mark.parametrize(
    "cart,message",
    [
        ([], "empty"),
        ([CartLine("BOOK", 0)], "positive"),
        ([CartLine("BOOK", -2)], "positive"),
        ([CartLine("NOPE", 1)], "Unknown product"),
    ],
)
def test_invalid_carts_are_rejected(make_service, cart, message):
    with pytest.raises(ValidationError, match=message):
        make_service().resolve_order(cart, "cust-1")


def test_unknown_coupon_is_rejected(make_service):
    with pytest.raises(ValidationError, match="Unknown coupon"):
        make_service().resolve_order(BOOK, "cust-1", "GHOST")


def test_finalize_redeems_scores_and_stores(make_service):
    service = make_service(discounts=[discount_rule(1, coupon_code="SAVE10", usage_limit=3)])
    preview = service.resolve_order(BOOK, "cust-1", "save10")

    order = service.finalize_order(preview, "attempt-1")

    assert order.attempt_id == "attempt-1"
    assert order.preview.discount_total == Decimal("10.00")
    assert order.review_status == ReviewStatus.pending
    assert 0 <= order.risk_score <= 100
    assert service.ledger.used_count(1) == 1
    assert service.attempts.get("attempt-1").order == order


def test_finalize_is_idempotent_per_attempt(make_service):
    service = make_service(discounts=[discount_rule(1, coupon_code="SAVE10", usage_limit=3)])
    preview = service.resolve_order(BOOK, "cust-1", "SAVE10")

    first = service.finalize_order(preview, "attempt-1")
    second = service.finalize_order(preview, "attempt-1")

    assert first == second
    assert service.ledger.used_count(1) == 1


def test_exhausted_coupon_at_finalize_returns_full_price_repricing(make_service):
    service = make_service(discounts=[discount_rule(1, coupon_code="ONCE", usage_limit=1)])
    preview_a = service.resolve_order(BOOK, "cust-a", "ONCE")
    preview_b = service.resolve_order(BOOK, "cust-b", "ONCE")
    assert preview_b.discount_total == Decimal("10.00")

    service.finalize_order(preview_a, "attempt-a")

    with pytest.raises(RuleConflictError) as exc_info:
        service.finalize_order(preview_b, "attempt-b")

    err = exc_info.value
    assert err.failed_rule_id == 1
    assert err.repriced.discount_total == Decimal("0")
    assert err.repriced.total == Decimal("108.00")
    assert err.repriced.ineligible_rules[0].rule_id == 1
    assert service.ledger.used_count(1) == 1
    assert service.attempts.get("attempt-b") is None


def test_exhausted_coupon_shown_ineligible_in_preview_still_conflicts(make_service):
    service = make_service(discounts=[discount_rule(1, coupon_code="ONCE", usage_limit=1, used_count=1)])
    preview = service.resolve_order(BOOK, "cust-1", "ONCE")
    assert preview.discount_total == Decimal("0")

    with pytest.raises(RuleConflictError) as exc_info:
        service.finalize_order(preview, "attempt-1")

    err = exc_info.value
    assert err.failed_rule_id == 1
    assert err.repriced.total == Decimal("108.00")
    assert service.attempts.get("attempt-1") is None
    assert service.ledger.used_count(1) == 1


def test_lost_redemption_race_is_a_conflict(make_service):
    service = make_service(discounts=[discount_rule(1, coupon_code="ONCE", usage_limit=1)])
    preview = service.resolve_order(BOOK, "cust-1", "ONCE")
    # another node consumed the last use after the re-resolve read its counters
    service.ledger.register(1, usage_limit=1, used_count=1)
    service.rule_store._ledger = None

    with pytest.raises(RuleConflictError) as exc_info:
        service.finalize_order(preview, "attempt-1")

    assert exc_info.value.failed_rule_id == 1
    assert exc_info.value.repriced is not None
    assert service.attempts.get("attempt-1") is None


def test_changed_quote_is_a_conflict(make_service):
    service = make_service(discounts=[discount_rule(1, value="10")])
    preview = service.resolve_order(BOOK, "cust-1")
    stale = replace(preview, discount_total=Decimal("30.00"), total=Decimal("75.60"))

    with pytest.raises(RuleConflictError) as exc_info:
        service.finalize_order(stale, "attempt-1")

    assert exc_info.value.repriced.total == preview.total


def test_parallel_finalizes_never_oversell_a_limited_coupon(make_service):
    service = make_service(discounts=[discount_rule(1, coupon_code="LIMITED", usage_limit=4)])

    def checkout(i):
        preview = service.resolve_order(BOOK, f"cust-{i}", "LIMITED")
        try:
            order = service.finalize_order(preview, f"attempt-{i}")
        except RuleConflictError:
            return False
        return 1 in order.preview.applied_rule_ids

    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(checkout, range(25)))

    assert sum(results) == 4
    assert service.ledger.used_count(1) == 4


class _FailingAttemptStore(InMemoryAttemptStore):
    def save(self, order):
        raise RuntimeError("attempt store unavailable")


def test_failure_after_redemption_releases_usage(make_service):
    service = make_service(discounts=[discount_rule(1, coupon_code="SAVE10", usage_limit=3)])
    service.attempts = _FailingAttemptStore()
    preview = service.resolve_order(BOOK, "cust-1", "SAVE10")

    with pytest.raises(RuntimeError):
        service.finalize_order(preview, "attempt-1")

    assert service.ledger.used_count(1) == 0


def test_cancel_releases_usage_and_blocks_refinalize(make_service):
    service = make_service(discounts=[discount_rule(1, coupon_code="SAVE10", usage_limit=1)])
    preview = service.resolve_order(BOOK, "cust-1", "SAVE10")
    service.finalize_order(preview, "attempt-1")

    assert service.cancel_order("attempt-1") == [1]
    assert service.cancel_order("attempt-1") == []
    assert service.ledger.used_count(1) == 0

    with pytest.raises(ValidationError, match="cancelled"):
        service.finalize_order(preview, "attempt-1")
    with pytest.raises(ValidationError):
        service.cancel_order("never-seen")


def test_finalize_flags_risky_first_order(make_service):
    service = make_service(
        histories={"new-cust": CustomerHistory(order_count=0, trailing_average=Decimal("50"))}
    )
    preview = service.resolve_order([CartLine("TV", 1)], "new-cust")

    order = service.finalize_order(preview, "attempt-1", RiskSignals(contact_mismatch=True))

    assert order.risk_score == 65
    assert order.risk_level == RiskLevel.medium
    assert len(order.flags) == 3
    assert order.review_status == ReviewStatus.pending


class _SlowCatalog(Catalog):
    def get_products(self, product_ids):
        time.sleep(0.5)
        return StaticCatalog(CATALOG).get_products(product_ids)


class _BrokenSegments(SegmentOracle):
    def is_member(self, customer_id, segment_id):
        raise OSError("segment service unreachable")


def test_slow_catalog_times_out(make_service):
    service = make_service(catalog=_SlowCatalog(), settings=Settings(LOOKUP_TIMEOUT_SECONDS=0.05))
    with pytest.raises(DependencyTimeoutError) as exc_info:
        service.resolve_order(BOOK, "cust-1")
    assert exc_info.value.dependency == "catalog"


def test_segment_failure_is_reported_as_dependency_error(make_service):
    service = make_service(discounts=[discount_rule(1, conditions={"customer_segment_id": "gold"})])
    service.segments = _BrokenSegments()
    with pytest.raises(DependencyTimeoutError):
        service.resolve_order(BOOK, "cust-1")


def test_retry_after_orphaned_redemption_finishes_without_consuming_again(make_service):
    service = make_service(discounts=[discount_rule(1, coupon_code="ONCE", usage_limit=1)])
    preview = service.resolve_order(BOOK, "cust-1", "ONCE")
    # the redemption committed but the process died before the order was stored
    assert service.ledger.try_redeem((1,), "attempt-1").committed

    order = service.finalize_order(preview, "attempt-1")

    assert order.preview.applied_rule_ids == (1,)
    assert order.preview.total == preview.total
    assert service.ledger.used_count(1) == 1
    assert service.attempts.get("attempt-1").order == order


def test_cancel_releases_orphaned_redemption(make_service):
    service = make_service(discounts=[discount_rule(1, coupon_code="ONCE", usage_limit=1)])
    service.ledger.try_redeem((1,), "attempt-1")

    assert service.cancel_order("attempt-1") == [1]
    assert service.ledger.used_count(1) == 0
    with pytest.raises(ValidationError, match="Unknown"):
        service.cancel_order("attempt-1")


def test_orphaned_redemption_on_a_changed_quote_is_given_back(make_service):
    service = make_service(discounts=[discount_rule(1, coupon_code="ONCE", usage_limit=1)])
    preview = service.resolve_order(BOOK, "cust-1", "ONCE")
    service.ledger.try_redeem((1,), "attempt-1")
    stale = replace(preview, total=Decimal("1.00"))

    with pytest.raises(RuleConflictError):
        service.finalize_order(stale, "attempt-1")

    assert service.ledger.used_count(1) == 0
    assert service.ledger.held_rule_ids("attempt-1") == []
