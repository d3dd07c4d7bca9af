from datetime import datetime, timedelta
from decimal import Decimal
from types import SimpleNamespace

import pytest
from fastapi import HTTPException
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from app.database.connection import Base
from app.dependencies.checkout import build_checkout_service
from app.middleware.metrics import new_metrics
from app.models.checkout_attempt import CheckoutAttempt
from app.models.discount_rule import DiscountRule
from app.models.pricing_rule import PricingRule
from app.models.product import Product
from app.models.segment_membership import CustomerSegmentMember
from app.routes.checkout import cancel_order, finalize_order, preview_order
from app.routes.system import health_check, system_metrics
from app.schemas.auth import TokenData
from app.schemas.checkout import CartLineSchema, FinalizeRequest, PreviewRequest
from app.services.checkout.collaborators import SqlHistoryProvider
from app.services.checkout.rule_store import SqlRuleStore

# previews and ids shared by the ordered steps below
STATE = {}


@pytest.fixture(scope="module")
def factory(tmp_path_factory):
    path = tmp_path_factory.mktemp("e2e") / "checkout.db"
    e2e_engine = create_engine(f"sqlite:///{path}", connect_args={"check_same_thread": False})
    Base.metadata.create_all(bind=e2e_engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=e2e_engine)
    e2e_engine.dispose()


@pytest.fixture(scope="module")
def service(factory):
    return build_checkout_service(factory)


@pytest.fixture(scope="module")
def request_stub():
    return SimpleNamespace(app=SimpleNamespace(state=SimpleNamespace(metrics=new_metrics())))


def _rule_kwargs(**overrides):
    kwargs = dict(
        start_date=datetime.utcnow() - timedelta(days=1),
        is_active=True,
        conditions={},
        product_ids=[],
        category_ids=[],
        customer_ids=[],
    )
    kwargs.update(overrides)
    return kwargs


def _cart_request(customer_id, coupon_code=None):
    return PreviewRequest(
        customer_id=customer_id,
        coupon_code=coupon_code,
        items=[
            CartLineSchema(product_id="WIDGET", quantity=5),
            CartLineSchema(product_id="BOOK", quantity=1),
        ],
    )


def _principal(username="cust-1", role="user"):
    return TokenData(username=username, role=role)


@pytest.mark.order(1)
def test_seed_catalog_and_rules(factory):
    db = factory()
    db.add_all([
        Product(product_id="WIDGET", name="Widget", category_id="gadgets", price=Decimal("10.00")),
        Product(product_id="BOOK", name="Book", category_id="books", price=Decimal("100.00")),
        PricingRule(id=1, name="Widget promo", type="percentage", value=Decimal("20"),
                    **_rule_kwargs(product_ids=["WIDGET"])),
        DiscountRule(id=1, name="Welcome coupon", type="percentage", value=Decimal("10"),
                     priority=1, usage_limit=1, used_count=0, coupon_code="WELCOME10",
                     **_rule_kwargs()),
        DiscountRule(id=2, name="Gold members", type="fixed_amount", value=Decimal("6"),
                     priority=5, **_rule_kwargs(conditions={"customerSegmentId": "gold"})),
        DiscountRule(id=3, name="Broken rule", type="percentage", value=Decimal("50"),
                     **_rule_kwargs(conditions={"minimum_spend": 1})),
        CustomerSegmentMember(customer_id="cust-1", segment_id="gold"),
    ])
    db.commit()
    db.close()


@pytest.mark.order(2)
def test_rule_store_skips_malformed_conditions(factory):
    rule_ids = [rule.id for rule in SqlRuleStore(factory).discount_rules()]
    assert sorted(rule_ids) == [1, 2]


@pytest.mark.order(3)
def test_preview_route(service, request_stub):
    preview = preview_order(
        data=_cart_request("cust-1", "welcome10"),
        request=request_stub,
        principal=_principal(),
        service=service,
    )
    # widgets 5 x $8 + book $100 = $140; 10% coupon, then $6 gold discount
    assert preview.subtotal == Decimal("140.00")
    assert preview.discount_total == Decimal("20.00")
    assert [d.rule_id for d in preview.applied_discounts] == [1, 2]
    assert preview.tax_amount == Decimal("9.60")
    assert preview.total == Decimal("129.60")
    STATE["preview_1"] = preview

    other = preview_order(
        data=_cart_request("cust-2", "WELCOME10"),
        request=request_stub,
        principal=_principal("cust-2"),
        service=service,
    )
    assert other.total == Decimal("136.08")
    STATE["preview_2"] = other
    assert request_stub.app.state.metrics["checkout_previews"] == 2


@pytest.mark.order(4)
def test_preview_route_rejects_bad_input(service, request_stub):
    with pytest.raises(HTTPException) as exc_info:
        preview_order(
            data=PreviewRequest(items=[CartLineSchema(product_id="GHOST", quantity=1)]),
            request=request_stub,
            principal=_principal(),
            service=service,
        )
    assert exc_info.value.status_code == 400


@pytest.mark.order(4)
def test_routes_refuse_checkout_for_another_customer(service, request_stub):
    with pytest.raises(HTTPException) as exc_info:
        preview_order(
            data=_cart_request("cust-1"),
            request=request_stub,
            principal=_principal("cust-2"),
            service=service,
        )
    assert exc_info.value.status_code == 403

    data = FinalizeRequest(attempt_id="e2e-foreign", preview=STATE["preview_1"])
    with pytest.raises(HTTPException) as exc_info:
        finalize_order(data=data, request=request_stub, principal=_principal("cust-2"), service=service)
    assert exc_info.value.status_code == 403

    # admins may act on behalf of a customer
    admin_view = preview_order(
        data=_cart_request("cust-1", "WELCOME10"),
        request=request_stub,
        principal=_principal("ops", role="admin"),
        service=service,
    )
    assert admin_view.total == STATE["preview_1"].total


@pytest.mark.order(5)
def test_finalize_route_commits_usage(service, factory, request_stub):
    data = FinalizeRequest(attempt_id="e2e-attempt-1", preview=STATE["preview_1"])
    order = finalize_order(data=data, request=request_stub, principal=_principal(), service=service)

    assert order.attempt_id == "e2e-attempt-1"
    assert order.preview.total == Decimal("129.60")
    assert order.review_status.value == "pending"

    db = factory()
    assert db.get(DiscountRule, 1).used_count == 1
    row = db.query(CheckoutAttempt).filter_by(attempt_id="e2e-attempt-1").one()
    assert row.total == Decimal("129.60")
    assert row.applied_rule_ids == [1, 2]
    db.close()

    replay = finalize_order(data=data, request=request_stub, principal=_principal(), service=service)
    assert replay.finalized_at == order.finalized_at
    assert replay.preview.total == order.preview.total


@pytest.mark.order(6)
def test_finalize_route_reports_exhausted_coupon_as_conflict(service, factory, request_stub):
    data = FinalizeRequest(attempt_id="e2e-attempt-2", preview=STATE["preview_2"])
    with pytest.raises(HTTPException) as exc_info:
        finalize_order(data=data, request=request_stub, principal=_principal("cust-2"), service=service)

    assert exc_info.value.status_code == 409
    detail = exc_info.value.detail
    assert detail["failed_rule_id"] == 1
    assert Decimal(detail["repriced"]["total"]) == Decimal("151.20")
    assert request_stub.app.state.metrics["checkout_conflicts"] == 1

    db = factory()
    assert db.get(DiscountRule, 1).used_count == 1
    db.close()


@pytest.mark.order(7)
def test_history_comes_from_finalized_attempts(factory):
    history = SqlHistoryProvider(factory).summary("cust-1", datetime.utcnow() + timedelta(seconds=1))
    assert history.order_count == 1
    assert history.trailing_average == Decimal("129.60")
    assert len(history.recent_order_times) == 1


@pytest.mark.order(8)
def test_system_routes(factory, request_stub):
    db = factory()
    try:
        health = health_check(request=request_stub, db=db)
        assert health.db_ok

        metrics = system_metrics(request=request_stub, db=db)
        assert metrics.total_orders == 1
        assert metrics.pending_reviews == 1
        assert metrics.active_coupons == 1
        assert metrics.exhausted_coupons == 1
        assert metrics.checkout_finalized == 2
        assert metrics.checkout_conflicts == 1
    finally:
        db.close()


@pytest.mark.order(9)
def test_cancel_route_releases_usage(service, factory):
    response = cancel_order(attempt_id="e2e-attempt-1", service=service)
    assert response.released_rule_ids == [1, 2]

    db = factory()
    assert db.get(DiscountRule, 1).used_count == 0
    assert db.query(CheckoutAttempt).filter_by(attempt_id="e2e-attempt-1").one().status == "cancelled"
    db.close()

    with pytest.raises(HTTPException) as exc_info:
        cancel_order(attempt_id="unknown-attempt", service=service)
    assert exc_info.value.status_code == 404


@pytest.mark.order(10)
def test_orphaned_redemption_is_resumed_then_cancelled(service, factory, request_stub):
    # usage was consumed but the order never got stored
    assert service.ledger.try_redeem([1], "e2e-orphan").committed

    data = FinalizeRequest(attempt_id="e2e-orphan", preview=STATE["preview_2"])
    order = finalize_order(data=data, request=request_stub, principal=_principal("cust-2"), service=service)
    assert order.preview.total == Decimal("136.08")

    db = factory()
    assert db.get(DiscountRule, 1).used_count == 1
    db.close()

    assert cancel_order(attempt_id="e2e-orphan", service=service).released_rule_ids == [1]
    db = factory()
    assert db.get(DiscountRule, 1).used_count == 0
    db.close()
