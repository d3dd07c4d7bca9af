from datetime import datetime, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.database.connection import Base
from app.enums.rule_types import DiscountRuleType, PricingRuleType
from app.schemas.rule_conditions import parse_conditions
from app.services.checkout.attempts import InMemoryAttemptStore
from app.services.checkout.collaborators import (
    CatalogEntry,
    StaticCatalog,
    StaticHistoryProvider,
    StaticSegmentOracle,
)
from app.services.checkout.ledger import InMemoryRedemptionLedger
from app.services.checkout.orchestrator import CheckoutService
from app.services.checkout.rule_store import InMemoryRuleStore
from app.services.checkout.types import DiscountRuleSnapshot, PricingRuleSnapshot, RuleScope

# importing the models registers their tables on Base.metadata
import app.models.checkout_attempt  # noqa: F401
import app.models.discount_rule  # noqa: F401
import app.models.pricing_rule  # noqa: F401
import app.models.product  # noqa: F401
import app.models.redemption  # noqa: F401
import app.models.segment_membership  # noqa: F401

TEST_DB_URL = "sqlite:///:memory:"

engine = create_engine(
    TEST_DB_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

NOW = datetime(2026, 3, 2, 12, 0, 0)


@pytest.fixture(scope="session", autouse=True)
def create_test_database():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def db():
    connection = engine.connect()
    trans = connection.begin()
    session = TestingSessionLocal(bind=connection)
    try:
        yield session
    finally:
        session.close()
        trans.rollback()
        connection.close()


@pytest.fixture()
def session_factory(tmp_path):
    """
    File-backed SQLite with a real connection pool, so threads get their own
    connections and database locking behaves like it does in production.
    """
    file_engine = create_engine(
        f"sqlite:///{tmp_path / 'checkout.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(bind=file_engine)
    factory = sessionmaker(autocommit=False, autoflush=False, bind=file_engine)
    yield factory
    file_engine.dispose()


@pytest.fixture()
def clock():
    return lambda: NOW


# ---------- snapshot builders ----------

def pricing_rule(
    rule_id,
    type=PricingRuleType.percentage,
    value="10",
    priority=0,
    conditions=None,
    product_ids=(),
    category_ids=(),
    customer_ids=(),
    start_date=NOW - timedelta(days=1),
    end_date=None,
    is_active=True,
):
    return PricingRuleSnapshot(
        id=rule_id,
        name=f"pricing-{rule_id}",
        type=type,
        value=Decimal(value),
        start_date=start_date,
        end_date=end_date,
        is_active=is_active,
        priority=priority,
        conditions=parse_conditions(conditions),
        scope=RuleScope(
            product_ids=frozenset(product_ids),
            category_ids=frozenset(category_ids),
            customer_ids=frozenset(customer_ids),
        ),
    )


def discount_rule(
    rule_id,
    type=DiscountRuleType.percentage,
    value="10",
    priority=0,
    conditions=None,
    product_ids=(),
    category_ids=(),
    customer_ids=(),
    usage_limit=None,
    used_count=0,
    coupon_code=None,
    start_date=NOW - timedelta(days=1),
    end_date=None,
    is_active=True,
):
    return DiscountRuleSnapshot(
        id=rule_id,
        name=f"discount-{rule_id}",
        type=type,
        value=Decimal(value),
        start_date=start_date,
        end_date=end_date,
        is_active=is_active,
        priority=priority,
        conditions=parse_conditions(conditions),
        scope=RuleScope(
            product_ids=frozenset(product_ids),
            category_ids=frozenset(category_ids),
            customer_ids=frozenset(customer_ids),
        ),
        usage_limit=usage_limit,
        used_count=used_count,
        coupon_code=coupon_code,
    )


CATALOG = [
    CatalogEntry("WIDGET", "gadgets", Decimal("10.00")),
    CatalogEntry("BOOK", "books", Decimal("100.00")),
    CatalogEntry("SHOE", "shoes", Decimal("25.00")),
    CatalogEntry("TV", "electronics", Decimal("5000.00")),
]


@pytest.fixture()
def make_service(clock):
    """Build an in-memory CheckoutService from rule snapshots."""

    def _make(pricing=(), discounts=(), memberships=(), histories=None, catalog=None, **kwargs):
        ledger = InMemoryRedemptionLedger()
        store = InMemoryRuleStore(pricing, discounts, ledger=ledger)
        return CheckoutService(
            rule_store=store,
            catalog=catalog or StaticCatalog(CATALOG),
            segments=StaticSegmentOracle(memberships),
            history=StaticHistoryProvider(histories),
            ledger=ledger,
            attempts=InMemoryAttemptStore(),
            clock=clock,
            **kwargs,
        )

    return _make
