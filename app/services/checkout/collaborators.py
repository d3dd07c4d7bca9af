"""
Inbound collaborators of the checkout engine: catalog prices, segment
membership and customer order history. Every call goes through
`call_with_timeout`, so a slow or failing dependency becomes a
DependencyTimeoutError instead of a hang.
"""
import logging
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.enums.rule_types import AttemptStatus
from app.models.checkout_attempt import CheckoutAttempt
from app.models.product import Product
from app.models.segment_membership import CustomerSegmentMember
from app.services.checkout.errors import DependencyTimeoutError
from app.services.checkout.types import ZERO, CustomerHistory

logger = logging.getLogger(__name__)

_EXECUTOR = ThreadPoolExecutor(max_workers=16, thread_name_prefix="checkout-lookup")


def call_with_timeout(dependency: str, fn: Callable, *args, timeout: float = 2.0):
    """Run a lookup with a bounded wait. Timeouts and storage errors are retryable."""
    future = _EXECUTOR.submit(fn, *args)
    try:
        return future.result(timeout=timeout)
    except FutureTimeoutError as exc:
        future.cancel()
        logger.warning("%s lookup timed out after %.2fs", dependency, timeout)
        raise DependencyTimeoutError(dependency, f"{dependency} lookup timed out") from exc
    except (SQLAlchemyError, OSError) as exc:
        logger.warning("%s lookup failed: %s", dependency, exc)
        raise DependencyTimeoutError(dependency) from exc


@dataclass(frozen=True)
class CatalogEntry:
    product_id: str
    category_id: Optional[str]
    price: Decimal


class Catalog(ABC):
    @abstractmethod
    def get_products(self, product_ids: Iterable[str]) -> Dict[str, CatalogEntry]:
        """Catalog entries by product id; unknown ids are simply absent."""


class SegmentOracle(ABC):
    @abstractmethod
    def is_member(self, customer_id: str, segment_id: str) -> bool:
        ...


class CustomerHistoryProvider(ABC):
    @abstractmethod
    def summary(self, customer_id: Optional[str], now: datetime) -> CustomerHistory:
        ...


# ===================== IN-MEMORY =====================


class StaticCatalog(Catalog):
    def __init__(self, entries: Iterable[CatalogEntry] = ()):
        self._entries = {entry.product_id: entry for entry in entries}

    def get_products(self, product_ids: Iterable[str]) -> Dict[str, CatalogEntry]:
        return {pid: self._entries[pid] for pid in product_ids if pid in self._entries}


class StaticSegmentOracle(SegmentOracle):
    def __init__(self, memberships: Iterable[Tuple[str, str]] = ()):
        self._memberships: Set[Tuple[str, str]] = set(memberships)

    def is_member(self, customer_id: str, segment_id: str) -> bool:
        return (customer_id, segment_id) in self._memberships


class StaticHistoryProvider(CustomerHistoryProvider):
    def __init__(self, histories: Optional[Dict[str, CustomerHistory]] = None):
        self._histories = dict(histories or {})

    def summary(self, customer_id: Optional[str], now: datetime) -> CustomerHistory:
        if customer_id is None:
            return CustomerHistory()
        return self._histories.get(customer_id, CustomerHistory())


# ===================== DATABASE =====================
# Each call opens its own short-lived session: lookups run on executor
# threads and may outlive the caller's wait.


class SqlCatalog(Catalog):
    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory

    def get_products(self, product_ids: Iterable[str]) -> Dict[str, CatalogEntry]:
        ids = list(set(product_ids))
        if not ids:
            return {}
        db = self._session_factory()
        try:
            rows = db.execute(
                select(Product.product_id, Product.category_id, Product.price).where(
                    Product.product_id.in_(ids)
                )
            ).all()
        finally:
            db.close()
        return {
            row.product_id: CatalogEntry(
                product_id=row.product_id,
                category_id=row.category_id,
                price=Decimal(str(row.price)),
            )
            for row in rows
        }


class SqlSegmentOracle(SegmentOracle):
    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory

    def is_member(self, customer_id: str, segment_id: str) -> bool:
        db = self._session_factory()
        try:
            row = db.execute(
                select(CustomerSegmentMember.customer_id).where(
                    CustomerSegmentMember.customer_id == customer_id,
                    CustomerSegmentMember.segment_id == segment_id,
                )
            ).first()
        finally:
            db.close()
        return row is not None


class SqlHistoryProvider(CustomerHistoryProvider):
    """Order history from finalized checkout attempts."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        trailing_orders: int = 20,
        recent_window: timedelta = timedelta(hours=24),
    ):
        self._session_factory = session_factory
        self._trailing_orders = trailing_orders
        self._recent_window = recent_window

    def summary(self, customer_id: Optional[str], now: datetime) -> CustomerHistory:
        if customer_id is None:
            return CustomerHistory()
        db = self._session_factory()
        try:
            finalized = (
                CheckoutAttempt.customer_id == customer_id,
                CheckoutAttempt.status == AttemptStatus.finalized.value,
                CheckoutAttempt.finalized_at <= now,
            )
            order_count = db.execute(
                select(func.count()).select_from(CheckoutAttempt).where(*finalized)
            ).scalar() or 0

            totals: List = db.execute(
                select(CheckoutAttempt.total)
                .where(*finalized)
                .order_by(CheckoutAttempt.finalized_at.desc())
                .limit(self._trailing_orders)
            ).scalars().all()

            recent = db.execute(
                select(CheckoutAttempt.finalized_at)
                .where(*finalized, CheckoutAttempt.finalized_at >= now - self._recent_window)
                .order_by(CheckoutAttempt.finalized_at.asc())
            ).scalars().all()
        finally:
            db.close()

        trailing_average = ZERO
        if totals:
            trailing_average = sum((Decimal(str(t)) for t in totals), ZERO) / len(totals)

        return CustomerHistory(
            order_count=int(order_count),
            trailing_average=trailing_average,
            recent_order_times=tuple(recent),
        )
