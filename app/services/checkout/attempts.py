"""
Finalized order records keyed by checkout attempt id.

The record makes finalize idempotent: a retried attempt gets the stored
result back instead of being charged and counted twice.
"""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from datetime import datetime
from threading import Lock
from typing import Callable, Dict, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.enums.rule_types import AttemptStatus, ReviewStatus
from app.models.checkout_attempt import CheckoutAttempt
from app.schemas.checkout import FinalizedOrderSchema
from app.services.checkout.types import FinalizedOrder

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AttemptRecord:
    order: FinalizedOrder
    status: AttemptStatus = AttemptStatus.finalized


class AttemptStore(ABC):
    @abstractmethod
    def get(self, attempt_id: str) -> Optional[AttemptRecord]:
        ...

    @abstractmethod
    def save(self, order: FinalizedOrder) -> AttemptRecord:
        """Store a finalized order; if the attempt already exists the stored record wins."""

    @abstractmethod
    def mark_cancelled(self, attempt_id: str, now: datetime) -> bool:
        """Flip a finalized attempt to cancelled. False if unknown or already cancelled."""


class InMemoryAttemptStore(AttemptStore):
    def __init__(self):
        self._lock = Lock()
        self._records: Dict[str, AttemptRecord] = {}

    def get(self, attempt_id: str) -> Optional[AttemptRecord]:
        with self._lock:
            return self._records.get(attempt_id)

    def save(self, order: FinalizedOrder) -> AttemptRecord:
        with self._lock:
            return self._records.setdefault(order.attempt_id, AttemptRecord(order))

    def mark_cancelled(self, attempt_id: str, now: datetime) -> bool:
        with self._lock:
            record = self._records.get(attempt_id)
            if record is None or record.status == AttemptStatus.cancelled:
                return False
            self._records[attempt_id] = AttemptRecord(record.order, AttemptStatus.cancelled)
            return True


class SqlAttemptStore(AttemptStore):
    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory

    def get(self, attempt_id: str) -> Optional[AttemptRecord]:
        db = self._session_factory()
        try:
            row = db.execute(
                select(CheckoutAttempt).where(CheckoutAttempt.attempt_id == attempt_id)
            ).scalar_one_or_none()
            return _record_from_row(row) if row is not None else None
        finally:
            db.close()

    def save(self, order: FinalizedOrder) -> AttemptRecord:
        preview = order.preview
        row = CheckoutAttempt(
            attempt_id=order.attempt_id,
            customer_id=preview.customer_id,
            coupon_code=preview.coupon_code,
            subtotal=preview.subtotal,
            discount_total=preview.discount_total,
            tax_amount=preview.tax_amount,
            total=preview.total,
            applied_rule_ids=list(preview.applied_rule_ids),
            payload=FinalizedOrderSchema.from_domain(order).model_dump(mode="json"),
            risk_score=order.risk_score,
            flags=list(order.flags),
            review_status=order.review_status.value,
            status=AttemptStatus.finalized.value,
            finalized_at=order.finalized_at,
        )
        db = self._session_factory()
        try:
            db.add(row)
            db.commit()
        except IntegrityError:
            db.rollback()
            logger.info("Attempt %s was stored concurrently; keeping the first record", order.attempt_id)
            existing = self.get(order.attempt_id)
            if existing is None:
                raise
            return existing
        finally:
            db.close()
        return AttemptRecord(order)

    def mark_cancelled(self, attempt_id: str, now: datetime) -> bool:
        db = self._session_factory()
        try:
            res = db.execute(
                update(CheckoutAttempt)
                .where(
                    CheckoutAttempt.attempt_id == attempt_id,
                    CheckoutAttempt.status == AttemptStatus.finalized.value,
                )
                .values(status=AttemptStatus.cancelled.value, cancelled_at=now)
                .execution_options(synchronize_session=False)
            )
            db.commit()
            return res.rowcount == 1
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()


def _record_from_row(row: CheckoutAttempt) -> AttemptRecord:
    order = FinalizedOrderSchema.model_validate(row.payload).to_domain()
    # review status moves on in the review workflow; the column is authoritative
    order = replace(order, review_status=ReviewStatus(row.review_status))
    return AttemptRecord(order=order, status=AttemptStatus(row.status))
