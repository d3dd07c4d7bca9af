from datetime import datetime

from sqlalchemy import Column, DateTime, Integer, JSON, Numeric, String

from app.database.connection import Base


class CheckoutAttempt(Base):
    """Finalized order record, keyed by the caller's attempt id."""

    __tablename__ = "checkout_attempts"

    id = Column(Integer, primary_key=True, index=True)
    attempt_id = Column(String, unique=True, index=True, nullable=False)
    customer_id = Column(String, nullable=True, index=True)
    coupon_code = Column(String, nullable=True)
    subtotal = Column(Numeric(12, 2), nullable=False)
    discount_total = Column(Numeric(12, 2), nullable=False)
    tax_amount = Column(Numeric(12, 2), nullable=False)
    total = Column(Numeric(12, 2), nullable=False)
    applied_rule_ids = Column(JSON, default=list)
    # full finalized payload, used to replay idempotent finalize calls
    payload = Column(JSON, nullable=False)
    risk_score = Column(Integer, nullable=False, default=0)
    flags = Column(JSON, default=list)
    review_status = Column(String, default="pending", index=True)
    status = Column(String, default="finalized", index=True)
    finalized_at = Column(DateTime, default=datetime.utcnow, index=True)
    cancelled_at = Column(DateTime, nullable=True)
