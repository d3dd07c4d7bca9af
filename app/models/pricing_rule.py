import datetime

from sqlalchemy import Boolean, Column, DateTime, Integer, JSON, Numeric, String

from app.database.connection import Base


class RuleColumnsMixin:
    """Columns shared by pricing and discount rules."""

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False)
    description = Column(String, nullable=True)
    type = Column(String, nullable=False)
    value = Column(Numeric(12, 2), nullable=False)
    start_date = Column(DateTime, nullable=False)
    end_date = Column(DateTime, nullable=True)  # open-ended when null
    is_active = Column(Boolean, nullable=False, default=True)
    priority = Column(Integer, nullable=False, default=0)  # lower wins
    # e.g. {"min_order_value": 50, "product_ids": ["P1"], "tiers": [...]}
    conditions = Column(JSON, nullable=False, default=dict)
    # scope links; all empty = global
    product_ids = Column(JSON, nullable=False, default=list)
    category_ids = Column(JSON, nullable=False, default=list)
    customer_ids = Column(JSON, nullable=False, default=list)
    created_at = Column(DateTime, default=datetime.datetime.utcnow)
    updated_at = Column(
        DateTime, default=datetime.datetime.utcnow, onupdate=datetime.datetime.utcnow
    )


class PricingRule(RuleColumnsMixin, Base):
    __tablename__ = "pricing_rules"
