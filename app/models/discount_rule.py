from sqlalchemy import Column, Index, Integer, String, func

from app.database.connection import Base
from app.models.pricing_rule import RuleColumnsMixin


class DiscountRule(RuleColumnsMixin, Base):
    """Order-level discount; a coupon is a discount rule with a coupon_code."""

    __tablename__ = "discount_rules"

    usage_limit = Column(Integer, nullable=True)  # null = unlimited
    used_count = Column(Integer, nullable=False, default=0)
    coupon_code = Column(String, unique=True, nullable=True, index=True)
    campaign_id = Column(Integer, nullable=True, index=True)  # reporting only

    # codes are matched case-insensitively, so they must be unique that way too
    __table_args__ = (
        Index("uq_discount_rules_coupon_code_lower", func.lower(coupon_code), unique=True),
    )
