from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, UniqueConstraint

from app.database.connection import Base


class RuleRedemption(Base):
    __tablename__ = "rule_redemptions"
    __table_args__ = (
        UniqueConstraint("attempt_id", "rule_id", name="uq_redemption_attempt_rule"),
    )

    id = Column(Integer, primary_key=True, index=True)
    attempt_id = Column(String, nullable=False, index=True)
    rule_id = Column(Integer, ForeignKey("discount_rules.id"), nullable=False, index=True)
    redeemed_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    released_at = Column(DateTime, nullable=True)
