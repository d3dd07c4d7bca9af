from datetime import datetime

from sqlalchemy import Column, DateTime, String

from app.database.connection import Base


class CustomerSegmentMember(Base):
    """Materialised segment membership; criteria evaluation happens elsewhere."""

    __tablename__ = "customer_segment_members"

    customer_id = Column(String, primary_key=True)
    segment_id = Column(String, primary_key=True, index=True)
    added_at = Column(DateTime, default=datetime.utcnow)
