from sqlalchemy import Column, String, Numeric, DateTime
from datetime import datetime
from app.database.connection import Base

class Product(Base):
    __tablename__ = "products"

    product_id = Column(String, primary_key=True, index=True)
    name = Column(String, nullable=False)
    category_id = Column(String, nullable=False, index=True)

    price = Column(Numeric(12, 2), nullable=False)  # catalog price before rules

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow)
