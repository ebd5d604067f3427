"""
Sale model: denormalized reporting row, one per completed transaction.
transaction_id is unique so a redelivered callback cannot add a second sale.
"""
from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import Column, DateTime, ForeignKey, Numeric, String

from app.db.base import Base, JSONType


class Sale(Base):
    __tablename__ = "sales"

    id = Column(String, primary_key=True, default=lambda: str(uuid4()))
    transaction_id = Column(String, ForeignKey("transactions.id"), unique=True, nullable=False)
    mpesa_receipt_number = Column(String, nullable=True, index=True)
    customer_phone = Column(String, nullable=False)
    amount = Column(Numeric(12, 2), nullable=False)
    cart_items = Column(JSONType, nullable=False, default=list)
    transaction_date = Column(DateTime(timezone=True), nullable=False, index=True)
    status = Column(String, nullable=False, default="completed")  # completed / refunded / cancelled
    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        index=True,
    )
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )
