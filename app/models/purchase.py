"""
Purchase model: entitlement row, one per cart line of a completed transaction.
The profile/download screen reads these by user_id.
"""
from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import Column, DateTime, ForeignKey, Integer, Numeric, String, UniqueConstraint

from app.db.base import Base


class Purchase(Base):
    __tablename__ = "purchases"
    __table_args__ = (
        UniqueConstraint("transaction_id", "line_number", name="uq_purchases_transaction_line"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid4()))
    user_id = Column(String, nullable=False, index=True)
    material_id = Column(String, nullable=True)
    material_title = Column(String, nullable=True)
    subject = Column(String, nullable=True)
    level = Column(String, nullable=True)
    year = Column(String, nullable=True)
    price = Column(Numeric(12, 2), nullable=True)
    amount = Column(Numeric(12, 2), nullable=True)
    download_url = Column(String, nullable=True)
    file_size = Column(String, nullable=True)
    pages = Column(Integer, nullable=True)
    transaction_id = Column(String, ForeignKey("transactions.id"), nullable=False, index=True)
    line_number = Column(Integer, nullable=False)             # index in the cart snapshot
    mpesa_receipt_number = Column(String, nullable=True)
    purchase_date = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
