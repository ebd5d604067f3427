"""
Transaction model: one row per STK push checkout attempt.
checkout_request_id is issued by Daraja and correlates the async callback.
Status only moves pending -> completed | failed.
"""
from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import Column, DateTime, Numeric, String, Text

from app.db.base import Base, JSONType


STATUS_PENDING = "pending"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"
TERMINAL_STATUSES = frozenset({STATUS_COMPLETED, STATUS_FAILED})


class Transaction(Base):
    __tablename__ = "transactions"

    id = Column(String, primary_key=True, default=lambda: str(uuid4()))
    checkout_request_id = Column(String, unique=True, nullable=False, index=True)
    merchant_request_id = Column(String, nullable=True)
    phone_number = Column(String, nullable=False)             # normalized, 2547XXXXXXXX
    amount = Column(Numeric(12, 2), nullable=False)           # cart total at initiation
    cart_items = Column(JSONType, nullable=False, default=list)  # line-item snapshot
    user_id = Column(String, nullable=False, index=True)
    status = Column(String, nullable=False, default=STATUS_PENDING, index=True)

    # Filled on completion
    mpesa_receipt_number = Column(String, nullable=True)
    transaction_date = Column(String, nullable=True)          # provider YYYYMMDDHHMMSS
    actual_amount = Column(Numeric(12, 2), nullable=True)

    # Filled on failure
    failure_reason = Column(Text, nullable=True)

    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES
