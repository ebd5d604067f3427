import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any

from sqlalchemy.orm import Session

from app.models.transaction import (
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_PENDING,
    Transaction,
)

logger = logging.getLogger(__name__)


class TransactionService:
    """Transaction rows keyed by the Daraja checkout reference.

    create_pending commits on its own; the mark_* methods only flush so the
    callback handler can commit the transition together with its fan-out.
    """

    def __init__(self, db: Session):
        self.db = db

    def create_pending(
        self,
        checkout_request_id: str,
        merchant_request_id: str | None,
        phone_number: str,
        amount: Any,
        cart_items: list[dict],
        user_id: str,
    ) -> Transaction:
        tx = Transaction(
            checkout_request_id=checkout_request_id,
            merchant_request_id=merchant_request_id,
            phone_number=phone_number,
            amount=Decimal(str(amount)),
            cart_items=list(cart_items),
            user_id=user_id,
            status=STATUS_PENDING,
        )
        self.db.add(tx)
        self.db.commit()
        self.db.refresh(tx)
        return tx

    def get(self, transaction_id: str) -> Transaction | None:
        return self.db.query(Transaction).filter(Transaction.id == transaction_id).one_or_none()

    def get_by_checkout_id(self, checkout_request_id: str) -> Transaction | None:
        return (
            self.db.query(Transaction)
            .filter(Transaction.checkout_request_id == checkout_request_id)
            .one_or_none()
        )

    def mark_completed(
        self,
        tx: Transaction,
        mpesa_receipt_number: str | None,
        transaction_date: str | None,
        actual_amount: Any,
    ) -> Transaction:
        tx.status = STATUS_COMPLETED
        tx.mpesa_receipt_number = mpesa_receipt_number
        tx.transaction_date = transaction_date
        tx.actual_amount = Decimal(str(actual_amount)) if actual_amount is not None else None
        tx.updated_at = datetime.now(timezone.utc)
        self.db.add(tx)
        self.db.flush()
        return tx

    def mark_failed(self, tx: Transaction, failure_reason: str | None) -> Transaction:
        tx.status = STATUS_FAILED
        tx.failure_reason = failure_reason
        tx.updated_at = datetime.now(timezone.utc)
        self.db.add(tx)
        self.db.flush()
        return tx

    def list_stale_pending(self, older_than: timedelta, max_age: timedelta, limit: int = 100) -> list[Transaction]:
        """Pending rows old enough to ask the gateway about, but not abandoned."""
        now = datetime.now(timezone.utc)
        return (
            self.db.query(Transaction)
            .filter(
                Transaction.status == STATUS_PENDING,
                Transaction.created_at < now - older_than,
                Transaction.created_at > now - max_age,
            )
            .order_by(Transaction.created_at)
            .limit(limit)
            .all()
        )
