import logging
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any

from sqlalchemy.orm import Session

from app.models.purchase import Purchase
from app.models.transaction import Transaction

logger = logging.getLogger(__name__)


def _to_decimal(value: Any) -> Decimal | None:
    if value is None or value == "":
        return None
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None


def _to_int(value: Any) -> int | None:
    try:
        return int(value) if value is not None and value != "" else None
    except (TypeError, ValueError):
        return None


def _to_str(value: Any) -> str | None:
    return str(value) if value is not None else None


class PurchaseService:
    def __init__(self, db: Session):
        self.db = db

    def build_purchase(self, tx: Transaction, item: dict, line_number: int, purchased_at: datetime) -> Purchase:
        """One entitlement row from one line of the transaction's cart snapshot."""
        price = _to_decimal(item.get("price"))
        return Purchase(
            user_id=tx.user_id,
            material_id=_to_str(item.get("id")),
            material_title=item.get("title"),
            subject=item.get("subject"),
            level=item.get("level"),
            year=_to_str(item.get("year")),
            price=price,
            amount=price,
            download_url=item.get("downloadURL"),
            file_size=_to_str(item.get("fileSize")),
            pages=_to_int(item.get("pages")),
            transaction_id=tx.id,
            line_number=line_number,
            mpesa_receipt_number=tx.mpesa_receipt_number,
            purchase_date=purchased_at,
        )

    def create_for_transaction(self, tx: Transaction) -> list[Purchase]:
        """Add one Purchase per cart line, one at a time, in snapshot order. Flushes, never commits."""
        purchased_at = datetime.now(timezone.utc)
        purchases = []
        for line_number, item in enumerate(tx.cart_items or []):
            purchase = self.build_purchase(tx, item, line_number, purchased_at)
            self.db.add(purchase)
            self.db.flush()
            purchases.append(purchase)
            logger.debug(
                "purchase_recorded",
                extra={"transaction_id": tx.id, "user_id": tx.user_id},
            )
        return purchases

    def list_for_user(self, user_id: str, limit: int = 200) -> list[Purchase]:
        return (
            self.db.query(Purchase)
            .filter(Purchase.user_id == user_id)
            .order_by(Purchase.purchase_date.desc(), Purchase.line_number)
            .limit(limit)
            .all()
        )

    def count_for_transaction(self, transaction_id: str) -> int:
        return self.db.query(Purchase).filter(Purchase.transaction_id == transaction_id).count()
