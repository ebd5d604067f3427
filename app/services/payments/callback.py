"""
CallbackService: Daraja STK push result webhook.

The callback is the only writer of the pending -> completed | failed transition.
On success the transition, the Sale and every Purchase are committed together:
either the whole fan-out lands or the transaction stays pending and the error
propagates so Daraja can redeliver.

Redelivery is deduplicated three ways:
- a terminal transaction is acknowledged without any write
- an in-flight delivery holds a short-lived lock in Redis; a concurrent
  delivery gets CallbackInProgressError (503) so the gateway retries later
- unique constraints on sales.transaction_id and purchases(transaction_id, line_number)
"""
import logging
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.config import settings
from app.models.transaction import STATUS_COMPLETED, STATUS_FAILED
from app.services.idempotency import IdempotencyStore
from app.services.payments.errors import (
    CallbackInProgressError,
    MalformedCallbackError,
    TransactionNotFoundError,
)
from app.services.purchases.service import PurchaseService
from app.services.sales.service import SalesService
from app.services.transactions.service import TransactionService
from app.utils.metrics import mpesa_callbacks_total, purchases_created_total

logger = logging.getLogger(__name__)

RESULT_CODE_SUCCESS = 0


@dataclass
class StkCallback:
    checkout_request_id: str
    merchant_request_id: str | None
    result_code: int
    result_desc: str | None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.result_code == RESULT_CODE_SUCCESS


@dataclass
class CallbackOutcome:
    checkout_request_id: str
    status: str
    transaction_id: str
    sale_id: str | None = None
    purchases_created: int = 0
    duplicate: bool = False


def metadata_items(items: Any) -> dict[str, Any]:
    """[{"Name": "Amount", "Value": 500}, ...] -> {"Amount": 500}. Entries without a Name are skipped."""
    result: dict[str, Any] = {}
    if not isinstance(items, list):
        return result
    for item in items:
        if isinstance(item, dict) and item.get("Name"):
            result[item["Name"]] = item.get("Value")
    return result


def parse_callback(payload: Any) -> StkCallback:
    """Extract Body.stkCallback. Raises MalformedCallbackError if the envelope is not there."""
    if not isinstance(payload, dict) or not isinstance(payload.get("Body"), dict):
        raise MalformedCallbackError("Invalid callback data")
    stk = payload["Body"].get("stkCallback")
    if not isinstance(stk, dict):
        raise MalformedCallbackError("Invalid callback data")

    checkout_request_id = stk.get("CheckoutRequestID")
    if not checkout_request_id:
        raise MalformedCallbackError("Callback has no CheckoutRequestID")
    try:
        result_code = int(stk.get("ResultCode"))
    except (TypeError, ValueError):
        raise MalformedCallbackError("Callback has no valid ResultCode")

    metadata = stk.get("CallbackMetadata") or {}
    return StkCallback(
        checkout_request_id=str(checkout_request_id),
        merchant_request_id=stk.get("MerchantRequestID"),
        result_code=result_code,
        result_desc=stk.get("ResultDesc"),
        metadata=metadata_items(metadata.get("Item") if isinstance(metadata, dict) else None),
    )


class CallbackService:
    def __init__(self, db: Session, idempotency: IdempotencyStore | None = None):
        self.db = db
        self.idempotency = idempotency
        self.transactions = TransactionService(db)
        self.sales = SalesService(db)
        self.purchases = PurchaseService(db)

    def handle_callback(self, payload: Any) -> CallbackOutcome:
        callback = parse_callback(payload)
        checkout_id = callback.checkout_request_id

        tx = self.transactions.get_by_checkout_id(checkout_id)
        if tx is None:
            mpesa_callbacks_total.labels(result="not_found").inc()
            logger.error("mpesa_callback_unknown_transaction", extra={"checkout_request_id": checkout_id})
            raise TransactionNotFoundError("Transaction not found")

        return self.apply(tx, callback)

    def apply(self, tx, callback: StkCallback) -> CallbackOutcome:
        """Apply a parsed result to its transaction. Also used by the pending reconciliation task."""
        checkout_id = callback.checkout_request_id
        if tx.is_terminal:
            return self._duplicate(tx, callback)

        key = f"mpesa_callback:{checkout_id}"
        if self.idempotency is not None and not self.idempotency.check_and_set(
            key, ttl_seconds=settings.mpesa_callback_lock_seconds
        ):
            mpesa_callbacks_total.labels(result="in_flight").inc()
            logger.warning(
                "mpesa_callback_in_flight",
                extra={"checkout_request_id": checkout_id, "transaction_id": tx.id},
            )
            raise CallbackInProgressError("Callback is already being processed")

        try:
            if callback.succeeded:
                outcome = self._complete(tx, callback)
            else:
                outcome = self._fail(tx, callback)
        except IntegrityError:
            # A concurrent delivery committed first; its rows stand.
            self.db.rollback()
            self.db.refresh(tx)
            return self._duplicate(tx, callback)
        except Exception:
            self.db.rollback()
            if self.idempotency is not None:
                self.idempotency.release(key)
            logger.exception("mpesa_callback_processing_failed", extra={"checkout_request_id": checkout_id})
            raise
        return outcome

    def _complete(self, tx, callback: StkCallback) -> CallbackOutcome:
        receipt = callback.metadata.get("MpesaReceiptNumber")
        transaction_date = callback.metadata.get("TransactionDate")
        self.transactions.mark_completed(
            tx,
            mpesa_receipt_number=str(receipt) if receipt is not None else None,
            transaction_date=str(transaction_date) if transaction_date is not None else None,
            actual_amount=callback.metadata.get("Amount"),
        )
        sale = self.sales.create_from_transaction(tx)
        purchases = self.purchases.create_for_transaction(tx)
        self.db.commit()

        purchases_created_total.inc(len(purchases))
        mpesa_callbacks_total.labels(result="completed").inc()
        logger.info(
            "mpesa_callback_completed",
            extra={
                "checkout_request_id": tx.checkout_request_id,
                "transaction_id": tx.id,
                "sale_id": sale.id,
                "receipt": tx.mpesa_receipt_number,
                "items": len(purchases),
            },
        )
        return CallbackOutcome(
            checkout_request_id=tx.checkout_request_id,
            status=STATUS_COMPLETED,
            transaction_id=tx.id,
            sale_id=sale.id,
            purchases_created=len(purchases),
        )

    def _fail(self, tx, callback: StkCallback) -> CallbackOutcome:
        self.transactions.mark_failed(tx, callback.result_desc)
        self.db.commit()
        mpesa_callbacks_total.labels(result="failed").inc()
        logger.warning(
            "mpesa_callback_failed",
            extra={
                "checkout_request_id": tx.checkout_request_id,
                "transaction_id": tx.id,
                "result_code": callback.result_code,
                "error": callback.result_desc,
            },
        )
        return CallbackOutcome(
            checkout_request_id=tx.checkout_request_id,
            status=STATUS_FAILED,
            transaction_id=tx.id,
        )

    def _duplicate(self, tx, callback: StkCallback) -> CallbackOutcome:
        mpesa_callbacks_total.labels(result="duplicate").inc()
        logger.info(
            "mpesa_callback_duplicate",
            extra={
                "checkout_request_id": tx.checkout_request_id,
                "transaction_id": tx.id,
                "status": tx.status,
                "result_code": callback.result_code,
            },
        )
        return CallbackOutcome(
            checkout_request_id=tx.checkout_request_id,
            status=tx.status,
            transaction_id=tx.id,
            duplicate=True,
        )
