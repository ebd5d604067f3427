"""
PaymentService: STK push initiation.

Responsibilities:
- Validate the checkout request before any network call
- Normalize the payer phone and submit the STK push to Daraja
- Persist exactly one pending Transaction holding the cart snapshot
"""
import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any

from sqlalchemy.orm import Session

from app.services.mpesa.client import DarajaClient, normalize_phone_number
from app.services.payments.errors import GatewayAuthError, GatewayRequestError, ValidationError
from app.services.transactions.service import TransactionService
from app.utils.metrics import stk_push_requests_total

logger = logging.getLogger(__name__)


@dataclass
class InitiationResult:
    checkout_request_id: str
    merchant_request_id: str | None
    transaction_id: str
    phone_number: str


def describe_cart(cart_items: list) -> str:
    return f"Purchase of {len(cart_items)} study material(s)"


class PaymentService:
    def __init__(self, db: Session, gateway: DarajaClient):
        self.db = db
        self.gateway = gateway
        self.transactions = TransactionService(db)

    @staticmethod
    def _validate(phone_number: Any, amount: Any, cart_items: Any, user_id: Any) -> Decimal:
        if not phone_number or not amount or not cart_items or not user_id:
            raise ValidationError("Phone number, amount, cart items, and user ID are required")
        if not isinstance(phone_number, str) or not isinstance(user_id, str):
            raise ValidationError("Phone number and user ID must be strings")
        if not isinstance(cart_items, list):
            raise ValidationError("Cart items must be a list")
        try:
            value = Decimal(str(amount))
        except (InvalidOperation, ValueError):
            raise ValidationError("Amount must be a number")
        if not value.is_finite() or value <= 0:
            raise ValidationError("Amount must be positive")
        return value

    def initiate(self, phone_number: str, amount: Any, cart_items: list[dict], user_id: str) -> InitiationResult:
        """Submit the STK push and record the pending transaction.

        Raises ValidationError / ConfigurationError before any network call,
        GatewayAuthError / GatewayRequestError when Daraja refuses. No
        Transaction is written unless Daraja accepted the push.
        """
        value = self._validate(phone_number, amount, cart_items, user_id)
        self.gateway.config.validate()

        formatted_phone = normalize_phone_number(phone_number.strip())
        try:
            push = self.gateway.stk_push(formatted_phone, value, describe_cart(cart_items))
        except (GatewayAuthError, GatewayRequestError):
            stk_push_requests_total.labels(status="rejected").inc()
            raise

        tx = self.transactions.create_pending(
            checkout_request_id=push.checkout_request_id,
            merchant_request_id=push.merchant_request_id,
            phone_number=formatted_phone,
            amount=value,
            cart_items=cart_items,
            user_id=user_id,
        )
        stk_push_requests_total.labels(status="accepted").inc()
        logger.info(
            "stk_push_initiated",
            extra={
                "checkout_request_id": push.checkout_request_id,
                "transaction_id": tx.id,
                "user_id": user_id,
                "phone_number": formatted_phone,
                "items": len(cart_items),
            },
        )
        return InitiationResult(
            checkout_request_id=push.checkout_request_id,
            merchant_request_id=push.merchant_request_id,
            transaction_id=tx.id,
            phone_number=formatted_phone,
        )
