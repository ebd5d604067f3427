"""
M-Pesa routes: STK push initiation, Daraja callback, transaction status.
"""
import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session

from app.api.routes.deps import get_gateway, get_idempotency_store, http_error, read_json_body
from app.db.session import get_db
from app.schemas.mpesa import (
    CallbackAck,
    StkPushRequest,
    StkPushResponse,
    TransactionEnvelope,
    TransactionOut,
)
from app.services.auth.request_guard import verify_callback_origin
from app.services.idempotency import IdempotencyStore
from app.services.mpesa.client import DarajaClient
from app.services.payments.callback import CallbackService
from app.services.payments.errors import (
    CallbackInProgressError,
    CallbackOriginError,
    ConfigurationError,
    MalformedCallbackError,
    PaymentError,
    TransactionNotFoundError,
    ValidationError,
)
from app.services.payments.service import PaymentService
from app.services.transactions.service import TransactionService
from app.utils.metrics import mpesa_callbacks_total, stk_push_requests_total


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/mpesa", tags=["mpesa"])


@router.post("/stkpush", response_model=StkPushResponse)
def stk_push(
    body: StkPushRequest,
    db: Session = Depends(get_db),
    gateway: DarajaClient = Depends(get_gateway),
) -> StkPushResponse:
    service = PaymentService(db, gateway)
    try:
        result = service.initiate(body.phone_number, body.amount, body.cart_items, body.user_id)
    except ValidationError as e:
        raise http_error(e, "Missing required fields")
    except ConfigurationError as e:
        stk_push_requests_total.labels(status="error").inc()
        logger.error("mpesa_configuration_error", extra={"error": e.message})
        raise http_error(e, "M-Pesa Configuration Error")
    except PaymentError as e:
        logger.warning("stk_push_rejected", extra={"user_id": body.user_id, "error": e.message})
        raise http_error(e, "M-Pesa API Error")
    return StkPushResponse(
        checkout_request_id=result.checkout_request_id,
        merchant_request_id=result.merchant_request_id,
    )


@router.get("/callback")
def callback_probe() -> dict:
    """Lets operators check the public callback URL is routed here."""
    return {"status": "Callback URL is active. Waiting for POST data."}


@router.post("/callback", response_model=CallbackAck)
def mpesa_callback(
    request: Request,
    payload: Any = Depends(read_json_body),
    db: Session = Depends(get_db),
    idempotency: IdempotencyStore = Depends(get_idempotency_store),
) -> CallbackAck:
    """Daraja STK result. Acknowledged once the transaction update (and fan-out) is committed."""
    try:
        verify_callback_origin(request)
        CallbackService(db, idempotency).handle_callback(payload)
    except CallbackOriginError as e:
        mpesa_callbacks_total.labels(result="rejected").inc()
        raise http_error(e, "Forbidden")
    except MalformedCallbackError as e:
        mpesa_callbacks_total.labels(result="malformed").inc()
        logger.warning("mpesa_callback_malformed", extra={"error": e.message})
        raise http_error(e, "Invalid callback data")
    except TransactionNotFoundError as e:
        raise http_error(e, "Transaction not found")
    except CallbackInProgressError as e:
        raise http_error(e, "Callback in progress")
    return CallbackAck()


@router.get("/transaction/{checkout_request_id}", response_model=TransactionEnvelope)
def get_transaction(checkout_request_id: str, db: Session = Depends(get_db)) -> TransactionEnvelope:
    tx = TransactionService(db).get_by_checkout_id(checkout_request_id)
    if tx is None:
        raise HTTPException(status_code=404, detail={"error": "Transaction not found"})
    return TransactionEnvelope(transaction=TransactionOut.model_validate(tx))
