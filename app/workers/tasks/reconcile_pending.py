"""
Celery beat task: ask Daraja about pending transactions whose callback never arrived.

A query result with a non-zero ResultCode fails the transaction through the same
path as the callback. ResultCode 0 is left alone: the query carries no receipt
number, so completion still waits for the callback.
"""
import logging
from datetime import timedelta

from sqlalchemy.orm import Session

from app.core.celery_app import celery_app
from app.core.config import settings
from app.db.session import session_scope
from app.services.mpesa.client import DarajaClient, build_daraja_client
from app.services.payments.callback import CallbackService, StkCallback
from app.services.payments.errors import ConfigurationError, GatewayAuthError, GatewayRequestError
from app.services.transactions.service import TransactionService
from app.utils.metrics import pending_reconciled_total

logger = logging.getLogger(__name__)


def reconcile_pending(db: Session, gateway: DarajaClient) -> dict:
    try:
        gateway.config.validate()
    except ConfigurationError as e:
        logger.error("reconcile_pending_not_configured", extra={"error": e.message})
        return {"ok": False, "skipped": "not_configured"}

    stale = TransactionService(db).list_stale_pending(
        older_than=timedelta(minutes=settings.mpesa_reconcile_after_minutes),
        max_age=timedelta(hours=settings.mpesa_reconcile_max_age_hours),
    )
    callbacks = CallbackService(db)
    failed_count = 0
    awaiting_callback = 0
    skipped = 0

    for index, tx in enumerate(stale):
        try:
            result = gateway.query_stk_status(tx.checkout_request_id)
        except GatewayAuthError:
            logger.warning("reconcile_pending_auth_failed")
            skipped += len(stale) - index
            break
        except GatewayRequestError as e:
            # Daraja answers "The transaction is being processed" with an error body
            logger.info(
                "reconcile_pending_query_unavailable",
                extra={"checkout_request_id": tx.checkout_request_id, "error": e.message},
            )
            skipped += 1
            continue

        try:
            result_code = int(result.get("ResultCode"))
        except (TypeError, ValueError):
            skipped += 1
            continue

        if result_code == 0:
            awaiting_callback += 1
            continue

        outcome = callbacks.apply(
            tx,
            StkCallback(
                checkout_request_id=tx.checkout_request_id,
                merchant_request_id=tx.merchant_request_id,
                result_code=result_code,
                result_desc=result.get("ResultDesc"),
            ),
        )
        if not outcome.duplicate:
            failed_count += 1
            pending_reconciled_total.labels(outcome="failed").inc()

    if failed_count or awaiting_callback:
        logger.warning(
            "reconcile_pending_done",
            extra={
                "failed_count": failed_count,
                "awaiting_callback": awaiting_callback,
                "skipped": skipped,
            },
        )
    return {
        "ok": True,
        "checked": len(stale),
        "failed_count": failed_count,
        "awaiting_callback": awaiting_callback,
        "skipped": skipped,
    }


@celery_app.task(
    name="app.workers.tasks.reconcile_pending.reconcile_pending_transactions",
    time_limit=300,
    soft_time_limit=280,
)
def reconcile_pending_transactions() -> dict:
    gateway = build_daraja_client()
    try:
        with session_scope() as db:
            return reconcile_pending(db, gateway)
    except Exception:
        logger.exception("reconcile_pending_error")
        return {"ok": False}
    finally:
        gateway.close()
