"""Shared route dependencies and error translation."""
from typing import Any, Iterator

from fastapi import HTTPException, Request

from app.services.idempotency import IdempotencyStore
from app.services.mpesa.client import DarajaClient, build_daraja_client
from app.services.payments.errors import GatewayRequestError, PaymentError


def get_gateway() -> Iterator[DarajaClient]:
    client = build_daraja_client()
    try:
        yield client
    finally:
        client.close()


def get_idempotency_store() -> IdempotencyStore:
    return IdempotencyStore()


def http_error(e: PaymentError, error: str) -> HTTPException:
    """PaymentError -> HTTPException with {error, message} detail."""
    message = e.message
    if isinstance(e, GatewayRequestError) and e.provider_message:
        message = e.provider_message
    return HTTPException(status_code=e.http_status, detail={"error": error, "message": message})


async def read_json_body(request: Request) -> Any:
    """Raw JSON body; None when it is empty or not JSON, so the callback parser reports a 400."""
    try:
        return await request.json()
    except ValueError:
        return None
