"""
Checkout orchestrator: validates the cart and phone, asks the backend to start
the STK push, then polls the transaction until it settles.
Uses httpx async client; the cart is cleared once the push has been accepted,
from then on the backend transaction holds the only copy of its contents.
"""
import logging
from dataclasses import dataclass
from typing import Any

import httpx

from app.client.cart import Cart, is_valid_phone
from app.client.poller import DEFAULT_INTERVAL_SECONDS, DEFAULT_TIMEOUT_SECONDS, PollResult, StatusPoller
from app.services.payments.errors import ValidationError

logger = logging.getLogger(__name__)

GENERIC_FAILURE_MESSAGE = "Payment could not be started. Please try again."


class CheckoutError(Exception):
    """The backend refused to start the payment."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


@dataclass
class CheckoutResult:
    checkout_request_id: str
    merchant_request_id: str | None
    poll: PollResult

    @property
    def state(self) -> str:
        return self.poll.state.value


def _error_message(resp: httpx.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        return GENERIC_FAILURE_MESSAGE
    detail = body.get("detail", body) if isinstance(body, dict) else None
    if isinstance(detail, dict):
        return detail.get("message") or detail.get("error") or GENERIC_FAILURE_MESSAGE
    if isinstance(detail, str):
        return detail
    return GENERIC_FAILURE_MESSAGE


class CheckoutOrchestrator:
    def __init__(
        self,
        base_url: str,
        user_id: str,
        http_client: httpx.AsyncClient | None = None,
        poll_interval: float = DEFAULT_INTERVAL_SECONDS,
        poll_timeout: float | None = DEFAULT_TIMEOUT_SECONDS,
        poll_max_attempts: int | None = None,
        sleep=None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.user_id = user_id
        self._client = http_client
        self._owns_client = http_client is None
        self.poll_interval = poll_interval
        self.poll_timeout = poll_timeout
        self.poll_max_attempts = poll_max_attempts
        self._sleep = sleep
        self.poller: StatusPoller | None = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=30.0)
        return self._client

    async def aclose(self) -> None:
        if self.poller is not None:
            await self.poller.cancel()
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "CheckoutOrchestrator":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def start_payment(self, cart: Cart, phone_number: str) -> dict[str, Any]:
        if not len(cart):
            raise ValidationError("Your cart is empty")
        if not is_valid_phone(phone_number):
            raise ValidationError("Enter a valid M-Pesa phone number (e.g. 0712345678)")

        payload = {
            "phoneNumber": phone_number.strip().replace(" ", ""),
            "amount": float(cart.total),
            "cartItems": cart.snapshot(),
            "userId": self.user_id,
        }
        try:
            resp = await self.client.post(f"{self.base_url}/api/mpesa/stkpush", json=payload)
        except httpx.HTTPError as e:
            logger.warning("checkout_request_failed", extra={"error": str(e)})
            raise CheckoutError(GENERIC_FAILURE_MESSAGE) from e
        if resp.status_code >= 400:
            raise CheckoutError(_error_message(resp), status_code=resp.status_code)
        return resp.json()

    async def fetch_transaction(self, checkout_request_id: str) -> dict[str, Any] | None:
        resp = await self.client.get(f"{self.base_url}/api/mpesa/transaction/{checkout_request_id}")
        resp.raise_for_status()
        return resp.json().get("transaction")

    def _make_poller(self) -> StatusPoller:
        kwargs = {}
        if self._sleep is not None:
            kwargs["sleep"] = self._sleep
        return StatusPoller(
            self.fetch_transaction,
            interval=self.poll_interval,
            timeout=self.poll_timeout,
            max_attempts=self.poll_max_attempts,
            **kwargs,
        )

    async def checkout(self, cart: Cart, phone_number: str) -> CheckoutResult:
        """Start the STK push for the whole cart and wait for the transaction to settle.

        Raises ValidationError for an empty cart or bad phone, CheckoutError when
        the backend refuses. A payment the user never confirms ends as TIMED_OUT.
        """
        started = await self.start_payment(cart, phone_number)
        checkout_request_id = started["checkoutRequestID"]
        cart.clear()

        self.poller = self._make_poller()
        try:
            poll = await self.poller.start(checkout_request_id)
        finally:
            await self.poller.cancel()
        logger.info(
            "checkout_settled",
            extra={"checkout_request_id": checkout_request_id, "status": poll.state.value},
        )
        return CheckoutResult(
            checkout_request_id=checkout_request_id,
            merchant_request_id=started.get("merchantRequestID"),
            poll=poll,
        )
