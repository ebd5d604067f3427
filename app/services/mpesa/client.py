"""
Daraja (Safaricom M-Pesa) client using httpx sync client.
Covers OAuth client-credentials token, STK push submission and STK push status query.
Configuration is passed in explicitly; there are no built-in credentials.
"""
import base64
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

import httpx
import pybreaker
import redis

from app.core.config import settings
from app.services.circuit_breaker import get_circuit_breaker
from app.services.payments.errors import ConfigurationError, GatewayAuthError, GatewayRequestError
from app.utils.metrics import mpesa_request_duration_seconds, mpesa_requests_total


logger = logging.getLogger(__name__)

SANDBOX_BASE_URL = "https://sandbox.safaricom.co.ke"
PRODUCTION_BASE_URL = "https://api.safaricom.co.ke"

TRANSACTION_TYPE = "CustomerPayBillOnline"
TOKEN_CACHE_KEY = "mpesa:access_token"

REQUIRED_FIELDS = ("consumer_key", "consumer_secret", "business_short_code", "passkey", "callback_url")


@dataclass(frozen=True)
class MpesaConfig:
    consumer_key: str
    consumer_secret: str
    business_short_code: str
    passkey: str
    callback_url: str
    environment: str = "sandbox"
    account_reference: str = "KASNEB Materials"
    timeout: float = 30.0

    @classmethod
    def from_settings(cls) -> "MpesaConfig":
        return cls(
            consumer_key=settings.mpesa_consumer_key,
            consumer_secret=settings.mpesa_consumer_secret,
            business_short_code=settings.mpesa_business_short_code,
            passkey=settings.mpesa_passkey,
            callback_url=_callback_url_with_token(settings.mpesa_callback_url, settings.mpesa_callback_token),
            environment=settings.mpesa_environment,
            account_reference=settings.mpesa_account_reference,
            timeout=settings.mpesa_request_timeout,
        )

    @property
    def base_url(self) -> str:
        return PRODUCTION_BASE_URL if self.environment == "production" else SANDBOX_BASE_URL

    def missing_fields(self) -> list[str]:
        """Fields that are empty or still hold a `your_...` placeholder."""
        missing = []
        for name in REQUIRED_FIELDS:
            value = (getattr(self, name) or "").strip()
            if not value or "your_" in value:
                missing.append(name)
        return missing

    def validate(self) -> None:
        missing = self.missing_fields()
        if missing:
            raise ConfigurationError(
                f"M-Pesa configuration missing: {', '.join(missing)}. "
                "Set the MPESA_* variables in the environment."
            )


@dataclass
class StkPushResult:
    checkout_request_id: str
    merchant_request_id: str | None
    response_code: str | None = None
    response_description: str | None = None
    customer_message: str | None = None


def _callback_url_with_token(url: str, token: str) -> str:
    if not url or not token:
        return url
    separator = "&" if "?" in url else "?"
    return f"{url}{separator}token={token}"


def normalize_phone_number(phone_number: str) -> str:
    """0712345678 -> 254712345678, +254712345678 -> 254712345678, anything else unchanged."""
    if phone_number.startswith("0"):
        return "254" + phone_number[1:]
    if phone_number.startswith("+"):
        return phone_number[1:]
    return phone_number


def make_timestamp(now: datetime | None = None) -> str:
    """Daraja timestamp: YYYYMMDDHHMMSS, no separators."""
    now = now or datetime.now(timezone.utc)
    return now.strftime("%Y%m%d%H%M%S")


def round_amount(amount: Any) -> int:
    """Daraja only accepts whole shillings; half rounds up."""
    return int(Decimal(str(amount)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class RedisTokenCache:
    """Keeps the Daraja bearer token in Redis until shortly before it expires."""

    SAFETY_MARGIN_SECONDS = 60

    def __init__(self, client: redis.Redis | None = None) -> None:
        self.client = client or redis.Redis.from_url(settings.redis_url, decode_responses=True)

    def get(self) -> str | None:
        try:
            return self.client.get(TOKEN_CACHE_KEY)
        except redis.RedisError as e:
            logger.warning("mpesa_token_cache_unavailable", extra={"error": str(e)})
            return None

    def set(self, token: str, expires_in: int) -> None:
        ttl = expires_in - self.SAFETY_MARGIN_SECONDS
        if ttl <= 0:
            return
        try:
            self.client.setex(TOKEN_CACHE_KEY, ttl, token)
        except redis.RedisError as e:
            logger.warning("mpesa_token_cache_unavailable", extra={"error": str(e)})


class DarajaClient:
    """
    Sync Daraja client.
    http_client, token_cache and breaker are injectable; tests pass an httpx.MockTransport client.
    """

    def __init__(
        self,
        config: MpesaConfig,
        http_client: httpx.Client | None = None,
        token_cache: RedisTokenCache | None = None,
        breaker: pybreaker.CircuitBreaker | None = None,
    ) -> None:
        self.config = config
        self._client = http_client
        self._token_cache = token_cache
        self._breaker = breaker

    @property
    def client(self) -> httpx.Client:
        """Lazy initialization of httpx client."""
        if self._client is None:
            self._client = httpx.Client(timeout=self.config.timeout)
        return self._client

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None

    def _call(self, func, *args):
        if self._breaker is None:
            return func(*args)
        try:
            return self._breaker.call(func, *args)
        except pybreaker.CircuitBreakerError:
            logger.warning("mpesa_circuit_open")
            raise GatewayRequestError("M-Pesa service is currently unavailable")

    def _record(self, endpoint: str, status: str, started: float) -> None:
        mpesa_requests_total.labels(endpoint=endpoint, status=status).inc()
        mpesa_request_duration_seconds.labels(endpoint=endpoint).observe(time.time() - started)

    # ------------------------------------------------------------------
    # Credentials
    # ------------------------------------------------------------------

    def build_password(self, timestamp: str) -> str:
        raw = f"{self.config.business_short_code}{self.config.passkey}{timestamp}"
        return base64.b64encode(raw.encode()).decode()

    def get_access_token(self) -> str:
        if self._token_cache is not None:
            cached = self._token_cache.get()
            if cached:
                return cached
        token, expires_in = self._call(self._fetch_access_token)
        if self._token_cache is not None:
            self._token_cache.set(token, expires_in)
        return token

    def _fetch_access_token(self) -> tuple[str, int]:
        started = time.time()
        url = f"{self.config.base_url}/oauth/v1/generate"
        try:
            resp = self.client.get(
                url,
                params={"grant_type": "client_credentials"},
                auth=(self.config.consumer_key, self.config.consumer_secret),
            )
        except httpx.HTTPError as e:
            self._record("oauth", "error", started)
            logger.error("mpesa_token_request_failed", extra={"error": str(e)})
            raise GatewayAuthError("Failed to generate access token") from e

        if resp.status_code != 200:
            self._record("oauth", "error", started)
            logger.error(
                "mpesa_token_rejected",
                extra={"status_code": resp.status_code, "error": resp.text[:500]},
            )
            raise GatewayAuthError("Failed to generate access token")

        data = resp.json()
        token = data.get("access_token")
        if not token:
            self._record("oauth", "error", started)
            raise GatewayAuthError("Failed to generate access token")
        self._record("oauth", "success", started)
        return token, int(data.get("expires_in") or 3599)

    # ------------------------------------------------------------------
    # STK push
    # ------------------------------------------------------------------

    def stk_push(self, phone_number: str, amount: Any, description: str) -> StkPushResult:
        """Ask Daraja to prompt the payer's phone. phone_number must already be normalized."""
        self.config.validate()
        token = self.get_access_token()
        timestamp = make_timestamp()
        payload = {
            "BusinessShortCode": self.config.business_short_code,
            "Password": self.build_password(timestamp),
            "Timestamp": timestamp,
            "TransactionType": TRANSACTION_TYPE,
            "Amount": round_amount(amount),
            "PartyA": phone_number,
            "PartyB": self.config.business_short_code,
            "PhoneNumber": phone_number,
            "CallBackURL": self.config.callback_url,
            "AccountReference": self.config.account_reference,
            "TransactionDesc": description,
        }
        data = self._call(self._post, "stkpush", "/mpesa/stkpush/v1/processrequest", payload, token)
        checkout_request_id = data.get("CheckoutRequestID")
        if not checkout_request_id:
            raise GatewayRequestError(
                "M-Pesa API Error",
                provider_message=data.get("errorMessage") or data.get("ResponseDescription"),
            )
        return StkPushResult(
            checkout_request_id=checkout_request_id,
            merchant_request_id=data.get("MerchantRequestID"),
            response_code=data.get("ResponseCode"),
            response_description=data.get("ResponseDescription"),
            customer_message=data.get("CustomerMessage"),
        )

    def query_stk_status(self, checkout_request_id: str) -> dict:
        """STK push query. Returns the raw body; a still-processing push comes back as an errorCode body."""
        self.config.validate()
        token = self.get_access_token()
        timestamp = make_timestamp()
        payload = {
            "BusinessShortCode": self.config.business_short_code,
            "Password": self.build_password(timestamp),
            "Timestamp": timestamp,
            "CheckoutRequestID": checkout_request_id,
        }
        return self._call(
            self._post, "stkpushquery", "/mpesa/stkpushquery/v1/query", payload, token, True
        )

    def _post(
        self,
        endpoint: str,
        path: str,
        payload: dict,
        token: str,
        allow_error_body: bool = False,
    ) -> dict:
        started = time.time()
        try:
            resp = self.client.post(
                f"{self.config.base_url}{path}",
                json=payload,
                headers={"Authorization": f"Bearer {token}"},
            )
        except httpx.HTTPError as e:
            self._record(endpoint, "error", started)
            logger.error("mpesa_request_failed", extra={"path": path, "error": str(e)})
            raise GatewayRequestError("M-Pesa service is currently unavailable") from e

        try:
            data = resp.json()
        except ValueError:
            data = {}

        if resp.status_code >= 400:
            self._record(endpoint, "error", started)
            provider_message = data.get("errorMessage") if isinstance(data, dict) else None
            logger.warning(
                "mpesa_request_rejected",
                extra={"path": path, "status_code": resp.status_code, "error": provider_message},
            )
            if allow_error_body and resp.status_code < 500 and isinstance(data, dict):
                return data
            raise GatewayRequestError(
                provider_message or "M-Pesa service is currently unavailable",
                provider_message=provider_message,
                status_code=resp.status_code,
            )

        self._record(endpoint, "success", started)
        return data if isinstance(data, dict) else {}


def _is_client_rejection(exc: BaseException) -> bool:
    """4xx rejections (bad phone, bad amount) say nothing about gateway health."""
    return (
        isinstance(exc, GatewayRequestError)
        and exc.status_code is not None
        and exc.status_code < 500
    )


def build_daraja_client() -> DarajaClient:
    """Production wiring: settings-backed config, Redis token cache, shared breaker."""
    return DarajaClient(
        MpesaConfig.from_settings(),
        token_cache=RedisTokenCache(),
        breaker=get_circuit_breaker("mpesa", exclude=[_is_client_rejection]),
    )
