"""
Request origin checks: M-Pesa webhook source and admin API key.
"""
import hmac
import logging

from fastapi import Header, HTTPException, Request, status

from app.core.config import settings
from app.services.payments.errors import CallbackOriginError

logger = logging.getLogger("auth")


def get_client_ip(request: Request) -> str:
    """Client IP (supports X-Forwarded-For from proxy)."""
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded and settings.app_env == "production":
        trusted = settings.trusted_proxy_ips_set
        if trusted and request.client and request.client.host in trusted:
            return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "127.0.0.1"


def verify_callback_origin(request: Request) -> None:
    """Reject webhook calls that lack the shared token or come from outside the allowlist.
    Both checks are off when their setting is empty.
    """
    expected_token = settings.mpesa_callback_token
    if expected_token:
        supplied = request.query_params.get("token", "")
        if not hmac.compare_digest(supplied.encode(), expected_token.encode()):
            logger.warning("mpesa_callback_bad_token", extra={"client_ip": get_client_ip(request)})
            raise CallbackOriginError("Invalid callback token")

    allowed = settings.mpesa_callback_allowed_ips_set
    if allowed:
        client_ip = get_client_ip(request)
        if client_ip not in allowed:
            logger.warning("mpesa_callback_ip_rejected", extra={"client_ip": client_ip})
            raise CallbackOriginError("Callback source not allowed")


def require_admin_key(x_admin_key: str | None = Header(default=None)) -> None:
    """Dependency for administrative overrides."""
    expected = settings.admin_api_key
    if not expected or not x_admin_key or not hmac.compare_digest(x_admin_key.encode(), expected.encode()):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Admin API key required",
        )
