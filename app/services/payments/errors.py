"""
Payment error taxonomy.
Each error carries an http_status hint; routes translate them into HTTPException.
"""


class PaymentError(Exception):
    http_status = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ConfigurationError(PaymentError):
    """Gateway credentials missing or placeholder. Operator problem, not retried."""

    http_status = 500


class GatewayAuthError(PaymentError):
    """Daraja rejected the client-credentials exchange or the call failed."""

    http_status = 502


class GatewayRequestError(PaymentError):
    """Daraja rejected the STK push submission."""

    http_status = 502

    def __init__(self, message: str, provider_message: str | None = None, status_code: int | None = None):
        super().__init__(message)
        self.provider_message = provider_message
        self.status_code = status_code


class ValidationError(PaymentError):
    """Checkout request is missing required fields."""

    http_status = 400


class MalformedCallbackError(PaymentError):
    http_status = 400


class TransactionNotFoundError(PaymentError):
    http_status = 404


class CallbackOriginError(PaymentError):
    """Webhook did not come from an allowed source."""

    http_status = 403


class CallbackInProgressError(PaymentError):
    """Another delivery for the same transaction holds the in-flight lock; the gateway should retry."""

    http_status = 503


class SaleNotFoundError(PaymentError):
    http_status = 404
