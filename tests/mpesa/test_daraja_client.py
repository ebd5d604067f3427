"""Tests for the Daraja client: credentials, payload shape, error mapping."""
import base64
from dataclasses import replace
from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import MagicMock

import httpx
import pybreaker
import pytest

from app.services.mpesa.client import (
    SANDBOX_BASE_URL,
    PRODUCTION_BASE_URL,
    DarajaClient,
    _callback_url_with_token,
    make_timestamp,
    normalize_phone_number,
    round_amount,
)
from app.services.payments.errors import ConfigurationError, GatewayAuthError, GatewayRequestError


class TestHelpers:
    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("0712345678", "254712345678"),
            ("0112345678", "254112345678"),
            ("+254712345678", "254712345678"),
            ("254712345678", "254712345678"),
            ("712345678", "712345678"),
        ],
    )
    def test_normalize_phone_number(self, raw, expected):
        assert normalize_phone_number(raw) == expected

    def test_timestamp_has_no_separators(self):
        ts = make_timestamp(datetime(2024, 1, 5, 9, 3, 7, tzinfo=timezone.utc))
        assert ts == "20240105090307"
        assert len(make_timestamp()) == 14
        assert make_timestamp().isdigit()

    def test_round_amount_half_up(self):
        assert round_amount(Decimal("499.5")) == 500
        assert round_amount(499.49) == 499
        assert round_amount("1500") == 1500

    def test_callback_url_token(self):
        assert _callback_url_with_token("https://x.test/cb", "") == "https://x.test/cb"
        assert _callback_url_with_token("https://x.test/cb", "s3") == "https://x.test/cb?token=s3"
        assert _callback_url_with_token("https://x.test/cb?a=1", "s3") == "https://x.test/cb?a=1&token=s3"


class TestConfig:
    def test_missing_and_placeholder_fields(self, mpesa_config):
        config = replace(mpesa_config, consumer_key="", passkey="your_passkey_here")
        assert config.missing_fields() == ["consumer_key", "passkey"]
        with pytest.raises(ConfigurationError) as exc:
            config.validate()
        assert "consumer_key" in exc.value.message
        assert exc.value.http_status == 500

    def test_valid_config(self, mpesa_config):
        assert mpesa_config.missing_fields() == []
        mpesa_config.validate()

    def test_base_url_by_environment(self, mpesa_config):
        assert mpesa_config.base_url == SANDBOX_BASE_URL
        assert replace(mpesa_config, environment="production").base_url == PRODUCTION_BASE_URL


class TestCredentials:
    def test_password_is_base64_of_shortcode_passkey_timestamp(self, gateway):
        password = gateway.build_password("20240115143022")
        assert base64.b64decode(password).decode() == "174379test-passkey20240115143022"

    def test_access_token_uses_basic_auth(self, gateway, daraja):
        assert gateway.get_access_token() == "sandbox-token"
        request = daraja.requests[0]
        assert request.url.path == "/oauth/v1/generate"
        assert request.url.params["grant_type"] == "client_credentials"
        expected = base64.b64encode(b"test-consumer-key:test-consumer-secret").decode()
        assert request.headers["Authorization"] == f"Basic {expected}"

    def test_token_rejected_raises_auth_error(self, gateway, daraja):
        daraja.token_status = 401
        with pytest.raises(GatewayAuthError) as exc:
            gateway.get_access_token()
        assert exc.value.message == "Failed to generate access token"

    def test_token_network_error_raises_auth_error(self, mpesa_config):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        client = DarajaClient(mpesa_config, http_client=httpx.Client(transport=httpx.MockTransport(handler)))
        with pytest.raises(GatewayAuthError):
            client.get_access_token()

    def test_cached_token_skips_oauth(self, make_gateway, daraja):
        cache = MagicMock()
        cache.get.return_value = "cached-token"
        client = make_gateway(token_cache=cache)

        client.stk_push("254712345678", 500, "Purchase of 1 study material(s)")

        assert "/oauth/v1/generate" not in daraja.paths()
        push = next(r for r in daraja.requests if r.url.path == "/mpesa/stkpush/v1/processrequest")
        assert push.headers["Authorization"] == "Bearer cached-token"

    def test_fresh_token_is_cached(self, make_gateway):
        cache = MagicMock()
        cache.get.return_value = None
        client = make_gateway(token_cache=cache)

        client.get_access_token()

        cache.set.assert_called_once_with("sandbox-token", 3599)


class TestStkPush:
    def test_payload(self, gateway, daraja):
        result = gateway.stk_push("254712345678", Decimal("500.00"), "Purchase of 2 study material(s)")

        assert result.checkout_request_id == daraja.checkout_request_id
        assert result.merchant_request_id == daraja.merchant_request_id
        body = daraja.json_body("/mpesa/stkpush/v1/processrequest")
        assert body["BusinessShortCode"] == "174379"
        assert body["TransactionType"] == "CustomerPayBillOnline"
        assert body["Amount"] == 500
        assert body["PartyA"] == "254712345678"
        assert body["PartyB"] == "174379"
        assert body["PhoneNumber"] == "254712345678"
        assert body["CallBackURL"] == "https://example.test/api/mpesa/callback"
        assert body["AccountReference"] == "KASNEB Materials"
        assert body["TransactionDesc"] == "Purchase of 2 study material(s)"
        assert len(body["Timestamp"]) == 14
        decoded = base64.b64decode(body["Password"]).decode()
        assert decoded == f"174379test-passkey{body['Timestamp']}"

    def test_missing_config_fails_before_network(self, make_gateway, mpesa_config, daraja):
        client = make_gateway(config=replace(mpesa_config, consumer_secret=""))
        with pytest.raises(ConfigurationError):
            client.stk_push("254712345678", 500, "x")
        assert daraja.requests == []

    def test_provider_rejection_keeps_message(self, gateway, daraja):
        daraja.push_status = 400
        with pytest.raises(GatewayRequestError) as exc:
            gateway.stk_push("254700000000", 500, "x")
        assert exc.value.provider_message == "Bad Request - Invalid PhoneNumber"
        assert exc.value.status_code == 400
        assert exc.value.http_status == 502

    def test_open_breaker_maps_to_request_error(self, make_gateway, daraja):
        breaker = pybreaker.CircuitBreaker(fail_max=1, reset_timeout=60)
        breaker.open()
        client = make_gateway(breaker=breaker)
        with pytest.raises(GatewayRequestError) as exc:
            client.stk_push("254712345678", 500, "x")
        assert exc.value.message == "M-Pesa service is currently unavailable"
        assert daraja.requests == []


class TestStatusQuery:
    def test_query_returns_body(self, gateway, daraja):
        daraja.query_body = {"ResponseCode": "0", "ResultCode": "1032", "ResultDesc": "Request cancelled by user"}
        data = gateway.query_stk_status("ws_CO_1")
        assert data["ResultCode"] == "1032"
        assert daraja.json_body("/mpesa/stkpushquery/v1/query")["CheckoutRequestID"] == "ws_CO_1"

    def test_processing_error_body_is_returned(self, gateway, daraja):
        daraja.query_status = 500
        daraja.query_body = {"errorCode": "500.001.1001", "errorMessage": "The transaction is being processed"}
        with pytest.raises(GatewayRequestError) as exc:
            gateway.query_stk_status("ws_CO_1")
        assert exc.value.provider_message == "The transaction is being processed"

    def test_client_error_body_is_returned(self, gateway, daraja):
        daraja.query_status = 400
        daraja.query_body = {"errorCode": "400.002.02", "errorMessage": "Invalid CheckoutRequestID"}
        data = gateway.query_stk_status("ws_CO_unknown")
        assert data["errorMessage"] == "Invalid CheckoutRequestID"
