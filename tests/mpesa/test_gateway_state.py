"""Redis-backed gateway state: breaker storage, token cache, idempotency keys."""
from datetime import datetime, timezone
from unittest.mock import MagicMock

import pybreaker
import redis

from app.services.circuit_breaker import RedisCircuitBreakerStorage
from app.services.idempotency import IdempotencyStore
from app.services.mpesa.client import TOKEN_CACHE_KEY, RedisTokenCache, _is_client_rejection
from app.services.payments.errors import GatewayAuthError, GatewayRequestError


class TestBreakerStorage:
    def test_defaults_when_redis_is_empty(self):
        client = MagicMock()
        client.get.return_value = None
        storage = RedisCircuitBreakerStorage("mpesa", client=client)

        assert storage.state == pybreaker.STATE_CLOSED
        assert storage.counter == 0
        assert storage.success_counter == 0
        assert storage.opened_at is None

    def test_opened_at_round_trips_isoformat(self):
        client = MagicMock()
        storage = RedisCircuitBreakerStorage("mpesa", client=client)
        when = datetime(2024, 1, 15, 11, 30, tzinfo=timezone.utc)

        storage.opened_at = when

        key, value = client.set.call_args.args
        assert key == "cb:mpesa:opened_at"
        client.get.return_value = value
        assert storage.opened_at == when

    def test_increment_counter(self):
        client = MagicMock()
        storage = RedisCircuitBreakerStorage("mpesa", client=client)
        storage.increment_counter()
        client.incr.assert_called_once_with("cb:mpesa:counter")


class TestTokenCache:
    def test_set_subtracts_safety_margin(self):
        client = MagicMock()
        RedisTokenCache(client=client).set("tok", 3599)
        client.setex.assert_called_once_with(TOKEN_CACHE_KEY, 3539, "tok")

    def test_short_lived_token_not_cached(self):
        client = MagicMock()
        RedisTokenCache(client=client).set("tok", 30)
        client.setex.assert_not_called()

    def test_redis_down_is_a_miss(self):
        client = MagicMock()
        client.get.side_effect = redis.ConnectionError("down")
        assert RedisTokenCache(client=client).get() is None


class TestIdempotencyStore:
    def test_first_caller_wins(self):
        client = MagicMock()
        client.set.side_effect = [True, None]
        store = IdempotencyStore(client=client)

        assert store.check_and_set("mpesa_callback:ws_CO_1") is True
        assert store.check_and_set("mpesa_callback:ws_CO_1") is False
        args, kwargs = client.set.call_args
        assert args[0] == "idempotency:mpesa_callback:ws_CO_1"
        assert kwargs["nx"] is True

    def test_redis_down_lets_request_through(self):
        client = MagicMock()
        client.set.side_effect = redis.ConnectionError("down")
        assert IdempotencyStore(client=client).check_and_set("k") is True

    def test_release(self):
        client = MagicMock()
        IdempotencyStore(client=client).release("k")
        client.delete.assert_called_once_with("idempotency:k")


def test_client_rejections_do_not_trip_breaker():
    assert _is_client_rejection(GatewayRequestError("bad phone", status_code=400))
    assert not _is_client_rejection(GatewayRequestError("down", status_code=503))
    assert not _is_client_rejection(GatewayRequestError("down"))
    assert not _is_client_rejection(GatewayAuthError("auth"))
