import logging

import redis

from app.core.config import settings

logger = logging.getLogger(__name__)


class IdempotencyStore:
    def __init__(self, client: redis.Redis | None = None) -> None:
        self.client = client or redis.Redis.from_url(settings.redis_url, decode_responses=True)
        self.default_ttl = settings.idempotency_ttl

    def check_and_set(self, key: str, ttl_seconds: int | None = None) -> bool:
        """Atomic operation: setnx + expire in one call.
        Returns True for the first caller. Redis being down counts as first caller.
        """
        ttl = ttl_seconds if ttl_seconds is not None else self.default_ttl
        try:
            created = self.client.set(f"idempotency:{key}", "1", nx=True, ex=ttl)
        except redis.RedisError as e:
            logger.warning("idempotency_store_unavailable", extra={"error": str(e)})
            return True
        return created is not None

    def release(self, key: str) -> None:
        """Forget a key so a redelivery can be processed again (after a rolled-back attempt)."""
        try:
            self.client.delete(f"idempotency:{key}")
        except redis.RedisError as e:
            logger.warning("idempotency_store_unavailable", extra={"error": str(e)})
