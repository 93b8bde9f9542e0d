"""
Per-user rate limiter on redis counters with a fixed reset window.
"""
import logging

import redis

from vpnshop.core.config import settings

logger = logging.getLogger(__name__)


class RateLimiter:
    def __init__(self, name: str, limit: int, window_seconds: int, client: redis.Redis | None = None):
        self.name = name
        self.limit = limit
        self.window_seconds = window_seconds
        self._client = client

    @property
    def client(self) -> redis.Redis:
        if self._client is None:
            self._client = redis.Redis.from_url(settings.redis_url, decode_responses=True)
        return self._client

    def _key(self, user_key: str) -> str:
        return f"rl:{self.name}:{user_key}"

    def hit(self, user_key: str) -> bool:
        """
        Count one attempt. Returns True if allowed, False if rate limited.
        Fails open when redis is unavailable.
        """
        key = self._key(user_key)
        try:
            current = self.client.incr(key)
            if current == 1:
                self.client.expire(key, self.window_seconds)
        except redis.RedisError as e:
            logger.warning("rate_limit_redis_error", extra={"error": str(e)})
            return True
        if current > self.limit:
            logger.warning("rate_limited", extra={"telegram_id": user_key, "status": self.name, "attempt": current})
            return False
        return True

    def reset(self, user_key: str) -> None:
        try:
            self.client.delete(self._key(user_key))
        except redis.RedisError as e:
            logger.warning("rate_limit_redis_error", extra={"error": str(e)})


start_limiter = RateLimiter("start", settings.start_rate_limit, settings.start_rate_window_seconds)
purchase_limiter = RateLimiter("purchase", settings.purchase_rate_limit, settings.purchase_rate_window_seconds)
