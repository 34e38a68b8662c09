from __future__ import annotations

import json
import logging
from typing import Any, Optional

import redis

from .config import Settings


logger = logging.getLogger(__name__)


class Cache:
    """Optional shared cache. Values are JSON-serialisable objects."""

    name = "base"

    def get(self, key: str) -> Optional[Any]:
        raise NotImplementedError

    def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        raise NotImplementedError

    def delete(self, *keys: str) -> None:
        raise NotImplementedError

    def increment(self, key: str) -> int:
        raise NotImplementedError

    def get_int(self, key: str) -> int:
        raise NotImplementedError

    def close(self) -> None:
        pass


class NullCache(Cache):
    """Cache that stores nothing; every read is a miss."""

    name = "null"

    def get(self, key):
        return None

    def set(self, key, value, ttl=None):
        return None

    def delete(self, *keys):
        return None

    def increment(self, key):
        return 0

    def get_int(self, key):
        return 0


class RedisCache(Cache):
    """
    redis-py backed cache. Connection or protocol errors are logged and
    behave like a miss; they never reach the caller.
    """

    name = "redis"

    def __init__(self, url: str, timeout_seconds: float = 2.0, client: Optional[redis.Redis] = None):
        self._client = client or redis.Redis.from_url(
            url,
            socket_timeout=timeout_seconds,
            socket_connect_timeout=timeout_seconds,
            decode_responses=True,
        )

    def ping(self) -> bool:
        return bool(self._client.ping())

    def get(self, key):
        try:
            raw = self._client.get(key)
        except redis.RedisError as e:
            logger.warning("Redis GET %s failed: %s", key, e)
            return None
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except (TypeError, ValueError):
            logger.warning("Discarding undecodable cache entry %s", key)
            return None

    def set(self, key, value, ttl=None):
        try:
            payload = json.dumps(value, default=str)
            if ttl:
                self._client.setex(key, int(ttl), payload)
            else:
                self._client.set(key, payload)
        except (redis.RedisError, TypeError, ValueError) as e:
            logger.warning("Redis SET %s failed: %s", key, e)

    def delete(self, *keys):
        if not keys:
            return
        try:
            self._client.delete(*keys)
        except redis.RedisError as e:
            logger.warning("Redis DEL %s failed: %s", keys, e)

    def increment(self, key):
        try:
            return int(self._client.incr(key))
        except redis.RedisError as e:
            logger.warning("Redis INCR %s failed: %s", key, e)
            return 0

    def get_int(self, key):
        try:
            raw = self._client.get(key)
        except redis.RedisError as e:
            logger.warning("Redis GET %s failed: %s", key, e)
            return 0
        try:
            return int(raw) if raw is not None else 0
        except (TypeError, ValueError):
            return 0

    def close(self) -> None:
        self._client.close()


def create_cache(settings: Settings) -> Cache:
    """
    Redis when ``REDIS_URL`` is set and answers a ping, otherwise a NullCache.
    """
    if not settings.redis_url:
        logger.info("REDIS_URL not set; caching disabled")
        return NullCache()
    cache = RedisCache(settings.redis_url, settings.redis_timeout_seconds)
    try:
        cache.ping()
    except redis.RedisError as e:
        logger.warning("Redis unavailable at %s, caching disabled: %s", settings.redis_url, e)
        return NullCache()
    logger.info("Connected to Redis cache")
    return cache


__all__ = ["Cache", "NullCache", "RedisCache", "create_cache"]
