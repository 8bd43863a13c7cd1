import logging
from typing import Protocol

import redis

logger = logging.getLogger(__name__)

KEY_PREFIX = "bundlebox:download:"


class TokenCache(Protocol):
    def get(self, token: str) -> int | None: ...

    def set(self, token: str, archive_id: int, ttl: int) -> None: ...

    def delete(self, token: str) -> None: ...


class NullTokenCache:
    def get(self, token: str) -> int | None:
        return None

    def set(self, token: str, archive_id: int, ttl: int) -> None:
        pass

    def delete(self, token: str) -> None:
        pass


class RedisTokenCache:
    """download token -> archive id, only ever an accelerator.

    Redis errors are logged and reported as a miss so the metadata store
    stays the single source of truth.
    """

    def __init__(self, client: redis.Redis):
        self.client = client

    @classmethod
    def from_url(cls, url: str) -> "RedisTokenCache":
        return cls(redis.Redis.from_url(url, socket_timeout=2, socket_connect_timeout=2))

    def get(self, token: str) -> int | None:
        try:
            value = self.client.get(KEY_PREFIX + token)
        except redis.RedisError as exc:
            logger.warning("Token cache read failed: %s", exc)
            return None
        if value is None:
            return None
        try:
            return int(value)
        except ValueError:
            return None

    def set(self, token: str, archive_id: int, ttl: int) -> None:
        if ttl <= 0:
            return
        try:
            self.client.setex(KEY_PREFIX + token, ttl, archive_id)
        except redis.RedisError as exc:
            logger.warning("Token cache write failed: %s", exc)

    def delete(self, token: str) -> None:
        try:
            self.client.delete(KEY_PREFIX + token)
        except redis.RedisError as exc:
            logger.warning("Token cache delete failed: %s", exc)


def make_token_cache(settings) -> TokenCache:
    if settings.redis_url:
        return RedisTokenCache.from_url(settings.redis_url)
    return NullTokenCache()
