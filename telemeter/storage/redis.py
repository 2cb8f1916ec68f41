"""Redis durable store.

Values live in a hash, creation order in a sorted set scored by an INCR
counter, so ``list_keys`` returns keys in the order they were first put.
"""

import logging
import threading
from typing import Any
from urllib.parse import urlparse, urlunparse

from telemeter.core.errors import StorageError

try:
    from redis import Redis, RedisError
except ImportError as e:
    raise ImportError(
        "RedisStore requires the 'redis' package. "
        "Install it with: pip install redis"
    ) from e

logger = logging.getLogger("telemeter.storage.redis")


def _sanitize_url(url: str) -> str:
    """Mask password in Redis URL for logging."""
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = f"{parsed.username}:****@{parsed.hostname}"
            if parsed.port:
                netloc += f":{parsed.port}"
            return urlunparse(
                (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
            )
        return f"{parsed.hostname}:{parsed.port or 6379}"
    except Exception:
        return "<url>"


class RedisStore:
    """Durable store on a Redis server.

    The connection is created lazily on first use.

    Args:
        redis_url: Redis connection URL.
        namespace: Prefix of the three Redis keys used by this store.
    """

    def __init__(self, redis_url: str = "redis://localhost:6379", namespace: str = "telemeter") -> None:
        self._url = redis_url
        self._url_safe = _sanitize_url(redis_url)
        self.namespace = namespace
        self._values_key = f"{namespace}:values"
        self._order_key = f"{namespace}:order"
        self._seq_key = f"{namespace}:seq"
        self._client: Redis | None = None
        self._conn_lock = threading.Lock()

    def _get_client(self) -> Redis:
        if self._client is not None:
            return self._client
        with self._conn_lock:
            if self._client is None:
                client = Redis.from_url(self._url, decode_responses=True)
                try:
                    client.ping()
                except RedisError as e:
                    client.close()
                    raise StorageError(f"cannot connect to Redis at {self._url_safe}", e) from e
                self._client = client
                logger.info(f"Connected to Redis at {self._url_safe}")
        return self._client

    def _call(self, what: str, fn: Any) -> Any:
        try:
            return fn(self._get_client())
        except RedisError as e:
            raise StorageError(f"Redis {what} failed", e) from e

    def put(self, key: str, value: str) -> None:
        def op(client: Any) -> None:
            if client.zscore(self._order_key, key) is None:
                seq = client.incr(self._seq_key)
                pipe = client.pipeline()
                pipe.hset(self._values_key, key, value)
                pipe.zadd(self._order_key, {key: seq}, nx=True)
                pipe.execute()
            else:
                client.hset(self._values_key, key, value)

        self._call(f"put {key!r}", op)

    def get(self, key: str) -> str | None:
        return self._call(f"get {key!r}", lambda client: client.hget(self._values_key, key))

    def delete(self, key: str) -> None:
        def op(client: Any) -> None:
            pipe = client.pipeline()
            pipe.hdel(self._values_key, key)
            pipe.zrem(self._order_key, key)
            pipe.execute()

        self._call(f"delete {key!r}", op)

    def list_keys(self, prefix: str = "") -> list[str]:
        keys = self._call("list", lambda client: client.zrange(self._order_key, 0, -1))
        return [k for k in keys if k.startswith(prefix)]

    def clear(self, prefix: str = "") -> None:
        keys = self.list_keys(prefix)
        if not keys:
            return

        def op(client: Any) -> None:
            pipe = client.pipeline()
            pipe.hdel(self._values_key, *keys)
            pipe.zrem(self._order_key, *keys)
            pipe.execute()

        self._call(f"clear {prefix!r}", op)

    def destroy(self) -> None:
        """Delete every Redis key owned by this store."""
        self._call(
            "destroy",
            lambda client: client.delete(self._values_key, self._order_key, self._seq_key),
        )

    def close(self) -> None:
        with self._conn_lock:
            if self._client is not None:
                try:
                    self._client.close()
                except Exception as e:
                    logger.debug(f"Error closing Redis connection: {e}")
                self._client = None
