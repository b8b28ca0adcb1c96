"""
Pooled Redis connection for the cart storage slots.

Connection drops and timeouts are retried with exponential backoff; every
Redis failure reaches callers as StorageError.
"""
import redis
import time
import random
import logging
from typing import Any, Optional
from redis.exceptions import (
    AuthenticationError,
    ConnectionError,
    RedisError,
    TimeoutError
)

from cart_engine.config import Config
from cart_engine.exceptions import StorageError

logger = logging.getLogger(__name__)

MAX_RETRIES = 3
INITIAL_BACKOFF_SECONDS = 0.1
MAX_BACKOFF_SECONDS = 2.0


def redis_url() -> str:
    # ElastiCache with encryption-in-transit requires rediss://
    scheme = "rediss" if Config.REDIS_USE_SSL else "redis"
    auth = f":{Config.REDIS_AUTH_TOKEN}@" if Config.REDIS_AUTH_TOKEN else ""
    return f"{scheme}://{auth}{Config.REDIS_HOST}:{Config.REDIS_PORT}/{Config.REDIS_DB}"


class RedisClient:
    """String get/set/delete over a connection pool"""

    def __init__(self, url: Optional[str] = None):
        self.url = url or redis_url()
        self.pool: Optional[redis.ConnectionPool] = None
        self.client: Optional[redis.Redis] = None
        self._connect()

    def _connect(self) -> None:
        options = {
            "max_connections": Config.REDIS_MAX_CONNECTIONS,
            "socket_connect_timeout": Config.REDIS_SOCKET_CONNECT_TIMEOUT,
            "socket_timeout": Config.REDIS_SOCKET_TIMEOUT,
            "retry_on_timeout": Config.REDIS_RETRY_ON_TIMEOUT,
            "decode_responses": True,
        }
        if self.url.startswith("rediss://"):
            options["ssl_cert_reqs"] = None  # self-signed ElastiCache certs

        try:
            self.pool = redis.ConnectionPool.from_url(self.url, **options)
            self.client = redis.Redis(connection_pool=self.pool)
            self.client.ping()
        except (ConnectionError, AuthenticationError) as e:
            raise StorageError(f"Failed to connect to Redis: {e}")

    def _execute(self, command: str, *args: Any, **kwargs: Any) -> Any:
        """Run one client command, reconnecting between attempts on connection drops and timeouts"""
        backoff = INITIAL_BACKOFF_SECONDS

        for attempt in range(1, MAX_RETRIES + 1):
            try:
                return getattr(self.client, command)(*args, **kwargs)
            except (ConnectionError, TimeoutError) as e:
                if attempt == MAX_RETRIES:
                    raise StorageError(f"Redis {command} failed after {MAX_RETRIES} retries: {e}")

                logger.warning(f"Redis {command} attempt {attempt} failed, retrying: {e}")
                time.sleep(backoff + random.uniform(0, backoff * 0.1))
                backoff = min(backoff * 2, MAX_BACKOFF_SECONDS)

                try:
                    self._connect()
                except StorageError as reconnect_error:
                    logger.warning(f"Redis reconnect failed: {reconnect_error}")

            except RedisError as e:
                raise StorageError(f"Redis error: {e}")

    def get(self, key: str) -> Optional[str]:
        return self._execute("get", key)

    def set(self, key: str, value: str, ex: Optional[int] = None) -> bool:
        return self._execute("set", key, value, ex=ex)

    def delete(self, *keys: str) -> int:
        return self._execute("delete", *keys)

    def ping(self) -> bool:
        """Single connectivity check for the health endpoint, no retries"""
        try:
            return self.client.ping()
        except RedisError:
            return False

    def close(self) -> None:
        if self.pool:
            self.pool.disconnect()


_redis_client: Optional[RedisClient] = None


def get_redis_client() -> RedisClient:
    """Process-wide client, connected on first use"""
    global _redis_client
    if _redis_client is None:
        _redis_client = RedisClient()
    return _redis_client
