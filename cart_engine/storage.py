"""
Durable key/value slots backing the cart store and the login backup.
"""
import logging
from abc import ABC, abstractmethod
from typing import Dict, Optional

from cart_engine.redis_client import RedisClient

logger = logging.getLogger(__name__)


class CartStorage(ABC):
    """String slots addressed by key, shared by every worker serving a session"""

    @abstractmethod
    def get(self, key: str) -> Optional[str]:
        ...

    @abstractmethod
    def set(self, key: str, value: str, ttl: Optional[int] = None) -> None:
        ...

    @abstractmethod
    def delete(self, key: str) -> None:
        ...


class RedisCartStorage(CartStorage):
    """Cart slots stored as plain Redis strings under a namespace"""

    def __init__(self, redis_client: RedisClient, namespace: str):
        self.redis = redis_client
        self.namespace = namespace

    def _key(self, key: str) -> str:
        return f"{self.namespace}:{key}"

    def get(self, key: str) -> Optional[str]:
        """Stored value, or None when missing or not valid UTF-8"""
        try:
            return self.redis.get(self._key(key))
        except UnicodeDecodeError as e:
            logger.warning(f"Discarding undecodable value in slot {key}: {e.reason} at byte {e.start}")
            return None

    def set(self, key: str, value: str, ttl: Optional[int] = None) -> None:
        self.redis.set(self._key(key), value, ex=ttl)

    def delete(self, key: str) -> None:
        self.redis.delete(self._key(key))


class InMemoryCartStorage(CartStorage):
    """Process-local slots, for local runs and tests. TTLs are ignored."""

    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self.data: Dict[str, str] = dict(initial or {})

    def get(self, key: str) -> Optional[str]:
        return self.data.get(key)

    def set(self, key: str, value: str, ttl: Optional[int] = None) -> None:
        self.data[key] = value

    def delete(self, key: str) -> None:
        self.data.pop(key, None)
