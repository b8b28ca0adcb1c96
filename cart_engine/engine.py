"""
Wiring of the cart components for one cart session, and the per-session registry.
"""
import time
import hashlib
import logging
from typing import Callable, List, Optional

from cachetools import TTLCache

from cart_engine.cart_backup import CartBackup, restore_after_login
from cart_engine.cart_store import CartStore
from cart_engine.config import Config
from cart_engine.evaluator import PromotionalEvaluator
from cart_engine.gift_selection import GiftSelector
from cart_engine.models import CartLineItem
from cart_engine.pricing_client import PricingClient
from cart_engine.redis_client import get_redis_client
from cart_engine.storage import CartStorage, InMemoryCartStorage, RedisCartStorage

logger = logging.getLogger(__name__)

StorageFactory = Callable[[str], CartStorage]


def hash_identifier(identifier: str) -> str:
    """Hash identifier for logging (no PII)"""
    return hashlib.sha256(identifier.encode()).hexdigest()[:8]


class CartEngine:
    """Cart store, login backup, promotional evaluator and gift selector of one session"""

    def __init__(
        self,
        storage: CartStorage,
        client: PricingClient,
        debounce_seconds: float = Config.debounce_seconds(),
        auto_evaluate: bool = True
    ):
        self.store = CartStore(storage)
        self.backup = CartBackup(storage)
        self.evaluator = PromotionalEvaluator(
            self.store,
            client,
            debounce_seconds=debounce_seconds,
            auto_evaluate=auto_evaluate
        )

    @property
    def gifts(self) -> GiftSelector:
        return self.evaluator.gift_selector

    def save_backup(self) -> bool:
        """Snapshot the cart before an authentication redirect"""
        return self.backup.save(self.store.items)

    def restore_backup(self) -> Optional[List[CartLineItem]]:
        """Merge the pre-login snapshot into the current cart"""
        return restore_after_login(self.store, self.backup)

    def close(self) -> None:
        self.evaluator.close()


def redis_storage_factory(session_id: str) -> CartStorage:
    return RedisCartStorage(get_redis_client(), namespace=f"{Config.PROJECT_NAME}:session:{session_id}")


def default_storage_factory() -> StorageFactory:
    if Config.STORAGE_BACKEND == "memory":
        return lambda session_id: InMemoryCartStorage()
    return redis_storage_factory


class EngineCache(TTLCache):
    """Session engines that expire after an idle period; dropped engines are closed"""

    def expire(self, time=None):
        expired = super().expire(time)
        for session_id, engine in expired:
            engine.close()
            logger.info(f"Closed idle cart session {hash_identifier(session_id)}")
        return expired

    def popitem(self):
        session_id, engine = super().popitem()
        engine.close()
        logger.info(f"Evicted cart session {hash_identifier(session_id)} (session limit reached)")
        return session_id, engine


class EngineRegistry:
    """
    One CartEngine per cart session, created on first use.

    Engines idle for longer than ``idle_ttl`` seconds are closed and
    dropped, and at most ``max_sessions`` are kept. A dropped session
    loses nothing durable: its next request rebuilds the engine from storage.
    """

    def __init__(
        self,
        client: PricingClient,
        storage_factory: Optional[StorageFactory] = None,
        debounce_seconds: float = Config.debounce_seconds(),
        auto_evaluate: bool = True,
        idle_ttl: float = Config.SESSION_IDLE_TTL_SECONDS,
        max_sessions: int = Config.MAX_SESSIONS,
        timer: Callable[[], float] = time.monotonic
    ):
        self.client = client
        self.storage_factory = storage_factory or default_storage_factory()
        self.debounce_seconds = debounce_seconds
        self.auto_evaluate = auto_evaluate
        self._engines = EngineCache(maxsize=max_sessions, ttl=idle_ttl, timer=timer)

    def get(self, session_id: str) -> CartEngine:
        engine = self._engines.get(session_id)
        if engine is None:
            engine = CartEngine(
                self.storage_factory(session_id),
                self.client,
                debounce_seconds=self.debounce_seconds,
                auto_evaluate=self.auto_evaluate
            )
            logger.info(f"Opened cart session {hash_identifier(session_id)}")
        # re-inserting restarts the idle timer
        self._engines[session_id] = engine
        return engine

    def __len__(self) -> int:
        self._engines.expire()
        return len(self._engines)

    def close(self) -> None:
        self._engines.expire()
        for engine in list(self._engines.values()):
            engine.close()
        self._engines.clear()
