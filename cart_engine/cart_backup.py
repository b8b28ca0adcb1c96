"""
Cart merging and the backup slot that protects a cart across a login redirect.
"""
import json
import logging
from typing import TYPE_CHECKING, List, Optional, Sequence

from pydantic import TypeAdapter, ValidationError as SchemaError

from cart_engine.config import Config
from cart_engine.exceptions import StorageError
from cart_engine.models import CartLineItem
from cart_engine.storage import CartStorage

if TYPE_CHECKING:
    from cart_engine.cart_store import CartStore

logger = logging.getLogger(__name__)

_line_items = TypeAdapter(List[CartLineItem])


def merge_cart_items(
    existing: Sequence[CartLineItem],
    incoming: Sequence[CartLineItem]
) -> List[CartLineItem]:
    """
    Merge two carts, summing quantities of lines with the same product/variant.

    Result keeps ``existing`` order, followed by lines first seen in
    ``incoming``. Inputs are not modified.
    """
    merged: List[CartLineItem] = []
    positions = {}

    for item in list(existing) + list(incoming):
        index = positions.get(item.key)
        if index is None:
            positions[item.key] = len(merged)
            merged.append(item.model_copy(deep=True))
        else:
            merged[index].quantity += item.quantity

    return merged


class CartBackup:
    """Secondary cart slot, independent of the main cart store"""

    def __init__(
        self,
        storage: CartStorage,
        storage_key: str = Config.CART_BACKUP_KEY,
        ttl: Optional[int] = Config.BACKUP_TTL_SECONDS
    ):
        self.storage = storage
        self.storage_key = storage_key
        self.ttl = ttl

    def save(self, items: Sequence[CartLineItem]) -> bool:
        """Save cart lines before an authentication redirect"""
        payload = json.dumps([item.to_wire() for item in items])
        try:
            self.storage.set(self.storage_key, payload, ttl=self.ttl)
        except StorageError as e:
            logger.error(f"Failed to save cart backup: {e}")
            return False
        return True

    def restore(self) -> Optional[List[CartLineItem]]:
        """Backed up lines, or None when there is no readable backup"""
        try:
            raw = self.storage.get(self.storage_key)
        except StorageError as e:
            logger.error(f"Failed to restore cart backup: {e}")
            return None

        if not raw:
            return None

        try:
            return _line_items.validate_json(raw)
        except SchemaError as e:
            logger.warning(f"Discarding unreadable cart backup ({e.error_count()} errors)")
            return None

    def clear(self) -> None:
        try:
            self.storage.delete(self.storage_key)
        except StorageError as e:
            logger.error(f"Failed to clear cart backup: {e}")


def restore_after_login(store: "CartStore", backup: CartBackup) -> Optional[List[CartLineItem]]:
    """
    Fold the pre-login backup into the signed-in cart.

    The backup is cleared only once the merged cart has been written to the store.
    """
    saved = backup.restore()
    if saved is None:
        return None

    store.reload()
    merged = merge_cart_items(store.items, saved)
    store.replace_items(merged)
    backup.clear()
    logger.info(f"Restored {len(saved)} backed up lines into cart ({len(merged)} lines after merge)")
    return merged
