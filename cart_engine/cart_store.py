"""
Persisted cart store: the single owner of the cart's line items and discount state.
"""
import logging
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from pydantic import ValidationError as SchemaError

from cart_engine.cart_backup import merge_cart_items
from cart_engine.config import Config
from cart_engine.exceptions import StorageError, ValidationError
from cart_engine.models import (
    CartItemInput,
    CartLineItem,
    CartSnapshot,
    EligibleGift,
    GiftOption,
    line_key,
)
from cart_engine.storage import CartStorage

logger = logging.getLogger(__name__)

Listener = Callable[[], None]


class CartStore:
    """
    Cart line items, discount state and cached eligibility data.

    Every mutation first picks up any newer snapshot another worker wrote,
    then is applied synchronously, written to storage and announced to
    subscribers. Reads return copies; nothing outside this class mutates
    the lines.
    """

    def __init__(
        self,
        storage: CartStorage,
        storage_key: str = Config.CART_STORAGE_KEY,
        ttl: Optional[int] = Config.CART_TTL_SECONDS
    ):
        self.storage = storage
        self.storage_key = storage_key
        self.ttl = ttl
        self._items: List[CartLineItem] = []
        self._discount_code: Optional[str] = None
        self._discount_amount: int = 0
        self._eligible_gifts: List[EligibleGift] = []
        self._gift_selections: Dict[str, Tuple[GiftOption, ...]] = {}
        self._listeners: List[Listener] = []
        self._raw: Optional[str] = None
        self._rehydrate()

    # Persistence

    def _rehydrate(self) -> None:
        """Load the persisted cart. Anything unreadable yields an empty cart."""
        try:
            raw = self.storage.get(self.storage_key)
        except StorageError as e:
            logger.warning(f"Cart storage unavailable, starting empty: {e}")
            return
        self._load(raw)

    def _load(self, raw: Optional[str]) -> None:
        self._raw = raw
        self._items = []
        self._discount_code = None
        self._discount_amount = 0
        if not raw:
            return

        try:
            snapshot = CartSnapshot.model_validate_json(raw)
        except SchemaError as e:
            logger.warning(f"Discarding unreadable cart storage ({e.error_count()} errors)")
            return

        self._items = merge_cart_items([], snapshot.items)
        self._discount_code = snapshot.discount_code
        self._discount_amount = snapshot.discount_amount if snapshot.discount_code else 0

    def reload(self) -> bool:
        """
        Pick up a snapshot written by another worker since this store last
        read or wrote the slot. Returns True (and notifies) if the cart changed.
        """
        try:
            raw = self.storage.get(self.storage_key)
        except StorageError as e:
            logger.warning(f"Cart storage unavailable, keeping in-memory cart: {e}")
            return False

        if raw == self._raw:
            return False

        logger.info("Cart changed in storage, reloading")
        self._load(raw)
        self._notify()
        return True

    def _persist(self) -> None:
        snapshot = CartSnapshot(
            items=self._items,
            discount_code=self._discount_code,
            discount_amount=self._discount_amount
        )
        raw = snapshot.model_dump_json(by_alias=True, exclude_none=True)
        try:
            self.storage.set(self.storage_key, raw, ttl=self.ttl)
        except StorageError as e:
            # In-memory cart stays authoritative; the next mutation retries the write
            logger.error(f"Failed to persist cart: {e}")
            return
        self._raw = raw

    def _commit(self) -> None:
        self._persist()
        self._notify()

    # Listeners

    def subscribe(self, listener: Listener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def unsubscribe(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _notify(self) -> None:
        for listener in list(self._listeners):
            listener()

    # Reads

    @property
    def items(self) -> Tuple[CartLineItem, ...]:
        return tuple(item.model_copy(deep=True) for item in self._items)

    @property
    def discount_code(self) -> Optional[str]:
        return self._discount_code

    @property
    def discount_amount(self) -> int:
        return self._discount_amount

    @property
    def eligible_gifts(self) -> Tuple[EligibleGift, ...]:
        return tuple(self._eligible_gifts)

    @property
    def gift_selections(self) -> Dict[str, Tuple[GiftOption, ...]]:
        return dict(self._gift_selections)

    def is_empty(self) -> bool:
        return not self._items

    def get_item(self, product_id: str, variant_id: Optional[str] = None) -> Optional[CartLineItem]:
        index = self._find(product_id, variant_id)
        return None if index is None else self._items[index].model_copy(deep=True)

    def get_subtotal(self) -> int:
        """Local price x quantity sum, used until the pricing authority responds"""
        return sum(item.line_total for item in self._items)

    def get_total_items(self) -> int:
        return sum(item.quantity for item in self._items)

    def to_request_items(self) -> List[CartItemInput]:
        """Item references for the pricing authority, including chosen promotional gifts"""
        request = [
            CartItemInput(product_id=item.product_id, variant_id=item.variant_id, quantity=item.quantity)
            for item in self._items
        ]
        for promotion_id, options in self._gift_selections.items():
            for option in options:
                request.append(CartItemInput(
                    product_id=option.product_id or option.id,
                    quantity=option.quantity,
                    is_promotional_gift=True,
                    source_promotion_id=promotion_id,
                    gift_option_id=option.id,
                    gift_value=option.price
                ))
        return request

    def _find(self, product_id: str, variant_id: Optional[str] = None) -> Optional[int]:
        key = line_key(product_id, variant_id)
        for index, item in enumerate(self._items):
            if item.key == key:
                return index
        return None

    # Line item mutations

    def add_item(self, item: CartLineItem, quantity: Optional[int] = None) -> CartLineItem:
        """
        Add a line, or add to the quantity of the line with the same product/variant.

        No upper bound is enforced here; stock limits come back from the
        pricing authority as cart validation errors.
        """
        amount = item.quantity if quantity is None else quantity
        if amount < 1:
            raise ValidationError("Quantity must be greater than 0")

        self.reload()
        index = self._find(item.product_id, item.variant_id)
        if index is not None:
            existing = self._items[index]
            existing.quantity += amount
            result = existing
        else:
            result = item.model_copy(deep=True, update={"quantity": amount})
            self._items.append(result)

        self._commit()
        return result.model_copy(deep=True)

    def update_quantity(
        self,
        product_id: str,
        quantity: int,
        variant_id: Optional[str] = None
    ) -> Optional[CartLineItem]:
        """Set a line's quantity, clamped to at least 1. Never removes the line."""
        self.reload()
        index = self._find(product_id, variant_id)
        if index is None:
            return None

        item = self._items[index]
        new_quantity = max(1, quantity)
        if item.quantity != new_quantity:
            item.quantity = new_quantity
            self._commit()
        return item.model_copy(deep=True)

    def increment(self, product_id: str, variant_id: Optional[str] = None) -> Optional[CartLineItem]:
        self.reload()
        item = self.get_item(product_id, variant_id)
        if item is None:
            return None
        return self.update_quantity(product_id, item.quantity + 1, variant_id)

    def decrement(self, product_id: str, variant_id: Optional[str] = None) -> Optional[CartLineItem]:
        """Decrementing a single unit is a no-op; removal is always explicit"""
        self.reload()
        item = self.get_item(product_id, variant_id)
        if item is None:
            return None
        return self.update_quantity(product_id, item.quantity - 1, variant_id)

    def remove_item(self, product_id: str, variant_id: Optional[str] = None) -> bool:
        self.reload()
        index = self._find(product_id, variant_id)
        if index is None:
            return False

        del self._items[index]
        self._commit()
        return True

    def replace_items(self, items: Iterable[CartLineItem]) -> None:
        """Replace every line at once; lines sharing a product/variant are summed"""
        self.reload()
        self._items = merge_cart_items([], list(items))
        self._commit()

    def clear_cart(self) -> None:
        """Reset lines, discount and cached eligibility data in one write"""
        self.reload()
        self._items = []
        self._discount_code = None
        self._discount_amount = 0
        self._eligible_gifts = []
        self._gift_selections = {}
        self._commit()

    # Discount state

    def apply_discount_code(self, code: str, amount: int) -> None:
        code = (code or "").strip()
        if not code:
            raise ValidationError("Discount code is required")
        if amount < 0:
            raise ValidationError("Discount amount cannot be negative")

        self.reload()
        self._discount_code = code
        self._discount_amount = amount
        self._commit()

    def refresh_discount_amount(self, amount: int) -> None:
        """
        Update the cached amount of the active code from an authority result.
        Persisted but not announced: the amount is never sent for evaluation.
        """
        self.reload()
        if self._discount_code is None or amount == self._discount_amount:
            return
        self._discount_amount = max(0, amount)
        self._persist()

    def remove_discount_code(self) -> None:
        self.reload()
        if self._discount_code is None and self._discount_amount == 0:
            return
        self._discount_code = None
        self._discount_amount = 0
        self._commit()

    # Eligibility cache and gift selections (not persisted)

    def set_eligible_gifts(self, gifts: Sequence[EligibleGift]) -> None:
        self._eligible_gifts = list(gifts)

    def set_gift_selections(self, promotion_id: str, options: Sequence[GiftOption]) -> None:
        self._gift_selections[promotion_id] = tuple(options)
        self._notify()

    def retain_gift_selections(self, promotion_ids: Iterable[str]) -> None:
        """Silently drop selections for promotions the authority no longer offers"""
        keep = set(promotion_ids)
        self._gift_selections = {
            promotion_id: options
            for promotion_id, options in self._gift_selections.items()
            if promotion_id in keep
        }

    def clear_gift_selections(self) -> None:
        if not self._gift_selections:
            return
        self._gift_selections = {}
        self._notify()
