import asyncio
from typing import List, Optional
from unittest.mock import MagicMock, patch

import pytest
from redis.connection import Encoder

from cart_engine.cart_store import CartStore
from cart_engine.models import (
    CartItemInput,
    CartLineItem,
    CartPricing,
    DiscountValidation,
    EligibleGift,
    GiftOption,
    PromotionalCartResult,
    SelectableGiftPromotion,
    ValidatedCart,
)
from cart_engine.redis_client import RedisClient
from cart_engine.storage import InMemoryCartStorage


def make_item(product_id="A", price=1000, quantity=1, variant_id=None, **extra) -> CartLineItem:
    return CartLineItem(
        product_id=product_id,
        variant_id=variant_id,
        product_name=extra.pop("product_name", f"Product {product_id}"),
        price=price,
        quantity=quantity,
        **extra
    )


def make_result(subtotal=0, discount=0, selectable=None, **extra) -> PromotionalCartResult:
    return PromotionalCartResult(
        pricing=CartPricing(subtotal=subtotal, discount_amount=discount),
        selectable_gifts=selectable or [],
        **extra
    )


def gift_promotion(promotion_id="P1", max_selections=2, option_ids=("g1", "g2", "g3")) -> SelectableGiftPromotion:
    return SelectableGiftPromotion(
        promotion_id=promotion_id,
        promotion_name=f"Promotion {promotion_id}",
        max_selections=max_selections,
        options=[GiftOption(id=option_id, name=f"Gift {option_id}", product_id=f"prod-{option_id}") for option_id in option_ids]
    )


class FakePricingClient:
    """Pricing authority double; evaluation responses can be held back with gates"""

    def __init__(self):
        self.evaluate_calls: List[tuple] = []
        self.results: List[PromotionalCartResult] = []
        self.gates: List[Optional[asyncio.Event]] = []
        self.evaluate_error: Optional[Exception] = None
        self.discount_validation = DiscountValidation(is_valid=True, code="SAVE10", discount_amount=500)
        self.validated_cart = ValidatedCart()
        self.eligible = []
        self.discount_calls: List[tuple] = []

    def queue(self, result: PromotionalCartResult, gate: Optional[asyncio.Event] = None) -> None:
        self.results.append(result)
        self.gates.append(gate)

    async def get_promotional_cart_result(self, items: List[CartItemInput], discount_code=None):
        index = len(self.evaluate_calls)
        self.evaluate_calls.append((list(items), discount_code))
        gate = self.gates[index] if index < len(self.gates) else None
        if gate is not None:
            await gate.wait()
        if self.evaluate_error is not None:
            raise self.evaluate_error
        if index < len(self.results):
            return self.results[index]
        return make_result(subtotal=sum(i.quantity for i in items))

    async def validate_discount_code(self, code, subtotal, items):
        self.discount_calls.append((code, subtotal, list(items)))
        return self.discount_validation

    async def get_eligible_gifts(self, items, subtotal) -> List[EligibleGift]:
        return self.eligible

    async def validate_cart(self, items):
        return self.validated_cart


@pytest.fixture
def storage():
    return InMemoryCartStorage()


@pytest.fixture
def store(storage):
    return CartStore(storage)


@pytest.fixture
def pricing():
    return FakePricingClient()


@pytest.fixture
def redis_client():
    with patch("cart_engine.redis_client.redis") as redis_module, \
            patch("cart_engine.redis_client.time.sleep"):
        redis_module.Redis.return_value = MagicMock()
        yield RedisClient()


def decode_response(raw: bytes) -> str:
    """Decode a reply the way a decode_responses=True connection does"""
    return Encoder("utf-8", "strict", True).decode(raw)
