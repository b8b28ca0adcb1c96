"""
Pydantic models for cart state, pricing authority payloads, requests, and responses.

All amounts are integers in minor currency units (e.g. cents). JSON uses
camelCase keys; Python attributes are snake_case.
"""
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel
from typing import Optional, Dict, List, Tuple


LineKey = Tuple[str, Optional[str]]


def line_key(product_id: str, variant_id: Optional[str] = None) -> LineKey:
    """Identity of a cart line. Empty variant ids are equivalent to no variant."""
    return (str(product_id), variant_id or None)


class CamelModel(BaseModel):
    """Base model serialising to the camelCase wire/storage format"""
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        coerce_numbers_to_str=True,
    )

    def to_wire(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


# Cart state

class ComplimentaryGift(CamelModel):
    """Gift bundled with one specific product line"""
    name: str = Field(..., description="Gift name")
    value: Optional[int] = Field(None, ge=0, description="Gift value")
    image: Optional[str] = Field(None, description="Gift image reference")


class CartLineItem(CamelModel):
    """Cart line item model"""
    product_id: str = Field(..., description="Product identifier")
    variant_id: Optional[str] = Field(None, description="Product variant identifier")
    product_name: str = Field("", description="Display name")
    variant_name: Optional[str] = Field(None, description="Variant label")
    image: Optional[str] = Field(None, description="Image reference")
    price: int = Field(..., ge=0, description="Unit price")
    quantity: int = Field(1, ge=1, description="Item quantity")
    complimentary_gift: Optional[ComplimentaryGift] = Field(None, description="Gift attached to this line")

    @field_validator("variant_id")
    @classmethod
    def normalise_variant(cls, v: Optional[str]) -> Optional[str]:
        return v or None

    @property
    def key(self) -> LineKey:
        return line_key(self.product_id, self.variant_id)

    @property
    def line_total(self) -> int:
        return self.price * self.quantity


class CartSnapshot(CamelModel):
    """Persisted cart record"""
    items: List[CartLineItem] = Field(default_factory=list)
    discount_code: Optional[str] = None
    discount_amount: int = Field(0, ge=0)


# Pricing authority payloads

class CartItemInput(CamelModel):
    """Item reference sent to the pricing authority"""
    product_id: str
    variant_id: Optional[str] = None
    quantity: int = Field(..., ge=1)
    is_promotional_gift: Optional[bool] = None
    source_promotion_id: Optional[str] = None
    gift_option_id: Optional[str] = None
    gift_value: Optional[int] = None


class DiscountValidation(CamelModel):
    """Result of a discount code validation"""
    is_valid: bool
    code: Optional[str] = None
    discount_type: Optional[str] = None  # percentage | fixed_amount | free_shipping
    discount_value: Optional[float] = None
    discount_amount: Optional[int] = None
    error: Optional[str] = None
    error_code: Optional[str] = None


class EligibleGift(CamelModel):
    """Free gift the cart currently qualifies for"""
    id: str
    name: str
    description: Optional[str] = None
    image_url: Optional[str] = None
    value: int = 0
    min_purchase_amount: Optional[int] = None
    associated_product_ids: Optional[List[str]] = None


class FreeGift(CamelModel):
    """Free gift granted by an applied promotion"""
    product_id: str
    variant_id: Optional[str] = None
    quantity: int = 1
    name: str = ""
    image_url: Optional[str] = None
    value: int = 0


class AppliedPromotion(CamelModel):
    promotion_id: str
    promotion_name: str
    discount_amount: int = 0
    free_gifts: List[FreeGift] = Field(default_factory=list)
    applied_at: Optional[str] = None


class AppliedDiscount(CamelModel):
    code: str
    type: str
    value: float
    amount: int


class CartPricing(CamelModel):
    subtotal: int = 0
    shipping_cost: int = 0
    tax_amount: int = 0
    discount_amount: int = 0
    total_amount: Optional[int] = None
    discount: Optional[AppliedDiscount] = None
    free_gifts: List[FreeGift] = Field(default_factory=list)
    promotional_discount: Optional[int] = None


class GiftOption(CamelModel):
    """Candidate free gift within a promotion's selectable set"""
    id: str
    name: str
    price: Optional[int] = None
    image_url: Optional[str] = None
    quantity: int = Field(1, ge=1)
    product_id: Optional[str] = None


class SelectableGiftPromotion(CamelModel):
    """Promotion that asks the shopper to pick gifts"""
    promotion_id: str
    promotion_name: str = ""
    max_selections: int = Field(..., ge=0)
    options: List[GiftOption] = Field(default_factory=list)


class PromotionalCartResult(CamelModel):
    """Pricing authority snapshot for the current cart contents (never persisted)"""
    items: List[CartItemInput] = Field(default_factory=list)
    pricing: CartPricing = Field(default_factory=CartPricing)
    applied_promotions: List[AppliedPromotion] = Field(default_factory=list)
    free_gifts: List[FreeGift] = Field(default_factory=list)
    total_discount: int = 0
    selectable_gifts: List[SelectableGiftPromotion] = Field(default_factory=list)


class CartValidationError(CamelModel):
    product_id: str
    variant_id: Optional[str] = None
    type: str
    message: str = ""
    available_quantity: Optional[int] = None


class ValidatedCartItem(CamelModel):
    product_id: str
    variant_id: Optional[str] = None
    product_name: str = ""
    variant_name: Optional[str] = None
    unit_price: int = 0
    quantity: int = 0
    subtotal: int = 0
    in_stock: bool = True
    available_quantity: int = 0


class ValidatedCart(CamelModel):
    items: List[ValidatedCartItem] = Field(default_factory=list)
    subtotal: int = 0
    is_valid: bool = True
    errors: List[CartValidationError] = Field(default_factory=list)


# View state

class PromotionGiftGroup(CamelModel):
    promotion_name: str
    count: int = 0
    value: int = 0
    gifts: List[FreeGift] = Field(default_factory=list)


class GiftSummary(CamelModel):
    total_gifts: int = 0
    total_gift_value: int = 0
    gifts_by_promotion: Dict[str, PromotionGiftGroup] = Field(default_factory=dict)


class GiftSelectionView(CamelModel):
    promotion_id: str
    promotion_name: str
    state: str
    max_selections: int
    selections_remaining: int
    selected_option_ids: List[str] = Field(default_factory=list)
    disabled_option_ids: List[str] = Field(default_factory=list)
    options: List[GiftOption] = Field(default_factory=list)


class CartSummary(CamelModel):
    """Render-ready cart view"""
    items: List[CartLineItem] = Field(default_factory=list)
    total_items: int = 0
    local_subtotal: int = 0
    subtotal: int = 0
    discount_code: Optional[str] = None
    discount_amount: int = 0
    shipping_cost: int = 0
    tax_amount: int = 0
    total: int = 0
    applied_promotions: List[AppliedPromotion] = Field(default_factory=list)
    free_gifts: List[FreeGift] = Field(default_factory=list)
    gift_summary: GiftSummary = Field(default_factory=GiftSummary)
    gift_selections: List[GiftSelectionView] = Field(default_factory=list)
    has_authority_result: bool = False
    is_evaluating: bool = False
    is_stale: bool = False
    error: Optional[str] = None


# Requests

class CartItemRequest(CamelModel):
    """Request model for adding items"""
    product_id: str = Field(..., description="Product identifier")
    variant_id: Optional[str] = Field(None, description="Product variant identifier")
    product_name: str = Field("", description="Display name")
    variant_name: Optional[str] = Field(None, description="Variant label")
    image: Optional[str] = Field(None, description="Image reference")
    price: int = Field(..., ge=0, description="Unit price")
    quantity: int = Field(1, ge=1, description="Item quantity")
    complimentary_gift: Optional[ComplimentaryGift] = None


class UpdateQuantityRequest(CamelModel):
    quantity: int = Field(..., description="New quantity (clamped to at least 1)")
    variant_id: Optional[str] = None


class DiscountCodeRequest(CamelModel):
    code: str = Field(..., min_length=1, description="Discount code")
