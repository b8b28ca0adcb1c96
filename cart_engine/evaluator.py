"""
Promotional evaluation: keeps the pricing authority's view of the cart in
step with the cart's contents and folds it into render-ready state.
"""
import logging
from typing import Callable, List, Optional, Sequence

from cart_engine.cart_store import CartStore
from cart_engine.config import Config
from cart_engine.exceptions import PricingAuthorityError, ValidationError
from cart_engine.gift_selection import GiftSelector
from cart_engine.models import (
    AppliedPromotion,
    CartItemInput,
    CartSummary,
    EligibleGift,
    GiftSummary,
    PromotionGiftGroup,
    PromotionalCartResult,
)
from cart_engine.pricing_client import PricingClient
from cart_engine.scheduler import DebouncedScheduler
from cart_engine.validation import (
    CartItemIssue,
    DiscountErrorMessage,
    apply_cart_item_errors,
    classify_discount_validation,
)

logger = logging.getLogger(__name__)

ResultListener = Callable[[PromotionalCartResult], None]


def build_gift_summary(promotions: Sequence[AppliedPromotion]) -> GiftSummary:
    """Totals of promotion gifts, overall and per promotion"""
    summary = GiftSummary()
    for promotion in promotions:
        if not promotion.free_gifts:
            continue
        group = PromotionGiftGroup(promotion_name=promotion.promotion_name, gifts=list(promotion.free_gifts))
        for gift in promotion.free_gifts:
            group.count += gift.quantity
            group.value += gift.value * gift.quantity
        summary.gifts_by_promotion[promotion.promotion_id] = group
        summary.total_gifts += group.count
        summary.total_gift_value += group.value
    return summary


class PromotionalEvaluator:
    """
    Re-prices the cart through the pricing authority after every mutation.

    Mutations are debounced. Each evaluation takes a sequence number when it
    starts and its outcome is applied only if no later evaluation has been
    started since, so responses land in initiation order whatever order
    they arrive in. A failed evaluation keeps the previous result.
    """

    def __init__(
        self,
        store: CartStore,
        client: PricingClient,
        debounce_seconds: float = Config.debounce_seconds(),
        scheduler: Optional[DebouncedScheduler] = None,
        auto_evaluate: bool = True
    ):
        self.store = store
        self.client = client
        self.scheduler = scheduler or DebouncedScheduler(debounce_seconds)
        self.auto_evaluate = auto_evaluate
        self.gift_selector = GiftSelector(store)
        self.result: Optional[PromotionalCartResult] = None
        self.error: Optional[PricingAuthorityError] = None
        self._sequence = 0
        self._in_flight = 0
        self._cart_version = 0
        self._evaluated_version = -1
        self._listeners: List[ResultListener] = []
        store.subscribe(self._on_cart_changed)

    # Triggers

    def _on_cart_changed(self) -> None:
        self._cart_version += 1
        if not self.auto_evaluate:
            return
        try:
            self.scheduler.schedule(self.evaluate)
        except RuntimeError:
            # No running event loop; refresh() picks the change up
            logger.debug("Cart changed outside an event loop, evaluation deferred")

    def add_result_listener(self, listener: ResultListener) -> None:
        self._listeners.append(listener)

    @property
    def sequence(self) -> int:
        """Number of the most recently started evaluation"""
        return self._sequence

    @property
    def is_evaluating(self) -> bool:
        return self._in_flight > 0 or self.scheduler.pending

    @property
    def is_stale(self) -> bool:
        """True until a result for the current cart contents has been applied"""
        return self._evaluated_version != self._cart_version

    # Evaluation

    async def evaluate(self) -> Optional[PromotionalCartResult]:
        """Evaluate the current cart now. Returns whichever result is current afterwards."""
        self._sequence += 1
        sequence = self._sequence
        cart_version = self._cart_version
        items = self.store.to_request_items()
        discount_code = self.store.discount_code

        if not items:
            return self._apply(sequence, cart_version, PromotionalCartResult())

        self._in_flight += 1
        try:
            result = await self.client.get_promotional_cart_result(items, discount_code)
        except PricingAuthorityError as e:
            if sequence != self._sequence:
                logger.debug(f"Ignoring failure of superseded evaluation #{sequence}")
            else:
                self.error = e
                logger.warning(f"Promotional evaluation #{sequence} failed, keeping previous pricing: {e}")
            return self.result
        finally:
            self._in_flight -= 1

        return self._apply(sequence, cart_version, result)

    def _apply(
        self,
        sequence: int,
        cart_version: int,
        result: PromotionalCartResult
    ) -> Optional[PromotionalCartResult]:
        if sequence != self._sequence:
            logger.debug(f"Discarding stale evaluation #{sequence} (latest #{self._sequence})")
            return self.result

        self.result = result
        self.error = None
        self._evaluated_version = cart_version

        discount = result.pricing.discount
        if discount is not None and discount.code == self.store.discount_code:
            self.store.refresh_discount_amount(discount.amount)

        self.gift_selector.sync(result.selectable_gifts)
        for listener in list(self._listeners):
            listener(result)
        return result

    async def refresh(self) -> Optional[PromotionalCartResult]:
        """Drop any pending debounce and evaluate immediately"""
        self.scheduler.cancel()
        return await self.evaluate()

    def _product_items(self) -> List[CartItemInput]:
        """Request items without the chosen promotional gift lines"""
        return [item for item in self.store.to_request_items() if not item.is_promotional_gift]

    # Discount codes

    async def apply_discount_code(self, code: str) -> Optional[DiscountErrorMessage]:
        """
        Validate a code with the pricing authority and store it if accepted.

        Returns None on success, or the classified reason it was rejected.
        Network failures raise PricingAuthorityError.
        """
        code = (code or "").strip()
        if not code:
            raise ValidationError("Discount code is required")

        validation = await self.client.validate_discount_code(
            code,
            self.store.get_subtotal(),
            self._product_items()
        )
        problem = classify_discount_validation(validation)
        if problem is not None:
            logger.info(f"Discount code rejected: {problem.category}")
            return problem

        self.store.apply_discount_code(validation.code or code, validation.discount_amount or 0)
        return None

    def remove_discount_code(self) -> None:
        self.store.remove_discount_code()

    # Eligibility and reconciliation

    async def refresh_eligible_gifts(self) -> List[EligibleGift]:
        gifts = await self.client.get_eligible_gifts(self._product_items(), self.store.get_subtotal())
        self.store.set_eligible_gifts(gifts)
        return gifts

    async def reconcile_cart(self) -> List[CartItemIssue]:
        """Check stock and availability, then remove or clamp the affected lines"""
        items = self._product_items()
        if not items:
            return []

        validated = await self.client.validate_cart(items)
        issues = apply_cart_item_errors(self.store, validated.errors)
        if issues:
            logger.info(f"Cart reconciliation adjusted {len(issues)} lines")
        return issues

    # View state

    def summary(self) -> CartSummary:
        """Render-ready cart; authority figures when available, local approximation otherwise"""
        local_subtotal = self.store.get_subtotal()
        result = self.result

        if result is not None:
            pricing = result.pricing
            subtotal = pricing.subtotal
            discount = pricing.discount_amount
            shipping = pricing.shipping_cost
            tax = pricing.tax_amount
            if pricing.total_amount is not None:
                total = pricing.total_amount
            else:
                total = max(subtotal - discount, 0) + shipping + tax
            applied = list(result.applied_promotions)
            free_gifts = list(result.free_gifts or pricing.free_gifts)
        else:
            subtotal = local_subtotal
            discount = min(self.store.discount_amount, local_subtotal)
            shipping = tax = 0
            total = subtotal - discount
            applied = []
            free_gifts = []

        return CartSummary(
            items=list(self.store.items),
            total_items=self.store.get_total_items(),
            local_subtotal=local_subtotal,
            subtotal=subtotal,
            discount_code=self.store.discount_code,
            discount_amount=discount,
            shipping_cost=shipping,
            tax_amount=tax,
            total=total,
            applied_promotions=applied,
            free_gifts=free_gifts,
            gift_summary=build_gift_summary(applied),
            gift_selections=self.gift_selector.to_views(),
            has_authority_result=result is not None,
            is_evaluating=self.is_evaluating,
            is_stale=self.is_stale,
            error=self.error.message if self.error else None
        )

    def close(self) -> None:
        self.scheduler.cancel()
        self.store.unsubscribe(self._on_cart_changed)
