import asyncio

import pytest

from cart_engine.evaluator import PromotionalEvaluator, build_gift_summary
from cart_engine.exceptions import PricingAuthorityError
from cart_engine.models import (
    AppliedDiscount,
    AppliedPromotion,
    CartPricing,
    CartValidationError,
    DiscountValidation,
    EligibleGift,
    FreeGift,
    PromotionalCartResult,
    ValidatedCart,
)

from conftest import gift_promotion, make_item, make_result


def make_evaluator(store, pricing, **kwargs):
    kwargs.setdefault("auto_evaluate", False)
    return PromotionalEvaluator(store, pricing, **kwargs)


class TestOrdering:
    @pytest.mark.asyncio
    async def test_older_response_arriving_late_is_discarded(self, store, pricing):
        store.add_item(make_item("A"))
        evaluator = make_evaluator(store, pricing)
        slow_gate, fast_gate = asyncio.Event(), asyncio.Event()
        pricing.queue(make_result(subtotal=1000), gate=slow_gate)
        pricing.queue(make_result(subtotal=2000), gate=fast_gate)

        older = asyncio.create_task(evaluator.evaluate())
        await asyncio.sleep(0)
        store.add_item(make_item("A"))
        newer = asyncio.create_task(evaluator.evaluate())
        await asyncio.sleep(0)

        fast_gate.set()
        await newer
        slow_gate.set()
        await older

        assert evaluator.result.pricing.subtotal == 2000
        assert not evaluator.is_stale

    @pytest.mark.asyncio
    async def test_older_response_arriving_first_is_discarded(self, store, pricing):
        store.add_item(make_item("A"))
        evaluator = make_evaluator(store, pricing)
        first_gate, second_gate = asyncio.Event(), asyncio.Event()
        pricing.queue(make_result(subtotal=1000), gate=first_gate)
        pricing.queue(make_result(subtotal=2000), gate=second_gate)

        older = asyncio.create_task(evaluator.evaluate())
        await asyncio.sleep(0)
        newer = asyncio.create_task(evaluator.evaluate())
        await asyncio.sleep(0)

        first_gate.set()
        await older
        assert evaluator.result is None

        second_gate.set()
        await newer
        assert evaluator.result.pricing.subtotal == 2000

    @pytest.mark.asyncio
    async def test_superseded_failure_does_not_set_error(self, store, pricing):
        store.add_item(make_item("A"))
        evaluator = make_evaluator(store, pricing)
        gate = asyncio.Event()
        pricing.queue(make_result(subtotal=1000), gate=gate)
        pricing.queue(make_result(subtotal=2000))

        older = asyncio.create_task(evaluator.evaluate())
        await asyncio.sleep(0)
        await evaluator.evaluate()
        pricing.evaluate_error = PricingAuthorityError("late failure")
        gate.set()
        await older

        assert evaluator.error is None
        assert evaluator.result.pricing.subtotal == 2000


class TestFailures:
    @pytest.mark.asyncio
    async def test_failure_keeps_previous_result(self, store, pricing):
        store.add_item(make_item("A"))
        evaluator = make_evaluator(store, pricing)
        pricing.queue(make_result(subtotal=1000))
        await evaluator.evaluate()

        pricing.evaluate_error = PricingAuthorityError("Network error", status_code=0)
        returned = await evaluator.evaluate()

        assert returned.pricing.subtotal == 1000
        assert evaluator.result.pricing.subtotal == 1000
        assert evaluator.error.message == "Network error"
        summary = evaluator.summary()
        assert summary.subtotal == 1000
        assert summary.error == "Network error"

    @pytest.mark.asyncio
    async def test_success_clears_error(self, store, pricing):
        store.add_item(make_item("A"))
        evaluator = make_evaluator(store, pricing)
        pricing.evaluate_error = PricingAuthorityError("down")
        await evaluator.evaluate()
        assert evaluator.error is not None

        pricing.evaluate_error = None
        await evaluator.evaluate()
        assert evaluator.error is None


class TestTriggers:
    @pytest.mark.asyncio
    async def test_mutations_are_debounced_into_one_evaluation(self, store, pricing):
        evaluator = PromotionalEvaluator(store, pricing, debounce_seconds=0.01)

        for _ in range(5):
            store.add_item(make_item("A"))
        assert evaluator.is_evaluating

        await asyncio.sleep(0.05)

        assert len(pricing.evaluate_calls) == 1
        items, _ = pricing.evaluate_calls[0]
        assert items[0].quantity == 5
        assert not evaluator.is_stale

    def test_mutation_without_loop_defers(self, store, pricing):
        evaluator = PromotionalEvaluator(store, pricing, debounce_seconds=0.01)
        store.add_item(make_item("A"))
        assert evaluator.is_stale
        assert pricing.evaluate_calls == []

    @pytest.mark.asyncio
    async def test_refresh_cancels_pending_debounce(self, store, pricing):
        evaluator = PromotionalEvaluator(store, pricing, debounce_seconds=0.05)
        store.add_item(make_item("A"))

        await evaluator.refresh()
        await asyncio.sleep(0.1)

        assert len(pricing.evaluate_calls) == 1

    @pytest.mark.asyncio
    async def test_discount_code_is_sent(self, store, pricing):
        store.add_item(make_item("A"))
        store.apply_discount_code("SAVE10", 500)
        evaluator = make_evaluator(store, pricing)

        await evaluator.evaluate()

        assert pricing.evaluate_calls[0][1] == "SAVE10"

    @pytest.mark.asyncio
    async def test_empty_cart_skips_authority(self, store, pricing):
        evaluator = make_evaluator(store, pricing)
        result = await evaluator.evaluate()
        assert result.pricing.subtotal == 0
        assert pricing.evaluate_calls == []

    @pytest.mark.asyncio
    async def test_close_unsubscribes(self, store, pricing):
        evaluator = PromotionalEvaluator(store, pricing, debounce_seconds=0.01)
        evaluator.close()
        store.add_item(make_item("A"))
        await asyncio.sleep(0.03)
        assert pricing.evaluate_calls == []


class TestSummary:
    def test_local_approximation_before_result(self, store, pricing):
        evaluator = make_evaluator(store, pricing)
        store.add_item(make_item("A", price=1000, quantity=3))
        store.apply_discount_code("SAVE10", 500)

        summary = evaluator.summary()

        assert summary.has_authority_result is False
        assert summary.subtotal == 3000
        assert summary.discount_amount == 500
        assert summary.total == 2500
        assert summary.total_items == 3
        assert summary.is_stale

    @pytest.mark.asyncio
    async def test_authority_figures_supersede_local(self, store, pricing):
        store.add_item(make_item("A", price=1000, quantity=1))
        evaluator = make_evaluator(store, pricing)
        promotion = AppliedPromotion(
            promotion_id="P1",
            promotion_name="Gift with purchase",
            discount_amount=200,
            free_gifts=[FreeGift(product_id="G", quantity=2, name="Mini", value=300)]
        )
        pricing.queue(PromotionalCartResult(
            pricing=CartPricing(subtotal=900, discount_amount=200, shipping_cost=50, total_amount=750),
            applied_promotions=[promotion],
            free_gifts=promotion.free_gifts
        ))

        await evaluator.evaluate()
        summary = evaluator.summary()

        assert summary.local_subtotal == 1000
        assert summary.subtotal == 900
        assert summary.discount_amount == 200
        assert summary.total == 750
        assert summary.gift_summary.total_gifts == 2
        assert summary.gift_summary.total_gift_value == 600
        assert summary.gift_summary.gifts_by_promotion["P1"].count == 2

    @pytest.mark.asyncio
    async def test_authority_discount_refreshes_cached_amount(self, store, pricing):
        store.add_item(make_item("A"))
        store.apply_discount_code("SAVE10", 500)
        evaluator = make_evaluator(store, pricing)
        pricing.queue(PromotionalCartResult(pricing=CartPricing(
            subtotal=1000,
            discount_amount=100,
            discount=AppliedDiscount(code="SAVE10", type="percentage", value=10, amount=100)
        )))

        await evaluator.evaluate()

        assert store.discount_amount == 100

    def test_gift_summary_skips_promotions_without_gifts(self):
        summary = build_gift_summary([AppliedPromotion(promotion_id="P", promotion_name="10% off", discount_amount=100)])
        assert summary.total_gifts == 0
        assert summary.gifts_by_promotion == {}


class TestGiftSelectionFlow:
    @pytest.mark.asyncio
    async def test_result_builds_selection_and_finalize_feeds_next_round(self, store, pricing):
        store.add_item(make_item("A"))
        evaluator = make_evaluator(store, pricing)
        pricing.queue(make_result(subtotal=1000, selectable=[gift_promotion("P1", max_selections=1)]))
        pricing.queue(make_result(subtotal=1000, selectable=[gift_promotion("P1", max_selections=1)]))

        await evaluator.evaluate()
        evaluator.gift_selector.select("P1", "g2")
        evaluator.gift_selector.finalize()
        await evaluator.evaluate()

        submitted, _ = pricing.evaluate_calls[1]
        gift_lines = [item for item in submitted if item.is_promotional_gift]
        assert [(g.source_promotion_id, g.gift_option_id) for g in gift_lines] == [("P1", "g2")]
        assert evaluator.gift_selector.get("P1").selected_option_ids == ("g2",)
        assert evaluator.summary().gift_selections[0].state == "filled"

    @pytest.mark.asyncio
    async def test_promotion_dropped_by_authority_clears_submitted_choice(self, store, pricing):
        store.add_item(make_item("A"))
        evaluator = make_evaluator(store, pricing)
        pricing.queue(make_result(selectable=[gift_promotion("P1", max_selections=1)]))
        pricing.queue(make_result())

        await evaluator.evaluate()
        evaluator.gift_selector.select("P1", "g1")
        evaluator.gift_selector.finalize()
        await evaluator.evaluate()

        assert store.gift_selections == {}
        assert evaluator.gift_selector.get("P1") is None


class TestDiscountAndReconcile:
    @pytest.mark.asyncio
    async def test_valid_code_is_stored(self, store, pricing):
        store.add_item(make_item("A", price=5000))
        evaluator = make_evaluator(store, pricing)

        problem = await evaluator.apply_discount_code("save10")

        assert problem is None
        assert store.discount_code == "SAVE10"
        assert store.discount_amount == 500

    @pytest.mark.asyncio
    async def test_chosen_gifts_are_not_sent_for_discount_validation(self, store, pricing):
        store.add_item(make_item("A", price=5000))
        evaluator = make_evaluator(store, pricing)
        pricing.queue(make_result(selectable=[gift_promotion("P1", max_selections=1)]))
        await evaluator.evaluate()
        evaluator.gift_selector.select("P1", "g1")
        evaluator.gift_selector.finalize()

        await evaluator.apply_discount_code("SAVE10")

        _, subtotal, items = pricing.discount_calls[0]
        assert subtotal == 5000
        assert [(item.product_id, item.is_promotional_gift) for item in items] == [("A", None)]

    @pytest.mark.asyncio
    async def test_invalid_code_is_classified_and_not_stored(self, store, pricing):
        evaluator = make_evaluator(store, pricing)
        pricing.discount_validation = DiscountValidation(is_valid=False, error_code="MIN_PURCHASE_NOT_MET")

        problem = await evaluator.apply_discount_code("BIG")

        assert problem.category == "MIN_PURCHASE_NOT_MET"
        assert store.discount_code is None

    @pytest.mark.asyncio
    async def test_reconcile_clamps_insufficient_stock(self, store, pricing):
        store.add_item(make_item("A", quantity=5))
        store.add_item(make_item("B", quantity=1))
        evaluator = make_evaluator(store, pricing)
        pricing.validated_cart = ValidatedCart(is_valid=False, errors=[
            CartValidationError(product_id="A", type="insufficient_stock", message="Only 2 left", available_quantity=2),
            CartValidationError(product_id="B", type="out_of_stock", message="Sold out"),
        ])

        issues = await evaluator.reconcile_cart()

        assert [i.action.value for i in issues] == ["clamp", "remove"]
        assert [(i.product_id, i.quantity) for i in store.items] == [("A", 2)]

    @pytest.mark.asyncio
    async def test_refresh_eligible_gifts_caches_on_store(self, store, pricing):
        evaluator = make_evaluator(store, pricing)
        pricing.eligible = [EligibleGift(id="g1", name="Pouch", value=1500)]

        gifts = await evaluator.refresh_eligible_gifts()

        assert [g.id for g in gifts] == ["g1"]
        assert store.eligible_gifts[0].id == "g1"
