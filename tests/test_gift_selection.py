import pytest

from cart_engine.exceptions import IncompleteGiftSelectionError, ValidationError
from cart_engine.gift_selection import GiftSelectionState, GiftSelector, PromotionGiftSelection

from conftest import gift_promotion


@pytest.fixture
def selection():
    return PromotionGiftSelection.from_promotion(gift_promotion("P1", max_selections=2))


class TestPromotionGiftSelection:
    def test_quota_scenario(self, selection):
        assert selection.state == GiftSelectionState.UNFILLED

        assert selection.select("g1") is True
        assert selection.state == GiftSelectionState.PARTIALLY_FILLED
        assert selection.select("g2") is True
        assert selection.state == GiftSelectionState.FILLED
        assert selection.selections_remaining == 0

        assert selection.select("g3") is False
        assert selection.selected_option_ids == ("g1", "g2")
        assert selection.is_option_disabled("g3")
        assert not selection.is_option_disabled("g1")

        assert selection.deselect("g1") is True
        assert selection.select("g3") is True
        assert selection.selected_option_ids == ("g2", "g3")

    def test_deselect_frees_exactly_one(self, selection):
        selection.select("g1")
        selection.select("g2")

        before = selection.selections_remaining
        selection.deselect("g2")

        assert selection.selections_remaining == before + 1
        assert selection.selected_option_ids == ("g1",)

    def test_deselect_unselected_is_refused(self, selection):
        assert selection.deselect("g1") is False
        assert selection.selections_remaining == 2

    def test_select_twice_is_refused(self, selection):
        selection.select("g1")
        assert selection.select("g1") is False
        assert selection.selections_remaining == 1

    def test_unknown_option_is_refused(self, selection):
        assert selection.select("nope") is False
        assert selection.state == GiftSelectionState.UNFILLED

    def test_toggle(self, selection):
        selection.toggle("g1")
        assert selection.is_selected("g1")
        selection.toggle("g1")
        assert not selection.is_selected("g1")

    def test_zero_quota_is_filled(self):
        selection = PromotionGiftSelection.from_promotion(gift_promotion(max_selections=0))
        assert selection.state == GiftSelectionState.FILLED
        assert selection.select("g1") is False

    def test_quota_capped_by_option_count(self):
        selection = PromotionGiftSelection.from_promotion(gift_promotion(max_selections=5, option_ids=("g1", "g2")))
        assert selection.max_selections == 2

    def test_repeated_option_ids_count_once(self):
        selection = PromotionGiftSelection.from_promotion(gift_promotion(max_selections=2, option_ids=("g1", "g1")))

        assert selection.max_selections == 1
        assert [option.id for option in selection.options] == ["g1"]
        assert selection.select("g1") is True
        assert selection.state == GiftSelectionState.FILLED

    def test_view(self, selection):
        selection.select("g1")
        selection.select("g3")

        view = selection.to_view()

        assert view.state == "filled"
        assert view.selected_option_ids == ["g1", "g3"]
        assert view.disabled_option_ids == ["g2"]
        assert view.to_wire()["selectionsRemaining"] == 0


class TestGiftSelector:
    def test_finalize_requires_every_quota_filled(self, store):
        selector = GiftSelector(store)
        selector.sync([gift_promotion("P1", max_selections=1), gift_promotion("P2", max_selections=2)])
        selector.select("P1", "g1")
        selector.select("P2", "g1")

        with pytest.raises(IncompleteGiftSelectionError) as info:
            selector.finalize()

        assert info.value.pending == {"P2": 1}
        assert store.gift_selections == {}

    def test_finalize_writes_choices_to_store(self, store):
        selector = GiftSelector(store)
        selector.sync([gift_promotion("P1", max_selections=1), gift_promotion("P2", max_selections=2)])
        selector.select("P1", "g3")
        selector.select("P2", "g1")
        selector.select("P2", "g2")

        submitted = selector.finalize()

        assert submitted == {"P1": ("g3",), "P2": ("g1", "g2")}
        assert [o.id for o in store.gift_selections["P2"]] == ["g1", "g2"]
        assert selector.is_complete

    def test_sync_carries_over_choices_still_offered(self, store):
        selector = GiftSelector(store)
        selector.sync([gift_promotion("P1", max_selections=2)])
        selector.select("P1", "g1")
        selector.select("P1", "g3")

        selector.sync([gift_promotion("P1", max_selections=2, option_ids=("g1", "g2"))])

        assert selector.get("P1").selected_option_ids == ("g1",)

    def test_sync_truncates_to_smaller_quota(self, store):
        selector = GiftSelector(store)
        selector.sync([gift_promotion("P1", max_selections=2)])
        selector.select("P1", "g1")
        selector.select("P1", "g2")

        selector.sync([gift_promotion("P1", max_selections=1)])

        assert selector.get("P1").selected_option_ids == ("g1",)

    def test_sync_restores_submitted_choices(self, store):
        first = GiftSelector(store)
        first.sync([gift_promotion("P1", max_selections=1)])
        first.select("P1", "g2")
        first.finalize()

        second = GiftSelector(store)
        second.sync([gift_promotion("P1", max_selections=1)])

        assert second.get("P1").selected_option_ids == ("g2",)

    def test_unknown_promotion_raises(self, store):
        selector = GiftSelector(store)
        with pytest.raises(ValidationError):
            selector.select("missing", "g1")

    def test_no_selectable_promotions_is_complete(self, store):
        selector = GiftSelector(store)
        selector.sync([])
        assert selector.is_complete
        assert selector.finalize() == {}
