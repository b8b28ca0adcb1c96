"""
Free-gift selection: per promotion quota tracking and hand-off of the
finished choices back into the cart.
"""
import logging
from enum import Enum
from typing import TYPE_CHECKING, Dict, Iterable, List, Optional, Sequence, Tuple

from cart_engine.exceptions import IncompleteGiftSelectionError, ValidationError
from cart_engine.models import GiftOption, GiftSelectionView, SelectableGiftPromotion

if TYPE_CHECKING:
    from cart_engine.cart_store import CartStore

logger = logging.getLogger(__name__)


class GiftSelectionState(str, Enum):
    UNFILLED = "unfilled"
    PARTIALLY_FILLED = "partially_filled"
    FILLED = "filled"


class PromotionGiftSelection:
    """Selected gift options of one promotion, bounded by its selection quota"""

    def __init__(
        self,
        promotion_id: str,
        promotion_name: str,
        max_selections: int,
        options: Sequence[GiftOption],
        selected: Iterable[str] = ()
    ):
        self.promotion_id = promotion_id
        self.promotion_name = promotion_name
        self._options_by_id = {option.id: option for option in options}
        self.options: Tuple[GiftOption, ...] = tuple(self._options_by_id.values())
        # quota never exceeds the number of distinct options offered
        self.max_selections = min(max(0, max_selections), len(self.options))
        self._selected: List[str] = []
        for option_id in selected:
            self.select(option_id)

    @classmethod
    def from_promotion(
        cls,
        promotion: SelectableGiftPromotion,
        selected: Iterable[str] = ()
    ) -> "PromotionGiftSelection":
        return cls(
            promotion.promotion_id,
            promotion.promotion_name,
            promotion.max_selections,
            promotion.options,
            selected=selected
        )

    @property
    def selected_option_ids(self) -> Tuple[str, ...]:
        return tuple(self._selected)

    @property
    def selected_options(self) -> Tuple[GiftOption, ...]:
        return tuple(self._options_by_id[option_id] for option_id in self._selected)

    @property
    def selections_remaining(self) -> int:
        return self.max_selections - len(self._selected)

    @property
    def state(self) -> GiftSelectionState:
        if self.selections_remaining == 0:
            return GiftSelectionState.FILLED
        if self._selected:
            return GiftSelectionState.PARTIALLY_FILLED
        return GiftSelectionState.UNFILLED

    @property
    def is_filled(self) -> bool:
        return self.state == GiftSelectionState.FILLED

    def is_selected(self, option_id: str) -> bool:
        return option_id in self._selected

    def is_option_disabled(self, option_id: str) -> bool:
        """An unselected option cannot be picked once the quota is used up"""
        return not self.is_selected(option_id) and self.selections_remaining == 0

    def select(self, option_id: str) -> bool:
        """
        Select an option. Refused (returns False) when the quota is used up,
        the option is already selected or it is not offered. A refusal never
        replaces an existing selection.
        """
        if option_id not in self._options_by_id:
            return False
        if self.is_selected(option_id) or self.selections_remaining == 0:
            return False
        self._selected.append(option_id)
        return True

    def deselect(self, option_id: str) -> bool:
        if not self.is_selected(option_id):
            return False
        self._selected.remove(option_id)
        return True

    def toggle(self, option_id: str) -> bool:
        if self.is_selected(option_id):
            return self.deselect(option_id)
        return self.select(option_id)

    def to_view(self) -> GiftSelectionView:
        return GiftSelectionView(
            promotion_id=self.promotion_id,
            promotion_name=self.promotion_name,
            state=self.state.value,
            max_selections=self.max_selections,
            selections_remaining=self.selections_remaining,
            selected_option_ids=list(self._selected),
            disabled_option_ids=[o.id for o in self.options if self.is_option_disabled(o.id)],
            options=list(self.options)
        )


class GiftSelector:
    """Selection state for every promotion in the latest promotional result"""

    def __init__(self, store: "CartStore"):
        self.store = store
        self._selections: Dict[str, PromotionGiftSelection] = {}

    def sync(self, promotions: Sequence[SelectableGiftPromotion]) -> None:
        """
        Rebuild from a fresh promotional result.

        Option sets are replaced. Earlier choices, in progress or already
        submitted, are carried over while the option is still offered and
        the new quota allows.
        """
        submitted = self.store.gift_selections
        rebuilt = {}
        for promotion in promotions:
            previous = self._selections.get(promotion.promotion_id)
            if previous is not None:
                carried = previous.selected_option_ids
            else:
                carried = tuple(option.id for option in submitted.get(promotion.promotion_id, ()))
            rebuilt[promotion.promotion_id] = PromotionGiftSelection.from_promotion(promotion, selected=carried)

        self._selections = rebuilt
        self.store.retain_gift_selections(rebuilt)

    def get(self, promotion_id: str) -> Optional[PromotionGiftSelection]:
        return self._selections.get(promotion_id)

    def _require(self, promotion_id: str) -> PromotionGiftSelection:
        selection = self._selections.get(promotion_id)
        if selection is None:
            raise ValidationError(f"No gift selection offered for promotion {promotion_id}")
        return selection

    @property
    def promotions(self) -> Tuple[PromotionGiftSelection, ...]:
        return tuple(self._selections.values())

    def select(self, promotion_id: str, option_id: str) -> bool:
        return self._require(promotion_id).select(option_id)

    def deselect(self, promotion_id: str, option_id: str) -> bool:
        return self._require(promotion_id).deselect(option_id)

    @property
    def pending_promotions(self) -> Dict[str, int]:
        """Promotion id -> selections still to make"""
        return {
            promotion_id: selection.selections_remaining
            for promotion_id, selection in self._selections.items()
            if not selection.is_filled
        }

    @property
    def is_complete(self) -> bool:
        return not self.pending_promotions

    def finalize(self) -> Dict[str, Tuple[str, ...]]:
        """
        Write every promotion's choices into the cart for the next evaluation.

        Nothing is written unless every quota is filled.
        """
        pending = self.pending_promotions
        if pending:
            raise IncompleteGiftSelectionError(pending)

        current = self.store.gift_selections
        changed = 0
        for promotion_id, selection in self._selections.items():
            if current.get(promotion_id, ()) != selection.selected_options:
                self.store.set_gift_selections(promotion_id, selection.selected_options)
                changed += 1

        logger.info(f"Finalized gift selections for {len(self._selections)} promotions ({changed} changed)")
        return {
            promotion_id: selection.selected_option_ids
            for promotion_id, selection in self._selections.items()
        }

    def to_views(self) -> List[GiftSelectionView]:
        return [selection.to_view() for selection in self._selections.values()]
