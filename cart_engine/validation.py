"""
Classification of pricing authority errors into user-facing categories,
and the reconciliation policy for cart item errors.
"""
import logging
from enum import Enum
from typing import TYPE_CHECKING, Dict, List, Optional, Sequence

from cart_engine.models import CamelModel, CartValidationError, DiscountValidation

if TYPE_CHECKING:
    from cart_engine.cart_store import CartStore

logger = logging.getLogger(__name__)


class CartItemErrorType(str, Enum):
    PRODUCT_NOT_FOUND = "product_not_found"
    PRODUCT_INACTIVE = "product_inactive"
    OUT_OF_STOCK = "out_of_stock"
    INSUFFICIENT_STOCK = "insufficient_stock"


class ReconciliationAction(str, Enum):
    REMOVE = "remove"
    CLAMP = "clamp"
    IGNORE = "ignore"


class DiscountErrorCode(str, Enum):
    INVALID_CODE = "INVALID_CODE"
    EXPIRED = "EXPIRED"
    USAGE_LIMIT_REACHED = "USAGE_LIMIT_REACHED"
    MIN_PURCHASE_NOT_MET = "MIN_PURCHASE_NOT_MET"
    NOT_APPLICABLE = "NOT_APPLICABLE"
    NOT_STARTED = "NOT_STARTED"


UNABLE_TO_APPLY = "UNABLE_TO_APPLY"


class CartItemIssue(CamelModel):
    """A classified cart item error and what reconciliation did about it"""
    product_id: str
    variant_id: Optional[str] = None
    type: str
    action: ReconciliationAction
    title: str
    message: str
    available_quantity: Optional[int] = None


class DiscountErrorMessage(CamelModel):
    category: str
    title: str
    message: str
    detail: Optional[str] = None


_CART_ITEM_POLICY = {
    CartItemErrorType.OUT_OF_STOCK: (ReconciliationAction.REMOVE, "Items Out of Stock"),
    CartItemErrorType.PRODUCT_NOT_FOUND: (ReconciliationAction.REMOVE, "Products Unavailable"),
    CartItemErrorType.PRODUCT_INACTIVE: (ReconciliationAction.REMOVE, "Products Unavailable"),
    CartItemErrorType.INSUFFICIENT_STOCK: (ReconciliationAction.CLAMP, "Limited Stock Available"),
}

_DISCOUNT_MESSAGES = {
    DiscountErrorCode.INVALID_CODE: (
        "Invalid Discount Code",
        "This discount code is not valid. Please check the code and try again.",
    ),
    DiscountErrorCode.EXPIRED: (
        "Code Expired",
        "This discount code has expired and can no longer be used.",
    ),
    DiscountErrorCode.USAGE_LIMIT_REACHED: (
        "Usage Limit Reached",
        "This discount code has reached its maximum usage limit and is no longer available.",
    ),
    DiscountErrorCode.MIN_PURCHASE_NOT_MET: (
        "Minimum Purchase Required",
        "Your order does not meet the minimum purchase requirement for this discount code. "
        "Add more items to your cart to qualify.",
    ),
    DiscountErrorCode.NOT_APPLICABLE: (
        "Not Applicable",
        "This discount code is not applicable to the items in your cart. "
        "It may be restricted to specific products.",
    ),
    DiscountErrorCode.NOT_STARTED: (
        "Not Yet Active",
        "This discount code is not yet active. Please check the start date and try again later.",
    ),
}

_UNABLE_TO_APPLY_MESSAGE = (
    "Unable to Apply",
    "Unable to apply this discount code. Please contact support if the problem persists.",
)


def classify_discount_error(code: Optional[str], detail: Optional[str] = None) -> DiscountErrorMessage:
    """Map a discount error code to its message category. Unknown codes get the generic one."""
    try:
        category = DiscountErrorCode(code)
    except ValueError:
        title, message = _UNABLE_TO_APPLY_MESSAGE
        return DiscountErrorMessage(category=UNABLE_TO_APPLY, title=title, message=message, detail=detail)

    title, message = _DISCOUNT_MESSAGES[category]
    return DiscountErrorMessage(category=category.value, title=title, message=message, detail=detail)


def classify_discount_validation(validation: DiscountValidation) -> Optional[DiscountErrorMessage]:
    """None for a valid code, otherwise its classified error"""
    if validation.is_valid:
        return None
    return classify_discount_error(validation.error_code, detail=validation.error)


def classify_cart_item_error(error: CartValidationError) -> CartItemIssue:
    try:
        error_type = CartItemErrorType(error.type)
    except ValueError:
        logger.warning(f"Unrecognised cart item error type: {error.type}")
        return CartItemIssue(
            product_id=error.product_id,
            variant_id=error.variant_id,
            type=error.type,
            action=ReconciliationAction.IGNORE,
            title="Item Unavailable",
            message=error.message,
            available_quantity=error.available_quantity
        )

    action, title = _CART_ITEM_POLICY[error_type]
    return CartItemIssue(
        product_id=error.product_id,
        variant_id=error.variant_id,
        type=error_type.value,
        action=action,
        title=title,
        message=error.message,
        available_quantity=error.available_quantity
    )


def apply_cart_item_errors(store: "CartStore", errors: Sequence[CartValidationError]) -> List[CartItemIssue]:
    """
    Reconcile the cart against the authority's item errors.

    Unavailable and out of stock lines are removed. Insufficient stock lines
    are clamped to the available quantity (never below 1) and kept.
    """
    issues = []
    for error in errors:
        issue = classify_cart_item_error(error)
        if issue.action == ReconciliationAction.REMOVE:
            store.remove_item(issue.product_id, issue.variant_id)
        elif issue.action == ReconciliationAction.CLAMP:
            line = store.get_item(issue.product_id, issue.variant_id)
            if line is not None and issue.available_quantity is not None \
                    and line.quantity > issue.available_quantity:
                store.update_quantity(issue.product_id, issue.available_quantity, issue.variant_id)
        issues.append(issue)
    return issues


def group_cart_item_issues(issues: Sequence[CartItemIssue]) -> Dict[str, List[CartItemIssue]]:
    """Group issues the way the cart banners show them"""
    groups: Dict[str, List[CartItemIssue]] = {"out_of_stock": [], "unavailable": [], "limited_stock": [], "other": []}
    for issue in issues:
        if issue.type == CartItemErrorType.OUT_OF_STOCK.value:
            groups["out_of_stock"].append(issue)
        elif issue.type in (CartItemErrorType.PRODUCT_NOT_FOUND.value, CartItemErrorType.PRODUCT_INACTIVE.value):
            groups["unavailable"].append(issue)
        elif issue.type == CartItemErrorType.INSUFFICIENT_STOCK.value:
            groups["limited_stock"].append(issue)
        else:
            groups["other"].append(issue)
    return groups
