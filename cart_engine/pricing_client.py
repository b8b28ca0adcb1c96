"""
HTTP client for the remote pricing authority.

Stateless request/response calls; every failure is raised as
PricingAuthorityError so callers never see raw transport exceptions.
"""
import logging
from typing import Any, Callable, List, Optional, Sequence, TypeVar

import httpx
from pydantic import TypeAdapter, ValidationError as SchemaError

from cart_engine.config import Config
from cart_engine.exceptions import PricingAuthorityError
from cart_engine.models import (
    CartItemInput,
    DiscountValidation,
    EligibleGift,
    PromotionalCartResult,
    ValidatedCart,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

_eligible_gifts = TypeAdapter(List[EligibleGift])


class PricingClient:
    """Async client for discount validation, gift eligibility and promotional evaluation"""

    VALIDATE_DISCOUNT_PATH = "/cart/validate-discount"
    ELIGIBLE_GIFTS_PATH = "/cart/eligible-gifts"
    EVALUATE_PATH = "/cart/evaluate"
    VALIDATE_CART_PATH = "/cart/validate"

    def __init__(
        self,
        base_url: str = Config.PRICING_API_URL,
        timeout: float = Config.PRICING_API_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.http = httpx.AsyncClient(
            base_url=base_url,
            timeout=timeout,
            transport=transport,
            headers={"Content-Type": "application/json"}
        )

    async def __aenter__(self) -> "PricingClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self.http.aclose()

    async def _post(self, path: str, payload: dict) -> Any:
        """POST a JSON payload and return the unwrapped ``data`` section"""
        try:
            response = await self.http.post(path, json=payload)
        except httpx.HTTPError as e:
            logger.warning(f"Pricing authority unreachable: POST {path}: {type(e).__name__}: {e}")
            raise PricingAuthorityError(f"Network error: {e}") from e

        try:
            body = response.json()
        except ValueError:
            body = None

        if response.is_error:
            error = _error_section(body)
            message = error.get("message") or f"Pricing authority returned HTTP {response.status_code}"
            logger.warning(f"POST {path} failed with {response.status_code}: {message}")
            raise PricingAuthorityError(message, status_code=response.status_code, code=error.get("code"))

        if body is None:
            raise PricingAuthorityError(
                f"Pricing authority returned a non-JSON response for {path}",
                status_code=response.status_code
            )

        if isinstance(body, dict) and "success" in body:
            if not body["success"]:
                error = _error_section(body)
                raise PricingAuthorityError(
                    error.get("message") or f"Pricing authority rejected {path}",
                    status_code=response.status_code,
                    code=error.get("code")
                )
            return body.get("data")

        return body

    def _parse(self, path: str, data: Any, parser: Callable[[Any], T]) -> T:
        try:
            return parser(data)
        except SchemaError as e:
            logger.warning(f"Unexpected payload from {path}: {e.error_count()} validation errors")
            raise PricingAuthorityError(f"Malformed response from pricing authority for {path}") from e

    async def validate_discount_code(
        self,
        code: str,
        subtotal: int,
        items: Sequence[CartItemInput]
    ) -> DiscountValidation:
        """Check a discount code against the current cart"""
        payload = {"code": code, "subtotal": subtotal, "items": _items(items)}
        data = await self._post(self.VALIDATE_DISCOUNT_PATH, payload)
        return self._parse(self.VALIDATE_DISCOUNT_PATH, data, DiscountValidation.model_validate)

    async def get_eligible_gifts(self, items: Sequence[CartItemInput], subtotal: int) -> List[EligibleGift]:
        payload = {"items": _items(items), "subtotal": subtotal}
        data = await self._post(self.ELIGIBLE_GIFTS_PATH, payload)
        return self._parse(self.ELIGIBLE_GIFTS_PATH, data, _eligible_gifts.validate_python)

    async def get_promotional_cart_result(
        self,
        items: Sequence[CartItemInput],
        discount_code: Optional[str] = None
    ) -> PromotionalCartResult:
        """Full promotional evaluation: pricing, applied promotions and free gifts"""
        payload = {"items": _items(items)}
        if discount_code:
            payload["discountCode"] = discount_code
        data = await self._post(self.EVALUATE_PATH, payload)
        return self._parse(self.EVALUATE_PATH, data, PromotionalCartResult.model_validate)

    async def validate_cart(self, items: Sequence[CartItemInput]) -> ValidatedCart:
        """Stock and availability check for every line"""
        data = await self._post(self.VALIDATE_CART_PATH, {"items": _items(items)})
        return self._parse(self.VALIDATE_CART_PATH, data, ValidatedCart.model_validate)


def _items(items: Sequence[CartItemInput]) -> List[dict]:
    return [item.to_wire() for item in items]


def _error_section(body: Any) -> dict:
    """Pull ``{message, code}`` out of either ``{error: {...}}`` or a flat error body"""
    if not isinstance(body, dict):
        return {}
    error = body.get("error")
    if isinstance(error, dict):
        return error
    if isinstance(error, str):
        return {"message": error, "code": body.get("code")}
    return {"message": body.get("message"), "code": body.get("code")}
