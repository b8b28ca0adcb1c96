"""
FastAPI application exposing the cart engine per cart session.
"""
import time
import logging
from contextlib import asynccontextmanager
from typing import Optional
from fastapi import Depends, FastAPI, HTTPException, Header, Query
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware

from cart_engine.config import Config
from cart_engine.engine import CartEngine, EngineRegistry
from cart_engine.exceptions import (
    IncompleteGiftSelectionError,
    PricingAuthorityError,
    StorageError,
    ValidationError
)
from cart_engine.middleware import MetricsMiddleware, SESSION_HEADER
from cart_engine.models import (
    CartItemRequest,
    CartLineItem,
    CartSummary,
    DiscountCodeRequest,
    UpdateQuantityRequest
)
from cart_engine.pricing_client import PricingClient
from cart_engine.redis_client import get_redis_client
from cart_engine.validation import group_cart_item_issues

logger = logging.getLogger(__name__)

# Initialize services
pricing_client = PricingClient()
registry = EngineRegistry(pricing_client)


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    registry.close()
    await pricing_client.aclose()


app = FastAPI(
    title="Storefront Cart API",
    description="Cart state, promotional evaluation and free gift selection",
    version="1.0.0",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_middleware(MetricsMiddleware)


def get_registry() -> EngineRegistry:
    return registry


async def get_engine(
    session_id: str = Header(..., alias=SESSION_HEADER, description="Cart session identifier"),
    engines: EngineRegistry = Depends(get_registry)
) -> CartEngine:
    if not session_id or not session_id.strip():
        raise HTTPException(status_code=400, detail="Session ID is required")
    engine = engines.get(session_id.strip())
    # another worker may have written the cart since this one last saw it
    engine.store.reload()
    return engine


def _elapsed_ms(start_time: float) -> float:
    return round((time.time() - start_time) * 1000, 2)


@app.get("/health")
async def health_check():
    """
    Health check endpoint.
    Always returns HTTP 200 if the application is running; reports Redis
    connectivity when Redis backs cart storage.
    """
    storage_status = "memory"
    redis_latency_ms = None

    if Config.STORAGE_BACKEND == "redis":
        try:
            ping_start = time.time()
            storage_status = "healthy" if get_redis_client().ping() else "unhealthy"
            redis_latency_ms = _elapsed_ms(ping_start)
        except StorageError as e:
            logger.warning(f"Health check could not reach Redis: {e}")
            storage_status = "unhealthy"

    return {
        "status": "healthy",
        "service": "cart-api",
        "storage": {"status": storage_status, "latencyMs": redis_latency_ms},
        "timestamp": time.time()
    }


# Cart

@app.get("/cart", response_model=CartSummary)
async def get_cart(engine: CartEngine = Depends(get_engine)):
    """Current cart view; authority pricing when available, local figures otherwise"""
    return engine.evaluator.summary()


@app.post("/cart/evaluate", response_model=CartSummary)
async def evaluate_cart(engine: CartEngine = Depends(get_engine)):
    """Re-price the cart immediately instead of waiting for the debounce"""
    await engine.evaluator.refresh()
    return engine.evaluator.summary()


@app.post("/cart/items")
async def add_cart_item(request: CartItemRequest, engine: CartEngine = Depends(get_engine)):
    start_time = time.time()
    item = engine.store.add_item(CartLineItem(**request.model_dump()))
    return {
        "success": True,
        "message": "Item added to cart",
        "item": item.to_wire(),
        "totalItems": engine.store.get_total_items(),
        "latencyMs": _elapsed_ms(start_time)
    }


@app.patch("/cart/items/{product_id}")
async def update_cart_item(
    product_id: str,
    request: UpdateQuantityRequest,
    engine: CartEngine = Depends(get_engine)
):
    item = engine.store.update_quantity(product_id, request.quantity, request.variant_id)
    if item is None:
        raise HTTPException(status_code=404, detail="Product not found in cart")
    return {"success": True, "message": "Quantity updated", "item": item.to_wire()}


@app.delete("/cart/items/{product_id}")
async def remove_cart_item(
    product_id: str,
    variant_id: Optional[str] = Query(None, alias="variantId"),
    engine: CartEngine = Depends(get_engine)
):
    if not engine.store.remove_item(product_id, variant_id):
        raise HTTPException(status_code=404, detail="Product not found in cart")
    return {"success": True, "message": "Item removed from cart", "productId": product_id}


@app.delete("/cart")
async def clear_cart(engine: CartEngine = Depends(get_engine)):
    engine.store.clear_cart()
    return {"success": True, "message": "Cart cleared"}


@app.post("/cart/reconcile")
async def reconcile_cart(engine: CartEngine = Depends(get_engine)):
    """Remove unavailable lines and clamp lines with limited stock"""
    issues = await engine.evaluator.reconcile_cart()
    groups = group_cart_item_issues(issues)
    return {
        "success": True,
        "issues": [issue.to_wire() for issue in issues],
        "groups": {name: [issue.to_wire() for issue in group] for name, group in groups.items()},
        "cart": engine.evaluator.summary().to_wire()
    }


# Discount codes

@app.post("/cart/discount")
async def apply_discount(request: DiscountCodeRequest, engine: CartEngine = Depends(get_engine)):
    problem = await engine.evaluator.apply_discount_code(request.code)
    if problem is not None:
        return JSONResponse(status_code=422, content={"success": False, "error": problem.to_wire()})
    return {
        "success": True,
        "discountCode": engine.store.discount_code,
        "discountAmount": engine.store.discount_amount
    }


@app.delete("/cart/discount")
async def remove_discount(engine: CartEngine = Depends(get_engine)):
    engine.evaluator.remove_discount_code()
    return {"success": True, "message": "Discount code removed"}


# Free gifts

@app.get("/cart/eligible-gifts")
async def eligible_gifts(engine: CartEngine = Depends(get_engine)):
    gifts = await engine.evaluator.refresh_eligible_gifts()
    return {"gifts": [gift.to_wire() for gift in gifts]}


@app.post("/cart/gifts/{promotion_id}/options/{option_id}")
async def select_gift(promotion_id: str, option_id: str, engine: CartEngine = Depends(get_engine)):
    selected = engine.gifts.select(promotion_id, option_id)
    return {"success": selected, "selection": engine.gifts.get(promotion_id).to_view().to_wire()}


@app.delete("/cart/gifts/{promotion_id}/options/{option_id}")
async def deselect_gift(promotion_id: str, option_id: str, engine: CartEngine = Depends(get_engine)):
    deselected = engine.gifts.deselect(promotion_id, option_id)
    return {"success": deselected, "selection": engine.gifts.get(promotion_id).to_view().to_wire()}


@app.post("/cart/gifts/finalize")
async def finalize_gifts(engine: CartEngine = Depends(get_engine)):
    submitted = engine.gifts.finalize()
    return {"success": True, "selections": {pid: list(ids) for pid, ids in submitted.items()}}


# Login backup

@app.post("/cart/backup")
async def backup_cart(engine: CartEngine = Depends(get_engine)):
    return {"success": engine.save_backup(), "items": len(engine.store.items)}


@app.post("/cart/restore")
async def restore_cart(engine: CartEngine = Depends(get_engine)):
    merged = engine.restore_backup()
    return {
        "success": True,
        "restored": merged is not None,
        "items": [item.to_wire() for item in engine.store.items]
    }


# Error handlers
@app.exception_handler(ValidationError)
async def validation_error_handler(request, exc):
    return JSONResponse(
        status_code=400,
        content={"error": "Validation error", "message": str(exc)}
    )


@app.exception_handler(IncompleteGiftSelectionError)
async def incomplete_selection_handler(request, exc):
    return JSONResponse(
        status_code=409,
        content={"error": "Gift selection incomplete", "message": str(exc), "pending": exc.pending}
    )


@app.exception_handler(PricingAuthorityError)
async def pricing_error_handler(request, exc):
    return JSONResponse(
        status_code=503,
        content={"error": "Pricing service unavailable", "message": exc.message, "code": exc.code}
    )


@app.exception_handler(StorageError)
async def storage_error_handler(request, exc):
    return JSONResponse(
        status_code=503,
        content={"error": "Service unavailable", "message": "Cart storage failed"}
    )


# Generic exception handler for unhandled errors
@app.exception_handler(Exception)
async def generic_exception_handler(request, exc):
    logger.error(
        f"Unhandled exception: {type(exc).__name__}: {exc}",
        exc_info=True
    )
    return JSONResponse(
        status_code=500,
        content={
            "error": "Internal server error",
            "message": str(exc),
            "type": type(exc).__name__
        }
    )


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=Config.APP_PORT)
