"""
Middleware for FastAPI: request metrics and logging.
"""
import time
import logging
from typing import Callable
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from cart_engine.engine import hash_identifier

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

SESSION_HEADER = "X-Session-ID"


class MetricsMiddleware(BaseHTTPMiddleware):
    """Middleware for collecting metrics"""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        start_time = time.time()

        # Session identifiers are hashed before logging
        session_id = request.headers.get(SESSION_HEADER)
        hashed_session_id = hash_identifier(session_id) if session_id else None

        logger.info(
            f"Request: {request.method} {request.url.path}",
            extra={
                "method": request.method,
                "path": request.url.path,
                "hashed_session_id": hashed_session_id,
                "remote_addr": request.client.host if request.client else None
            }
        )

        try:
            response = await call_next(request)

            latency_ms = (time.time() - start_time) * 1000

            logger.info(
                f"Response: {request.method} {request.url.path} {response.status_code}",
                extra={
                    "method": request.method,
                    "path": request.url.path,
                    "status_code": response.status_code,
                    "latency_ms": round(latency_ms, 2),
                    "hashed_session_id": hashed_session_id
                }
            )

            response.headers["X-Response-Time-Ms"] = f"{latency_ms:.2f}"
            return response

        except Exception as e:
            logger.error(
                f"Error: {request.method} {request.url.path}",
                extra={
                    "method": request.method,
                    "path": request.url.path,
                    "error": str(e),
                    "error_type": type(e).__name__,
                    "hashed_session_id": hashed_session_id
                },
                exc_info=True
            )

            # Re-raise so route-level exception handlers still apply
            raise
