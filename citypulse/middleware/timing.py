import logging
import time

from fastapi import Request

logger = logging.getLogger(__name__)

SKIP_PREFIXES = ("/docs", "/openapi.json", "/health")


async def timing_middleware(request: Request, call_next):
    """Log each request with its duration and expose it as ``X-Process-Time``."""
    start_time = time.perf_counter()
    response = await call_next(request)
    duration = time.perf_counter() - start_time

    response.headers["X-Process-Time"] = f"{duration:.4f}"
    if not request.url.path.startswith(SKIP_PREFIXES):
        logger.info(
            f"{request.method} {request.url.path} -> {response.status_code} in {duration * 1000:.1f}ms",
            extra={
                "method": request.method,
                "path": request.url.path,
                "status_code": response.status_code,
                "duration_ms": round(duration * 1000, 2),
            },
        )
    return response
