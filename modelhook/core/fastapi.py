"""FastAPI helpers shared by the API routers."""

import uuid

import structlog
from fastapi import Request, status
from fastapi.responses import JSONResponse

from modelhook.core.errors import ModelHookError, RateLimitError

logger = structlog.get_logger("modelhook")


async def modelhook_error_handler(request: Request, exc: ModelHookError) -> JSONResponse:
    """Render a ModelHookError as a JSON body with its HTTP status."""
    if exc.status_code >= 500:
        logger.error(
            "Request failed",
            path=request.url.path,
            error_type=exc.error_type,
            error=exc.message,
        )
    headers = {}
    if isinstance(exc, RateLimitError):
        headers["Retry-After"] = str(exc.retry_after)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)


async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Last-resort handler that hides internals behind a request id."""
    request_id = str(uuid.uuid4())
    logger.error(
        "Unhandled exception",
        path=request.url.path,
        method=request.method,
        request_id=request_id,
        error=str(exc),
        exc_info=True,
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"error": "internal_error", "message": "Internal server error", "request_id": request_id},
        headers={"X-Request-ID": request_id},
    )
