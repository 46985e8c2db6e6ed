"""Rate limiting middleware for the API."""

import structlog
from fastapi import Request, status
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from modelhook.core.errors import RateLimitError
from modelhook.ingress.auth import API_KEY_HEADER, client_ip
from modelhook.ingress.ratelimit import SlidingWindowRateLimiter, rate_limit_key

logger = structlog.get_logger("modelhook")


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Throttles requests under ``path_prefix`` and reports the budget in headers."""

    def __init__(self, app, limiter: SlidingWindowRateLimiter, path_prefix: str = "/api", enabled: bool = True):
        super().__init__(app)
        self.limiter = limiter
        self.path_prefix = path_prefix
        self.enabled = enabled

    async def dispatch(self, request: Request, call_next):
        if not self.enabled or not request.url.path.startswith(self.path_prefix):
            return await call_next(request)

        ip = client_ip(request)
        decision = self.limiter.hit(rate_limit_key(ip, request.headers.get(API_KEY_HEADER)))

        if not decision.allowed:
            logger.warning(
                "Rate limit exceeded",
                ip=ip,
                path=request.url.path,
                retry_after=decision.retry_after,
            )
            headers = decision.headers()
            headers["Retry-After"] = str(decision.retry_after)
            return JSONResponse(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                content=RateLimitError("Too many requests", decision.retry_after).to_dict(),
                headers=headers,
            )

        response = await call_next(request)
        response.headers.update(decision.headers())
        return response
