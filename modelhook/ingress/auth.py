"""API-key authentication and signed-request verification for inbound calls."""

import hmac

import structlog
from fastapi import Request

from modelhook.core.errors import AuthenticationError, ConfigurationError
from modelhook.ingress.signer import Signer

logger = structlog.get_logger("modelhook")

API_KEY_HEADER = "X-Api-Key"
SIGNATURE_HEADER = "X-Signature"
TIMESTAMP_HEADER = "X-Timestamp"


def client_ip(request: Request) -> str | None:
    return request.client.host if request.client else None


def verify_api_key(provided: str | None, secret: str | None) -> None:
    """Raise unless ``provided`` equals the configured secret (constant time)."""
    if not secret:
        raise ConfigurationError("API secret is not configured")
    if not provided:
        raise AuthenticationError("API key is required")
    if not hmac.compare_digest(provided.encode("utf-8"), secret.encode("utf-8")):
        raise AuthenticationError("Invalid API key")


async def require_api_key(request: Request) -> None:
    """FastAPI dependency guarding the management API."""
    secret = request.app.state.settings.api_secret
    provided = request.headers.get(API_KEY_HEADER)
    try:
        verify_api_key(provided, secret)
    except AuthenticationError as e:
        logger.warning(
            "Rejected API request",
            reason=e.message,
            ip=client_ip(request),
            user_agent=request.headers.get("user-agent"),
            path=request.url.path,
        )
        raise


async def require_signature(request: Request) -> bytes:
    """FastAPI dependency: verify ``X-Signature`` over the raw body and return the body."""
    settings = request.app.state.settings
    signer: Signer = request.app.state.signer
    body = await request.body()
    try:
        signer.verify_request(
            body,
            request.headers.get(SIGNATURE_HEADER),
            settings.api_secret,
            timestamp=request.headers.get(TIMESTAMP_HEADER),
        )
    except AuthenticationError as e:
        logger.warning(
            "Rejected signed request",
            reason=e.message,
            ip=client_ip(request),
            user_agent=request.headers.get("user-agent"),
            path=request.url.path,
        )
        raise
    return body
