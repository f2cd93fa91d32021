"""FastAPI dependencies: service access, client context, rate limits and auth"""
from typing import Optional

from fastapi import Depends, Header, Request, Response, Security
from fastapi.security import APIKeyHeader

from keyhub.core.cache.rate_limiter import RateLimitResult
from keyhub.core.config import settings
from keyhub.core.credentials import extract_bearer_token, get_client_ip
from keyhub.models.domain import ClientInfo, Identity
from keyhub.services.container import Services
from keyhub.utils.exceptions import AuthError, RateLimitExceeded
from keyhub.utils.logger import logger

api_key_header = APIKeyHeader(name=settings.API_KEY_HEADER, auto_error=False)


def get_services(request: Request) -> Services:
    """Service container installed on the application at startup"""
    return request.app.state.services


def client_info(request: Request) -> ClientInfo:
    fallback = request.client.host if request.client else None
    return ClientInfo(
        ip_address=get_client_ip(request.headers, fallback),
        user_agent=request.headers.get("user-agent"),
    )


def apply_rate_limit(
    services: Services,
    response: Response,
    identifier: str,
    requests: int,
    window: int,
    message: Optional[str] = None,
) -> RateLimitResult:
    """Count one hit for ``identifier`` and publish the X-RateLimit headers"""
    result = services.rate_limiter.hit(identifier, requests, window)
    if not result.allowed:
        logger.warning(f"Rate limit exceeded for {identifier.split(':', 1)[0]} caller")
        raise RateLimitExceeded(retry_after=result.retry_after, limit=result.limit, message=message)

    response.headers["X-RateLimit-Limit"] = str(result.limit)
    response.headers["X-RateLimit-Remaining"] = str(result.remaining)
    response.headers["X-RateLimit-Reset"] = str(int(result.reset_at))
    return result


async def login_rate_limit(
    response: Response,
    services: Services = Depends(get_services),
    client: ClientInfo = Depends(client_info),
) -> None:
    """Brute-force guard on the login endpoint, per client IP"""
    apply_rate_limit(
        services,
        response,
        f"login:{client.ip_address}",
        services.settings.RATE_LIMIT_LOGIN_REQUESTS,
        services.settings.RATE_LIMIT_LOGIN_WINDOW,
        message="Too many login attempts. Please try again later.",
    )


async def admin_rate_limit(
    response: Response,
    services: Services = Depends(get_services),
    client: ClientInfo = Depends(client_info),
    authorization: Optional[str] = Header(None),
) -> None:
    """Per-session limit on admin routes, falling back to the client IP"""
    token = extract_bearer_token(authorization)
    identifier = f"token:{token[-32:]}" if token else f"ip:{client.ip_address}"
    apply_rate_limit(
        services,
        response,
        identifier,
        services.settings.RATE_LIMIT_ADMIN_REQUESTS,
        services.settings.RATE_LIMIT_ADMIN_WINDOW,
    )


async def require_admin(
    request: Request,
    services: Services = Depends(get_services),
    authorization: Optional[str] = Header(None),
) -> Identity:
    """Gatekeeper check shared by every admin route"""
    try:
        identity = await services.gatekeeper.authorize(authorization)
    except AuthError as e:
        logger.warning(f"Admin authorization failed on {request.url.path}: {e.code}")
        raise
    request.state.identity = identity
    return identity


async def get_api_key_value(api_key: Optional[str] = Security(api_key_header)) -> Optional[str]:
    return api_key
