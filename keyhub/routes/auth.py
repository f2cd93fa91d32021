"""Admin authentication endpoints"""
from typing import Optional

from fastapi import APIRouter, Depends, Header

from keyhub.api.dependencies import client_info, get_services, login_rate_limit, require_admin
from keyhub.core.credentials import extract_bearer_token
from keyhub.models.domain import ClientInfo, Identity, TokenPair
from keyhub.models.schemas import IdentityResponse, KeySummary, LoginRequest, MessageResponse, SessionResponse
from keyhub.services.container import Services

router = APIRouter(prefix="/admin/auth", tags=["Authentication"])


def _session_response(pair: TokenPair) -> SessionResponse:
    return SessionResponse(
        token=pair.access_token,
        refresh_token=pair.refresh_token,
        expires_in=pair.expires_in,
        api_key=KeySummary(uid=pair.api_key.uid, name=pair.api_key.name, type=pair.api_key.type),
    )


@router.post(
    "/validate",
    response_model=SessionResponse,
    summary="Admin Login",
    dependencies=[Depends(login_rate_limit)],
)
async def login(
    credentials: LoginRequest,
    services: Services = Depends(get_services),
    client: ClientInfo = Depends(client_info),
):
    """
    Exchange an admin API key for a session.

    **Returns:**
    - `token`: admin access token, valid for 1 hour
    - `refreshToken`: single-use refresh token, valid for 7 days

    The key must be active, of type `admin`, and its subscription (if any)
    must not have expired. Limited to 5 attempts per 15 minutes per IP.
    """
    pair = await services.sessions.login(credentials.api_key, client)
    return _session_response(pair)


@router.get("/refresh", response_model=SessionResponse, summary="Refresh Session")
async def refresh(
    authorization: Optional[str] = Header(None),
    services: Services = Depends(get_services),
    client: ClientInfo = Depends(client_info),
):
    """
    Rotate a refresh token into a new token pair.

    Requires `Authorization: Bearer <refreshToken>`. The presented refresh
    token is revoked: calling this twice with the same token fails.
    """
    pair = await services.sessions.refresh(extract_bearer_token(authorization), client)
    return _session_response(pair)


@router.delete("/logout", response_model=MessageResponse, summary="Logout")
async def logout(
    authorization: Optional[str] = Header(None),
    services: Services = Depends(get_services),
    client: ClientInfo = Depends(client_info),
):
    """Revoke the presented access token. Always succeeds."""
    await services.sessions.logout(extract_bearer_token(authorization), client)
    return MessageResponse(message="Logged out successfully")


@router.get("/me", response_model=IdentityResponse, summary="Current Admin")
async def me(identity: Identity = Depends(require_admin)):
    """Identity and subscription state behind the presented access token"""
    return IdentityResponse(
        api_key=KeySummary(uid=identity.uid, name=identity.api_key.name, type=identity.api_key.type),
        subscription=identity.view,
    )
