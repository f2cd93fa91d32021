"""Key-holder verification endpoint"""
from typing import Optional

from fastapi import APIRouter, Depends, Request, Response

from keyhub.api.dependencies import apply_rate_limit, client_info, get_api_key_value, get_services
from keyhub.models.domain import ClientInfo
from keyhub.models.schemas import IdentityResponse, KeySummary
from keyhub.services.container import Services

router = APIRouter(prefix="/v1", tags=["Verification"])


@router.post("/verify", response_model=IdentityResponse, summary="Verify API Key")
async def verify_api_key(
    request: Request,
    response: Response,
    api_key: Optional[str] = Depends(get_api_key_value),
    services: Services = Depends(get_services),
    client: ClientInfo = Depends(client_info),
):
    """
    Check the key in the `X-API-Key` header.

    Any active key type is accepted. The response carries the subscription
    state, also exposed as `X-Subscription-Status`, `X-Days-Remaining` and
    `X-Renewal-Date` headers.
    """
    identity = await services.gatekeeper.verify_key_holder(api_key)
    key = identity.api_key

    apply_rate_limit(
        services,
        response,
        f"apikey:{key.uid}",
        key.rate_limit or services.settings.RATE_LIMIT_API_KEY_REQUESTS,
        key.rate_limit_window or services.settings.RATE_LIMIT_API_KEY_WINDOW,
    )
    await services.audit.record_usage(key.uid, request.url.path, request.method, 200, client)

    view = identity.view
    response.headers["X-API-Key-Type"] = key.type.value
    response.headers["X-Subscription-Status"] = view.state.value
    if view.days_remaining is not None:
        response.headers["X-Days-Remaining"] = str(view.days_remaining)
    if view.renewal_date is not None:
        response.headers["X-Renewal-Date"] = view.renewal_date.isoformat()

    return IdentityResponse(
        api_key=KeySummary(uid=key.uid, name=key.name, type=key.type),
        subscription=view,
    )
