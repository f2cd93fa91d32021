"""Admin endpoints for API keys and their subscriptions"""
from typing import Optional

from fastapi import APIRouter, Depends, Query

from keyhub.api.dependencies import admin_rate_limit, client_info, get_services, require_admin
from keyhub.models.domain import ClientInfo, KeyType
from keyhub.models.schemas import (
    ActivateRequest,
    KeyCreateRequest,
    KeyDetailResponse,
    KeyListResponse,
    KeyResponse,
    KeyUpdateRequest,
    MessageResponse,
    RenewRequest,
    SubscriptionResponse,
)
from keyhub.services.container import Services

router = APIRouter(
    prefix="/admin/keys",
    tags=["API Keys"],
    dependencies=[Depends(admin_rate_limit), Depends(require_admin)],
)


@router.get("", response_model=KeyListResponse, summary="List API Keys")
async def list_keys(
    status: Optional[str] = Query(None, pattern="^(active|inactive)$"),
    type: Optional[KeyType] = Query(None),
    has_subscription: Optional[bool] = Query(None, alias="hasSubscription"),
    search: Optional[str] = Query(None, max_length=255),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    services: Services = Depends(get_services),
):
    """
    List API keys, newest first.

    **Filters:** `status` (active/inactive), `type` (admin/normal),
    `hasSubscription`, `search` (name or uid substring).
    """
    return await services.admin.list_keys(status, type, has_subscription, search, page, limit)


@router.post("", response_model=KeyResponse, summary="Create API Key")
async def create_key(
    body: KeyCreateRequest,
    services: Services = Depends(get_services),
    client: ClientInfo = Depends(client_info),
):
    """
    Generate a new API key.

    Optionally starts a subscription right away (`subscription.enabled`).
    The generated key value is part of the response.
    """
    api_key = await services.admin.create_key(
        body.name, body.type, body.rate_limit, body.rate_limit_window, body.subscription, client
    )
    return KeyResponse(api_key=api_key)


@router.get("/{uid}", response_model=KeyDetailResponse, summary="API Key Details")
async def get_key(uid: str, services: Services = Depends(get_services)):
    """Key with subscription, payment history and the latest usage and audit entries"""
    return KeyDetailResponse(api_key=await services.admin.get_key(uid))


@router.put("/{uid}", response_model=KeyResponse, summary="Update API Key")
async def update_key(
    uid: str,
    body: KeyUpdateRequest,
    services: Services = Depends(get_services),
    client: ClientInfo = Depends(client_info),
):
    return KeyResponse(api_key=await services.admin.update_key(uid, body, client))


@router.delete("/{uid}", response_model=MessageResponse, summary="Delete API Key")
async def delete_key(
    uid: str,
    services: Services = Depends(get_services),
    client: ClientInfo = Depends(client_info),
):
    """Delete a key together with its subscription, payments and usage logs"""
    await services.admin.delete_key(uid, client)
    return MessageResponse(message="API key deleted successfully")


@router.post("/{uid}/sessions/revoke", response_model=KeyResponse, summary="Revoke All Sessions")
async def revoke_sessions(
    uid: str,
    services: Services = Depends(get_services),
    client: ClientInfo = Depends(client_info),
):
    """Invalidate every access and refresh token issued for this key so far"""
    return KeyResponse(api_key=await services.admin.revoke_all_sessions(uid, client))


@router.post("/{uid}/subscription/activate", response_model=SubscriptionResponse, summary="Activate Subscription")
async def activate_subscription(
    uid: str,
    body: ActivateRequest,
    services: Services = Depends(get_services),
    client: ClientInfo = Depends(client_info),
):
    """
    Start a subscription of `durationDays` from now.

    Fails with `SUBSCRIPTION_EXISTS` while an active subscription is in place.
    Reactivates the key if it was switched off.
    """
    subscription = await services.admin.activate_subscription(
        uid, body.price, body.duration_days, body.auto_renew, body.currency, client
    )
    return SubscriptionResponse(message="Subscription activated successfully", subscription=subscription)


@router.post("/{uid}/subscription/renew", response_model=SubscriptionResponse, summary="Renew Subscription")
async def renew_subscription(
    uid: str,
    body: RenewRequest,
    services: Services = Depends(get_services),
    client: ClientInfo = Depends(client_info),
):
    """
    Extend the subscription by `durationDays`.

    Remaining time is kept: an unexpired subscription is extended from its
    end date, an expired one restarts from now.
    """
    subscription = await services.admin.renew_subscription(
        uid, body.duration_days, body.amount, body.payment_reference, client
    )
    return SubscriptionResponse(message="Subscription renewed successfully", subscription=subscription)


@router.post("/{uid}/subscription/cancel", response_model=SubscriptionResponse, summary="Cancel Subscription")
async def cancel_subscription(
    uid: str,
    services: Services = Depends(get_services),
    client: ClientInfo = Depends(client_info),
):
    """Disable auto-renew; the key keeps working until the current end date"""
    subscription = await services.admin.cancel_subscription(uid, client)
    return SubscriptionResponse(
        message="Subscription cancelled. It will remain active until the end date.",
        subscription=subscription,
    )
