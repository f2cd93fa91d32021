"""Pydantic schemas for request/response validation"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import Field, field_validator

from keyhub.core.config import settings
from keyhub.models.domain import (
    ApiKey,
    AuditEntry,
    CamelModel,
    KeyType,
    MaintenanceReport,
    Payment,
    Subscription,
    SubscriptionView,
    UsageEntry,
)


# ==================== REQUESTS ====================

class LoginRequest(CamelModel):
    """Admin login with a raw API key"""
    api_key: Optional[str] = Field(
        None,
        description="Admin API key",
        examples=["KH-Zx81mQpL0aTr5Vb2nYc7WdEe"]
    )


class SubscriptionOptions(CamelModel):
    """Subscription to start together with a new key"""
    enabled: bool = Field(True, description="Create the subscription")
    price: float = Field(settings.DEFAULT_SUBSCRIPTION_PRICE, ge=0, description="Price per period")
    currency: str = Field(settings.DEFAULT_CURRENCY, min_length=1, max_length=8)
    duration_days: int = Field(settings.DEFAULT_SUBSCRIPTION_DAYS, gt=0, description="Period length in days")
    auto_renew: bool = Field(False, description="Renew automatically before the end date")


class KeyCreateRequest(CamelModel):
    """Create a new API key"""
    name: str = Field(..., min_length=1, max_length=255, description="Human readable key name",
                      examples=["Billing dashboard"])
    type: KeyType = Field(KeyType.NORMAL, description="Key role")
    rate_limit: Optional[int] = Field(None, gt=0)
    rate_limit_window: Optional[int] = Field(None, gt=0, description="Window in seconds")
    subscription: Optional[SubscriptionOptions] = None

    @field_validator("name")
    @classmethod
    def validate_name(cls, v):
        if not v or not v.strip():
            raise ValueError("Name cannot be empty or whitespace only")
        return v.strip()


class KeyUpdateRequest(CamelModel):
    """Partial update of an API key"""
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    is_active: Optional[bool] = None
    rate_limit: Optional[int] = Field(None, gt=0)
    rate_limit_window: Optional[int] = Field(None, gt=0)


class ActivateRequest(CamelModel):
    price: float = Field(settings.DEFAULT_SUBSCRIPTION_PRICE, ge=0)
    duration_days: int = Field(settings.DEFAULT_SUBSCRIPTION_DAYS, gt=0)
    auto_renew: bool = False
    currency: str = Field(settings.DEFAULT_CURRENCY, min_length=1, max_length=8)


class RenewRequest(CamelModel):
    duration_days: int = Field(settings.DEFAULT_SUBSCRIPTION_DAYS, gt=0)
    amount: Optional[float] = Field(None, ge=0, description="Defaults to the subscription price")
    payment_reference: Optional[str] = Field(None, max_length=128)


# ==================== RESPONSES ====================

class KeySummary(CamelModel):
    uid: str
    name: str
    type: KeyType


class SessionResponse(CamelModel):
    """Token pair issued on login or refresh"""
    valid: bool = True
    token: str = Field(..., description="Admin access token (1 hour)")
    refresh_token: str = Field(..., description="Refresh token (7 days, single use)")
    expires_in: int = Field(..., description="Access token lifetime in seconds")
    api_key: KeySummary


class IdentityResponse(CamelModel):
    """Caller identity resolved by the gatekeeper"""
    valid: bool = True
    api_key: KeySummary
    subscription: SubscriptionView


class SubscriptionDetail(Subscription):
    payment_history: List[Payment] = []


class KeyOut(ApiKey):
    subscription: Optional[SubscriptionDetail] = None


class KeyDetail(KeyOut):
    usage_logs: List[UsageEntry] = []
    audit_logs: List[AuditEntry] = []


class Pagination(CamelModel):
    page: int
    limit: int
    total: int
    total_pages: int


class KeyListResponse(CamelModel):
    success: bool = True
    api_keys: List[KeyOut]
    pagination: Pagination


class KeyResponse(CamelModel):
    success: bool = True
    api_key: KeyOut


class KeyDetailResponse(CamelModel):
    success: bool = True
    api_key: KeyDetail


class SubscriptionResponse(CamelModel):
    success: bool = True
    message: str
    subscription: Subscription


class ExpiringItem(CamelModel):
    id: Optional[int] = None
    api_key: KeySummary
    enabled: bool
    price: float
    currency: str
    status: str = Field(..., description="active, expiring or expired at the time of the request")
    start_date: datetime
    end_date: datetime
    renewal_date: Optional[datetime] = None
    auto_renew: bool
    days_remaining: int


class ExpiringSummary(CamelModel):
    total: int
    active: int
    expired: int
    expiring: int


class ExpiringResponse(CamelModel):
    success: bool = True
    subscriptions: List[ExpiringItem]
    summary: ExpiringSummary


class StatsOverview(CamelModel):
    total_keys: int
    active_keys: int
    inactive_keys: int
    admin_keys: int
    normal_keys: int


class StatsSubscriptions(CamelModel):
    total: int
    active: int
    expired: int
    expiring_soon: int
    expiring_in_30_days: int


class StatsRevenue(CamelModel):
    total: float
    last_30_days: float
    average_per_month: float


class StatsUsage(CamelModel):
    requests_last_24h: int
    average_per_hour: int


class TopKey(CamelModel):
    uid: str
    name: str
    type: KeyType
    usage_count: int
    last_used_at: Optional[datetime] = None
    has_subscription: bool
    is_active: bool


class ActivityItem(CamelModel):
    id: Optional[int] = None
    action: str
    created_at: Optional[datetime] = None
    api_key_uid: Optional[str] = None
    api_key_name: Optional[str] = None
    api_key_type: Optional[KeyType] = None


class StatsResponse(CamelModel):
    success: bool = True
    timestamp: datetime
    overview: StatsOverview
    subscriptions: StatsSubscriptions
    revenue: StatsRevenue
    usage: StatsUsage
    top_keys: List[TopKey]
    recent_activity: List[ActivityItem]


class RevenuePeriod(CamelModel):
    start_date: datetime
    end_date: datetime


class CurrencyAmount(CamelModel):
    currency: str
    amount: float


class RevenueSummary(CamelModel):
    total_revenue: float
    total_payments: int
    average_payment_value: float
    currency_breakdown: List[CurrencyAmount]


class RecentPayment(CamelModel):
    id: Optional[int] = None
    amount: float
    currency: str
    payment_date: datetime
    reference: str
    method: str
    api_key_uid: str
    api_key_name: Optional[str] = None


class RevenueResponse(CamelModel):
    success: bool = True
    period: RevenuePeriod
    summary: RevenueSummary
    grouped_data: List[Dict[str, Any]]
    recent_payments: List[RecentPayment]


class MaintenanceResponse(CamelModel):
    success: bool = True
    message: str = "Maintenance completed successfully"
    report: MaintenanceReport


class MessageResponse(CamelModel):
    success: bool = True
    message: str


class HealthCheck(CamelModel):
    """Health check response"""
    status: str = Field(..., description="Service status")
    timestamp: datetime = Field(..., description="Current timestamp")
    database: bool = Field(..., description="Whether the database answers")
    version: str = Field(..., description="API version")
