"""Domain records exchanged between the persistence gateway, services and routes"""
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Snake_case in Python, camelCase on the wire"""
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


class KeyType(str, Enum):
    """API key role"""
    ADMIN = "admin"
    NORMAL = "normal"


class SubscriptionStatus(str, Enum):
    """Stored subscription status"""
    ACTIVE = "active"
    EXPIRED = "expired"
    CANCELLED = "cancelled"
    PENDING = "pending"


class SubscriptionState(str, Enum):
    """Evaluated lifecycle state at a given instant"""
    NO_SUBSCRIPTION = "no_subscription"
    ACTIVE = "active"
    EXPIRING = "expiring"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    PENDING = "pending"


class TokenType(str, Enum):
    ADMIN = "admin"
    REFRESH = "refresh"


class ApiKey(CamelModel):
    id: Optional[int] = None
    uid: str
    key_value: str
    name: str
    type: KeyType = KeyType.NORMAL
    is_active: bool = True
    rate_limit: Optional[int] = None
    rate_limit_window: Optional[int] = None
    usage_count: int = 0
    last_used_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    token_version: int = 0

    @property
    def is_admin(self) -> bool:
        return self.type == KeyType.ADMIN


class Subscription(CamelModel):
    id: Optional[int] = None
    api_key_uid: str
    enabled: bool = True
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE
    price: float = 0.0
    currency: str = "BRL"
    start_date: datetime
    end_date: datetime
    renewal_date: Optional[datetime] = None
    auto_renew: bool = False
    duration_days: int = 30
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class Payment(CamelModel):
    id: Optional[int] = None
    subscription_id: int
    api_key_uid: str
    amount: float
    currency: str
    payment_date: datetime
    reference: str
    method: str = "manual"
    status: str = "completed"


class AuditEntry(CamelModel):
    id: Optional[int] = None
    api_key_uid: Optional[str] = None
    action: str
    details: Optional[Dict[str, Any]] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: Optional[datetime] = None


class UsageEntry(CamelModel):
    id: Optional[int] = None
    api_key_uid: str
    endpoint: str
    method: str
    status_code: int = 200
    ip_address: Optional[str] = None
    created_at: Optional[datetime] = None


class ClientInfo(CamelModel):
    """Request context recorded on audit entries"""
    ip_address: str = "unknown"
    user_agent: Optional[str] = None


class SubscriptionView(CamelModel):
    """Result of evaluating a subscription at one instant"""
    state: SubscriptionState
    is_valid: bool
    days_remaining: Optional[int] = None
    status: Optional[SubscriptionStatus] = None
    end_date: Optional[datetime] = None
    renewal_date: Optional[datetime] = None


class TokenClaims(CamelModel):
    api_key_uid: str
    type: TokenType
    issued_at: datetime
    expires_at: datetime
    jti: str
    version: int = 0


class Identity(CamelModel):
    """Authorized caller resolved by the gatekeeper"""
    api_key: ApiKey
    subscription: Optional[Subscription] = None
    view: SubscriptionView
    claims: Optional[TokenClaims] = None
    token: Optional[str] = Field(default=None, exclude=True)

    @property
    def uid(self) -> str:
        return self.api_key.uid


class TokenPair(CamelModel):
    access_token: str
    refresh_token: str
    expires_in: int
    api_key: ApiKey


class MaintenanceReport(CamelModel):
    expired_count: int = 0
    auto_renewed_count: int = 0
    cleaned_token_count: int = 0
    pruned_rate_limits: int = 0
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
