"""Import all models so they register on Base.metadata"""
from keyhub.db.models.api_key import APIKey
from keyhub.db.models.subscription import SubscriptionRecord, PaymentRecord
from keyhub.db.models.audit_log import AuditLog, UsageLog
from keyhub.db.models.revoked_token import RevokedToken

__all__ = [
    "APIKey",
    "SubscriptionRecord",
    "PaymentRecord",
    "AuditLog",
    "UsageLog",
    "RevokedToken",
]
