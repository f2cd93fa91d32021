"""Best-effort recording of audit, payment and usage entries"""
from typing import Any, Dict, Optional

from fastapi.encoders import jsonable_encoder

from keyhub.db.gateway import PersistenceGateway
from keyhub.models.domain import AuditEntry, ClientInfo, Payment, Subscription, UsageEntry
from keyhub.utils.clock import Clock, to_timestamp, utcnow
from keyhub.utils.exceptions import KeyHubError
from keyhub.utils.logger import logger


class AuditService:
    """
    Secondary effects of lifecycle transitions.

    A failure here is logged and swallowed: the primary transition has
    already been stored and must not be reported as failed because a
    ledger write did not go through.
    """

    def __init__(self, gateway: PersistenceGateway, clock: Clock = utcnow):
        self.gateway = gateway
        self.clock = clock

    async def log_action(
        self,
        action: str,
        api_key_uid: Optional[str],
        details: Optional[Dict[str, Any]] = None,
        client: Optional[ClientInfo] = None,
    ) -> Optional[AuditEntry]:
        """Record an audit log entry"""
        entry = AuditEntry(
            api_key_uid=api_key_uid,
            action=action,
            details=jsonable_encoder(details) if details is not None else None,
            ip_address=client.ip_address if client else None,
            user_agent=client.user_agent if client else None,
            created_at=self.clock(),
        )
        try:
            return await self.gateway.append_audit(entry)
        except KeyHubError as e:
            logger.error(f"Failed to record audit entry '{action}' for key {api_key_uid}: {e.code}")
            return None

    async def record_payment(
        self,
        subscription: Subscription,
        amount: float,
        reference: str,
        method: str = "manual",
    ) -> Optional[Payment]:
        """Append a completed payment to the subscription's ledger"""
        payment = Payment(
            subscription_id=subscription.id,
            api_key_uid=subscription.api_key_uid,
            amount=amount,
            currency=subscription.currency,
            payment_date=self.clock(),
            reference=reference,
            method=method,
            status="completed",
        )
        try:
            return await self.gateway.append_payment(payment)
        except KeyHubError as e:
            logger.error(f"Failed to record payment {reference} for key {subscription.api_key_uid}: {e.code}")
            return None

    async def record_usage(
        self,
        api_key_uid: str,
        endpoint: str,
        method: str,
        status_code: int = 200,
        client: Optional[ClientInfo] = None,
    ) -> None:
        """Bump usage counters and append a usage log entry"""
        now = self.clock()
        try:
            await self.gateway.record_key_usage(api_key_uid, now)
            await self.gateway.append_usage(UsageEntry(
                api_key_uid=api_key_uid,
                endpoint=endpoint,
                method=method,
                status_code=status_code,
                ip_address=client.ip_address if client else None,
                created_at=now,
            ))
        except KeyHubError as e:
            logger.error(f"Failed to record usage for key {api_key_uid}: {e.code}")

    def reference(self, prefix: str) -> str:
        """Payment reference such as ``RENEW-1717171717171``"""
        now = self.clock()
        return f"{prefix}-{to_timestamp(now) * 1000 + now.microsecond // 1000}"
