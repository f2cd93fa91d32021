"""Persistence gateway: the only component that talks to the database"""
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from keyhub.db.models import APIKey, AuditLog, PaymentRecord, RevokedToken, SubscriptionRecord, UsageLog
from keyhub.db.session import Database
from keyhub.models.domain import (
    ApiKey,
    AuditEntry,
    KeyType,
    Payment,
    Subscription,
    SubscriptionStatus,
    UsageEntry,
)
from keyhub.utils.clock import Clock, utcnow
from keyhub.utils.exceptions import StorageFailure
from keyhub.utils.logger import logger

_API_KEY_FIELDS = {
    "key_value", "name", "type", "is_active", "rate_limit", "rate_limit_window",
    "usage_count", "last_used_at", "token_version", "created_at",
}
_SUBSCRIPTION_FIELDS = {
    "enabled", "status", "price", "currency", "start_date", "end_date",
    "renewal_date", "auto_renew", "duration_days", "created_at",
}


def _pick(fields: Dict[str, Any], allowed: set) -> Dict[str, Any]:
    unknown = set(fields) - allowed
    if unknown:
        raise ValueError(f"Unknown fields: {sorted(unknown)}")
    return dict(fields)


class PersistenceGateway:
    """
    Atomic get/set per record over the async SQLAlchemy session.

    Each public method runs in its own transaction. No cross-record
    transactions are offered; callers serialize per key with the lock
    registry. Database errors surface as ``StorageFailure``.
    """

    def __init__(self, database: Database, clock: Clock = utcnow):
        self.database = database
        self.clock = clock

    @asynccontextmanager
    async def _session(self, operation: str) -> AsyncIterator[AsyncSession]:
        try:
            async with self.database.session() as session:
                yield session
        except SQLAlchemyError as e:
            logger.error(f"Storage failure during {operation}: {type(e).__name__}: {e}")
            raise StorageFailure() from e

    async def ping(self) -> bool:
        try:
            return await self.database.ping()
        except SQLAlchemyError as e:
            logger.error(f"Database ping failed: {e}")
            return False

    # ==================== API KEYS ====================

    async def get_api_key(self, uid: str) -> Optional[ApiKey]:
        async with self._session("get_api_key") as session:
            row = await session.scalar(select(APIKey).where(APIKey.uid == uid))
            return ApiKey.model_validate(row) if row else None

    async def get_api_key_by_credential(self, key_value: str) -> Optional[ApiKey]:
        async with self._session("get_api_key_by_credential") as session:
            row = await session.scalar(select(APIKey).where(APIKey.key_value == key_value))
            return ApiKey.model_validate(row) if row else None

    async def get_api_keys_for(self, uids: List[str]) -> Dict[str, ApiKey]:
        if not uids:
            return {}
        async with self._session("get_api_keys_for") as session:
            rows = await session.scalars(select(APIKey).where(APIKey.uid.in_(set(uids))))
            return {row.uid: ApiKey.model_validate(row) for row in rows}

    async def put_api_key(self, uid: str, fields: Dict[str, Any]) -> ApiKey:
        """Create the key ``uid`` or update the given fields of it"""
        values = _pick(fields, _API_KEY_FIELDS)
        now = self.clock()
        async with self._session("put_api_key") as session:
            row = await session.scalar(select(APIKey).where(APIKey.uid == uid))
            if row is None:
                row = APIKey(uid=uid, created_at=values.pop("created_at", now), updated_at=now,
                             usage_count=0, token_version=0)
                session.add(row)
            for name, value in values.items():
                setattr(row, name, value)
            row.updated_at = now
            await session.flush()
            await session.refresh(row)
            return ApiKey.model_validate(row)

    async def delete_api_key(self, uid: str) -> bool:
        """Delete a key together with its subscription, payments and usage logs"""
        async with self._session("delete_api_key") as session:
            row = await session.scalar(select(APIKey).where(APIKey.uid == uid))
            if row is None:
                return False
            subscription_ids = select(SubscriptionRecord.id).where(SubscriptionRecord.api_key_uid == uid)
            await session.execute(delete(PaymentRecord).where(PaymentRecord.subscription_id.in_(subscription_ids)))
            await session.execute(delete(SubscriptionRecord).where(SubscriptionRecord.api_key_uid == uid))
            await session.execute(delete(UsageLog).where(UsageLog.api_key_uid == uid))
            await session.delete(row)
            return True

    async def record_key_usage(self, uid: str, used_at: Optional[datetime] = None) -> None:
        """Increment usage counters in a single UPDATE"""
        async with self._session("record_key_usage") as session:
            await session.execute(
                update(APIKey)
                .where(APIKey.uid == uid)
                .values(usage_count=APIKey.usage_count + 1, last_used_at=used_at or self.clock())
            )

    async def list_api_keys(
        self,
        is_active: Optional[bool] = None,
        key_type: Optional[KeyType] = None,
        has_subscription: Optional[bool] = None,
        search: Optional[str] = None,
        offset: int = 0,
        limit: int = 20,
    ) -> Tuple[List[ApiKey], int]:
        """Filtered page of keys, newest first, with the total match count"""
        conditions = []
        if is_active is not None:
            conditions.append(APIKey.is_active == is_active)
        if key_type is not None:
            conditions.append(APIKey.type == key_type)
        if has_subscription is not None:
            with_subscription = select(SubscriptionRecord.api_key_uid)
            if has_subscription:
                conditions.append(APIKey.uid.in_(with_subscription))
            else:
                conditions.append(APIKey.uid.not_in(with_subscription))
        if search:
            pattern = f"%{search}%"
            conditions.append(or_(APIKey.name.ilike(pattern), APIKey.uid.ilike(pattern)))

        async with self._session("list_api_keys") as session:
            total = await session.scalar(select(func.count(APIKey.id)).where(*conditions))
            rows = await session.scalars(
                select(APIKey)
                .where(*conditions)
                .order_by(APIKey.created_at.desc(), APIKey.id.desc())
                .offset(offset)
                .limit(limit)
            )
            return [ApiKey.model_validate(row) for row in rows], int(total or 0)

    async def count_api_keys(self, is_active: Optional[bool] = None,
                             key_type: Optional[KeyType] = None) -> int:
        conditions = []
        if is_active is not None:
            conditions.append(APIKey.is_active == is_active)
        if key_type is not None:
            conditions.append(APIKey.type == key_type)
        async with self._session("count_api_keys") as session:
            total = await session.scalar(select(func.count(APIKey.id)).where(*conditions))
            return int(total or 0)

    async def top_api_keys(self, limit: int = 10) -> List[ApiKey]:
        async with self._session("top_api_keys") as session:
            rows = await session.scalars(
                select(APIKey).order_by(APIKey.usage_count.desc(), APIKey.id).limit(limit)
            )
            return [ApiKey.model_validate(row) for row in rows]

    # ==================== SUBSCRIPTIONS ====================

    async def get_subscription(self, api_key_uid: str) -> Optional[Subscription]:
        async with self._session("get_subscription") as session:
            row = await session.scalar(
                select(SubscriptionRecord).where(SubscriptionRecord.api_key_uid == api_key_uid)
            )
            return Subscription.model_validate(row) if row else None

    async def put_subscription(self, api_key_uid: str, fields: Dict[str, Any]) -> Subscription:
        """Create the subscription of ``api_key_uid`` or update the given fields of it"""
        values = _pick(fields, _SUBSCRIPTION_FIELDS)
        now = self.clock()
        async with self._session("put_subscription") as session:
            row = await session.scalar(
                select(SubscriptionRecord).where(SubscriptionRecord.api_key_uid == api_key_uid)
            )
            if row is None:
                row = SubscriptionRecord(api_key_uid=api_key_uid, created_at=values.pop("created_at", now))
                session.add(row)
            for name, value in values.items():
                setattr(row, name, value)
            row.updated_at = now
            await session.flush()
            await session.refresh(row)
            return Subscription.model_validate(row)

    async def get_subscriptions_for(self, api_key_uids: List[str]) -> Dict[str, Subscription]:
        if not api_key_uids:
            return {}
        async with self._session("get_subscriptions_for") as session:
            rows = await session.scalars(
                select(SubscriptionRecord).where(SubscriptionRecord.api_key_uid.in_(api_key_uids))
            )
            return {row.api_key_uid: Subscription.model_validate(row) for row in rows}

    async def list_subscriptions(
        self,
        enabled: Optional[bool] = True,
        status: Optional[SubscriptionStatus] = None,
        auto_renew: Optional[bool] = None,
        end_before: Optional[datetime] = None,
        end_on_or_before: Optional[datetime] = None,
    ) -> List[Subscription]:
        """Subscriptions ordered by end date, soonest first"""
        conditions = []
        if enabled is not None:
            conditions.append(SubscriptionRecord.enabled == enabled)
        if status is not None:
            conditions.append(SubscriptionRecord.status == status)
        if auto_renew is not None:
            conditions.append(SubscriptionRecord.auto_renew == auto_renew)
        if end_before is not None:
            conditions.append(SubscriptionRecord.end_date < end_before)
        if end_on_or_before is not None:
            conditions.append(SubscriptionRecord.end_date <= end_on_or_before)

        async with self._session("list_subscriptions") as session:
            rows = await session.scalars(
                select(SubscriptionRecord).where(*conditions).order_by(SubscriptionRecord.end_date)
            )
            return [Subscription.model_validate(row) for row in rows]

    # ==================== PAYMENTS ====================

    async def append_payment(self, payment: Payment) -> Payment:
        async with self._session("append_payment") as session:
            row = PaymentRecord(**payment.model_dump(exclude={"id"}))
            session.add(row)
            await session.flush()
            await session.refresh(row)
            return Payment.model_validate(row)

    async def list_payments(
        self,
        subscription_id: Optional[int] = None,
        api_key_uid: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        status: Optional[str] = "completed",
        limit: Optional[int] = None,
    ) -> List[Payment]:
        """Payments ordered newest first"""
        conditions = []
        if subscription_id is not None:
            conditions.append(PaymentRecord.subscription_id == subscription_id)
        if api_key_uid is not None:
            conditions.append(PaymentRecord.api_key_uid == api_key_uid)
        if start is not None:
            conditions.append(PaymentRecord.payment_date >= start)
        if end is not None:
            conditions.append(PaymentRecord.payment_date <= end)
        if status is not None:
            conditions.append(PaymentRecord.status == status)

        query = (
            select(PaymentRecord)
            .where(*conditions)
            .order_by(PaymentRecord.payment_date.desc(), PaymentRecord.id.desc())
        )
        if limit is not None:
            query = query.limit(limit)

        async with self._session("list_payments") as session:
            rows = await session.scalars(query)
            return [Payment.model_validate(row) for row in rows]

    # ==================== AUDIT & USAGE ====================

    async def append_audit(self, entry: AuditEntry) -> AuditEntry:
        async with self._session("append_audit") as session:
            values = entry.model_dump(exclude={"id"})
            values["created_at"] = values.get("created_at") or self.clock()
            row = AuditLog(**values)
            session.add(row)
            await session.flush()
            await session.refresh(row)
            return AuditEntry.model_validate(row)

    async def list_audit(self, api_key_uid: Optional[str] = None, limit: int = 50) -> List[AuditEntry]:
        query = select(AuditLog).order_by(AuditLog.created_at.desc(), AuditLog.id.desc()).limit(limit)
        if api_key_uid is not None:
            query = query.where(AuditLog.api_key_uid == api_key_uid)
        async with self._session("list_audit") as session:
            rows = await session.scalars(query)
            return [AuditEntry.model_validate(row) for row in rows]

    async def append_usage(self, entry: UsageEntry) -> UsageEntry:
        async with self._session("append_usage") as session:
            values = entry.model_dump(exclude={"id"})
            values["created_at"] = values.get("created_at") or self.clock()
            row = UsageLog(**values)
            session.add(row)
            await session.flush()
            await session.refresh(row)
            return UsageEntry.model_validate(row)

    async def list_usage(self, api_key_uid: str, limit: int = 50) -> List[UsageEntry]:
        async with self._session("list_usage") as session:
            rows = await session.scalars(
                select(UsageLog)
                .where(UsageLog.api_key_uid == api_key_uid)
                .order_by(UsageLog.created_at.desc(), UsageLog.id.desc())
                .limit(limit)
            )
            return [UsageEntry.model_validate(row) for row in rows]

    async def count_usage_since(self, since: datetime) -> int:
        async with self._session("count_usage_since") as session:
            total = await session.scalar(
                select(func.count(UsageLog.id)).where(UsageLog.created_at >= since)
            )
            return int(total or 0)

    # ==================== REVOCATION SET ====================

    async def is_revoked(self, token: str, now: Optional[datetime] = None) -> bool:
        """
        Look up ``token`` in the revocation set.

        An entry past its recorded expiry counts as not revoked and is
        removed on the way out.
        """
        now = now or self.clock()
        async with self._session("is_revoked") as session:
            row = await session.get(RevokedToken, token)
            if row is None:
                return False
            if now > row.expires_at:
                await session.delete(row)
                return False
            return True

    async def add_revoked(self, token: str, expires_at: datetime) -> None:
        """Insert into the revocation set, keeping the later expiry on conflict"""
        async with self._session("add_revoked") as session:
            row = await session.get(RevokedToken, token)
            if row is None:
                session.add(RevokedToken(token=token, expires_at=expires_at))
            elif expires_at > row.expires_at:
                row.expires_at = expires_at

    async def purge_revoked(self, now: Optional[datetime] = None) -> int:
        """Delete revocation entries past their expiry; returns the count removed"""
        now = now or self.clock()
        async with self._session("purge_revoked") as session:
            result = await session.execute(delete(RevokedToken).where(RevokedToken.expires_at < now))
            return int(result.rowcount or 0)
