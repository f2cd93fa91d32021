"""Admin operations on keys, subscriptions and reporting"""
import math
from collections import OrderedDict
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from keyhub.core.credentials import generate_api_key, generate_uid
from keyhub.core.locks import KeyLockRegistry
from keyhub.db.gateway import PersistenceGateway
from keyhub.models.domain import (
    ApiKey,
    ClientInfo,
    KeyType,
    Payment,
    Subscription,
)
from keyhub.models.schemas import (
    ActivityItem,
    CurrencyAmount,
    ExpiringItem,
    ExpiringResponse,
    ExpiringSummary,
    KeyDetail,
    KeyListResponse,
    KeyOut,
    KeySummary,
    KeyUpdateRequest,
    Pagination,
    RecentPayment,
    RevenuePeriod,
    RevenueResponse,
    RevenueSummary,
    StatsOverview,
    StatsResponse,
    StatsRevenue,
    StatsSubscriptions,
    StatsUsage,
    SubscriptionDetail,
    SubscriptionOptions,
    TopKey,
)
from keyhub.services.audit import AuditService
from keyhub.services.lifecycle import SubscriptionLifecycleEngine, is_expired, is_near_expiry
from keyhub.services.sessions import SessionManager
from keyhub.utils.clock import Clock, to_naive_utc, utcnow
from keyhub.utils.exceptions import NotFound, ValidationFailed
from keyhub.utils.logger import logger

EXPIRING_FILTERS = ("expiring", "expired", "all")
REVENUE_GROUPS = ("date", "month", "key")
KEY_STATUS_FILTERS = {"active": True, "inactive": False}


class AdminService:
    """Operations behind the admin routes; callers are already authorized"""

    def __init__(
        self,
        gateway: PersistenceGateway,
        lifecycle: SubscriptionLifecycleEngine,
        sessions: SessionManager,
        locks: KeyLockRegistry,
        audit: AuditService,
        clock: Clock = utcnow,
    ):
        self.gateway = gateway
        self.lifecycle = lifecycle
        self.sessions = sessions
        self.locks = locks
        self.audit = audit
        self.clock = clock

    # ==================== KEYS ====================

    async def create_key(
        self,
        name: str,
        key_type: KeyType = KeyType.NORMAL,
        rate_limit: Optional[int] = None,
        rate_limit_window: Optional[int] = None,
        subscription: Optional[SubscriptionOptions] = None,
        client: Optional[ClientInfo] = None,
    ) -> KeyOut:
        """Generate a key, optionally starting its subscription right away"""
        name = (name or "").strip()
        if not name:
            raise ValidationFailed("Name is required", code="MISSING_NAME")
        try:
            key_type = KeyType(key_type)
        except ValueError:
            raise ValidationFailed('Invalid type. Must be "admin" or "normal"', code="INVALID_TYPE") from None

        uid = generate_uid()
        api_key = await self.gateway.put_api_key(uid, {
            "key_value": generate_api_key(),
            "name": name,
            "type": key_type,
            "is_active": True,
            "rate_limit": rate_limit,
            "rate_limit_window": rate_limit_window,
        })

        created_subscription = None
        if subscription is not None and subscription.enabled:
            created_subscription = await self.lifecycle.activate(
                uid,
                price=subscription.price,
                duration_days=subscription.duration_days,
                auto_renew=subscription.auto_renew,
                currency=subscription.currency,
                client=client,
            )
            api_key = await self.gateway.get_api_key(uid)

        logger.info(f"Created {key_type.value} key '{name}' ({uid})")
        await self.audit.log_action("create_api_key", uid, {
            "name": name,
            "type": key_type,
            "hasSubscription": created_subscription is not None,
        }, client)
        return self._key_out(api_key, created_subscription)

    async def list_keys(
        self,
        status: Optional[str] = None,
        key_type: Optional[KeyType] = None,
        has_subscription: Optional[bool] = None,
        search: Optional[str] = None,
        page: int = 1,
        limit: int = 20,
    ) -> KeyListResponse:
        """Page of keys, newest first, each with its subscription and last 5 payments"""
        if page < 1 or limit < 1:
            raise ValidationFailed("page and limit must be positive", code="INVALID_PAGINATION")

        keys, total = await self.gateway.list_api_keys(
            is_active=KEY_STATUS_FILTERS.get(status),
            key_type=key_type,
            has_subscription=has_subscription,
            search=search,
            offset=(page - 1) * limit,
            limit=limit,
        )
        subscriptions = await self.gateway.get_subscriptions_for([key.uid for key in keys])

        items = []
        for key in keys:
            subscription = subscriptions.get(key.uid)
            payments = []
            if subscription is not None:
                payments = await self.gateway.list_payments(subscription_id=subscription.id, limit=5)
            items.append(self._key_out(key, subscription, payments))

        return KeyListResponse(
            api_keys=items,
            pagination=Pagination(page=page, limit=limit, total=total, total_pages=math.ceil(total / limit)),
        )

    async def get_key(self, uid: str) -> KeyDetail:
        """Key with subscription, full payment history and the last 50 usage and audit entries"""
        api_key = await self.gateway.get_api_key(uid)
        if api_key is None:
            raise NotFound()

        subscription = await self.gateway.get_subscription(uid)
        payments = []
        if subscription is not None:
            payments = await self.gateway.list_payments(subscription_id=subscription.id, status=None)

        return KeyDetail(
            **api_key.model_dump(),
            subscription=self._subscription_detail(subscription, payments),
            usage_logs=await self.gateway.list_usage(uid, limit=50),
            audit_logs=await self.gateway.list_audit(uid, limit=50),
        )

    async def update_key(
        self, uid: str, changes: KeyUpdateRequest, client: Optional[ClientInfo] = None
    ) -> KeyOut:
        fields = changes.model_dump(exclude_none=True)
        if "name" in fields:
            fields["name"] = fields["name"].strip()
            if not fields["name"]:
                raise ValidationFailed("Name cannot be empty", code="MISSING_NAME")

        async with self.locks.hold(uid):
            api_key = await self.gateway.get_api_key(uid)
            if api_key is None:
                raise NotFound()
            if fields:
                api_key = await self.gateway.put_api_key(uid, fields)

        await self.audit.log_action("update_api_key", uid, {"changes": fields}, client)
        subscription = await self.gateway.get_subscription(uid)
        return self._key_out(api_key, subscription)

    async def delete_key(self, uid: str, client: Optional[ClientInfo] = None) -> None:
        """
        Remove a key together with its subscription, payments and usage.

        Outstanding tokens of the key are not revoked; the gatekeeper
        rejects them because the key no longer resolves.
        """
        async with self.locks.hold(uid):
            api_key = await self.gateway.get_api_key(uid)
            if api_key is None:
                raise NotFound()
            await self.gateway.delete_api_key(uid)
        await self.locks.cleanup(uid)

        logger.info(f"Deleted key '{api_key.name}' ({uid})")
        await self.audit.log_action("delete_api_key", None, {
            "uid": uid,
            "name": api_key.name,
            "type": api_key.type,
        }, client)

    async def revoke_all_sessions(self, uid: str, client: Optional[ClientInfo] = None) -> KeyOut:
        api_key = await self.sessions.revoke_all(uid)
        logger.info(f"Revoked all sessions of key {uid} (token version {api_key.token_version})")
        await self.audit.log_action("revoke_sessions", uid, {"tokenVersion": api_key.token_version}, client)
        return self._key_out(api_key, await self.gateway.get_subscription(uid))

    # ==================== SUBSCRIPTIONS ====================

    async def activate_subscription(self, uid: str, price: float, duration_days: int, auto_renew: bool,
                                    currency: str, client: Optional[ClientInfo] = None) -> Subscription:
        return await self.lifecycle.activate(uid, price, duration_days, auto_renew, currency, client)

    async def renew_subscription(self, uid: str, duration_days: int, amount: Optional[float] = None,
                                 reference: Optional[str] = None,
                                 client: Optional[ClientInfo] = None) -> Subscription:
        return await self.lifecycle.renew(uid, duration_days, amount, reference, client)

    async def cancel_subscription(self, uid: str, client: Optional[ClientInfo] = None) -> Subscription:
        return await self.lifecycle.cancel(uid, client)

    async def expiring_subscriptions(self, days: int = 7, status: str = "all") -> ExpiringResponse:
        """
        Enabled subscriptions ordered by end date.

        ``status`` filters to ``expiring`` (ending within ``days``, not yet
        lapsed), ``expired`` (past end date) or ``all``.
        """
        if days < 0:
            raise ValidationFailed("days must not be negative", code="INVALID_DAYS")
        if status not in EXPIRING_FILTERS:
            raise ValidationFailed(f"status must be one of {', '.join(EXPIRING_FILTERS)}", code="INVALID_STATUS")

        now = self.clock()
        subscriptions = await self.gateway.list_subscriptions(enabled=True)
        keys = await self.gateway.get_api_keys_for([s.api_key_uid for s in subscriptions])

        items = []
        for subscription in subscriptions:
            expired = is_expired(subscription.end_date, now)
            if status == "expiring" and (expired or not is_near_expiry(subscription.end_date, now, days)):
                continue
            if status == "expired" and not expired:
                continue

            view = self.lifecycle.evaluate(subscription, now, expiring_days=days)
            api_key = keys.get(subscription.api_key_uid)
            items.append(ExpiringItem(
                id=subscription.id,
                api_key=KeySummary(
                    uid=subscription.api_key_uid,
                    name=api_key.name if api_key else "",
                    type=api_key.type if api_key else KeyType.NORMAL,
                ),
                enabled=subscription.enabled,
                price=subscription.price,
                currency=subscription.currency,
                status=view.state.value,
                start_date=subscription.start_date,
                end_date=subscription.end_date,
                renewal_date=subscription.renewal_date,
                auto_renew=subscription.auto_renew,
                days_remaining=view.days_remaining or 0,
            ))

        expired_count = sum(1 for s in subscriptions if is_expired(s.end_date, now))
        return ExpiringResponse(
            subscriptions=items,
            summary=ExpiringSummary(
                total=len(subscriptions),
                active=len(subscriptions) - expired_count,
                expired=expired_count,
                expiring=sum(1 for s in subscriptions if is_near_expiry(s.end_date, now, days)),
            ),
        )

    # ==================== REPORTING ====================

    async def stats(self) -> StatsResponse:
        now = self.clock()

        total_keys = await self.gateway.count_api_keys()
        active_keys = await self.gateway.count_api_keys(is_active=True)
        admin_keys = await self.gateway.count_api_keys(key_type=KeyType.ADMIN)

        subscriptions = await self.gateway.list_subscriptions(enabled=True)
        expired = [s for s in subscriptions if is_expired(s.end_date, now)]

        def ending_within(days: int) -> int:
            horizon = now + timedelta(days=days)
            return sum(1 for s in subscriptions if now < s.end_date <= horizon)

        payments = await self.gateway.list_payments(status="completed")
        total_revenue = sum(p.amount for p in payments)
        last_30_days = sum(p.amount for p in payments if p.payment_date >= now - timedelta(days=30))
        if payments:
            oldest = min(p.payment_date for p in payments)
            months = max(1, math.ceil((now - oldest).days / 30))
        else:
            months = 1

        requests_last_24h = await self.gateway.count_usage_since(now - timedelta(hours=24))

        top_keys = await self.gateway.top_api_keys(limit=10)
        top_subscriptions = await self.gateway.get_subscriptions_for([k.uid for k in top_keys])

        recent = await self.gateway.list_audit(limit=10)
        recent_keys = await self.gateway.get_api_keys_for([e.api_key_uid for e in recent if e.api_key_uid])

        return StatsResponse(
            timestamp=now,
            overview=StatsOverview(
                total_keys=total_keys,
                active_keys=active_keys,
                inactive_keys=total_keys - active_keys,
                admin_keys=admin_keys,
                normal_keys=total_keys - admin_keys,
            ),
            subscriptions=StatsSubscriptions(
                total=len(subscriptions),
                active=len(subscriptions) - len(expired),
                expired=len(expired),
                expiring_soon=ending_within(7),
                expiring_in_30_days=ending_within(30),
            ),
            revenue=StatsRevenue(
                total=total_revenue,
                last_30_days=last_30_days,
                average_per_month=total_revenue / months,
            ),
            usage=StatsUsage(
                requests_last_24h=requests_last_24h,
                average_per_hour=round(requests_last_24h / 24),
            ),
            top_keys=[
                TopKey(
                    uid=key.uid,
                    name=key.name,
                    type=key.type,
                    usage_count=key.usage_count,
                    last_used_at=key.last_used_at,
                    has_subscription=key.uid in top_subscriptions,
                    is_active=key.is_active,
                )
                for key in top_keys
            ],
            recent_activity=[
                ActivityItem(
                    id=entry.id,
                    action=entry.action,
                    created_at=entry.created_at,
                    api_key_uid=entry.api_key_uid,
                    api_key_name=recent_keys[entry.api_key_uid].name if entry.api_key_uid in recent_keys else None,
                    api_key_type=recent_keys[entry.api_key_uid].type if entry.api_key_uid in recent_keys else None,
                )
                for entry in recent
            ],
        )

    async def revenue_report(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        group_by: str = "date",
    ) -> RevenueResponse:
        """Completed payments between ``start`` and ``end`` (default: last 30 days)"""
        if group_by not in REVENUE_GROUPS:
            raise ValidationFailed(f"groupBy must be one of {', '.join(REVENUE_GROUPS)}", code="INVALID_GROUP_BY")

        end = to_naive_utc(end) if end else self.clock()
        start = to_naive_utc(start) if start else end - timedelta(days=30)
        if start > end:
            raise ValidationFailed("startDate must not be after endDate", code="INVALID_PERIOD")

        payments = await self.gateway.list_payments(start=start, end=end, status="completed")
        keys = await self.gateway.get_api_keys_for([p.api_key_uid for p in payments])
        total_revenue = sum(p.amount for p in payments)

        currency_totals: Dict[str, float] = OrderedDict()
        for payment in payments:
            currency_totals[payment.currency] = currency_totals.get(payment.currency, 0.0) + payment.amount

        return RevenueResponse(
            period=RevenuePeriod(start_date=start, end_date=end),
            summary=RevenueSummary(
                total_revenue=total_revenue,
                total_payments=len(payments),
                average_payment_value=total_revenue / len(payments) if payments else 0.0,
                currency_breakdown=[CurrencyAmount(currency=c, amount=a) for c, a in currency_totals.items()],
            ),
            grouped_data=self._group_payments(payments, group_by, keys),
            recent_payments=[
                RecentPayment(
                    id=payment.id,
                    amount=payment.amount,
                    currency=payment.currency,
                    payment_date=payment.payment_date,
                    reference=payment.reference,
                    method=payment.method,
                    api_key_uid=payment.api_key_uid,
                    api_key_name=keys[payment.api_key_uid].name if payment.api_key_uid in keys else None,
                )
                for payment in payments[:10]
            ],
        )

    # ==================== HELPERS ====================

    @staticmethod
    def _group_payments(payments: List[Payment], group_by: str, keys: Dict[str, ApiKey]) -> List[Dict[str, Any]]:
        groups: Dict[str, Dict[str, Any]] = {}
        for payment in payments:
            if group_by == "date":
                label = payment.payment_date.strftime("%Y-%m-%d")
            elif group_by == "month":
                label = payment.payment_date.strftime("%Y-%m")
            else:
                label = payment.api_key_uid

            group = groups.get(label)
            if group is None:
                group = {group_by if group_by != "key" else "apiKeyUid": label,
                         "count": 0, "amount": 0.0, "currency": payment.currency}
                if group_by == "key":
                    group["apiKeyName"] = keys[label].name if label in keys else None
                groups[label] = group
            group["count"] += 1
            group["amount"] += payment.amount

        rows = list(groups.values())
        if group_by == "key":
            return sorted(rows, key=lambda row: row["amount"], reverse=True)
        return sorted(rows, key=lambda row: row[group_by])

    @staticmethod
    def _subscription_detail(subscription: Optional[Subscription],
                             payments: Optional[List[Payment]] = None) -> Optional[SubscriptionDetail]:
        if subscription is None:
            return None
        return SubscriptionDetail(**subscription.model_dump(), payment_history=payments or [])

    def _key_out(self, api_key: ApiKey, subscription: Optional[Subscription] = None,
                 payments: Optional[List[Payment]] = None) -> KeyOut:
        return KeyOut(**api_key.model_dump(), subscription=self._subscription_detail(subscription, payments))
