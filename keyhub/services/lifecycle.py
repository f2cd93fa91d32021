"""Subscription lifecycle engine.

Single source of truth for whether a key's subscription lets it operate.
``evaluate`` is a pure function of a subscription record and an instant;
the transitions (activate, renew, cancel, expire, auto-renew) mutate the
stored record under the owning key's lock and emit audit/payment entries.

States at an instant ``now``:

    no_subscription  absent or enabled=False                  valid
    active           status=active, now <= end_date           valid
    expiring         active and within N days of end_date     valid (advisory)
    cancelled        status=cancelled, now <= end_date        valid
    expired          now > end_date, or status=expired        invalid
    pending          status=pending (reserved)                invalid
"""
from datetime import datetime, timedelta
from typing import List, Optional, Tuple

from keyhub.core.config import settings
from keyhub.core.locks import KeyLockRegistry
from keyhub.db.gateway import PersistenceGateway
from keyhub.models.domain import (
    ClientInfo,
    Subscription,
    SubscriptionState,
    SubscriptionStatus,
    SubscriptionView,
)
from keyhub.services.audit import AuditService
from keyhub.utils.clock import Clock, add_days, days_between, utcnow
from keyhub.utils.exceptions import (
    LockTimeout,
    NotFound,
    SubscriptionAlreadyActive,
    SubscriptionNotActive,
    SubscriptionNotFound,
    ValidationFailed,
)
from keyhub.utils.logger import logger


def is_expired(end_date: datetime, now: datetime) -> bool:
    """A subscription ending exactly at ``now`` is still valid for that instant"""
    return now > end_date


def days_remaining(end_date: datetime, now: datetime) -> int:
    """Whole days left, rounded up, never negative"""
    return max(0, days_between(now, end_date))


def is_near_expiry(end_date: datetime, now: datetime, days: int) -> bool:
    remaining = days_between(now, end_date)
    return 0 <= remaining <= days and not is_expired(end_date, now)


class SubscriptionLifecycleEngine:
    """Computes subscription validity and drives its stored transitions"""

    def __init__(
        self,
        gateway: PersistenceGateway,
        locks: KeyLockRegistry,
        audit: AuditService,
        clock: Clock = utcnow,
        expiring_days: Optional[int] = None,
        auto_renew_days: Optional[int] = None,
        auto_renew_window_hours: Optional[int] = None,
    ):
        self.gateway = gateway
        self.locks = locks
        self.audit = audit
        self.clock = clock
        self.expiring_days = settings.EXPIRING_THRESHOLD_DAYS if expiring_days is None else expiring_days
        self.auto_renew_days = settings.AUTO_RENEW_DAYS if auto_renew_days is None else auto_renew_days
        self.auto_renew_window = timedelta(hours=(
            settings.AUTO_RENEW_WINDOW_HOURS if auto_renew_window_hours is None else auto_renew_window_hours
        ))

    # ==================== EVALUATION ====================

    def evaluate(
        self,
        subscription: Optional[Subscription],
        now: Optional[datetime] = None,
        expiring_days: Optional[int] = None,
    ) -> SubscriptionView:
        """Classify ``subscription`` at ``now`` without touching storage"""
        now = now or self.clock()
        threshold = self.expiring_days if expiring_days is None else expiring_days

        if subscription is None or not subscription.enabled:
            return SubscriptionView(state=SubscriptionState.NO_SUBSCRIPTION, is_valid=True)

        view = dict(
            status=subscription.status,
            end_date=subscription.end_date,
            renewal_date=subscription.renewal_date,
            days_remaining=days_remaining(subscription.end_date, now),
        )

        if is_expired(subscription.end_date, now) or subscription.status == SubscriptionStatus.EXPIRED:
            return SubscriptionView(state=SubscriptionState.EXPIRED, is_valid=False, **view)
        if subscription.status == SubscriptionStatus.PENDING:
            return SubscriptionView(state=SubscriptionState.PENDING, is_valid=False, **view)
        if subscription.status == SubscriptionStatus.CANCELLED:
            return SubscriptionView(state=SubscriptionState.CANCELLED, is_valid=True, **view)
        if days_between(now, subscription.end_date) <= threshold:
            return SubscriptionView(state=SubscriptionState.EXPIRING, is_valid=True, **view)
        return SubscriptionView(state=SubscriptionState.ACTIVE, is_valid=True, **view)

    @staticmethod
    def is_due_for_expiry(subscription: Optional[Subscription], now: datetime) -> bool:
        return (
            subscription is not None
            and subscription.enabled
            and subscription.status == SubscriptionStatus.ACTIVE
            and is_expired(subscription.end_date, now)
        )

    # ==================== TRANSITIONS ====================

    async def activate(
        self,
        api_key_uid: str,
        price: float,
        duration_days: Optional[int] = None,
        auto_renew: bool = False,
        currency: Optional[str] = None,
        client: Optional[ClientInfo] = None,
    ) -> Subscription:
        """
        Start a subscription for a key.

        Only a disabled record is reused. Any enabled record, whether active,
        cancelled or expired, fails with ``SubscriptionAlreadyActive``: those
        go through ``renew`` so remaining paid time is kept.
        """
        duration_days = settings.DEFAULT_SUBSCRIPTION_DAYS if duration_days is None else duration_days
        currency = currency or settings.DEFAULT_CURRENCY
        self._validate_duration(duration_days)
        if price is None or price < 0:
            raise ValidationFailed("Price must be zero or positive", code="INVALID_PRICE")

        async with self.locks.hold(api_key_uid):
            now = self.clock()
            api_key = await self.gateway.get_api_key(api_key_uid)
            if api_key is None:
                raise NotFound()

            existing, _ = await self._expire_if_due(api_key_uid, now)
            if existing is not None and existing.enabled:
                raise SubscriptionAlreadyActive()

            end_date = add_days(now, duration_days)
            subscription = await self.gateway.put_subscription(api_key_uid, {
                "enabled": True,
                "price": price,
                "currency": currency,
                "status": SubscriptionStatus.ACTIVE,
                "start_date": now,
                "end_date": end_date,
                "renewal_date": end_date if auto_renew else None,
                "auto_renew": auto_renew,
                "duration_days": duration_days,
            })

            # read again after the inline expiry check
            api_key = await self.gateway.get_api_key(api_key_uid)
            reactivated = not api_key.is_active
            if reactivated:
                await self.gateway.put_api_key(api_key_uid, {"is_active": True})

        logger.info(f"Subscription activated for key {api_key_uid} until {end_date.isoformat()}")
        await self.audit.record_payment(subscription, price, self.audit.reference("SUB"))
        await self.audit.log_action("activate_subscription", api_key_uid, {
            "price": price,
            "currency": currency,
            "durationDays": duration_days,
            "autoRenew": auto_renew,
            "endDate": end_date,
            "reactivatedKey": reactivated,
        }, client)
        return subscription

    async def renew(
        self,
        api_key_uid: str,
        duration_days: Optional[int] = None,
        amount: Optional[float] = None,
        reference: Optional[str] = None,
        client: Optional[ClientInfo] = None,
    ) -> Subscription:
        """
        Extend a subscription by ``duration_days``.

        Unexpired time is preserved (new end = end + D); an expired
        subscription restarts from now (new end = now + D).
        """
        duration_days = settings.DEFAULT_SUBSCRIPTION_DAYS if duration_days is None else duration_days
        self._validate_duration(duration_days)
        if amount is not None and amount < 0:
            raise ValidationFailed("Amount must be zero or positive", code="INVALID_AMOUNT")

        async with self.locks.hold(api_key_uid):
            now = self.clock()
            api_key = await self.gateway.get_api_key(api_key_uid)
            if api_key is None:
                raise NotFound()
            current = await self.gateway.get_subscription(api_key_uid)
            if current is None:
                raise SubscriptionNotFound()

            new_end_date = add_days(max(now, current.end_date), duration_days)
            subscription = await self.gateway.put_subscription(api_key_uid, {
                "end_date": new_end_date,
                "renewal_date": new_end_date if current.auto_renew else None,
                "status": SubscriptionStatus.ACTIVE,
            })

            reactivated = not api_key.is_active
            if reactivated:
                await self.gateway.put_api_key(api_key_uid, {"is_active": True})

        reference = reference or self.audit.reference("RENEW")
        logger.info(f"Subscription renewed for key {api_key_uid} until {new_end_date.isoformat()}")
        await self.audit.record_payment(subscription, amount or current.price, reference)
        await self.audit.log_action("renew_subscription", api_key_uid, {
            "durationDays": duration_days,
            "paymentReference": reference,
            "previousEndDate": current.end_date,
            "newEndDate": new_end_date,
            "reactivatedKey": reactivated,
        }, client)
        return subscription

    async def cancel(self, api_key_uid: str, client: Optional[ClientInfo] = None) -> Subscription:
        """
        Turn off auto-renew and mark the subscription cancelled.

        The end date is untouched: the remaining paid time stays usable
        and the subscription lapses naturally at its end date.
        """
        async with self.locks.hold(api_key_uid):
            api_key = await self.gateway.get_api_key(api_key_uid)
            if api_key is None:
                raise NotFound()
            current = await self.gateway.get_subscription(api_key_uid)
            if current is None:
                raise SubscriptionNotFound()
            if not current.enabled:
                raise SubscriptionNotActive()

            subscription = await self.gateway.put_subscription(api_key_uid, {
                "auto_renew": False,
                "status": SubscriptionStatus.CANCELLED,
            })

        logger.info(f"Subscription cancelled for key {api_key_uid}, ends {subscription.end_date.isoformat()}")
        await self.audit.log_action("cancel_subscription", api_key_uid, {
            "endDate": subscription.end_date,
            "previousStatus": current.status,
        }, client)
        return subscription

    async def check_and_expire(self, subscription: Optional[Subscription]) -> Optional[Subscription]:
        """
        Flip an overdue active subscription to expired and switch its key off.

        Idempotent: records that are not enabled, not active, or not past
        their end date come back unchanged.
        """
        if not self.is_due_for_expiry(subscription, self.clock()):
            return subscription

        async with self.locks.hold(subscription.api_key_uid):
            updated, _ = await self._expire_if_due(subscription.api_key_uid, self.clock())
        return updated

    async def expire_overdue(self) -> int:
        """Bulk pass of ``check_and_expire`` over every overdue active subscription"""
        now = self.clock()
        candidates = await self.gateway.list_subscriptions(
            enabled=True, status=SubscriptionStatus.ACTIVE, end_before=now
        )
        if not candidates:
            logger.info("[Subscription Check] No expired subscriptions found")
            return 0

        expired = 0
        for candidate in candidates:
            try:
                async with self.locks.hold(candidate.api_key_uid):
                    _, transitioned = await self._expire_if_due(candidate.api_key_uid, now)
            except LockTimeout:
                logger.warning(f"[Subscription Check] Skipped busy key {candidate.api_key_uid}")
                continue
            if transitioned:
                expired += 1

        logger.info(f"[Subscription Check] Updated {expired} of {len(candidates)} subscriptions to expired")
        return expired

    async def auto_renew_sweep(self) -> int:
        """
        Extend every enabled, active, auto-renewing subscription that ends
        within the renewal window, charging one period each.
        """
        now = self.clock()
        window_end = now + self.auto_renew_window
        candidates = await self.gateway.list_subscriptions(
            enabled=True, status=SubscriptionStatus.ACTIVE, auto_renew=True, end_on_or_before=window_end
        )
        if not candidates:
            logger.info("[Auto Renew] No subscriptions to auto-renew")
            return 0

        renewed = 0
        for candidate in candidates:
            try:
                async with self.locks.hold(candidate.api_key_uid):
                    result = await self._auto_renew_one(candidate.api_key_uid, now, window_end)
            except LockTimeout:
                logger.warning(f"[Auto Renew] Skipped busy key {candidate.api_key_uid}")
                continue
            if result is None:
                continue

            previous, subscription = result
            renewed += 1
            await self.audit.record_payment(
                subscription, subscription.price, self.audit.reference("AUTO-RENEW"), method="auto_renew"
            )
            await self.audit.log_action("subscription_auto_renewed", subscription.api_key_uid, {
                "oldEndDate": previous.end_date,
                "newEndDate": subscription.end_date,
                "amount": subscription.price,
            })

        logger.info(f"[Auto Renew] Auto-renewed {renewed} subscriptions")
        return renewed

    # ==================== INTERNALS ====================

    def renewal_increment(self, subscription: Subscription) -> int:
        if self.auto_renew_days:
            return self.auto_renew_days
        return subscription.duration_days or settings.DEFAULT_SUBSCRIPTION_DAYS

    async def _expire_if_due(
        self, api_key_uid: str, now: datetime
    ) -> Tuple[Optional[Subscription], bool]:
        """Re-read and expire under the caller's lock; returns (record, transitioned)"""
        current = await self.gateway.get_subscription(api_key_uid)
        if not self.is_due_for_expiry(current, now):
            return current, False

        updated = await self.gateway.put_subscription(api_key_uid, {"status": SubscriptionStatus.EXPIRED})
        api_key = await self.gateway.get_api_key(api_key_uid)
        if api_key is not None and api_key.is_active:
            await self.gateway.put_api_key(api_key_uid, {"is_active": False})

        logger.info(f"[Subscription Check] Expired subscription of key {api_key_uid} "
                    f"(ended {current.end_date.isoformat()})")
        await self.audit.log_action("subscription_expired", api_key_uid, {
            "endDate": current.end_date,
            "autoRenew": current.auto_renew,
        })
        return updated, True

    async def _auto_renew_one(
        self, api_key_uid: str, now: datetime, window_end: datetime
    ) -> Optional[Tuple[Subscription, Subscription]]:
        current = await self.gateway.get_subscription(api_key_uid)
        if (
            current is None
            or not current.enabled
            or not current.auto_renew
            or current.status != SubscriptionStatus.ACTIVE
            or current.end_date > window_end
        ):
            return None

        new_end_date = add_days(current.end_date, self.renewal_increment(current))
        updated = await self.gateway.put_subscription(api_key_uid, {
            "end_date": new_end_date,
            "renewal_date": new_end_date,
        })
        logger.info(f"[Auto Renew] Key {api_key_uid} renewed until {new_end_date.isoformat()}")
        return current, updated

    @staticmethod
    def _validate_duration(duration_days: int) -> None:
        if duration_days is None or duration_days <= 0:
            raise ValidationFailed("durationDays must be a positive number of days", code="INVALID_DURATION")

    async def list_expiring(self, days: int, now: Optional[datetime] = None) -> List[Subscription]:
        """Enabled subscriptions ending within ``days`` that have not lapsed yet"""
        now = now or self.clock()
        subscriptions = await self.gateway.list_subscriptions(enabled=True)
        return [s for s in subscriptions if is_near_expiry(s.end_date, now, days)]
