"""Test cases for the subscription lifecycle engine"""
import asyncio
from datetime import datetime, timedelta

import pytest

from keyhub.models.domain import KeyType, Subscription, SubscriptionState, SubscriptionStatus
from keyhub.services.lifecycle import SubscriptionLifecycleEngine
from keyhub.utils.exceptions import (
    NotFound,
    SubscriptionAlreadyActive,
    SubscriptionNotActive,
    SubscriptionNotFound,
    ValidationFailed,
)


def _subscription(**overrides):
    values = dict(
        api_key_uid="uid-1",
        enabled=True,
        status=SubscriptionStatus.ACTIVE,
        price=50,
        start_date=datetime(2024, 1, 1),
        end_date=datetime(2024, 1, 31),
    )
    values.update(overrides)
    return Subscription(**values)


# ==================== EVALUATION ====================

def test_evaluate_without_subscription_is_valid(services):
    """Test evaluate without subscription is valid"""
    view = services.lifecycle.evaluate(None, datetime(2024, 1, 1))
    assert view.state == SubscriptionState.NO_SUBSCRIPTION
    assert view.is_valid

    disabled = services.lifecycle.evaluate(_subscription(enabled=False), datetime(2030, 1, 1))
    assert disabled.state == SubscriptionState.NO_SUBSCRIPTION
    assert disabled.is_valid


def test_evaluate_states_over_time(services):
    """Test evaluate states over time"""
    engine = services.lifecycle
    subscription = _subscription()

    assert engine.evaluate(subscription, datetime(2024, 1, 10)).state == SubscriptionState.ACTIVE
    expiring = engine.evaluate(subscription, datetime(2024, 1, 30))
    assert expiring.state == SubscriptionState.EXPIRING
    assert expiring.is_valid
    assert expiring.days_remaining == 1

    expired = engine.evaluate(subscription, datetime(2024, 2, 1))
    assert expired.state == SubscriptionState.EXPIRED
    assert not expired.is_valid
    assert expired.days_remaining == 0


def test_evaluate_boundary_is_exclusive(services):
    """Test evaluate boundary is exclusive"""
    subscription = _subscription()
    at_end = services.lifecycle.evaluate(subscription, datetime(2024, 1, 31))
    assert at_end.is_valid

    just_after = services.lifecycle.evaluate(subscription, datetime(2024, 1, 31, 0, 0, 1))
    assert not just_after.is_valid


def test_evaluate_expiring_threshold_is_caller_supplied(services):
    """Test evaluate expiring threshold is caller supplied"""
    subscription = _subscription()
    now = datetime(2024, 1, 20)
    assert services.lifecycle.evaluate(subscription, now).state == SubscriptionState.ACTIVE
    assert services.lifecycle.evaluate(subscription, now, expiring_days=14).state == SubscriptionState.EXPIRING


def test_evaluate_cancelled_valid_until_end(services):
    """Test evaluate cancelled valid until end"""
    cancelled = _subscription(status=SubscriptionStatus.CANCELLED, auto_renew=False)
    assert services.lifecycle.evaluate(cancelled, datetime(2024, 1, 15)).state == SubscriptionState.CANCELLED
    assert services.lifecycle.evaluate(cancelled, datetime(2024, 1, 15)).is_valid
    assert services.lifecycle.evaluate(cancelled, datetime(2024, 2, 1)).state == SubscriptionState.EXPIRED


def test_evaluate_stored_expired_is_invalid(services):
    """Test evaluate stored expired is invalid"""
    view = services.lifecycle.evaluate(_subscription(status=SubscriptionStatus.EXPIRED), datetime(2024, 1, 15))
    assert view.state == SubscriptionState.EXPIRED
    assert not view.is_valid


# ==================== ACTIVATE ====================

@pytest.mark.asyncio
async def test_activate_sets_period_and_records_payment(services, make_key, clock):
    """Test activate sets period and records payment"""
    key = await make_key(key_type=KeyType.NORMAL)
    subscription = await services.lifecycle.activate(key.uid, price=50, duration_days=30, auto_renew=True)

    assert subscription.start_date == datetime(2024, 1, 1)
    assert subscription.end_date == datetime(2024, 1, 31)
    assert subscription.renewal_date == datetime(2024, 1, 31)
    assert subscription.status == SubscriptionStatus.ACTIVE
    assert subscription.currency == "BRL"

    payments = await services.gateway.list_payments(subscription_id=subscription.id)
    assert len(payments) == 1
    assert payments[0].amount == 50
    assert payments[0].reference.startswith("SUB-")

    actions = [entry.action for entry in await services.gateway.list_audit(key.uid)]
    assert "activate_subscription" in actions


@pytest.mark.asyncio
async def test_activate_twice_fails(services, make_key):
    """Test activate twice fails"""
    key = await make_key()
    await services.lifecycle.activate(key.uid, price=50, duration_days=30)
    with pytest.raises(SubscriptionAlreadyActive):
        await services.lifecycle.activate(key.uid, price=50, duration_days=30)


@pytest.mark.asyncio
async def test_activate_over_cancelled_record_fails(services, make_key, clock):
    """Test activate over cancelled record fails"""
    key = await make_key()
    first = await services.lifecycle.activate(key.uid, price=50, duration_days=30)
    await services.lifecycle.cancel(key.uid)

    clock.advance(days=5)
    with pytest.raises(SubscriptionAlreadyActive):
        await services.lifecycle.activate(key.uid, price=80, duration_days=10)

    stored = await services.gateway.get_subscription(key.uid)
    assert stored.status == SubscriptionStatus.CANCELLED
    assert stored.end_date == first.end_date


@pytest.mark.asyncio
async def test_activate_reuses_disabled_record(services, make_key, clock):
    """Test activate reuses disabled record"""
    key = await make_key()
    first = await services.lifecycle.activate(key.uid, price=50, duration_days=30)
    await services.gateway.put_subscription(key.uid, {"enabled": False})

    clock.advance(days=5)
    second = await services.lifecycle.activate(key.uid, price=80, duration_days=10)
    assert second.id == first.id
    assert second.enabled
    assert second.price == 80
    assert second.status == SubscriptionStatus.ACTIVE
    assert second.end_date == clock() + timedelta(days=10)


@pytest.mark.asyncio
async def test_activate_over_overdue_record_expires_it_and_fails(services, make_key, clock):
    """Test activate over overdue record expires it and fails"""
    key = await make_key()
    await services.lifecycle.activate(key.uid, price=50, duration_days=30)

    clock.set(datetime(2024, 3, 1))
    with pytest.raises(SubscriptionAlreadyActive):
        await services.lifecycle.activate(key.uid, price=50, duration_days=30)
    assert (await services.gateway.get_subscription(key.uid)).status == SubscriptionStatus.EXPIRED
    assert not (await services.gateway.get_api_key(key.uid)).is_active

    renewed = await services.lifecycle.renew(key.uid, duration_days=30)
    assert renewed.end_date == datetime(2024, 3, 31)
    assert (await services.gateway.get_api_key(key.uid)).is_active


@pytest.mark.asyncio
async def test_activate_switches_key_back_on_after_expiry(services, make_key, clock):
    """Test activate switches key back on after expiry"""
    key = await make_key()
    await services.lifecycle.activate(key.uid, price=50, duration_days=30)
    clock.set(datetime(2024, 3, 1))
    await services.lifecycle.expire_overdue()
    await services.gateway.put_subscription(key.uid, {"enabled": False})
    assert not (await services.gateway.get_api_key(key.uid)).is_active

    subscription = await services.lifecycle.activate(key.uid, price=50, duration_days=30)
    assert subscription.status == SubscriptionStatus.ACTIVE
    assert (await services.gateway.get_api_key(key.uid)).is_active

    audit = await services.gateway.list_audit(key.uid)
    activations = [entry for entry in audit if entry.action == "activate_subscription"]
    assert any(entry.details["reactivatedKey"] for entry in activations)


@pytest.mark.asyncio
async def test_activate_reactivates_inactive_key(services, make_key):
    """Test activate reactivates inactive key"""
    key = await make_key(is_active=False)
    await services.lifecycle.activate(key.uid, price=50, duration_days=30)
    assert (await services.gateway.get_api_key(key.uid)).is_active


@pytest.mark.asyncio
async def test_activate_validates_input(services, make_key):
    """Test activate validates input"""
    key = await make_key()
    with pytest.raises(NotFound):
        await services.lifecycle.activate("missing", price=50, duration_days=30)
    with pytest.raises(ValidationFailed):
        await services.lifecycle.activate(key.uid, price=50, duration_days=0)
    with pytest.raises(ValidationFailed):
        await services.lifecycle.activate(key.uid, price=-1, duration_days=30)


# ==================== RENEW ====================

@pytest.mark.asyncio
async def test_renew_unexpired_extends_from_end_date(services, make_key, clock):
    """Test renew unexpired extends from end date"""
    key = await make_key()
    original = await services.lifecycle.activate(key.uid, price=50, duration_days=30)

    clock.set(datetime(2024, 1, 10))
    renewed = await services.lifecycle.renew(key.uid, duration_days=30)
    assert renewed.end_date == original.end_date + timedelta(days=30)
    assert renewed.end_date != clock() + timedelta(days=30)


@pytest.mark.asyncio
async def test_renew_expired_restarts_from_now(services, make_key, clock):
    """Test renew expired restarts from now"""
    key = await make_key()
    await services.lifecycle.activate(key.uid, price=50, duration_days=30)

    clock.set(datetime(2024, 2, 10))
    await services.lifecycle.expire_overdue()
    assert not (await services.gateway.get_api_key(key.uid)).is_active

    renewed = await services.lifecycle.renew(key.uid, duration_days=30)
    assert renewed.end_date == datetime(2024, 3, 11)
    assert renewed.status == SubscriptionStatus.ACTIVE
    assert (await services.gateway.get_api_key(key.uid)).is_active


@pytest.mark.asyncio
async def test_renew_records_payment_with_reference(services, make_key):
    """Test renew records payment with reference"""
    key = await make_key()
    subscription = await services.lifecycle.activate(key.uid, price=50, duration_days=30)
    await services.lifecycle.renew(key.uid, duration_days=30, amount=45, reference="PIX-123")

    payments = await services.gateway.list_payments(subscription_id=subscription.id)
    assert {(p.reference, p.amount) for p in payments} >= {("PIX-123", 45)}


@pytest.mark.asyncio
async def test_renew_zero_amount_records_subscription_price(services, make_key):
    """Test renew zero amount records subscription price"""
    key = await make_key()
    subscription = await services.lifecycle.activate(key.uid, price=50, duration_days=30)
    await services.lifecycle.renew(key.uid, duration_days=30, amount=0, reference="FREE-1")

    payments = await services.gateway.list_payments(subscription_id=subscription.id)
    assert {(p.reference, p.amount) for p in payments} >= {("FREE-1", 50)}


@pytest.mark.asyncio
async def test_concurrent_renewals_both_extend(services, make_key, clock):
    """Test concurrent renewals both extend"""
    key = await make_key()
    original = await services.lifecycle.activate(key.uid, price=50, duration_days=30)

    clock.set(datetime(2024, 1, 10))
    await asyncio.gather(
        services.lifecycle.renew(key.uid, duration_days=10),
        services.lifecycle.renew(key.uid, duration_days=10),
    )
    stored = await services.gateway.get_subscription(key.uid)
    assert stored.end_date == original.end_date + timedelta(days=20)
    assert len(await services.gateway.list_payments(subscription_id=original.id)) == 3


@pytest.mark.asyncio
async def test_renew_without_subscription_fails(services, make_key):
    """Test renew without subscription fails"""
    key = await make_key()
    with pytest.raises(SubscriptionNotFound):
        await services.lifecycle.renew(key.uid, duration_days=30)
    with pytest.raises(NotFound):
        await services.lifecycle.renew("missing", duration_days=30)


# ==================== CANCEL ====================

@pytest.mark.asyncio
async def test_cancel_keeps_end_date(services, make_key, clock):
    """Test cancel keeps end date"""
    key = await make_key()
    original = await services.lifecycle.activate(key.uid, price=50, duration_days=30, auto_renew=True)

    cancelled = await services.lifecycle.cancel(key.uid)
    assert cancelled.end_date == original.end_date
    assert cancelled.status == SubscriptionStatus.CANCELLED
    assert cancelled.auto_renew is False
    assert (await services.gateway.get_api_key(key.uid)).is_active

    clock.set(datetime(2024, 1, 31))
    assert services.lifecycle.evaluate(cancelled).is_valid
    clock.advance(seconds=1)
    assert services.lifecycle.evaluate(cancelled).state == SubscriptionState.EXPIRED


@pytest.mark.asyncio
async def test_cancel_without_enabled_subscription_fails(services, make_key):
    """Test cancel without enabled subscription fails"""
    key = await make_key()
    with pytest.raises(SubscriptionNotFound):
        await services.lifecycle.cancel(key.uid)

    await services.lifecycle.activate(key.uid, price=50, duration_days=30)
    await services.gateway.put_subscription(key.uid, {"enabled": False})
    with pytest.raises(SubscriptionNotActive):
        await services.lifecycle.cancel(key.uid)


# ==================== EXPIRY ====================

@pytest.mark.asyncio
async def test_check_and_expire_is_idempotent(services, make_key, clock):
    """Test check and expire is idempotent"""
    key = await make_key()
    subscription = await services.lifecycle.activate(key.uid, price=50, duration_days=30)

    clock.set(datetime(2024, 2, 1))
    once = await services.lifecycle.check_and_expire(subscription)
    twice = await services.lifecycle.check_and_expire(once)
    again_from_stale = await services.lifecycle.check_and_expire(subscription)

    assert once.status == SubscriptionStatus.EXPIRED
    assert twice.status == once.status == again_from_stale.status
    assert twice.end_date == once.end_date
    assert not (await services.gateway.get_api_key(key.uid)).is_active

    actions = [entry.action for entry in await services.gateway.list_audit(key.uid)]
    assert actions.count("subscription_expired") == 1


@pytest.mark.asyncio
async def test_check_and_expire_leaves_valid_records(services, make_key, clock):
    """Test check and expire leaves valid records"""
    key = await make_key()
    subscription = await services.lifecycle.activate(key.uid, price=50, duration_days=30)

    clock.set(datetime(2024, 1, 31))
    result = await services.lifecycle.check_and_expire(subscription)
    assert result.status == SubscriptionStatus.ACTIVE
    assert (await services.gateway.get_api_key(key.uid)).is_active


@pytest.mark.asyncio
async def test_cancelled_subscription_is_not_flipped(services, make_key, clock):
    """Test cancelled subscription is not flipped"""
    key = await make_key()
    await services.lifecycle.activate(key.uid, price=50, duration_days=30)
    cancelled = await services.lifecycle.cancel(key.uid)

    clock.set(datetime(2024, 3, 1))
    result = await services.lifecycle.check_and_expire(cancelled)
    assert result.status == SubscriptionStatus.CANCELLED
    assert not services.lifecycle.evaluate(result).is_valid


@pytest.mark.asyncio
async def test_expire_overdue_counts_transitions(services, make_key, clock):
    """Test expire overdue counts transitions"""
    short = await make_key("Short")
    long = await make_key("Long")
    await services.lifecycle.activate(short.uid, price=10, duration_days=5)
    await services.lifecycle.activate(long.uid, price=10, duration_days=60)

    clock.set(datetime(2024, 1, 10))
    assert await services.lifecycle.expire_overdue() == 1
    assert await services.lifecycle.expire_overdue() == 0
    assert (await services.gateway.get_subscription(long.uid)).status == SubscriptionStatus.ACTIVE


# ==================== AUTO-RENEW ====================

@pytest.mark.asyncio
async def test_auto_renew_within_window(services, make_key, clock):
    """Test auto renew within window"""
    key = await make_key()
    await services.lifecycle.activate(key.uid, price=50, duration_days=30, auto_renew=True)

    clock.set(datetime(2024, 1, 30, 12, 0))
    assert await services.lifecycle.auto_renew_sweep() == 1

    subscription = await services.gateway.get_subscription(key.uid)
    assert subscription.end_date == datetime(2024, 3, 1)
    assert subscription.renewal_date == datetime(2024, 3, 1)

    payments = await services.gateway.list_payments(subscription_id=subscription.id)
    auto = [p for p in payments if p.method == "auto_renew"]
    assert len(auto) == 1
    assert auto[0].reference.startswith("AUTO-RENEW-")

    assert await services.lifecycle.auto_renew_sweep() == 0


@pytest.mark.asyncio
async def test_auto_renew_skips_outside_window_and_opted_out(services, make_key, clock):
    """Test auto renew skips outside window and opted out"""
    manual = await make_key("Manual")
    later = await make_key("Later")
    await services.lifecycle.activate(manual.uid, price=50, duration_days=30, auto_renew=False)
    await services.lifecycle.activate(later.uid, price=50, duration_days=60, auto_renew=True)

    clock.set(datetime(2024, 1, 30, 12, 0))
    assert await services.lifecycle.auto_renew_sweep() == 0


@pytest.mark.asyncio
async def test_auto_renew_increment_defaults_to_duration(services, make_key, clock):
    """Test auto renew increment defaults to duration"""
    key = await make_key()
    await services.lifecycle.activate(key.uid, price=50, duration_days=7, auto_renew=True)

    clock.set(datetime(2024, 1, 7, 12, 0))
    await services.lifecycle.auto_renew_sweep()
    assert (await services.gateway.get_subscription(key.uid)).end_date == datetime(2024, 1, 15)


@pytest.mark.asyncio
async def test_auto_renew_increment_is_configurable(services, make_key, clock):
    """Test auto renew increment is configurable"""
    engine = SubscriptionLifecycleEngine(
        services.gateway, services.locks, services.audit, clock=clock, auto_renew_days=10
    )
    key = await make_key()
    await engine.activate(key.uid, price=50, duration_days=30, auto_renew=True)

    clock.set(datetime(2024, 1, 30, 12, 0))
    assert await engine.auto_renew_sweep() == 1
    assert (await services.gateway.get_subscription(key.uid)).end_date == datetime(2024, 2, 10)


@pytest.mark.asyncio
async def test_list_expiring(services, make_key, clock):
    """Test list expiring"""
    soon = await make_key("Soon")
    later = await make_key("Later")
    await services.lifecycle.activate(soon.uid, price=10, duration_days=3)
    await services.lifecycle.activate(later.uid, price=10, duration_days=40)

    expiring = await services.lifecycle.list_expiring(days=7)
    assert [s.api_key_uid for s in expiring] == [soon.uid]
