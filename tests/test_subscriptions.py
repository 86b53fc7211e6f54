from datetime import datetime, timedelta

import pytest

from core.errors import Conflict, NotFound, ValidationFailed
from models.subscription import SubscriptionStatus
from services.payments import confirm_payment, create_pending_payment
from services.subscriptions import (
    grant_subscription,
    has_active_subscription,
    list_active_subscriptions,
    list_user_subscriptions,
    revoke_subscription,
    sweep_expired_subscriptions,
)

NOW = datetime(2026, 1, 1, 12, 0, 0)


async def test_paid_subscription_lasts_exactly_one_period(db, user, product):
    payment = await create_pending_payment(db, user.telegram_id, product.id)
    _, subscription, created = await confirm_payment(db, payment.id, "tx-1", NOW)

    assert created is True
    assert subscription.payment_id == payment.id
    assert subscription.channel_id == product.channel_id
    assert subscription.expires_at == NOW + timedelta(days=30)

    day_29 = NOW + timedelta(days=29)
    day_31 = NOW + timedelta(days=31)
    assert subscription.is_effectively_active(day_29) is True
    assert subscription.is_effectively_active(day_31) is False
    assert [s.id for s in await list_active_subscriptions(db, user.telegram_id, day_29)] == [subscription.id]
    assert await list_active_subscriptions(db, user.telegram_id, day_31) == []


async def test_expired_subscription_is_not_active_before_sweep(db, user, product):
    subscription = await grant_subscription(db, user.telegram_id, product.id, NOW, days=1)
    later = NOW + timedelta(days=2)

    # статус ещё active, но срок вышел
    assert subscription.status == SubscriptionStatus.ACTIVE
    assert await has_active_subscription(db, user.telegram_id, product.id, later) is False
    assert await list_active_subscriptions(db, user.telegram_id, later) == []


async def test_active_list_is_newest_first(db, user, product):
    first = await grant_subscription(db, user.telegram_id, product.id, NOW, days=10)
    second = await grant_subscription(db, user.telegram_id, product.id, NOW + timedelta(seconds=1), days=10)
    second.created_at = first.created_at + timedelta(seconds=5)
    await db.commit()

    active = await list_active_subscriptions(db, user.telegram_id, NOW + timedelta(days=1))

    assert [s.id for s in active] == [second.id, first.id]


async def test_grant_with_explicit_expiry(db, user, product):
    expires_at = NOW + timedelta(days=3)
    subscription = await grant_subscription(db, user.telegram_id, product.id, NOW, expires_at=expires_at)

    assert subscription.expires_at == expires_at
    assert subscription.payment_id is None


async def test_grant_rejects_past_expiry(db, user, product):
    with pytest.raises(ValidationFailed):
        await grant_subscription(db, user.telegram_id, product.id, NOW, expires_at=NOW - timedelta(days=1))


async def test_grant_days_override_period(db, user, product):
    short = await grant_subscription(db, user.telegram_id, product.id, NOW, days=2)
    default = await grant_subscription(db, user.telegram_id, product.id, NOW)

    assert short.expires_at == NOW + timedelta(days=2)
    assert default.expires_at == NOW + timedelta(days=30)
    with pytest.raises(ValidationFailed):
        await grant_subscription(db, user.telegram_id, product.id, NOW, days=0)


async def test_grant_requires_existing_product_and_user(db, user, product):
    with pytest.raises(NotFound):
        await grant_subscription(db, user.telegram_id, "prd_missing", NOW)
    with pytest.raises(NotFound):
        await grant_subscription(db, 777, product.id, NOW)


async def test_revoke_subscription(db, user, product):
    subscription = await grant_subscription(db, user.telegram_id, product.id, NOW)

    revoked = await revoke_subscription(db, subscription.id)

    assert revoked.status == SubscriptionStatus.REVOKED
    assert await has_active_subscription(db, user.telegram_id, product.id, NOW + timedelta(days=1)) is False
    with pytest.raises(Conflict):
        await revoke_subscription(db, subscription.id)
    with pytest.raises(NotFound):
        await revoke_subscription(db, "sub_missing")


async def test_sweep_marks_expired_once(db, user, product):
    short = await grant_subscription(db, user.telegram_id, product.id, NOW, days=1)
    long = await grant_subscription(db, user.telegram_id, product.id, NOW, days=60)
    later = NOW + timedelta(days=2)

    swept = await sweep_expired_subscriptions(db, later)

    assert [s.id for s in swept] == [short.id]
    assert swept[0].status == SubscriptionStatus.EXPIRED
    assert await sweep_expired_subscriptions(db, later) == []

    statuses = {s.id: s.status for s in await list_user_subscriptions(db, user.telegram_id)}
    assert statuses == {short.id: SubscriptionStatus.EXPIRED, long.id: SubscriptionStatus.ACTIVE}


async def test_sweep_ignores_revoked(db, user, product):
    subscription = await grant_subscription(db, user.telegram_id, product.id, NOW, days=1)
    await revoke_subscription(db, subscription.id)

    assert await sweep_expired_subscriptions(db, NOW + timedelta(days=2)) == []
