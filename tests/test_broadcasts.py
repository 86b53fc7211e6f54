import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from pydantic import ValidationError
from sqlalchemy import select

from core.errors import Conflict, NotFound, ValidationFailed
from models.broadcast import BroadcastMessage, BroadcastStatus, BroadcastTarget, MessageStatus
from models.user import User
from schemas.broadcast import BroadcastAudience, BroadcastCreate
from services.broadcasts import (
    broadcast_stats,
    create_broadcast,
    delete_broadcast,
    deliver_broadcast,
    get_broadcast,
    list_broadcasts,
    preview_recipients,
    send_due_broadcasts,
    start_broadcast,
)
from services.demo_access import request_demo
from services.payments import confirm_payment, create_pending_payment
from services.stats import collect_admin_stats
from services.subscriptions import grant_subscription
from services.sweeper import run_sweep

NOW = datetime(2026, 1, 1, 12, 0, 0)


async def _populate(db, user, product):
    """alice с подпиской, bob с истёкшей, carol с демо, dave без всего."""
    for telegram_id, name in ((1002, "Bob"), (1003, "Carol"), (1004, "Dave")):
        db.add(User(telegram_id=telegram_id, first_name=name))
    await db.commit()
    await grant_subscription(db, user.telegram_id, product.id, NOW, days=30)
    await grant_subscription(db, 1002, product.id, NOW - timedelta(days=40), days=30)
    await request_demo(db, 1003, product.id, NOW)


def _payload(**overrides) -> BroadcastCreate:
    data = {"title": "News", "message": "<b>Hello</b>", "target": BroadcastTarget.ALL_USERS}
    data.update(overrides)
    return BroadcastCreate(**data)


@pytest.mark.parametrize(
    "audience,expected",
    [
        ({"target": BroadcastTarget.ALL_USERS}, {1001, 1002, 1003, 1004}),
        ({"target": BroadcastTarget.ACTIVE_SUBSCRIPTIONS}, {1001}),
        ({"target": BroadcastTarget.EXPIRED_SUBSCRIPTIONS}, {1002}),
        ({"target": BroadcastTarget.TRIAL_USERS}, {1003}),
        ({"target": BroadcastTarget.CHANNEL_SPECIFIC, "channel_id": -1001234567890}, {1001}),
        ({"target": BroadcastTarget.ALL_USERS, "excluded_user_ids": [1002, "1004"]}, {1001, 1003}),
    ],
)
async def test_recipients_by_target(db, user, product, audience, expected):
    await _populate(db, user, product)

    total, users = await preview_recipients(db, BroadcastAudience(**audience), NOW, limit=10)

    assert total == len(expected)
    assert {u.telegram_id for u in users} == expected


async def test_product_target_skips_other_products(db, user, product, no_demo_product):
    await _populate(db, user, product)
    await grant_subscription(db, 1004, no_demo_product.id, NOW)

    audience = BroadcastAudience(target=BroadcastTarget.PRODUCT_SPECIFIC, product_id=no_demo_product.id)
    total, users = await preview_recipients(db, audience, NOW)

    assert total == 1
    assert [u.telegram_id for u in users] == [1004]


def test_specific_targets_require_filter():
    with pytest.raises(ValidationError):
        BroadcastAudience(target=BroadcastTarget.PRODUCT_SPECIFIC)
    with pytest.raises(ValidationError):
        BroadcastAudience(target=BroadcastTarget.CHANNEL_SPECIFIC)
    with pytest.raises(ValidationError):
        _payload(message="")


async def test_create_draft_and_scheduled(db, user, product):
    draft = await create_broadcast(db, _payload(), user.telegram_id)
    at = datetime(2026, 1, 2, 15, 0, tzinfo=timezone(timedelta(hours=3)))
    scheduled = await create_broadcast(db, _payload(scheduled_at=at), user.telegram_id)

    assert draft.id.startswith("bc_")
    assert draft.status == BroadcastStatus.DRAFT
    assert scheduled.status == BroadcastStatus.SCHEDULED
    assert scheduled.scheduled_at == datetime(2026, 1, 2, 12, 0)
    assert [b.id for b in await list_broadcasts(db, BroadcastStatus.SCHEDULED)] == [scheduled.id]

    with pytest.raises(NotFound):
        await create_broadcast(
            db,
            _payload(target=BroadcastTarget.PRODUCT_SPECIFIC, product_id="prd_missing"),
            user.telegram_id,
        )


async def test_send_counts_delivered_and_failed(db, notifier, user, product):
    await _populate(db, user, product)
    notifier.failing_chats.add(1003)
    broadcast = await create_broadcast(db, _payload(), user.telegram_id)

    started = await start_broadcast(db, broadcast.id, NOW)
    assert started.status == BroadcastStatus.SENDING
    assert started.total_recipients == 4

    done = await deliver_broadcast(db, notifier, broadcast.id, NOW, delay=0)

    assert done.status == BroadcastStatus.COMPLETED
    assert (done.sent_count, done.failed_count) == (3, 1)
    assert notifier.names().count("send_message") == 4
    assert ("send_message", (1001, "<b>Hello</b>")) in notifier.calls

    stats = await broadcast_stats(db, broadcast.id)
    assert stats.pending_count == 0
    assert stats.progress_percentage == 100
    assert stats.by_status[MessageStatus.SENT] == 3
    assert [f.user_id for f in stats.recent_failures] == [1003]

    # повторная доставка ничего не отправляет
    again = await deliver_broadcast(db, notifier, broadcast.id, NOW, delay=0)
    assert again.sent_count == 3
    assert notifier.names().count("send_message") == 4


async def test_broadcast_fails_when_nothing_delivered(db, notifier, user):
    notifier.failing_chats.add(user.telegram_id)
    broadcast = await create_broadcast(db, _payload(), user.telegram_id)

    await start_broadcast(db, broadcast.id, NOW)
    done = await deliver_broadcast(db, notifier, broadcast.id, NOW, delay=0)

    assert done.status == BroadcastStatus.FAILED
    assert done.failed_count == 1


async def test_start_only_once(db, notifier, user):
    broadcast = await create_broadcast(db, _payload(), user.telegram_id)
    await start_broadcast(db, broadcast.id, NOW)

    with pytest.raises(Conflict):
        await start_broadcast(db, broadcast.id, NOW)
    with pytest.raises(Conflict):
        await delete_broadcast(db, broadcast.id)


async def test_concurrent_start_enqueues_once(session_factory, db, user, product):
    await _populate(db, user, product)
    broadcast = await create_broadcast(db, _payload(), user.telegram_id)

    async def attempt():
        async with session_factory() as session:
            try:
                await start_broadcast(session, broadcast.id, NOW)
                return True
            except Conflict:
                return False

    results = await asyncio.gather(*(attempt() for _ in range(4)))

    assert results.count(True) == 1
    async with session_factory() as session:
        messages = await session.execute(
            select(BroadcastMessage).where(BroadcastMessage.broadcast_id == broadcast.id)
        )
        assert len(messages.scalars().all()) == 4


async def test_manual_start_requires_recipients(db, user, product):
    broadcast = await create_broadcast(
        db, _payload(target=BroadcastTarget.TRIAL_USERS), user.telegram_id
    )

    with pytest.raises(ValidationFailed):
        await start_broadcast(db, broadcast.id, NOW)
    assert (await get_broadcast(db, broadcast.id)).status == BroadcastStatus.DRAFT


async def test_delete_draft(db, user):
    broadcast = await create_broadcast(db, _payload(), user.telegram_id)

    await delete_broadcast(db, broadcast.id)

    with pytest.raises(NotFound):
        await get_broadcast(db, broadcast.id)


async def test_due_scheduled_broadcasts_are_sent_once(db, notifier, user, product):
    await _populate(db, user, product)
    due = await create_broadcast(db, _payload(scheduled_at=NOW - timedelta(minutes=1)), user.telegram_id)
    later = await create_broadcast(db, _payload(scheduled_at=NOW + timedelta(hours=1)), user.telegram_id)
    empty = await create_broadcast(
        db,
        _payload(target=BroadcastTarget.ALL_USERS, excluded_user_ids=[1001, 1002, 1003, 1004],
                 scheduled_at=NOW - timedelta(minutes=1)),
        user.telegram_id,
    )

    assert await send_due_broadcasts(db, notifier, NOW, delay=0) == 2
    assert await send_due_broadcasts(db, notifier, NOW, delay=0) == 0

    assert (await get_broadcast(db, due.id)).sent_count == 4
    assert (await get_broadcast(db, later.id)).status == BroadcastStatus.SCHEDULED
    finished_empty = await get_broadcast(db, empty.id)
    assert finished_empty.status == BroadcastStatus.COMPLETED
    assert finished_empty.total_recipients == 0


async def test_stalled_sending_broadcast_is_resumed(db, notifier, user):
    broadcast = await create_broadcast(db, _payload(), user.telegram_id)
    await start_broadcast(db, broadcast.id, NOW)

    assert await send_due_broadcasts(db, notifier, NOW + timedelta(minutes=1), delay=0) == 0
    assert await send_due_broadcasts(db, notifier, NOW + timedelta(minutes=15), delay=0) == 1

    assert (await get_broadcast(db, broadcast.id)).status == BroadcastStatus.COMPLETED


async def test_sweep_sends_scheduled_broadcasts(db, notifier, user):
    await create_broadcast(db, _payload(scheduled_at=NOW), user.telegram_id)

    report = await run_sweep(db, notifier, NOW + timedelta(minutes=5))

    assert report.broadcasts_sent == 1
    assert ("send_message", (user.telegram_id, "<b>Hello</b>")) in notifier.calls


async def test_admin_stats(db, user, product):
    await _populate(db, user, product)
    payment = await create_pending_payment(db, user.telegram_id, product.id)
    await confirm_payment(db, payment.id, "tx-1", NOW)
    await create_pending_payment(db, 1004, product.id)

    stats = await collect_admin_stats(db, NOW + timedelta(hours=1))

    assert stats.total_users == 4
    # ручная подписка alice и оплаченная
    assert stats.active_subscriptions == 2
    assert stats.active_demos == 1
    assert stats.total_products == 1
    assert stats.pending_payments == 1
    assert stats.total_revenue == Decimal("10.00")
