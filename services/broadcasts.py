import asyncio
import logging
from datetime import datetime, timedelta
from typing import Iterable, List, Optional, Tuple

from sqlalchemy import and_, delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from core.clock import to_naive_utc
from core.config import settings
from core.errors import Conflict, NotFound, ValidationFailed
from models.broadcast import Broadcast, BroadcastMessage, BroadcastStatus, BroadcastTarget, MessageStatus
from models.channel import Channel
from models.demo_access import DemoAccess
from models.product import Product
from models.subscription import Subscription, SubscriptionStatus
from models.user import User
from schemas.broadcast import BroadcastAudience, BroadcastCreate, BroadcastFailure, BroadcastStats
from services.telegram_bot import TelegramNotifier

logger = logging.getLogger(__name__)

# Отправить или удалить можно только ещё не начатую рассылку
STARTABLE = (BroadcastStatus.DRAFT, BroadcastStatus.SCHEDULED)
RECENT_FAILURES_LIMIT = 10
DELIVERY_FAILED = "Telegram API error"


def _recipients_query(
    target: BroadcastTarget,
    now: datetime,
    product_id: Optional[str] = None,
    channel_id: Optional[int] = None,
    excluded_user_ids: Iterable[int] = (),
):
    active_subscription = and_(
        Subscription.status == SubscriptionStatus.ACTIVE,
        Subscription.expires_at > now,
    )
    query = select(User)

    if target == BroadcastTarget.ACTIVE_SUBSCRIPTIONS:
        query = query.where(User.telegram_id.in_(select(Subscription.user_id).where(active_subscription)))
    elif target == BroadcastTarget.EXPIRED_SUBSCRIPTIONS:
        # подписка была, но сейчас ни одной действующей
        lapsed = select(Subscription.user_id).where(
            Subscription.status != SubscriptionStatus.REVOKED,
            Subscription.expires_at <= now,
        )
        query = query.where(
            User.telegram_id.in_(lapsed),
            User.telegram_id.not_in(select(Subscription.user_id).where(active_subscription)),
        )
    elif target == BroadcastTarget.TRIAL_USERS:
        query = query.where(
            User.telegram_id.in_(
                select(DemoAccess.user_id).where(
                    DemoAccess.is_active.is_(True),
                    DemoAccess.expires_at > now,
                )
            )
        )
    elif target == BroadcastTarget.PRODUCT_SPECIFIC:
        query = query.where(
            User.telegram_id.in_(
                select(Subscription.user_id).where(active_subscription, Subscription.product_id == product_id)
            )
        )
    elif target == BroadcastTarget.CHANNEL_SPECIFIC:
        query = query.where(
            User.telegram_id.in_(
                select(Subscription.user_id).where(active_subscription, Subscription.channel_id == channel_id)
            )
        )

    excluded = list(excluded_user_ids or ())
    if excluded:
        query = query.where(User.telegram_id.not_in(excluded))
    return query


async def resolve_recipients(db: AsyncSession, broadcast: Broadcast, now: datetime) -> List[int]:
    query = _recipients_query(
        broadcast.target,
        now,
        product_id=broadcast.product_id,
        channel_id=broadcast.channel_id,
        excluded_user_ids=broadcast.excluded_user_ids,
    )
    result = await db.execute(query.with_only_columns(User.telegram_id).order_by(User.telegram_id))
    return list(result.scalars().all())


async def preview_recipients(
    db: AsyncSession, audience: BroadcastAudience, now: datetime, limit: int = 20
) -> Tuple[int, List[User]]:
    """Количество получателей и первые `limit` из них, без создания рассылки."""
    query = _recipients_query(
        audience.target,
        now,
        product_id=audience.product_id,
        channel_id=audience.channel_id,
        excluded_user_ids=audience.excluded_user_ids,
    )
    total = await db.execute(select(func.count()).select_from(query.subquery()))
    sample = await db.execute(query.order_by(User.created_at.desc()).limit(limit))
    return total.scalar_one(), list(sample.scalars().all())


async def _check_filters(db: AsyncSession, payload: BroadcastAudience) -> None:
    if payload.product_id and await db.get(Product, payload.product_id) is None:
        raise NotFound("Product", payload.product_id)
    if payload.channel_id is not None and await db.get(Channel, payload.channel_id) is None:
        raise NotFound("Channel", payload.channel_id)


async def create_broadcast(
    db: AsyncSession, payload: BroadcastCreate, created_by: int
) -> Broadcast:
    await _check_filters(db, payload)
    scheduled_at = to_naive_utc(payload.scheduled_at) if payload.scheduled_at else None
    broadcast = Broadcast(
        title=payload.title,
        message=payload.message,
        target=payload.target,
        product_id=payload.product_id,
        channel_id=payload.channel_id,
        excluded_user_ids=list(payload.excluded_user_ids),
        status=BroadcastStatus.SCHEDULED if scheduled_at else BroadcastStatus.DRAFT,
        scheduled_at=scheduled_at,
        created_by=created_by,
    )
    db.add(broadcast)
    await db.commit()
    logger.info("Created broadcast %s (%s), target %s", broadcast.id, broadcast.status.value, broadcast.target.value)
    return broadcast


async def get_broadcast(db: AsyncSession, broadcast_id: str) -> Broadcast:
    broadcast = await db.get(Broadcast, broadcast_id, populate_existing=True)
    if broadcast is None:
        raise NotFound("Broadcast", broadcast_id)
    return broadcast


async def list_broadcasts(
    db: AsyncSession,
    status: Optional[BroadcastStatus] = None,
    offset: int = 0,
    limit: int = 20,
) -> List[Broadcast]:
    query = select(Broadcast)
    if status is not None:
        query = query.where(Broadcast.status == status)
    result = await db.execute(query.order_by(Broadcast.created_at.desc()).offset(offset).limit(limit))
    return list(result.scalars().all())


async def delete_broadcast(db: AsyncSession, broadcast_id: str) -> None:
    broadcast = await get_broadcast(db, broadcast_id)
    result = await db.execute(
        delete(Broadcast)
        .execution_options(synchronize_session=False)
        .where(Broadcast.id == broadcast_id, Broadcast.status.in_(STARTABLE))
    )
    await db.commit()
    if result.rowcount == 0:
        raise Conflict(f"Broadcast is already {broadcast.status.value}")
    logger.info("Deleted broadcast %s", broadcast_id)


async def start_broadcast(
    db: AsyncSession, broadcast_id: str, now: datetime, require_recipients: bool = True
) -> Broadcast:
    """
    DRAFT/SCHEDULED → SENDING и по записи BroadcastMessage на получателя.
    Переход условный: из двух параллельных запусков проходит один,
    второй получает Conflict. Без получателей рассылка сразу COMPLETED.
    """
    broadcast = await get_broadcast(db, broadcast_id)
    if broadcast.status not in STARTABLE:
        raise Conflict(f"Broadcast is already {broadcast.status.value}")

    recipients = await resolve_recipients(db, broadcast, now)
    if not recipients and require_recipients:
        raise ValidationFailed("No recipients for this broadcast")

    result = await db.execute(
        update(Broadcast)
        .execution_options(synchronize_session=False)
        .where(Broadcast.id == broadcast_id, Broadcast.status.in_(STARTABLE))
        .values(
            status=BroadcastStatus.SENDING if recipients else BroadcastStatus.COMPLETED,
            sent_at=now,
            total_recipients=len(recipients),
        )
    )
    if result.rowcount == 0:
        await db.commit()
        raise Conflict("Broadcast is already being sent")

    db.add_all(
        BroadcastMessage(broadcast_id=broadcast_id, user_id=user_id, status=MessageStatus.PENDING)
        for user_id in recipients
    )
    await db.commit()
    logger.info("Started broadcast %s for %d recipients", broadcast_id, len(recipients))
    return await get_broadcast(db, broadcast_id)


async def _record_delivery(
    db: AsyncSession, message: BroadcastMessage, delivered: bool, now: datetime
) -> None:
    # PENDING → SENT/FAILED ровно один раз, счётчик двигает только победитель
    result = await db.execute(
        update(BroadcastMessage)
        .execution_options(synchronize_session=False)
        .where(BroadcastMessage.id == message.id, BroadcastMessage.status == MessageStatus.PENDING)
        .values(
            status=MessageStatus.SENT if delivered else MessageStatus.FAILED,
            sent_at=now if delivered else None,
            error=None if delivered else DELIVERY_FAILED,
        )
    )
    if result.rowcount:
        counter = Broadcast.sent_count if delivered else Broadcast.failed_count
        await db.execute(
            update(Broadcast)
            .execution_options(synchronize_session=False)
            .where(Broadcast.id == message.broadcast_id)
            .values({counter: counter + 1})
        )
    await db.commit()


async def deliver_broadcast(
    db: AsyncSession,
    notifier: TelegramNotifier,
    broadcast_id: str,
    now: datetime,
    delay: Optional[float] = None,
) -> Broadcast:
    """
    Отправляет все PENDING-сообщения рассылки в статусе SENDING.
    Повторный вызов продолжает с того места, где остановился прошлый.
    """
    delay = settings.BROADCAST_SEND_DELAY_SECONDS if delay is None else delay
    broadcast = await get_broadcast(db, broadcast_id)
    if broadcast.status != BroadcastStatus.SENDING:
        return broadcast

    text = broadcast.message
    result = await db.execute(
        select(BroadcastMessage)
        .where(
            BroadcastMessage.broadcast_id == broadcast_id,
            BroadcastMessage.status == MessageStatus.PENDING,
        )
        .order_by(BroadcastMessage.user_id)
    )
    pending = list(result.scalars().all())

    for message in pending:
        delivered = await notifier.send_message(message.user_id, text)
        await _record_delivery(db, message, delivered, now)
        if delay:
            await asyncio.sleep(delay)

    broadcast = await get_broadcast(db, broadcast_id)
    # FAILED, только если не дошло ни одно сообщение
    final_status = (
        BroadcastStatus.FAILED
        if broadcast.failed_count and not broadcast.sent_count
        else BroadcastStatus.COMPLETED
    )
    await db.execute(
        update(Broadcast)
        .execution_options(synchronize_session=False)
        .where(Broadcast.id == broadcast_id, Broadcast.status == BroadcastStatus.SENDING)
        .values(status=final_status)
    )
    await db.commit()
    broadcast = await get_broadcast(db, broadcast_id)
    logger.info(
        "Broadcast %s finished: %d sent, %d failed",
        broadcast_id, broadcast.sent_count, broadcast.failed_count,
    )
    return broadcast


async def send_due_broadcasts(
    db: AsyncSession,
    notifier: TelegramNotifier,
    now: datetime,
    resume_after: timedelta = timedelta(minutes=10),
    delay: Optional[float] = None,
) -> int:
    """
    Запускает запланированные рассылки, чьё время наступило, и дожимает
    зависшие в SENDING дольше `resume_after`. Возвращает число обработанных.
    """
    due = await db.execute(
        select(Broadcast.id).where(
            Broadcast.status == BroadcastStatus.SCHEDULED,
            Broadcast.scheduled_at <= now,
        )
    )
    stalled = await db.execute(
        select(Broadcast.id).where(
            Broadcast.status == BroadcastStatus.SENDING,
            Broadcast.sent_at <= now - resume_after,
        )
    )
    processed = 0
    for broadcast_id in due.scalars().all():
        try:
            await start_broadcast(db, broadcast_id, now, require_recipients=False)
        except Conflict:
            # уже запущена вручную или другим процессом
            continue
        await deliver_broadcast(db, notifier, broadcast_id, now, delay=delay)
        processed += 1
    for broadcast_id in stalled.scalars().all():
        logger.warning("Resuming stalled broadcast %s", broadcast_id)
        await deliver_broadcast(db, notifier, broadcast_id, now, delay=delay)
        processed += 1
    return processed


async def broadcast_stats(db: AsyncSession, broadcast_id: str) -> BroadcastStats:
    broadcast = await get_broadcast(db, broadcast_id)
    grouped = await db.execute(
        select(BroadcastMessage.status, func.count())
        .where(BroadcastMessage.broadcast_id == broadcast_id)
        .group_by(BroadcastMessage.status)
    )
    by_status = {status: 0 for status in MessageStatus}
    for status, count in grouped.all():
        by_status[status] = count

    failures = await db.execute(
        select(BroadcastMessage)
        .where(
            BroadcastMessage.broadcast_id == broadcast_id,
            BroadcastMessage.status == MessageStatus.FAILED,
        )
        .order_by(BroadcastMessage.created_at.desc())
        .limit(RECENT_FAILURES_LIMIT)
    )

    done = broadcast.sent_count + broadcast.failed_count
    progress = round(done * 100 / broadcast.total_recipients) if broadcast.total_recipients else 0
    return BroadcastStats(
        broadcast_id=broadcast.id,
        status=broadcast.status,
        total_recipients=broadcast.total_recipients,
        sent_count=broadcast.sent_count,
        failed_count=broadcast.failed_count,
        pending_count=by_status[MessageStatus.PENDING],
        by_status=by_status,
        progress_percentage=progress,
        recent_failures=[BroadcastFailure.model_validate(m) for m in failures.scalars().all()],
        created_at=broadcast.created_at,
        scheduled_at=broadcast.scheduled_at,
        sent_at=broadcast.sent_at,
    )
