import logging
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from core.clock import to_naive_utc
from core.errors import Conflict, NotFound, ValidationFailed
from models.payment import Payment
from models.product import Product
from models.subscription import Subscription, SubscriptionStatus
from models.user import User

logger = logging.getLogger(__name__)


def is_effectively_active(subscription: Subscription, now: datetime) -> bool:
    """Метка status сама по себе ничего не значит, срок проверяется всегда."""
    return subscription.is_effectively_active(now)


def build_for_payment(payment: Payment, product: Product, now: datetime) -> Subscription:
    """Подписка по успешному платежу. Коммит делает вызывающая сторона."""
    return Subscription(
        user_id=payment.user_id,
        product_id=product.id,
        channel_id=product.channel_id,
        payment_id=payment.id,
        status=SubscriptionStatus.ACTIVE,
        starts_at=now,
        expires_at=now + timedelta(days=product.period_days),
    )


async def get_subscription_for_payment(db: AsyncSession, payment_id: str) -> Optional[Subscription]:
    result = await db.execute(
        select(Subscription).where(Subscription.payment_id == payment_id)
    )
    return result.scalar_one_or_none()


async def grant_subscription(
    db: AsyncSession,
    user_id: int,
    product_id: str,
    now: datetime,
    days: Optional[int] = None,
    expires_at: Optional[datetime] = None,
) -> Subscription:
    """Ручная выдача подписки администратором."""
    product = await db.get(Product, product_id)
    if product is None:
        raise NotFound("Product", product_id)
    if await db.get(User, user_id) is None:
        raise NotFound("User", user_id)

    if expires_at is None:
        if days is None:
            days = product.period_days
        expires_at = now + timedelta(days=days)
    else:
        expires_at = to_naive_utc(expires_at)
    if expires_at <= now:
        raise ValidationFailed("expires_at must be in the future")

    subscription = Subscription(
        user_id=user_id,
        product_id=product.id,
        channel_id=product.channel_id,
        status=SubscriptionStatus.ACTIVE,
        starts_at=now,
        expires_at=expires_at,
    )
    db.add(subscription)
    await db.commit()
    logger.info("Granted subscription %s to user %s until %s", subscription.id, user_id, expires_at)
    return subscription


async def revoke_subscription(db: AsyncSession, subscription_id: str) -> Subscription:
    result = await db.execute(
        update(Subscription)
        .execution_options(synchronize_session=False)
        .where(
            Subscription.id == subscription_id,
            Subscription.status == SubscriptionStatus.ACTIVE,
        )
        .values(status=SubscriptionStatus.REVOKED)
    )
    await db.commit()

    subscription = await db.get(Subscription, subscription_id, populate_existing=True)
    if subscription is None:
        raise NotFound("Subscription", subscription_id)
    if result.rowcount == 0:
        raise Conflict(f"Subscription is already {subscription.status.value}")
    logger.info("Revoked subscription %s", subscription_id)
    return subscription


async def list_active_subscriptions(
    db: AsyncSession, user_id: int, now: datetime
) -> List[Subscription]:
    result = await db.execute(
        select(Subscription)
        .where(
            Subscription.user_id == user_id,
            Subscription.status == SubscriptionStatus.ACTIVE,
            Subscription.expires_at > now,
        )
        .order_by(Subscription.created_at.desc())
    )
    return list(result.scalars().all())


async def list_user_subscriptions(db: AsyncSession, user_id: int) -> List[Subscription]:
    result = await db.execute(
        select(Subscription)
        .where(Subscription.user_id == user_id)
        .order_by(Subscription.created_at.desc())
    )
    return list(result.scalars().all())


async def has_active_subscription(
    db: AsyncSession, user_id: int, product_id: str, now: datetime
) -> bool:
    result = await db.execute(
        select(Subscription.id)
        .where(
            Subscription.user_id == user_id,
            Subscription.product_id == product_id,
            Subscription.status == SubscriptionStatus.ACTIVE,
            Subscription.expires_at > now,
        )
        .limit(1)
    )
    return result.scalar_one_or_none() is not None


async def sweep_expired_subscriptions(db: AsyncSession, now: datetime) -> List[Subscription]:
    """
    Помечает истёкшие подписки как expired. Каждая строка обновляется
    с условием status == active, так что параллельные запуски не
    обработают одну подписку дважды. Возвращает только свои строки.
    """
    result = await db.execute(
        select(Subscription.id).where(
            Subscription.status == SubscriptionStatus.ACTIVE,
            Subscription.expires_at <= now,
        )
    )
    candidate_ids = list(result.scalars().all())

    flipped_ids = []
    for subscription_id in candidate_ids:
        res = await db.execute(
            update(Subscription)
            .execution_options(synchronize_session=False)
            .where(
                Subscription.id == subscription_id,
                Subscription.status == SubscriptionStatus.ACTIVE,
                Subscription.expires_at <= now,
            )
            .values(status=SubscriptionStatus.EXPIRED)
        )
        if res.rowcount == 1:
            flipped_ids.append(subscription_id)
    await db.commit()

    if not flipped_ids:
        return []
    logger.info("Expired %d subscriptions", len(flipped_ids))
    result = await db.execute(
        select(Subscription)
        .where(Subscription.id.in_(flipped_ids))
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())
