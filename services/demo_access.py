import logging
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from core.errors import Conflict, NotFound, Outcome, ValidationFailed
from models.demo_access import DemoAccess
from models.product import Product
from models.user import User
from services.subscriptions import has_active_subscription

logger = logging.getLogger(__name__)

DEMO_ALREADY_GRANTED = "Demo access already granted for this product"


def is_effectively_active(demo: DemoAccess, now: datetime) -> bool:
    return demo.is_effectively_active(now)


async def find_active_demo(
    db: AsyncSession, user_id: int, product_id: str
) -> Optional[DemoAccess]:
    result = await db.execute(
        select(DemoAccess).where(
            DemoAccess.user_id == user_id,
            DemoAccess.product_id == product_id,
            DemoAccess.is_active.is_(True),
        )
    )
    return result.scalar_one_or_none()


async def _try_insert(db: AsyncSession, demo: DemoAccess) -> Outcome:
    if await find_active_demo(db, demo.user_id, demo.product_id):
        return Outcome.CONFLICT
    db.add(demo)
    try:
        await db.commit()
    except IntegrityError:
        # частичный уникальный индекс поймал параллельную выдачу
        await db.rollback()
        return Outcome.CONFLICT
    return Outcome.OK


async def _insert_demo(
    db: AsyncSession, user_id: int, product: Product, now: datetime, days: int
) -> DemoAccess:
    demo = DemoAccess(
        user_id=user_id,
        product_id=product.id,
        started_at=now,
        expires_at=now + timedelta(days=days),
        is_active=True,
        reminder_sent=False,
    )
    if await _try_insert(db, demo) is not Outcome.OK:
        raise Conflict(DEMO_ALREADY_GRANTED)
    logger.info("Demo access %s for user %s, product %s, %d days", demo.id, user_id, product.id, days)
    return demo


async def request_demo(
    db: AsyncSession, user_id: int, product_id: str, now: datetime
) -> DemoAccess:
    """Демо-доступ по запросу пользователя из Mini App."""
    product = await db.get(Product, product_id)
    if product is None:
        raise NotFound("Product", product_id)
    if not product.allow_demo:
        raise ValidationFailed("This product does not support demo access")
    if not product.is_active:
        raise ValidationFailed("This product is not currently available")
    if await has_active_subscription(db, user_id, product_id, now):
        raise Conflict("You already have an active subscription for this product")
    return await _insert_demo(db, user_id, product, now, product.demo_days)


async def grant_demo(
    db: AsyncSession,
    user_id: int,
    product_id: str,
    now: datetime,
    days: Optional[int] = None,
) -> DemoAccess:
    """Ручная выдача демо администратором. Срок можно задать вручную, allow_demo обязателен."""
    product = await db.get(Product, product_id)
    if product is None:
        raise NotFound("Product", product_id)
    if not product.allow_demo:
        raise ValidationFailed("This product does not support demo access")
    if await db.get(User, user_id) is None:
        raise NotFound("User", user_id)
    if days is None:
        days = product.demo_days
    if not days or days <= 0:
        raise ValidationFailed("Demo length in days is required")
    return await _insert_demo(db, user_id, product, now, days)


async def revoke_demo(db: AsyncSession, demo_id: str) -> DemoAccess:
    demo = await db.get(DemoAccess, demo_id)
    if demo is None:
        raise NotFound("Demo access", demo_id)
    demo.is_active = False
    await db.commit()
    logger.info("Revoked demo access %s", demo_id)
    return demo


async def extend_demo(db: AsyncSession, demo_id: str, additional_days: int) -> DemoAccess:
    if additional_days <= 0:
        raise ValidationFailed("Additional days must be greater than 0")
    demo = await db.get(DemoAccess, demo_id)
    if demo is None:
        raise NotFound("Demo access", demo_id)

    demo.expires_at = demo.expires_at + timedelta(days=additional_days)
    demo.is_active = True
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise Conflict(DEMO_ALREADY_GRANTED)
    return demo


async def list_user_demos(db: AsyncSession, user_id: int) -> List[DemoAccess]:
    result = await db.execute(
        select(DemoAccess)
        .where(DemoAccess.user_id == user_id)
        .order_by(DemoAccess.started_at.desc())
    )
    return list(result.scalars().all())


async def mark_reminder_sent(db: AsyncSession, demo_id: str) -> bool:
    """Флаг ставится один раз и не сбрасывается. False, если уже стоял."""
    result = await db.execute(
        update(DemoAccess)
        .execution_options(synchronize_session=False)
        .where(DemoAccess.id == demo_id, DemoAccess.reminder_sent.is_(False))
        .values(reminder_sent=True)
    )
    await db.commit()
    return result.rowcount == 1


async def list_due_reminders(
    db: AsyncSession, now: datetime, within: timedelta
) -> List[DemoAccess]:
    result = await db.execute(
        select(DemoAccess).where(
            DemoAccess.is_active.is_(True),
            DemoAccess.reminder_sent.is_(False),
            DemoAccess.expires_at > now,
            DemoAccess.expires_at <= now + within,
        )
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


async def sweep_expired_demos(db: AsyncSession, now: datetime) -> List[DemoAccess]:
    """Снимает is_active с истёкших демо. Повторный запуск ничего не меняет."""
    result = await db.execute(
        select(DemoAccess.id).where(
            DemoAccess.is_active.is_(True),
            DemoAccess.expires_at <= now,
        )
    )
    candidate_ids = list(result.scalars().all())

    flipped_ids = []
    for demo_id in candidate_ids:
        res = await db.execute(
            update(DemoAccess)
            .execution_options(synchronize_session=False)
            .where(
                DemoAccess.id == demo_id,
                DemoAccess.is_active.is_(True),
                DemoAccess.expires_at <= now,
            )
            .values(is_active=False)
        )
        if res.rowcount == 1:
            flipped_ids.append(demo_id)
    await db.commit()

    if not flipped_ids:
        return []
    logger.info("Deactivated %d expired demo accesses", len(flipped_ids))
    result = await db.execute(
        select(DemoAccess)
        .where(DemoAccess.id.in_(flipped_ids))
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())
