from datetime import datetime
from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from models.demo_access import DemoAccess
from models.payment import Payment, PaymentStatus
from models.product import Product
from models.subscription import Subscription, SubscriptionStatus
from models.user import User
from schemas.stats import AdminStats


async def _count(db: AsyncSession, query) -> int:
    result = await db.execute(query)
    return result.scalar_one()


async def collect_admin_stats(db: AsyncSession, now: datetime) -> AdminStats:
    """Сводка для главной страницы админки. Выручка считается по успешным платежам."""
    revenue = await db.execute(
        select(func.coalesce(func.sum(Payment.amount), 0)).where(Payment.status == PaymentStatus.SUCCESS)
    )
    return AdminStats(
        total_users=await _count(db, select(func.count()).select_from(User)),
        active_subscriptions=await _count(
            db,
            select(func.count()).select_from(Subscription).where(
                Subscription.status == SubscriptionStatus.ACTIVE,
                Subscription.expires_at > now,
            ),
        ),
        active_demos=await _count(
            db,
            select(func.count()).select_from(DemoAccess).where(
                DemoAccess.is_active.is_(True),
                DemoAccess.expires_at > now,
            ),
        ),
        total_products=await _count(
            db, select(func.count()).select_from(Product).where(Product.is_active.is_(True))
        ),
        pending_payments=await _count(
            db, select(func.count()).select_from(Payment).where(Payment.status == PaymentStatus.PENDING)
        ),
        total_revenue=Decimal(str(revenue.scalar_one())),
    )
