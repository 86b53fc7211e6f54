from typing import List

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from core.clock import utcnow
from core.database import get_db
from core.security import get_current_user
from models.user import User
from schemas.subscription import SubscriptionRead
from services.subscriptions import list_active_subscriptions, list_user_subscriptions
from utils.converters import to_subscription_reads

router = APIRouter(prefix="/subscriptions", tags=["Subscriptions"])


@router.get(
    "",
    response_model=List[SubscriptionRead],
    summary="Действующие подписки текущего пользователя",
)
async def read_active_subscriptions(
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> List[SubscriptionRead]:
    now = utcnow()
    subscriptions = await list_active_subscriptions(db, current_user.telegram_id, now)
    return to_subscription_reads(subscriptions, now)


@router.get(
    "/history",
    response_model=List[SubscriptionRead],
    summary="Все подписки пользователя, включая истёкшие и отозванные",
)
async def read_subscription_history(
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> List[SubscriptionRead]:
    subscriptions = await list_user_subscriptions(db, current_user.telegram_id)
    return to_subscription_reads(subscriptions, utcnow())
