from typing import List

from fastapi import APIRouter, Depends
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from core.clock import utcnow
from core.database import get_db
from core.security import get_current_user
from models.product import Product
from models.user import User
from schemas.product import ProductWithStatus
from services.demo_access import find_active_demo
from services.subscriptions import list_active_subscriptions

router = APIRouter(prefix="/products", tags=["Products"])


@router.get(
    "",
    response_model=List[ProductWithStatus],
    summary="Активные продукты с отметкой о подписке и демо текущего пользователя",
)
async def list_products(
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> List[ProductWithStatus]:
    now = utcnow()
    result = await db.execute(
        select(Product)
        .where(Product.is_active.is_(True))
        .order_by(Product.created_at.asc())
    )
    products = result.scalars().unique().all()

    subscribed = {
        s.product_id for s in await list_active_subscriptions(db, current_user.telegram_id, now)
    }
    items = []
    for product in products:
        item = ProductWithStatus.model_validate(product)
        item.has_active_subscription = product.id in subscribed
        demo = await find_active_demo(db, current_user.telegram_id, product.id)
        item.has_active_demo = bool(demo and demo.is_effectively_active(now))
        items.append(item)
    return items
