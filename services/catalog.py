import logging
from typing import List

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from core.errors import Conflict, NotFound
from models.channel import Channel
from models.product import Product
from models.user import User
from schemas.product import ChannelCreate, ProductCreate

logger = logging.getLogger(__name__)


async def create_channel(db: AsyncSession, payload: ChannelCreate) -> Channel:
    if await db.get(Channel, payload.channel_id) is not None:
        raise Conflict(f"Channel {payload.channel_id} already exists")
    channel = Channel(**payload.model_dump())
    db.add(channel)
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise Conflict(f"Channel {payload.channel_id} already exists")
    logger.info("Created channel %s (%s)", channel.channel_id, channel.name)
    return channel


async def create_product(db: AsyncSession, payload: ProductCreate) -> Product:
    if await db.get(Channel, payload.channel_id) is None:
        raise NotFound("Channel", payload.channel_id)
    product = Product(**payload.model_dump())
    db.add(product)
    await db.commit()
    logger.info("Created product %s for channel %s", product.id, product.channel_id)
    return await get_product(db, product.id)


async def get_product(db: AsyncSession, product_id: str) -> Product:
    # populate_existing подтягивает channel и для только что созданного объекта
    result = await db.execute(
        select(Product)
        .where(Product.id == product_id)
        .execution_options(populate_existing=True)
    )
    product = result.scalar_one_or_none()
    if product is None:
        raise NotFound("Product", product_id)
    return product


async def list_users(db: AsyncSession, offset: int = 0, limit: int = 100) -> List[User]:
    result = await db.execute(
        select(User).order_by(User.created_at.desc()).offset(offset).limit(limit)
    )
    return list(result.scalars().all())
