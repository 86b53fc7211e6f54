import logging
from typing import List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Query, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from core.clock import utcnow
from core.database import get_db
from core.security import get_current_admin
from models.broadcast import BroadcastStatus
from models.user import User
from routers.payments import schedule_access_notifications
from schemas.broadcast import (
    BroadcastCreate,
    BroadcastPreview,
    BroadcastPreviewRequest,
    BroadcastRead,
    BroadcastStats,
)
from schemas.demo import DemoAccessRead, DemoExtendRequest, DemoGrantRequest
from schemas.payment import ManualConfirmRequest, PaymentRead, PaymentResult
from schemas.product import ChannelCreate, ChannelRead, ProductCreate, ProductRead
from schemas.promo import PromoCodeCreate, PromoCodeRead
from schemas.stats import AdminStats
from schemas.subscription import SubscriptionGrantRequest, SubscriptionRead
from schemas.user import UserRead
from services.broadcasts import (
    broadcast_stats,
    create_broadcast,
    delete_broadcast,
    deliver_broadcast,
    get_broadcast,
    list_broadcasts,
    preview_recipients,
    start_broadcast,
)
from services.catalog import create_channel, create_product, get_product, list_users
from services.demo_access import extend_demo, grant_demo, revoke_demo
from services.payments import confirm_payment, fail_payment
from services.promo_codes import create_promo_code
from services.stats import collect_admin_stats
from services.subscriptions import grant_subscription, has_active_subscription, revoke_subscription
from services.telegram_bot import TelegramNotifier, get_notifier
from utils.converters import to_demo_read, to_payment_result, to_subscription_read

router = APIRouter(prefix="/admin", tags=["Admin"])
logger = logging.getLogger("uvicorn.error")


@router.post(
    "/channels",
    response_model=ChannelRead,
    status_code=status.HTTP_201_CREATED,
    summary="Добавить канал",
)
async def add_channel(
    payload: ChannelCreate,
    db: AsyncSession = Depends(get_db),
    admin: User = Depends(get_current_admin),
):
    return await create_channel(db, payload)


@router.post(
    "/products",
    response_model=ProductRead,
    status_code=status.HTTP_201_CREATED,
    summary="Добавить продукт (тариф) для канала",
)
async def add_product(
    payload: ProductCreate,
    db: AsyncSession = Depends(get_db),
    admin: User = Depends(get_current_admin),
):
    return await create_product(db, payload)


@router.post(
    "/promocodes",
    response_model=PromoCodeRead,
    status_code=status.HTTP_201_CREATED,
    summary="Создать промокод",
)
async def add_promo_code(
    payload: PromoCodeCreate,
    db: AsyncSession = Depends(get_db),
    admin: User = Depends(get_current_admin),
):
    return await create_promo_code(db, payload)


@router.post(
    "/subscriptions",
    response_model=SubscriptionRead,
    status_code=status.HTTP_201_CREATED,
    summary="Выдать подписку вручную",
)
async def add_subscription(
    payload: SubscriptionGrantRequest,
    background_tasks: BackgroundTasks,
    db: AsyncSession = Depends(get_db),
    admin: User = Depends(get_current_admin),
    notifier: TelegramNotifier = Depends(get_notifier),
) -> SubscriptionRead:
    now = utcnow()
    subscription = await grant_subscription(
        db, payload.user_id, payload.product_id, now,
        days=payload.days, expires_at=payload.expires_at,
    )
    product = await get_product(db, payload.product_id)
    logger.info("Admin %s granted subscription %s", admin.telegram_id, subscription.id)
    background_tasks.add_task(
        notifier.send_access_invite,
        subscription.user_id,
        subscription.channel_id,
        product.channel.name,
        subscription.expires_at,
    )
    return to_subscription_read(subscription, now)


@router.post(
    "/subscriptions/{subscription_id}/revoke",
    response_model=SubscriptionRead,
    summary="Отозвать подписку",
)
async def remove_subscription(
    subscription_id: str,
    background_tasks: BackgroundTasks,
    db: AsyncSession = Depends(get_db),
    admin: User = Depends(get_current_admin),
    notifier: TelegramNotifier = Depends(get_notifier),
) -> SubscriptionRead:
    now = utcnow()
    subscription = await revoke_subscription(db, subscription_id)
    logger.info("Admin %s revoked subscription %s", admin.telegram_id, subscription_id)
    if not await has_active_subscription(db, subscription.user_id, subscription.product_id, now):
        background_tasks.add_task(
            notifier.remove_from_channel, subscription.user_id, subscription.channel_id
        )
    return to_subscription_read(subscription, now)


@router.post(
    "/demo",
    response_model=DemoAccessRead,
    status_code=status.HTTP_201_CREATED,
    summary="Выдать демо-доступ вручную",
)
async def add_demo(
    payload: DemoGrantRequest,
    background_tasks: BackgroundTasks,
    db: AsyncSession = Depends(get_db),
    admin: User = Depends(get_current_admin),
    notifier: TelegramNotifier = Depends(get_notifier),
) -> DemoAccessRead:
    now = utcnow()
    demo = await grant_demo(db, payload.user_id, payload.product_id, now, days=payload.days)
    product = await get_product(db, payload.product_id)
    background_tasks.add_task(
        notifier.send_access_invite,
        demo.user_id,
        product.channel_id,
        product.channel.name,
        demo.expires_at,
        True,
    )
    return to_demo_read(demo, now)


@router.post(
    "/demo/{demo_id}/revoke",
    response_model=DemoAccessRead,
    summary="Отозвать демо-доступ",
)
async def remove_demo(
    demo_id: str,
    background_tasks: BackgroundTasks,
    db: AsyncSession = Depends(get_db),
    admin: User = Depends(get_current_admin),
    notifier: TelegramNotifier = Depends(get_notifier),
) -> DemoAccessRead:
    now = utcnow()
    demo = await revoke_demo(db, demo_id)
    if not await has_active_subscription(db, demo.user_id, demo.product_id, now):
        product = await get_product(db, demo.product_id)
        background_tasks.add_task(notifier.remove_from_channel, demo.user_id, product.channel_id)
    return to_demo_read(demo, now)


@router.post(
    "/demo/{demo_id}/extend",
    response_model=DemoAccessRead,
    summary="Продлить демо-доступ",
)
async def prolong_demo(
    demo_id: str,
    payload: DemoExtendRequest,
    db: AsyncSession = Depends(get_db),
    admin: User = Depends(get_current_admin),
) -> DemoAccessRead:
    demo = await extend_demo(db, demo_id, payload.additional_days)
    return to_demo_read(demo, utcnow())


@router.post(
    "/payments/{payment_id}/confirm",
    response_model=PaymentResult,
    summary="Подтвердить платёж вручную",
)
async def confirm_payment_manually(
    payment_id: str,
    payload: ManualConfirmRequest,
    background_tasks: BackgroundTasks,
    db: AsyncSession = Depends(get_db),
    admin: User = Depends(get_current_admin),
    notifier: TelegramNotifier = Depends(get_notifier),
) -> PaymentResult:
    now = utcnow()
    payment, subscription, created = await confirm_payment(db, payment_id, payload.tx_hash, now)
    logger.info("Admin %s confirmed payment %s", admin.telegram_id, payment_id)
    if created:
        await schedule_access_notifications(background_tasks, db, notifier, payment, subscription)
    return to_payment_result(payment, subscription, now)


@router.post(
    "/payments/{payment_id}/fail",
    response_model=PaymentRead,
    summary="Отклонить платёж вручную",
)
async def fail_payment_manually(
    payment_id: str,
    db: AsyncSession = Depends(get_db),
    admin: User = Depends(get_current_admin),
):
    payment = await fail_payment(db, payment_id)
    logger.info("Admin %s failed payment %s", admin.telegram_id, payment_id)
    return payment


@router.get(
    "/users",
    response_model=List[UserRead],
    summary="Список пользователей",
)
async def read_users(
    offset: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
    admin: User = Depends(get_current_admin),
):
    return await list_users(db, offset, limit)


@router.get(
    "/stats",
    response_model=AdminStats,
    summary="Сводная статистика: пользователи, подписки, выручка",
)
async def read_stats(
    db: AsyncSession = Depends(get_db),
    admin: User = Depends(get_current_admin),
) -> AdminStats:
    return await collect_admin_stats(db, utcnow())


@router.post(
    "/broadcasts",
    response_model=BroadcastRead,
    status_code=status.HTTP_201_CREATED,
    summary="Создать рассылку (черновик или запланированную)",
)
async def add_broadcast(
    payload: BroadcastCreate,
    db: AsyncSession = Depends(get_db),
    admin: User = Depends(get_current_admin),
):
    return await create_broadcast(db, payload, admin.telegram_id)


@router.get(
    "/broadcasts",
    response_model=List[BroadcastRead],
    summary="Список рассылок, новые первыми",
)
async def read_broadcasts(
    status_filter: Optional[BroadcastStatus] = Query(None, alias="status"),
    offset: int = Query(0, ge=0),
    limit: int = Query(20, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
    admin: User = Depends(get_current_admin),
):
    return await list_broadcasts(db, status_filter, offset, limit)


@router.post(
    "/broadcasts/preview",
    response_model=BroadcastPreview,
    summary="Сколько пользователей получит рассылку",
)
async def preview_broadcast(
    payload: BroadcastPreviewRequest,
    db: AsyncSession = Depends(get_db),
    admin: User = Depends(get_current_admin),
) -> BroadcastPreview:
    total, users = await preview_recipients(db, payload, utcnow(), payload.limit)
    return BroadcastPreview(total_count=total, recipients=[UserRead.model_validate(u) for u in users])


@router.get(
    "/broadcasts/{broadcast_id}",
    response_model=BroadcastRead,
    summary="Рассылка по id",
)
async def read_broadcast(
    broadcast_id: str,
    db: AsyncSession = Depends(get_db),
    admin: User = Depends(get_current_admin),
):
    return await get_broadcast(db, broadcast_id)


@router.delete(
    "/broadcasts/{broadcast_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Удалить неотправленную рассылку",
)
async def remove_broadcast(
    broadcast_id: str,
    db: AsyncSession = Depends(get_db),
    admin: User = Depends(get_current_admin),
) -> Response:
    await delete_broadcast(db, broadcast_id)
    logger.info("Admin %s deleted broadcast %s", admin.telegram_id, broadcast_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post(
    "/broadcasts/{broadcast_id}/send",
    response_model=BroadcastRead,
    summary="Отправить рассылку сейчас",
)
async def send_broadcast(
    broadcast_id: str,
    db: AsyncSession = Depends(get_db),
    admin: User = Depends(get_current_admin),
    notifier: TelegramNotifier = Depends(get_notifier),
):
    now = utcnow()
    await start_broadcast(db, broadcast_id, now)
    logger.info("Admin %s started broadcast %s", admin.telegram_id, broadcast_id)
    return await deliver_broadcast(db, notifier, broadcast_id, now)


@router.get(
    "/broadcasts/{broadcast_id}/stats",
    response_model=BroadcastStats,
    summary="Статистика доставки рассылки",
)
async def read_broadcast_stats(
    broadcast_id: str,
    db: AsyncSession = Depends(get_db),
    admin: User = Depends(get_current_admin),
) -> BroadcastStats:
    return await broadcast_stats(db, broadcast_id)
