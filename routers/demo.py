from typing import List

from fastapi import APIRouter, BackgroundTasks, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from core.clock import utcnow
from core.database import get_db
from core.security import get_current_user
from models.user import User
from schemas.demo import DemoAccessRead, DemoRequest
from services.catalog import get_product
from services.demo_access import list_user_demos, request_demo
from services.identity import list_admin_ids
from services.telegram_bot import TelegramNotifier, build_demo_admin_text, get_notifier
from utils.converters import to_demo_read

router = APIRouter(prefix="/demo", tags=["Demo"])


@router.post(
    "",
    response_model=DemoAccessRead,
    status_code=status.HTTP_201_CREATED,
    summary="Запросить демо-доступ к продукту",
)
async def create_demo(
    payload: DemoRequest,
    background_tasks: BackgroundTasks,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
    notifier: TelegramNotifier = Depends(get_notifier),
) -> DemoAccessRead:
    now = utcnow()
    demo = await request_demo(db, current_user.telegram_id, payload.product_id, now)

    product = await get_product(db, demo.product_id)
    background_tasks.add_task(
        notifier.send_access_invite,
        current_user.telegram_id,
        product.channel_id,
        product.channel.name,
        demo.expires_at,
        True,
    )
    background_tasks.add_task(
        notifier.notify_admins,
        await list_admin_ids(db),
        build_demo_admin_text(
            current_user.first_name,
            current_user.username,
            current_user.telegram_id,
            product.name,
            product.demo_days,
        ),
    )
    return to_demo_read(demo, now)


@router.get(
    "",
    response_model=List[DemoAccessRead],
    summary="Демо-доступы текущего пользователя",
)
async def read_demos(
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> List[DemoAccessRead]:
    now = utcnow()
    return [to_demo_read(demo, now) for demo in await list_user_demos(db, current_user.telegram_id)]
