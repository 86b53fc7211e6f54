# routers/auth.py
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from core.database import get_db
from core.security import get_current_user
from models.user import User
from schemas.auth import MeResponse
from services.identity import is_admin

router = APIRouter(prefix="/auth", tags=["Auth"])


@router.post(
    "",
    response_model=MeResponse,
    summary="Проверка initData Telegram WebApp, создание/обновление пользователя",
)
async def login(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> MeResponse:
    return MeResponse(
        telegram_id=current_user.telegram_id,
        first_name=current_user.first_name,
        username=current_user.username,
        is_admin=await is_admin(db, current_user.telegram_id),
    )
