import logging

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from models.user import Admin, User
from schemas.auth import TelegramUser

logger = logging.getLogger(__name__)


def _apply_profile(user: User, tg_user: TelegramUser) -> None:
    user.first_name = tg_user.first_name or "User"
    user.username = tg_user.username


async def upsert_user(db: AsyncSession, tg_user: TelegramUser) -> User:
    """Создать пользователя при первом контакте или обновить имя/username."""
    user = await db.get(User, tg_user.id)
    if user is None:
        user = User(telegram_id=tg_user.id)
        _apply_profile(user, tg_user)
        db.add(user)
        try:
            await db.commit()
            logger.info("Created user %s", tg_user.id)
            return user
        except IntegrityError:
            # параллельный запрос успел создать того же пользователя
            await db.rollback()
            user = await db.get(User, tg_user.id)
            if user is None:
                raise

    _apply_profile(user, tg_user)
    await db.commit()
    return user


async def is_admin(db: AsyncSession, telegram_id: int) -> bool:
    result = await db.execute(select(Admin.telegram_id).where(Admin.telegram_id == telegram_id))
    return result.scalar_one_or_none() is not None


async def grant_admin(db: AsyncSession, telegram_id: int, first_name: str = "Admin") -> Admin:
    """Выдача прав администратора. Вызывается только из utils/setup_admin.py."""
    user = await db.get(User, telegram_id)
    if user is None:
        db.add(User(telegram_id=telegram_id, first_name=first_name))
    admin = await db.get(Admin, telegram_id)
    if admin is None:
        admin = Admin(telegram_id=telegram_id)
        db.add(admin)
    await db.commit()
    return admin


async def list_admin_ids(db: AsyncSession) -> list[int]:
    result = await db.execute(select(Admin.telegram_id))
    return list(result.scalars().all())
