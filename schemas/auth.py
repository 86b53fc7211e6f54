from typing import Optional

from pydantic import BaseModel, field_validator

from schemas.common import TelegramId, INT64_MAX, INT64_MIN


class TelegramUser(BaseModel):
    """
    Пользователь из поля `user` в Telegram.WebApp.initData.
    """
    id: int
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    username: Optional[str] = None
    language_code: Optional[str] = None
    is_premium: Optional[bool] = None

    @field_validator("id", mode="before")
    @classmethod
    def _strict_id(cls, value):
        # JSON-число Telegram приходит как int; float и bool не принимаем
        if isinstance(value, bool) or not isinstance(value, int):
            raise ValueError("id must be an integer")
        if not INT64_MIN <= value <= INT64_MAX:
            raise ValueError("id is out of 64-bit range")
        return value


class MeResponse(BaseModel):
    telegram_id: TelegramId
    first_name: str
    username: Optional[str] = None
    is_admin: bool
