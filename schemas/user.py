from datetime import datetime
from typing import Optional

from pydantic import BaseModel

from schemas.common import TelegramId


class UserRead(BaseModel):
    telegram_id: TelegramId
    first_name: str
    username: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True
