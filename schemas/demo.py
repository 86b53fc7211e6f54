from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from schemas.common import TelegramId


class DemoRequest(BaseModel):
    product_id: str = Field(..., min_length=1)


class DemoGrantRequest(BaseModel):
    user_id: TelegramId
    product_id: str
    days: Optional[int] = Field(None, gt=0)


class DemoExtendRequest(BaseModel):
    additional_days: int = Field(..., gt=0)


class DemoAccessRead(BaseModel):
    id: str
    user_id: TelegramId
    product_id: str
    started_at: datetime
    expires_at: datetime
    is_active: bool
    reminder_sent: bool
    effectively_active: bool = False

    class Config:
        from_attributes = True
