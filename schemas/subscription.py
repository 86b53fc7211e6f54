from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field, model_validator

from models.subscription import SubscriptionStatus
from schemas.common import TelegramId


class SubscriptionRead(BaseModel):
    id: str
    user_id: TelegramId
    product_id: str
    channel_id: TelegramId
    payment_id: Optional[str] = None
    status: SubscriptionStatus
    starts_at: datetime
    expires_at: datetime
    created_at: datetime
    is_active: bool = Field(False, description="status == active и expires_at ещё не наступил")

    class Config:
        from_attributes = True


class SubscriptionGrantRequest(BaseModel):
    user_id: TelegramId
    product_id: str
    days: Optional[int] = Field(None, gt=0)
    expires_at: Optional[datetime] = None

    @model_validator(mode="after")
    def _one_of_days_or_expiry(self):
        if self.days is not None and self.expires_at is not None:
            raise ValueError("Pass either days or expires_at, not both")
        return self
