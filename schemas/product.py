from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field, model_validator

from schemas.common import Money, TelegramId


class ChannelCreate(BaseModel):
    channel_id: TelegramId = Field(..., description="ID канала в Telegram (обычно -100...)")
    name: str = Field(..., max_length=255)
    username: Optional[str] = Field(None, max_length=64)
    description: Optional[str] = None


class ChannelRead(BaseModel):
    channel_id: TelegramId
    name: str
    username: Optional[str] = None
    description: Optional[str] = None

    class Config:
        from_attributes = True


class ProductCreate(BaseModel):
    channel_id: TelegramId
    name: str = Field(..., max_length=255)
    description: Optional[str] = None
    price: Money = Field(..., ge=0)
    period_days: int = Field(..., gt=0)
    discount_price: Optional[Money] = Field(None, ge=0)
    is_trial: bool = False
    is_active: bool = True
    allow_demo: bool = False
    demo_days: int = Field(0, ge=0)

    @model_validator(mode="after")
    def _demo_days_required(self):
        if self.allow_demo and self.demo_days <= 0:
            raise ValueError("demo_days must be positive when allow_demo is set")
        return self


class ProductRead(BaseModel):
    id: str
    channel_id: TelegramId
    name: str
    description: Optional[str] = None
    price: Money
    period_days: int
    discount_price: Optional[Money] = None
    effective_price: Money
    is_trial: bool
    is_active: bool
    allow_demo: bool
    demo_days: int
    created_at: datetime
    channel: Optional[ChannelRead] = None

    class Config:
        from_attributes = True


class ProductWithStatus(ProductRead):
    has_active_subscription: bool = False
    has_active_demo: bool = False
