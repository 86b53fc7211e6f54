from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, model_validator

from models.broadcast import BroadcastStatus, BroadcastTarget, MessageStatus
from schemas.common import TelegramId
from schemas.user import UserRead


class BroadcastAudience(BaseModel):
    target: BroadcastTarget
    product_id: Optional[str] = None
    channel_id: Optional[TelegramId] = None
    excluded_user_ids: List[TelegramId] = Field(default_factory=list)

    @model_validator(mode="after")
    def _filter_required(self):
        if self.target == BroadcastTarget.PRODUCT_SPECIFIC and not self.product_id:
            raise ValueError("product_id is required for PRODUCT_SPECIFIC broadcasts")
        if self.target == BroadcastTarget.CHANNEL_SPECIFIC and self.channel_id is None:
            raise ValueError("channel_id is required for CHANNEL_SPECIFIC broadcasts")
        return self


class BroadcastCreate(BroadcastAudience):
    title: str = Field(..., min_length=1, max_length=255)
    # лимит длины текста сообщения в Bot API
    message: str = Field(..., min_length=1, max_length=4096)
    scheduled_at: Optional[datetime] = None


class BroadcastPreviewRequest(BroadcastAudience):
    limit: int = Field(20, ge=1, le=100)


class BroadcastPreview(BaseModel):
    total_count: int
    recipients: List[UserRead]


class BroadcastRead(BaseModel):
    id: str
    title: str
    message: str
    target: BroadcastTarget
    product_id: Optional[str] = None
    channel_id: Optional[TelegramId] = None
    excluded_user_ids: List[TelegramId] = Field(default_factory=list)
    status: BroadcastStatus
    scheduled_at: Optional[datetime] = None
    sent_at: Optional[datetime] = None
    total_recipients: int
    sent_count: int
    failed_count: int
    created_by: TelegramId
    created_at: datetime

    class Config:
        from_attributes = True


class BroadcastFailure(BaseModel):
    user_id: TelegramId
    error: Optional[str] = None

    class Config:
        from_attributes = True


class BroadcastStats(BaseModel):
    broadcast_id: str
    status: BroadcastStatus
    total_recipients: int
    sent_count: int
    failed_count: int
    pending_count: int
    by_status: Dict[MessageStatus, int]
    progress_percentage: int
    recent_failures: List[BroadcastFailure]
    created_at: datetime
    scheduled_at: Optional[datetime] = None
    sent_at: Optional[datetime] = None
