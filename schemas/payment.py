from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from models.payment import PaymentStatus
from schemas.common import Money, TelegramId
from schemas.subscription import SubscriptionRead


class PaymentInitiateRequest(BaseModel):
    product_id: str = Field(..., min_length=1)


class PaymentRead(BaseModel):
    id: str
    user_id: TelegramId
    product_id: str
    amount: Money
    currency: str
    status: PaymentStatus
    tx_hash: Optional[str] = None
    memo: str
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class TonTransaction(BaseModel):
    """Данные для TON Connect: куда и сколько отправить, payload = memo."""
    address: Optional[str]
    amount: str
    payload: str


class PaymentInitiateResponse(BaseModel):
    payment: PaymentRead
    wallet_address: Optional[str] = None
    transaction: TonTransaction


class PaymentResult(BaseModel):
    payment: PaymentRead
    subscription: Optional[SubscriptionRead] = None


class ManualConfirmRequest(BaseModel):
    tx_hash: Optional[str] = Field(None, max_length=128)


class WebhookAck(BaseModel):
    status: str
    payment_id: Optional[str] = None
