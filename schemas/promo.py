from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field

from models.promo_code import PromoType
from schemas.common import Money


class PromoCodeCreate(BaseModel):
    code: str = Field(..., min_length=1, max_length=64)
    type: PromoType
    discount_value: Decimal = Field(..., gt=0)
    max_uses: int = Field(..., gt=0)
    min_amount: Optional[Decimal] = Field(None, ge=0)
    product_id: Optional[str] = None
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None


class PromoCodeRead(BaseModel):
    id: str
    code: str
    type: PromoType
    discount_value: Money
    max_uses: int
    current_uses: int
    min_amount: Optional[Money] = None
    product_id: Optional[str] = None
    valid_from: datetime
    valid_until: Optional[datetime] = None
    is_active: bool

    class Config:
        from_attributes = True


class PromoValidateRequest(BaseModel):
    code: str = Field(..., min_length=1)
    product_id: str
    amount: Decimal = Field(..., gt=0)


class PromoQuote(BaseModel):
    promo_id: str
    code: str
    type: PromoType
    discount_value: Money
    original_amount: Money
    discount_amount: Money
    final_amount: Money


class PromoApplyRequest(BaseModel):
    promo_id: str = Field(..., min_length=1)
    payment_id: Optional[str] = None


class PromoApplyResponse(BaseModel):
    promo_id: str
    current_uses: int
    max_uses: int
