from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from core.clock import utcnow
from core.database import get_db
from core.security import get_current_user
from models.user import User
from schemas.promo import PromoApplyRequest, PromoApplyResponse, PromoQuote, PromoValidateRequest
from services.promo_codes import apply_promo, quote_promo

router = APIRouter(prefix="/promocodes", tags=["Promo codes"])


@router.post(
    "/validate",
    response_model=PromoQuote,
    summary="Проверить промокод и посчитать скидку",
)
async def validate_promo(
    payload: PromoValidateRequest,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> PromoQuote:
    return await quote_promo(
        db,
        payload.code,
        current_user.telegram_id,
        payload.product_id,
        payload.amount,
        utcnow(),
    )


@router.post(
    "/apply",
    response_model=PromoApplyResponse,
    summary="Списать одно использование промокода",
)
async def use_promo(
    payload: PromoApplyRequest,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> PromoApplyResponse:
    promo = await apply_promo(db, payload.promo_id, current_user.telegram_id, payload.payment_id)
    return PromoApplyResponse(
        promo_id=promo.id,
        current_uses=promo.current_uses,
        max_uses=promo.max_uses,
    )
