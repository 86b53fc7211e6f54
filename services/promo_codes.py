import logging
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from core.errors import AuthorizationDenied, Conflict, NotFound, ValidationFailed
from models.payment import Payment
from models.promo_code import PromoCode, PromoType, PromoUsage
from schemas.promo import PromoCodeCreate, PromoQuote

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


def normalize_code(code: str) -> str:
    return code.strip().upper()


def calculate_discount(promo: PromoCode, amount: Decimal) -> Decimal:
    if promo.type == PromoType.PERCENTAGE:
        discount = amount * Decimal(promo.discount_value) / Decimal(100)
    else:
        discount = Decimal(promo.discount_value)
    # итоговая сумма не может уйти в минус
    return min(discount, amount).quantize(CENT, rounding=ROUND_HALF_UP)


async def create_promo_code(db: AsyncSession, payload: PromoCodeCreate) -> PromoCode:
    if payload.type == PromoType.PERCENTAGE and payload.discount_value > 100:
        raise ValidationFailed("Percentage discount cannot exceed 100")
    promo = PromoCode(
        code=normalize_code(payload.code),
        type=payload.type,
        discount_value=payload.discount_value,
        max_uses=payload.max_uses,
        current_uses=0,
        min_amount=payload.min_amount,
        product_id=payload.product_id,
        valid_until=payload.valid_until,
        is_active=True,
    )
    if payload.valid_from is not None:
        promo.valid_from = payload.valid_from
    db.add(promo)
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise Conflict(f"Promo code {promo.code} already exists")
    return promo


async def quote_promo(
    db: AsyncSession,
    code: str,
    user_id: int,
    product_id: str,
    amount: Decimal,
    now: datetime,
) -> PromoQuote:
    """Проверка промокода перед оплатой и расчёт скидки. Ничего не пишет."""
    result = await db.execute(
        select(PromoCode).where(
            PromoCode.code == normalize_code(code),
            PromoCode.is_active.is_(True),
        )
    )
    promo = result.scalar_one_or_none()
    if promo is None:
        raise NotFound("Promo code", normalize_code(code))

    if now < promo.valid_from or (promo.valid_until is not None and now > promo.valid_until):
        raise ValidationFailed("Promo code is not valid at this time")
    if promo.current_uses >= promo.max_uses:
        raise Conflict("Promo code usage limit reached")
    if promo.min_amount is not None and amount < promo.min_amount:
        raise ValidationFailed(f"Minimum amount for this promo code is {promo.min_amount}")
    if promo.product_id and promo.product_id != product_id:
        raise ValidationFailed("Promo code does not apply to this product")

    used = await db.execute(
        select(PromoUsage.id)
        .where(PromoUsage.promo_id == promo.id, PromoUsage.user_id == user_id)
        .limit(1)
    )
    if used.scalar_one_or_none() is not None:
        raise Conflict("You have already used this promo code")

    discount = calculate_discount(promo, amount)
    return PromoQuote(
        promo_id=promo.id,
        code=promo.code,
        type=promo.type,
        discount_value=promo.discount_value,
        original_amount=amount,
        discount_amount=discount,
        final_amount=amount - discount,
    )


async def apply_promo(
    db: AsyncSession,
    promo_id: str,
    user_id: int,
    payment_id: Optional[str] = None,
) -> PromoCode:
    """
    Списывает одно использование промокода.

    Счётчик увеличивается одним UPDATE с условием current_uses < max_uses,
    запись PromoUsage коммитится в той же транзакции. Если UPDATE не
    затронул строк, лимит исчерпан (или его только что забрал
    параллельный запрос).
    """
    promo = await db.get(PromoCode, promo_id)
    if promo is None:
        raise NotFound("Promo code", promo_id)

    if payment_id is not None:
        payment = await db.get(Payment, payment_id)
        if payment is None:
            raise NotFound("Payment", payment_id)
        if payment.user_id != user_id:
            raise AuthorizationDenied("Payment belongs to another user")

    result = await db.execute(
        update(PromoCode)
        .execution_options(synchronize_session=False)
        .where(PromoCode.id == promo_id, PromoCode.current_uses < PromoCode.max_uses)
        .values(current_uses=PromoCode.current_uses + 1)
    )
    if result.rowcount != 1:
        # UPDATE ничего не изменил, закрываем транзакцию
        await db.commit()
        raise Conflict("Promo code usage limit reached")

    db.add(PromoUsage(promo_id=promo_id, user_id=user_id, payment_id=payment_id))
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise

    await db.refresh(promo)
    logger.info("Promo %s applied by %s (%d/%d)", promo.code, user_id, promo.current_uses, promo.max_uses)
    return promo
