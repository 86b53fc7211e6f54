import asyncio
from datetime import datetime, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from core.errors import AuthorizationDenied, Conflict, NotFound, ValidationFailed
from models.promo_code import PromoCode, PromoType, PromoUsage
from schemas.promo import PromoCodeCreate
from services.payments import create_pending_payment
from services.promo_codes import apply_promo, calculate_discount, create_promo_code, quote_promo

NOW = datetime(2026, 1, 1, 12, 0, 0)


async def _promo(db, **overrides) -> PromoCode:
    payload = {
        "code": "spring10",
        "type": PromoType.PERCENTAGE,
        "discount_value": Decimal("10"),
        "max_uses": 3,
        "valid_from": NOW - timedelta(days=1),
    }
    payload.update(overrides)
    return await create_promo_code(db, PromoCodeCreate(**payload))


async def _usage_count(db, promo_id: str) -> int:
    result = await db.execute(
        select(func.count()).select_from(PromoUsage).where(PromoUsage.promo_id == promo_id)
    )
    return result.scalar_one()


def test_calculate_discount():
    percentage = PromoCode(type=PromoType.PERCENTAGE, discount_value=Decimal("15"))
    fixed = PromoCode(type=PromoType.FIXED_AMOUNT, discount_value=Decimal("50"))

    assert calculate_discount(percentage, Decimal("9.99")) == Decimal("1.50")
    assert calculate_discount(fixed, Decimal("20.00")) == Decimal("20.00")


async def test_codes_are_normalized_and_unique(db):
    promo = await _promo(db, code="  spring10 ")

    assert promo.code == "SPRING10"
    assert promo.current_uses == 0
    with pytest.raises(Conflict):
        await _promo(db, code="SPRING10")


async def test_percentage_over_100_rejected(db):
    with pytest.raises(ValidationFailed):
        await _promo(db, discount_value=Decimal("120"))


async def test_quote_calculates_final_amount(db, user, product):
    await _promo(db)

    quote = await quote_promo(db, "spring10", user.telegram_id, product.id, Decimal("10.00"), NOW)

    assert quote.discount_amount == Decimal("1.00")
    assert quote.final_amount == Decimal("9.00")


async def test_quote_checks_restrictions(db, user, product, no_demo_product):
    await _promo(db, code="ONLYMONTHLY", product_id=product.id, min_amount=Decimal("5"))
    await _promo(db, code="EXPIRED", valid_until=NOW - timedelta(hours=1))

    with pytest.raises(NotFound):
        await quote_promo(db, "nope", user.telegram_id, product.id, Decimal("10"), NOW)
    with pytest.raises(ValidationFailed):
        await quote_promo(db, "expired", user.telegram_id, product.id, Decimal("10"), NOW)
    with pytest.raises(ValidationFailed):
        await quote_promo(db, "onlymonthly", user.telegram_id, no_demo_product.id, Decimal("10"), NOW)
    with pytest.raises(ValidationFailed):
        await quote_promo(db, "onlymonthly", user.telegram_id, product.id, Decimal("1"), NOW)


async def test_apply_succeeds_exactly_max_uses_times(db, user, product):
    promo = await _promo(db, max_uses=3)

    for expected in (1, 2, 3):
        applied = await apply_promo(db, promo.id, user.telegram_id)
        assert applied.current_uses == expected

    with pytest.raises(Conflict):
        await apply_promo(db, promo.id, user.telegram_id)

    assert await _usage_count(db, promo.id) == 3
    with pytest.raises(Conflict):
        await quote_promo(db, promo.code, 4242, product.id, Decimal("10"), NOW)


async def test_concurrent_apply_never_exceeds_limit(session_factory, db, user):
    promo = await _promo(db, max_uses=3)

    async def attempt():
        async with session_factory() as session:
            try:
                await apply_promo(session, promo.id, user.telegram_id)
                return True
            except Conflict:
                return False

    results = await asyncio.gather(*(attempt() for _ in range(6)))

    assert results.count(True) == 3
    async with session_factory() as session:
        stored = await session.get(PromoCode, promo.id)
        assert stored.current_uses == 3
        assert await _usage_count(session, promo.id) == 3


async def test_apply_links_usage_to_own_payment(db, user, admin_user, product):
    promo = await _promo(db)
    payment = await create_pending_payment(db, user.telegram_id, product.id)

    with pytest.raises(AuthorizationDenied):
        await apply_promo(db, promo.id, admin_user.telegram_id, payment.id)
    with pytest.raises(NotFound):
        await apply_promo(db, promo.id, user.telegram_id, "pay_missing")
    with pytest.raises(NotFound):
        await apply_promo(db, "promo_missing", user.telegram_id)

    await apply_promo(db, promo.id, user.telegram_id, payment.id)

    usage = (await db.execute(select(PromoUsage))).scalar_one()
    assert usage.payment_id == payment.id
    # промокод уже использован этим пользователем
    with pytest.raises(Conflict):
        await quote_promo(db, promo.code, user.telegram_id, product.id, Decimal("10"), NOW)
