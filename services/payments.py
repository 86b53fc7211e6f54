import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import List, Optional, Tuple

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from core.errors import AuthorizationDenied, Conflict, NotFound, Outcome, ValidationFailed
from core.id_generator import generate_memo
from models.payment import Payment, PaymentStatus
from models.product import Product
from models.subscription import Subscription
from services.subscriptions import build_for_payment, get_subscription_for_payment

logger = logging.getLogger(__name__)

DEFAULT_MEMO_ATTEMPTS = 5


async def _try_insert(db: AsyncSession, payment: Payment) -> Outcome:
    taken = await db.execute(select(Payment.id).where(Payment.memo == payment.memo))
    if taken.scalar_one_or_none() is not None:
        return Outcome.RETRY
    db.add(payment)
    try:
        await db.commit()
    except IntegrityError:
        # уникальный индекс на memo: параллельный запрос занял тот же токен
        await db.rollback()
        return Outcome.RETRY
    return Outcome.OK


async def create_pending_payment(
    db: AsyncSession,
    user_id: int,
    product_id: str,
    amount: Optional[Decimal] = None,
    currency: str = "USDT",
    max_attempts: int = DEFAULT_MEMO_ATTEMPTS,
) -> Payment:
    product = await db.get(Product, product_id)
    if product is None or not product.is_active:
        raise NotFound("Product", product_id)
    if amount is None:
        amount = product.effective_price
    if amount < 0:
        raise ValidationFailed("Amount must not be negative")

    for attempt in range(1, max_attempts + 1):
        payment = Payment(
            user_id=user_id,
            product_id=product_id,
            amount=amount,
            currency=currency,
            status=PaymentStatus.PENDING,
            memo=generate_memo(),
        )
        outcome = await _try_insert(db, payment)
        if outcome is Outcome.OK:
            logger.info("Pending payment %s for user %s, memo %s", payment.id, user_id, payment.memo)
            return payment
        logger.warning("Memo collision for user %s, attempt %d/%d", user_id, attempt, max_attempts)

    raise Conflict("Could not allocate a unique payment memo")


async def get_payment(db: AsyncSession, payment_id: str) -> Payment:
    payment = await db.get(Payment, payment_id)
    if payment is None:
        raise NotFound("Payment", payment_id)
    return payment


async def get_payment_for_user(db: AsyncSession, payment_id: str, user_id: int) -> Payment:
    payment = await get_payment(db, payment_id)
    if payment.user_id != user_id:
        raise AuthorizationDenied("Payment belongs to another user")
    return payment


async def find_pending_by_memo(db: AsyncSession, memo: str) -> Optional[Payment]:
    result = await db.execute(
        select(Payment).where(Payment.memo == memo, Payment.status == PaymentStatus.PENDING)
    )
    return result.scalar_one_or_none()


async def list_pending_payments(db: AsyncSession) -> List[Payment]:
    result = await db.execute(
        select(Payment)
        .where(Payment.status == PaymentStatus.PENDING)
        .order_by(Payment.created_at.asc())
    )
    return list(result.scalars().all())


async def list_user_payments(db: AsyncSession, user_id: int) -> List[Payment]:
    result = await db.execute(
        select(Payment)
        .where(Payment.user_id == user_id)
        .order_by(Payment.created_at.desc())
    )
    return list(result.scalars().all())


async def set_external_id(db: AsyncSession, payment: Payment, external_id: str) -> None:
    if payment.external_id != external_id:
        payment.external_id = external_id
        await db.commit()


async def _transition(
    db: AsyncSession, payment_id: str, target: PaymentStatus, tx_hash: Optional[str]
) -> bool:
    values = {"status": target}
    if tx_hash:
        values["tx_hash"] = tx_hash
    result = await db.execute(
        update(Payment)
        .execution_options(synchronize_session=False)
        .where(Payment.id == payment_id, Payment.status == PaymentStatus.PENDING)
        .values(**values)
    )
    return result.rowcount == 1


async def confirm_payment(
    db: AsyncSession,
    payment_id: str,
    tx_hash: Optional[str],
    now: datetime,
) -> Tuple[Payment, Optional[Subscription], bool]:
    """
    pending → success и создание подписки одной транзакцией.

    Повторное подтверждение уже успешного платежа ничего не делает и
    возвращает существующую подписку (created=False). Подтверждать
    failed-платёж нельзя.
    """
    payment = await get_payment(db, payment_id)
    product = await db.get(Product, payment.product_id)

    if await _transition(db, payment_id, PaymentStatus.SUCCESS, tx_hash):
        subscription = build_for_payment(payment, product, now)
        db.add(subscription)
        try:
            await db.commit()
        except IntegrityError:
            await db.rollback()
            raise
        await db.refresh(payment)
        logger.info(
            "Payment %s confirmed, subscription %s until %s",
            payment_id, subscription.id, subscription.expires_at,
        )
        return payment, subscription, True

    # UPDATE не затронул строк, закрываем транзакцию
    await db.commit()
    await db.refresh(payment)
    if payment.status == PaymentStatus.SUCCESS:
        logger.info("Payment %s already confirmed, skipping", payment_id)
        return payment, await get_subscription_for_payment(db, payment_id), False
    raise Conflict(f"Payment {payment_id} is already {payment.status.value}")


async def fail_payment(
    db: AsyncSession, payment_id: str, tx_hash: Optional[str] = None
) -> Payment:
    payment = await get_payment(db, payment_id)
    changed = await _transition(db, payment_id, PaymentStatus.FAILED, tx_hash)
    await db.commit()
    await db.refresh(payment)
    if changed:
        logger.info("Payment %s marked as failed", payment_id)
        return payment
    if payment.status == PaymentStatus.SUCCESS:
        raise Conflict(f"Payment {payment_id} is already success")
    return payment


async def expire_stale_payments(
    db: AsyncSession, now: datetime, ttl: timedelta
) -> List[str]:
    """Зависшие pending-платежи старше ttl переводятся в failed."""
    result = await db.execute(
        select(Payment.id).where(
            Payment.status == PaymentStatus.PENDING,
            Payment.created_at < now - ttl,
        )
    )
    expired = []
    for payment_id in result.scalars().all():
        if await _transition(db, payment_id, PaymentStatus.FAILED, None):
            expired.append(payment_id)
    await db.commit()
    if expired:
        logger.info("Marked %d stale pending payments as failed", len(expired))
    return expired
