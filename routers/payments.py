import logging
from typing import List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Header, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from core.clock import utcnow
from core.config import settings
from core.database import get_db
from core.errors import AuthenticationFailed
from core.security import get_current_user, verify_ipn_signature
from models.payment import Payment, PaymentStatus
from models.subscription import Subscription
from models.user import User
from schemas.payment import (
    PaymentInitiateRequest,
    PaymentInitiateResponse,
    PaymentRead,
    PaymentResult,
    TonTransaction,
    WebhookAck,
)
from services.catalog import get_product
from services.identity import list_admin_ids
from services.payments import (
    confirm_payment,
    create_pending_payment,
    fail_payment,
    get_payment,
    get_payment_for_user,
    list_user_payments,
    set_external_id,
)
from services.subscriptions import get_subscription_for_payment
from services.telegram_bot import TelegramNotifier, build_payment_admin_text, get_notifier
from services.ton_watcher import NANO, TonCenterClient, get_ton_client, reconcile_pending_payments
from utils.converters import to_payment_result

router = APIRouter(prefix="/payments", tags=["Payments"])
logger = logging.getLogger("uvicorn.error")

# статусы NOWPayments
IPN_SUCCESS_STATUSES = {"finished", "confirmed"}
IPN_FAILURE_STATUSES = {"failed", "expired", "refunded"}


async def schedule_access_notifications(
    background_tasks: BackgroundTasks,
    db: AsyncSession,
    notifier: TelegramNotifier,
    payment: Payment,
    subscription: Subscription,
) -> None:
    """Инвайт пользователю и сообщение админам уходят после ответа, когда всё уже закоммичено."""
    product = await get_product(db, payment.product_id)
    user = await db.get(User, payment.user_id)
    admin_ids = await list_admin_ids(db)

    background_tasks.add_task(
        notifier.send_access_invite,
        payment.user_id,
        subscription.channel_id,
        product.channel.name,
        subscription.expires_at,
    )
    background_tasks.add_task(
        notifier.notify_admins,
        admin_ids,
        build_payment_admin_text(
            user.first_name if user else None,
            user.username if user else None,
            payment.user_id,
            product.name,
            payment.amount,
            payment.currency,
        ),
    )


@router.post(
    "/initiate",
    response_model=PaymentInitiateResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Создать pending-платёж с уникальным memo",
)
async def initiate_payment(
    payload: PaymentInitiateRequest,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> PaymentInitiateResponse:
    payment = await create_pending_payment(
        db,
        current_user.telegram_id,
        payload.product_id,
        currency=settings.PAYMENT_CURRENCY,
        max_attempts=settings.MEMO_MAX_ATTEMPTS,
    )
    return PaymentInitiateResponse(
        payment=PaymentRead.model_validate(payment),
        wallet_address=settings.TON_WALLET_ADDRESS,
        transaction=TonTransaction(
            address=settings.TON_WALLET_ADDRESS,
            amount=str(int(payment.amount * NANO)),
            payload=payment.memo,
        ),
    )


@router.get(
    "",
    response_model=List[PaymentRead],
    summary="История платежей текущего пользователя",
)
async def list_payments(
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> List[Payment]:
    return await list_user_payments(db, current_user.telegram_id)


@router.post(
    "/nowpayments-webhook",
    response_model=WebhookAck,
    summary="IPN от NOWPayments",
)
async def nowpayments_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    signature: Optional[str] = Header(None, alias="x-nowpayments-sig"),
    db: AsyncSession = Depends(get_db),
    notifier: TelegramNotifier = Depends(get_notifier),
) -> WebhookAck:
    if not settings.NOWPAYMENTS_IPN_SECRET:
        logger.warning("IPN received but NOWPAYMENTS_IPN_SECRET is not configured")
        raise HTTPException(status_code=503, detail="IPN secret is not configured")

    try:
        body = await request.json()
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid JSON body")
    if not isinstance(body, dict):
        raise HTTPException(status_code=400, detail="Invalid JSON body")
    if not verify_ipn_signature(body, signature, settings.NOWPAYMENTS_IPN_SECRET):
        raise AuthenticationFailed("Invalid IPN signature")

    order_id = body.get("order_id")
    if not order_id:
        raise HTTPException(status_code=400, detail="Missing order_id")
    payment = await get_payment(db, str(order_id))
    if body.get("payment_id") is not None:
        await set_external_id(db, payment, str(body["payment_id"]))

    ipn_status = str(body.get("payment_status") or "").lower()
    tx_hash = body.get("payin_hash") or body.get("outcome_hash")
    logger.info("IPN for payment %s: %s", payment.id, ipn_status)

    if ipn_status in IPN_SUCCESS_STATUSES:
        payment, subscription, created = await confirm_payment(db, payment.id, tx_hash, utcnow())
        if created:
            await schedule_access_notifications(background_tasks, db, notifier, payment, subscription)
    elif ipn_status in IPN_FAILURE_STATUSES:
        payment = await fail_payment(db, payment.id, tx_hash)

    return WebhookAck(status=payment.status.value, payment_id=payment.id)


@router.get(
    "/{payment_id}",
    response_model=PaymentResult,
    summary="Статус платежа и подписка, если он подтверждён",
)
async def read_payment(
    payment_id: str,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> PaymentResult:
    payment = await get_payment_for_user(db, payment_id, current_user.telegram_id)
    subscription = await get_subscription_for_payment(db, payment.id)
    return to_payment_result(payment, subscription, utcnow())


@router.post(
    "/{payment_id}/check",
    response_model=PaymentResult,
    summary="Проверить перевод в блокчейне и подтвердить платёж",
)
async def check_payment(
    payment_id: str,
    background_tasks: BackgroundTasks,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
    notifier: TelegramNotifier = Depends(get_notifier),
    ton_client: Optional[TonCenterClient] = Depends(get_ton_client),
) -> PaymentResult:
    payment = await get_payment_for_user(db, payment_id, current_user.telegram_id)
    now = utcnow()

    if payment.status == PaymentStatus.PENDING and ton_client is not None:
        confirmed = await reconcile_pending_payments(db, ton_client, now, payments=[payment])
        for confirmed_payment, subscription in confirmed:
            await schedule_access_notifications(
                background_tasks, db, notifier, confirmed_payment, subscription
            )

    subscription = await get_subscription_for_payment(db, payment.id)
    return to_payment_result(payment, subscription, now)
