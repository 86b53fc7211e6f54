import asyncio
import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from core.clock import utcnow
from core.config import settings
from core.database import AsyncSessionLocal
from schemas.cron import SweepReport
from services.broadcasts import send_due_broadcasts
from services.catalog import get_product
from services.demo_access import (
    find_active_demo,
    list_due_reminders,
    mark_reminder_sent,
    sweep_expired_demos,
)
from services.payments import expire_stale_payments
from services.subscriptions import has_active_subscription, sweep_expired_subscriptions
from services.telegram_bot import TelegramNotifier, get_notifier
from services.ton_watcher import TonCenterClient, get_ton_client, reconcile_pending_payments

logger = logging.getLogger(__name__)


async def run_sweep(
    db: AsyncSession,
    notifier: TelegramNotifier,
    now: datetime,
    ton_client: Optional[TonCenterClient] = None,
    pending_ttl: Optional[timedelta] = None,
    reminder_window: Optional[timedelta] = None,
) -> SweepReport:
    """
    Плановая проверка: истёкшие подписки и демо, напоминания о конце демо,
    подтверждение платежей по блокчейну, зависшие pending-платежи
    и запланированные рассылки.
    Все изменения в БД идемпотентны, повторный запуск ничего не ломает.
    """
    pending_ttl = pending_ttl or timedelta(minutes=settings.PENDING_PAYMENT_TTL_MINUTES)
    reminder_window = reminder_window or timedelta(hours=settings.DEMO_REMINDER_HOURS)
    report = SweepReport()

    # платежи проверяем до истечения, чтобы не потерять оплату на границе ttl
    if ton_client is not None:
        confirmed = await reconcile_pending_payments(db, ton_client, now)
        report.confirmed_payments = len(confirmed)
        for payment, subscription in confirmed:
            product = await get_product(db, payment.product_id)
            await notifier.send_access_invite(
                payment.user_id,
                subscription.channel_id,
                product.channel.name,
                subscription.expires_at,
            )

    report.failed_payments = len(await expire_stale_payments(db, now, pending_ttl))

    expired_subscriptions = await sweep_expired_subscriptions(db, now)
    report.expired_subscriptions = len(expired_subscriptions)
    for subscription in expired_subscriptions:
        still_has_access = await has_active_subscription(
            db, subscription.user_id, subscription.product_id, now
        ) or await find_active_demo(db, subscription.user_id, subscription.product_id)
        if still_has_access:
            continue
        await notifier.remove_from_channel(subscription.user_id, subscription.channel_id)
        await notifier.send_expiration_notice(subscription.user_id, subscription.product.name)

    expired_demos = await sweep_expired_demos(db, now)
    report.expired_demos = len(expired_demos)
    for demo in expired_demos:
        if await has_active_subscription(db, demo.user_id, demo.product_id, now):
            continue
        await notifier.remove_from_channel(demo.user_id, demo.product.channel_id)
        await notifier.send_expiration_notice(demo.user_id, demo.product.name, is_demo=True)

    for demo in await list_due_reminders(db, now, reminder_window):
        # флаг ставим до отправки: второй запуск не должен дублировать сообщение
        if not await mark_reminder_sent(db, demo.id):
            continue
        await notifier.send_demo_reminder(demo.user_id, demo.product.name, demo.expires_at)
        report.demo_reminders += 1

    report.broadcasts_sent = await send_due_broadcasts(db, notifier, now)

    logger.info("Sweep finished: %s", report.model_dump())
    return report


async def sweep_forever(interval_seconds: int) -> None:
    """Фоновый цикл для запуска из main.py."""
    while True:
        try:
            async with AsyncSessionLocal() as session:
                await run_sweep(session, get_notifier(), utcnow(), ton_client=get_ton_client())
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001
            logger.exception("Sweep failed: %s", exc)
        await asyncio.sleep(interval_seconds)
