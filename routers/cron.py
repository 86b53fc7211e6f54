import hmac
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from core.clock import utcnow
from core.config import settings
from core.database import get_db
from core.errors import AuthenticationFailed
from schemas.cron import SweepReport
from services.broadcasts import send_due_broadcasts
from services.sweeper import run_sweep
from services.telegram_bot import TelegramNotifier, get_notifier
from services.ton_watcher import TonCenterClient, get_ton_client

router = APIRouter(prefix="/cron", tags=["Cron"])
logger = logging.getLogger("uvicorn.error")


def verify_cron_secret(authorization: Optional[str] = Header(None)) -> None:
    if not settings.CRON_SECRET:
        logger.warning("Cron call while CRON_SECRET is not configured")
        raise HTTPException(status_code=503, detail="Cron secret is not configured")
    expected = f"Bearer {settings.CRON_SECRET}"
    if not authorization or not hmac.compare_digest(authorization.encode("utf-8"), expected.encode("utf-8")):
        raise AuthenticationFailed("Invalid cron secret")


@router.post(
    "/check-all",
    response_model=SweepReport,
    dependencies=[Depends(verify_cron_secret)],
    summary="Истёкшие подписки и демо, напоминания, платежи, рассылки",
)
async def check_all(
    db: AsyncSession = Depends(get_db),
    notifier: TelegramNotifier = Depends(get_notifier),
    ton_client: Optional[TonCenterClient] = Depends(get_ton_client),
) -> SweepReport:
    return await run_sweep(db, notifier, utcnow(), ton_client=ton_client)


@router.post(
    "/scheduled-broadcasts",
    response_model=SweepReport,
    dependencies=[Depends(verify_cron_secret)],
    summary="Только запланированные рассылки",
)
async def scheduled_broadcasts(
    db: AsyncSession = Depends(get_db),
    notifier: TelegramNotifier = Depends(get_notifier),
) -> SweepReport:
    return SweepReport(broadcasts_sent=await send_due_broadcasts(db, notifier, utcnow()))
