"""
Поиск входящих TON-переводов по memo через toncenter API v2.
"""
import asyncio
import base64
import binascii
import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import List, Optional

from aiohttp import ClientError, ClientSession, ClientTimeout
from sqlalchemy.ext.asyncio import AsyncSession

from core.config import settings
from core.errors import Conflict
from models.payment import Payment
from services.payments import confirm_payment, list_pending_payments

logger = logging.getLogger(__name__)

NANO = Decimal(10) ** 9
# допустимое расхождение суммы перевода
AMOUNT_TOLERANCE = Decimal("0.01")


@dataclass(frozen=True)
class IncomingTransfer:
    tx_hash: str
    source: Optional[str]
    destination: Optional[str]
    amount: Decimal
    memo: str


def _normalize_address(address: Optional[str]) -> str:
    return (address or "").strip().lower().removeprefix("0x")


def _decode_body_comment(body: Optional[str]) -> str:
    if not isinstance(body, str) or not body:
        return ""
    try:
        raw = base64.b64decode(body)
    except (binascii.Error, ValueError):
        return ""
    return "".join(chr(b) for b in raw if 0x20 <= b <= 0x7E)


def parse_transactions(payload: dict) -> List[IncomingTransfer]:
    """Ответ getTransactions → входящие переводы. Исходящие и битые записи пропускаются."""
    if not payload.get("ok"):
        return []
    transfers = []
    for tx in payload.get("result") or []:
        in_msg = tx.get("in_msg") or {}
        tx_hash = (tx.get("transaction_id") or {}).get("hash")
        if not tx_hash or not in_msg.get("source"):
            continue
        try:
            amount = Decimal(str(in_msg.get("value") or "0")) / NANO
        except InvalidOperation:
            continue
        memo = in_msg.get("message") or _decode_body_comment(
            (in_msg.get("msg_data") or {}).get("body")
        )
        transfers.append(
            IncomingTransfer(
                tx_hash=tx_hash,
                source=in_msg.get("source"),
                destination=in_msg.get("destination"),
                amount=amount,
                memo=memo.strip(),
            )
        )
    return transfers


def matches_payment(transfer: IncomingTransfer, payment: Payment, wallet_address: str) -> bool:
    if _normalize_address(transfer.destination) != _normalize_address(wallet_address):
        return False
    if payment.memo not in transfer.memo:
        return False
    expected = Decimal(payment.amount)
    return abs(transfer.amount - expected) <= expected * AMOUNT_TOLERANCE


class TonCenterClient:
    def __init__(self, api_url: str, wallet_address: str, api_key: Optional[str] = None):
        self.api_url = api_url.rstrip("/")
        self.wallet_address = wallet_address
        self.api_key = api_key

    async def fetch_transfers(self, limit: int = 50) -> List[IncomingTransfer]:
        headers = {"X-API-Key": self.api_key} if self.api_key else {}
        params = {"address": self.wallet_address, "limit": str(limit), "archival": "true"}
        try:
            async with ClientSession(timeout=ClientTimeout(total=15)) as session:
                async with session.get(
                    f"{self.api_url}/getTransactions", params=params, headers=headers
                ) as response:
                    response.raise_for_status()
                    payload = await response.json()
        except (ClientError, asyncio.TimeoutError) as exc:
            logger.warning("Failed to fetch TON transactions: %s", exc, exc_info=exc)
            return []
        return parse_transactions(payload)


def get_ton_client() -> Optional[TonCenterClient]:
    if not settings.TON_WALLET_ADDRESS:
        return None
    return TonCenterClient(
        settings.TONCENTER_API_URL,
        settings.TON_WALLET_ADDRESS,
        settings.TONCENTER_API_KEY,
    )


def find_transfer(
    transfers: List[IncomingTransfer], payment: Payment, wallet_address: str
) -> Optional[IncomingTransfer]:
    for transfer in transfers:
        if matches_payment(transfer, payment, wallet_address):
            return transfer
    return None


async def reconcile_pending_payments(
    db: AsyncSession,
    client: TonCenterClient,
    now: datetime,
    payments: Optional[List[Payment]] = None,
) -> list:
    """
    Подтверждает pending-платежи, для которых нашёлся перевод с их memo.
    Возвращает список (payment, subscription) для только что подтверждённых.
    """
    if payments is None:
        payments = await list_pending_payments(db)
    if not payments:
        return []
    transfers = await client.fetch_transfers()
    confirmed = []
    for payment in payments:
        transfer = find_transfer(transfers, payment, client.wallet_address)
        if transfer is None:
            continue
        try:
            payment, subscription, created = await confirm_payment(db, payment.id, transfer.tx_hash, now)
        except Conflict:
            logger.warning("Transfer %s matches non-pending payment %s", transfer.tx_hash, payment.id)
            continue
        if created:
            confirmed.append((payment, subscription))
    return confirmed
