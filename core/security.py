# core/security.py
import hmac
import hashlib
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional
from urllib.parse import parse_qsl

from fastapi import Depends, Header, Query
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from core.clock import utcnow
from core.config import Settings, settings
from core.database import get_db
from core.errors import AuthenticationFailed, AuthorizationDenied, MalformedIdentity
from models.user import User
from schemas.auth import TelegramUser
from services.identity import is_admin, upsert_user

logger = logging.getLogger(__name__)

# допускаем небольшое расхождение часов клиента и сервера
AUTH_DATE_FUTURE_SKEW = timedelta(seconds=60)


@dataclass(frozen=True)
class InitDataConfig:
    bot_token: str
    max_age_seconds: int = 86_400
    extra_bot_tokens: tuple[str, ...] = field(default_factory=tuple)
    test_bypass_hash: Optional[str] = None

    @classmethod
    def from_settings(cls, conf: Settings) -> "InitDataConfig":
        return cls(
            bot_token=conf.TELEGRAM_BOT_TOKEN,
            max_age_seconds=conf.INIT_DATA_MAX_AGE_SECONDS,
            extra_bot_tokens=tuple(conf.debug_bot_tokens) if conf.DEBUG else (),
            test_bypass_hash=(
                conf.TEST_INIT_DATA_HASH
                if conf.DEBUG and conf.ALLOW_TEST_INIT_DATA
                else None
            ),
        )


def get_init_data_config() -> InitDataConfig:
    return InitDataConfig.from_settings(settings)


def parse_init_data(init_data: str) -> dict:
    """parse_qsl → dict (авто-decode percent-encoding). Пустой dict для мусора."""
    try:
        return dict(parse_qsl(init_data, keep_blank_values=True, strict_parsing=True))
    except ValueError:
        return {}


def build_data_check_string(data: dict) -> str:
    return "\n".join(f"{key}={data[key]}" for key in sorted(data.keys()) if key != "hash")


def sign_init_data(data: dict, bot_token: str) -> str:
    """
    secret_key = HMAC-SHA256(key=b"WebAppData", msg=BOT_TOKEN)
    hash = HMAC-SHA256(key=secret_key, msg=data_check_string).hexdigest()
    """
    secret_key = hmac.new(
        key=b"WebAppData",
        msg=bot_token.encode("utf-8"),
        digestmod=hashlib.sha256
    ).digest()
    return hmac.new(
        key=secret_key,
        msg=build_data_check_string(data).encode("utf-8"),
        digestmod=hashlib.sha256
    ).hexdigest()


def _is_fresh(data: dict, max_age_seconds: int, now: datetime) -> bool:
    auth_date = data.get("auth_date", "")
    if not auth_date.isdigit():
        return False
    try:
        issued = datetime.fromtimestamp(int(auth_date), timezone.utc).replace(tzinfo=None)
    except (OverflowError, OSError, ValueError):
        return False
    if issued - now > AUTH_DATE_FUTURE_SKEW:
        return False
    return now - issued <= timedelta(seconds=max_age_seconds)


def check_init_data(
    init_data: Optional[str],
    config: InitDataConfig,
    now: Optional[datetime] = None,
) -> bool:
    """
    Проверяет подпись Telegram.WebApp.initData и свежесть auth_date.
    Ничего не бросает: на любой мусор возвращает False.
    """
    if not init_data:
        return False
    data = parse_init_data(init_data)
    hash_received = data.get("hash")
    if not hash_received:
        return False

    now = now or utcnow()
    if not _is_fresh(data, config.max_age_seconds, now):
        return False

    received = hash_received.encode("utf-8")
    if config.test_bypass_hash and hmac.compare_digest(received, config.test_bypass_hash.encode("utf-8")):
        logger.warning("Accepted test init_data without signature check")
        return True

    for token in (config.bot_token, *config.extra_bot_tokens):
        if hmac.compare_digest(sign_init_data(data, token).encode("utf-8"), received):
            return True
    return False


def extract_telegram_user(init_data: str) -> TelegramUser:
    """Достаёт `user` из уже проверенного initData. MalformedIdentity при любой проблеме."""
    raw_user = parse_init_data(init_data).get("user")
    if not raw_user:
        raise MalformedIdentity("Missing 'user' in init_data")
    try:
        return TelegramUser.model_validate(json.loads(raw_user))
    except (ValueError, ValidationError):
        # json.JSONDecodeError тоже ValueError
        raise MalformedIdentity("Invalid 'user' data in init_data")


async def get_init_data(
    header_init_data: Optional[str] = Header(None, alias="x-telegram-init-data"),
    query_init_data: Optional[str] = Query(None, alias="initData"),
    web_app_data: Optional[str] = Query(None, alias="tgWebAppData"),
) -> str:
    init_data = header_init_data or query_init_data or web_app_data
    if not init_data:
        raise AuthenticationFailed("Missing init_data")
    return init_data


async def get_current_user(
    init_data: str = Depends(get_init_data),
    config: InitDataConfig = Depends(get_init_data_config),
    db: AsyncSession = Depends(get_db),
) -> User:
    if not check_init_data(init_data, config):
        raise AuthenticationFailed("Invalid init_data signature")
    tg_user = extract_telegram_user(init_data)
    return await upsert_user(db, tg_user)


async def get_current_admin(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> User:
    if not await is_admin(db, current_user.telegram_id):
        raise AuthorizationDenied()
    return current_user


def verify_ipn_signature(body: dict, signature: Optional[str], secret: str) -> bool:
    """
    Подпись NOWPayments IPN: HMAC-SHA512 от JSON с отсортированными ключами
    без пробелов, hex в заголовке x-nowpayments-sig.
    """
    if not signature:
        return False
    message = json.dumps(body, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    expected = hmac.new(
        key=secret.encode("utf-8"),
        msg=message.encode("utf-8"),
        digestmod=hashlib.sha512
    ).hexdigest()
    return hmac.compare_digest(expected.encode("utf-8"), signature.strip().lower().encode("utf-8"))
