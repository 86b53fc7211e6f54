import html
import logging
from datetime import timedelta
from functools import lru_cache
from typing import Iterable, Optional

from aiogram import Bot
from aiogram.exceptions import TelegramAPIError
from aiogram.types import InlineKeyboardButton, InlineKeyboardMarkup, WebAppInfo

from core.config import settings

logger = logging.getLogger(__name__)


@lru_cache(maxsize=1)
def get_bot() -> Bot:
    return Bot(token=settings.TELEGRAM_BOT_TOKEN)


def build_keyboard(url: Optional[str]) -> Optional[InlineKeyboardMarkup]:
    if not url:
        return None
    return InlineKeyboardMarkup(
        inline_keyboard=[
            [InlineKeyboardButton(text="Открыть приложение", web_app=WebAppInfo(url=url))]
        ]
    )


def _escape(text: Optional[str], default: str = "—") -> str:
    if not text:
        return default
    return html.escape(text)


def _user_label(first_name: Optional[str], username: Optional[str], telegram_id: int) -> str:
    if username:
        return f"{_escape(first_name)} (@{html.escape(username)})"
    return f"{_escape(first_name)} (id{telegram_id})"


class TelegramNotifier:
    """
    Отправка сообщений через Bot API. Ошибки Telegram логируются и
    возвращаются как False, наружу ничего не пробрасывается: локальные
    изменения в БД к этому моменту уже закоммичены.
    """

    def __init__(self, bot: Bot, webapp_url: Optional[str] = None, invite_ttl_hours: int = 24):
        self.bot = bot
        self.webapp_url = webapp_url
        self.invite_ttl_hours = invite_ttl_hours

    async def send_message(self, chat_id: int, text: str, with_app_button: bool = False) -> bool:
        try:
            await self.bot.send_message(
                chat_id=chat_id,
                text=text,
                parse_mode="HTML",
                reply_markup=build_keyboard(self.webapp_url) if with_app_button else None,
            )
            return True
        except TelegramAPIError as exc:
            logger.warning("Failed to send message to %s: %s", chat_id, exc, exc_info=exc)
            return False

    async def create_invite_link(self, channel_id: int, name: str) -> Optional[str]:
        expire_date = timedelta(hours=self.invite_ttl_hours)
        try:
            invite = await self.bot.create_chat_invite_link(
                chat_id=channel_id,
                name=name[:32],
                expire_date=expire_date,
                member_limit=1,
            )
            return invite.invite_link
        except TelegramAPIError as exc:
            logger.warning("Failed to create invite link for %s: %s", channel_id, exc, exc_info=exc)
            return None

    async def send_access_invite(
        self, user_id: int, channel_id: int, channel_name: str, expires_at, is_demo: bool = False
    ) -> bool:
        link = await self.create_invite_link(
            channel_id, "Демо-доступ" if is_demo else "Подписка"
        )
        if not link:
            return False
        title = "🎁 Демо-доступ активирован!" if is_demo else "🎉 Ваша подписка активирована!"
        text = (
            f"{title}\n\n"
            f"Канал: <b>{_escape(channel_name)}</b>\n"
            f"Доступ до: {expires_at:%d.%m.%Y %H:%M} UTC\n\n"
            f"Ссылка для входа (действует {self.invite_ttl_hours} ч):\n{link}"
        )
        return await self.send_message(user_id, text)

    async def remove_from_channel(self, user_id: int, channel_id: int) -> bool:
        # ban + unban: пользователь удаляется, но может вернуться после новой оплаты
        try:
            await self.bot.ban_chat_member(chat_id=channel_id, user_id=user_id)
            await self.bot.unban_chat_member(chat_id=channel_id, user_id=user_id, only_if_banned=True)
            return True
        except TelegramAPIError as exc:
            logger.warning(
                "Failed to remove user %s from channel %s: %s", user_id, channel_id, exc, exc_info=exc
            )
            return False

    async def notify_admins(self, admin_ids: Iterable[int], text: str) -> int:
        sent = 0
        for admin_id in admin_ids:
            if await self.send_message(admin_id, text):
                sent += 1
        return sent

    async def send_expiration_notice(self, user_id: int, product_name: str, is_demo: bool = False) -> bool:
        what = "Демо-доступ" if is_demo else "Подписка"
        text = (
            f"⏰ {what} «{_escape(product_name)}» закончился.\n\n"
            "Продлить доступ можно в приложении."
        )
        return await self.send_message(user_id, text, with_app_button=True)

    async def send_demo_reminder(self, user_id: int, product_name: str, expires_at) -> bool:
        text = (
            f"⏳ Демо-доступ «{_escape(product_name)}» закончится "
            f"{expires_at:%d.%m.%Y %H:%M} UTC.\n\n"
            "Оформите подписку, чтобы не потерять доступ."
        )
        return await self.send_message(user_id, text, with_app_button=True)


def build_payment_admin_text(
    first_name: Optional[str],
    username: Optional[str],
    telegram_id: int,
    product_name: str,
    amount,
    currency: str,
) -> str:
    return (
        "💰 <b>Новая оплата</b>\n\n"
        f"Пользователь: {_user_label(first_name, username, telegram_id)}\n"
        f"Продукт: {_escape(product_name)}\n"
        f"Сумма: {amount} {html.escape(currency)}"
    )


def build_demo_admin_text(
    first_name: Optional[str],
    username: Optional[str],
    telegram_id: int,
    product_name: str,
    demo_days: int,
) -> str:
    return (
        "🎁 <b>Новый демо-доступ</b>\n\n"
        f"Пользователь: {_user_label(first_name, username, telegram_id)}\n"
        f"Продукт: {_escape(product_name)}\n"
        f"Срок: {demo_days} дн."
    )


def get_notifier() -> TelegramNotifier:
    return TelegramNotifier(
        get_bot(),
        webapp_url=settings.WEBAPP_URL,
        invite_ttl_hours=settings.INVITE_LINK_TTL_HOURS,
    )
