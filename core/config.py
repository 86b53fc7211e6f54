from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):

    DATABASE_URL: str
    TELEGRAM_BOT_TOKEN: str
    DEBUG: bool = False

    DB_ECHO: bool = False
    DB_POOL_SIZE: int = 5
    DB_MAX_OVERFLOW: int = 10

    # Дополнительные токены ботов, подписи которых принимаются только в DEBUG
    DEBUG_TELEGRAM_BOT_TOKENS: str = ""
    ALLOW_TEST_INIT_DATA: bool = False
    TEST_INIT_DATA_HASH: str = "test_hash_for_development"
    INIT_DATA_MAX_AGE_SECONDS: int = 86_400

    NOWPAYMENTS_IPN_SECRET: Optional[str] = None
    CRON_SECRET: Optional[str] = None

    TON_WALLET_ADDRESS: Optional[str] = None
    TONCENTER_API_URL: str = "https://toncenter.com/api/v2"
    TONCENTER_API_KEY: Optional[str] = None

    PAYMENT_CURRENCY: str = "USDT"
    MEMO_MAX_ATTEMPTS: int = 5
    PENDING_PAYMENT_TTL_MINUTES: int = 60

    SWEEP_INTERVAL_SECONDS: int = 300
    DEMO_REMINDER_HOURS: int = 24
    INVITE_LINK_TTL_HOURS: int = 24
    WEBAPP_URL: Optional[str] = None

    # Пауза между сообщениями рассылки, лимит Bot API около 30 сообщений в секунду
    BROADCAST_SEND_DELAY_SECONDS: float = 0.05

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @property
    def debug_bot_tokens(self) -> list[str]:
        return [
            token.strip()
            for token in self.DEBUG_TELEGRAM_BOT_TOKENS.split(",")
            if token.strip()
        ]


# Создаём глобальный объект, который будем импортировать везде
settings = Settings()
