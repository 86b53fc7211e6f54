import json
import os
import time
from decimal import Decimal
from urllib.parse import urlencode

# Настройки читаются при импорте core.config, поэтому окружение задаём до импорта приложения
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["TELEGRAM_BOT_TOKEN"] = "123456:primary-test-token"
os.environ["SWEEP_INTERVAL_SECONDS"] = "0"
os.environ["DEBUG"] = "false"
os.environ["BROADCAST_SEND_DELAY_SECONDS"] = "0"

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from core.database import get_db
from core.security import InitDataConfig, get_init_data_config, sign_init_data
from main import app
from models.registry import Base, Admin, Channel, Product, User
from services.telegram_bot import get_notifier
from services.ton_watcher import get_ton_client

BOT_TOKEN = "123456:primary-test-token"


class FakeNotifier:
    """Записывает вызовы вместо обращения к Telegram."""

    def __init__(self):
        self.calls = []
        # чаты, куда send_message "не доходит", как при блокировке бота
        self.failing_chats = set()

    async def _record(self, name, *args):
        self.calls.append((name, args))
        return True

    async def send_message(self, chat_id, text, with_app_button=False):
        await self._record("send_message", chat_id, text)
        return chat_id not in self.failing_chats

    async def send_access_invite(self, user_id, channel_id, channel_name, expires_at, is_demo=False):
        return await self._record("send_access_invite", user_id, channel_id, is_demo)

    async def remove_from_channel(self, user_id, channel_id):
        return await self._record("remove_from_channel", user_id, channel_id)

    async def notify_admins(self, admin_ids, text):
        admin_ids = list(admin_ids)
        await self._record("notify_admins", admin_ids, text)
        return len(admin_ids)

    async def send_expiration_notice(self, user_id, product_name, is_demo=False):
        return await self._record("send_expiration_notice", user_id, is_demo)

    async def send_demo_reminder(self, user_id, product_name, expires_at):
        return await self._record("send_demo_reminder", user_id)

    def names(self):
        return [name for name, _ in self.calls]


@pytest.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def init_data_config():
    return InitDataConfig(bot_token=BOT_TOKEN)


@pytest.fixture
def make_init_data():
    def _make(user: dict, token: str = BOT_TOKEN, auth_date=None, **extra) -> str:
        data = {
            "auth_date": str(int(time.time()) if auth_date is None else auth_date),
            "query_id": "AAHdF6IQAAAAAN0XohDhrOrc",
            "user": json.dumps(user, separators=(",", ":")),
            **extra,
        }
        data["hash"] = sign_init_data(data, token)
        return urlencode(data)

    return _make


@pytest.fixture
async def client(session_factory, notifier, init_data_config):
    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_notifier] = lambda: notifier
    app.dependency_overrides[get_init_data_config] = lambda: init_data_config
    app.dependency_overrides[get_ton_client] = lambda: None
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


@pytest.fixture
async def user(db):
    user = User(telegram_id=1001, first_name="Alice", username="alice")
    db.add(user)
    await db.commit()
    return user


@pytest.fixture
async def admin_user(db):
    user = User(telegram_id=9001, first_name="Root", username="root")
    db.add(user)
    db.add(Admin(telegram_id=9001))
    await db.commit()
    return user


@pytest.fixture
async def channel(db):
    channel = Channel(channel_id=-1001234567890, name="Premium Signals")
    db.add(channel)
    await db.commit()
    return channel


@pytest.fixture
async def product(db, channel):
    product = Product(
        channel_id=channel.channel_id,
        name="Monthly",
        price=Decimal("10.00"),
        period_days=30,
        allow_demo=True,
        demo_days=7,
    )
    db.add(product)
    await db.commit()
    return product


@pytest.fixture
async def no_demo_product(db, channel):
    product = Product(
        channel_id=channel.channel_id,
        name="Yearly",
        price=Decimal("100.00"),
        period_days=365,
        allow_demo=False,
    )
    db.add(product)
    await db.commit()
    return product
