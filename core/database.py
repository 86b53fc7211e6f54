from typing import AsyncGenerator

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker

from .config import settings


def engine_options(database_url: str) -> dict:
    """Параметры пула: у SQLite (тесты, локальный запуск) своего пула соединений нет."""
    options = {"echo": settings.DB_ECHO, "future": True}
    if make_url(database_url).get_backend_name() == "sqlite":
        return options
    options.update(
        pool_pre_ping=True,      # проверка соединения перед использованием
        pool_size=settings.DB_POOL_SIZE,
        max_overflow=settings.DB_MAX_OVERFLOW,
    )
    return options


engine = create_async_engine(settings.DATABASE_URL, **engine_options(settings.DATABASE_URL))

AsyncSessionLocal = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    Асинхронный генератор сессии.
    Используется как Depends(get_db) в роутерах.
    """
    async with AsyncSessionLocal() as session:
        yield session
