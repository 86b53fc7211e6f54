"""
Выдача прав администратора вне HTTP API.

    python -m utils.setup_admin <telegram_id> [first_name]
"""
import argparse
import asyncio
import logging

from core.database import AsyncSessionLocal, engine
from models.registry import Base
from schemas.common import INT64_MAX, INT64_MIN
from services.identity import grant_admin

log = logging.getLogger(__name__)
logging.basicConfig(level=logging.INFO)


def telegram_id(value: str) -> int:
    parsed = int(value)
    if not INT64_MIN <= parsed <= INT64_MAX:
        raise argparse.ArgumentTypeError("telegram_id is out of 64-bit range")
    return parsed


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Grant admin rights to a Telegram user")
    parser.add_argument("telegram_id", type=telegram_id)
    parser.add_argument("first_name", nargs="?", default="Admin")
    return parser.parse_args(argv)


async def async_setup_admin(user_id: int, first_name: str) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all, checkfirst=True)
    async with AsyncSessionLocal() as session:
        await grant_admin(session, user_id, first_name)
    await engine.dispose()
    log.info("User %s is now an admin", user_id)


def main(argv=None):
    args = parse_args(argv)
    asyncio.run(async_setup_admin(args.telegram_id, args.first_name))


if __name__ == "__main__":
    main()
