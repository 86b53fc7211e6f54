import asyncio
import contextlib
import logging
import time

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from core.config import settings
from core.database import engine
from models.registry import Base

from routers.auth import router as auth_router
from routers.products import router as products_router
from routers.payments import router as payments_router
from routers.subscriptions import router as subscriptions_router
from routers.demo import router as demo_router
from routers.promocodes import router as promocodes_router
from routers.admin import router as admin_router
from routers.cron import router as cron_router
from routers.health import router as health_router

from services.sweeper import sweep_forever
from services.telegram_bot import get_bot

app = FastAPI(
    title="Channel Subscriptions MiniApp Backend",
    version="0.1.0",
    description="Backend для Telegram Mini-App платных подписок на каналы"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

logger = logging.getLogger("uvicorn.error")


@app.middleware("http")
async def log_request_time(request: Request, call_next):
    start_time = time.perf_counter()
    response = await call_next(request)
    process_time = (time.perf_counter() - start_time) * 1000
    logger.info(
        f"{request.method} {request.url.path} completed in {process_time:.2f} ms"
    )
    return response


@app.exception_handler(SQLAlchemyError)
async def handle_storage_error(request: Request, exc: SQLAlchemyError):
    # детали ошибки БД клиенту не отдаём
    logger.exception("Storage error on %s %s", request.method, request.url.path, exc_info=exc)
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


app.include_router(auth_router)
app.include_router(products_router)
app.include_router(payments_router)
app.include_router(subscriptions_router)
app.include_router(demo_router)
app.include_router(promocodes_router)
app.include_router(admin_router)
app.include_router(cron_router)
app.include_router(health_router)

_sweep_task = None


@app.on_event("startup")
async def on_startup():
    global _sweep_task

    # Сначала создаём все таблицы
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    if settings.SWEEP_INTERVAL_SECONDS > 0:
        _sweep_task = asyncio.create_task(sweep_forever(settings.SWEEP_INTERVAL_SECONDS))


@app.get("/")
async def root():
    return {"message": "Channel Subscriptions MiniApp Backend"}


@app.on_event("shutdown")
async def shutdown():
    if _sweep_task is not None:
        _sweep_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await _sweep_task
    if get_bot.cache_info().currsize:
        await get_bot().session.close()
    # Закрываем все соединения пула
    await engine.dispose()
