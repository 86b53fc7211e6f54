# routers/health.py
from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from core.database import get_db

router = APIRouter(tags=["Health"])


@router.get("/health", summary="Проверка доступности сервиса и БД")
async def healthcheck(db: AsyncSession = Depends(get_db)):
    # SQLAlchemyError отсюда уходит в общий обработчик main.py и даёт 500
    await db.execute(text("SELECT 1"))
    return {"status": "ok"}
