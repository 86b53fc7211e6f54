from sqlalchemy.orm import declarative_base
from sqlalchemy import event

from core.id_generator import TYPE_PREFIX, generate_id

# Общий Base для всех моделей
Base = declarative_base()


@event.listens_for(Base, "before_insert", propagate=True)
def assign_random_id(mapper, connection, target):
    # users/channels/admins получают id от Telegram, остальным генерируем строковый
    entity = target.__tablename__
    if entity in TYPE_PREFIX and getattr(target, "id", None) is None:
        target.id = generate_id(entity)
