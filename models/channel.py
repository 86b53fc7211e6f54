from sqlalchemy import Column, BigInteger, DateTime, String, Text
from sqlalchemy.orm import relationship

from core.clock import utcnow
from .base import Base


class Channel(Base):
    __tablename__ = "channels"

    # id канала в Telegram, у каналов и супергрупп отрицательный (-100...)
    channel_id = Column(BigInteger, primary_key=True, autoincrement=False)
    name = Column(String(255), nullable=False)
    username = Column(String(64), nullable=True)
    description = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    products = relationship("Product", back_populates="channel")

    def __repr__(self):
        return f"<Channel {self.channel_id} {self.name}>"
