import enum

from sqlalchemy import (
    Column, String, Text, Integer, DateTime, BigInteger, ForeignKey, Enum, JSON,
    Index, UniqueConstraint,
)
from sqlalchemy.orm import relationship

from core.clock import utcnow
from .base import Base


class BroadcastTarget(str, enum.Enum):
    ALL_USERS = "ALL_USERS"
    ACTIVE_SUBSCRIPTIONS = "ACTIVE_SUBSCRIPTIONS"
    EXPIRED_SUBSCRIPTIONS = "EXPIRED_SUBSCRIPTIONS"
    TRIAL_USERS = "TRIAL_USERS"
    PRODUCT_SPECIFIC = "PRODUCT_SPECIFIC"
    CHANNEL_SPECIFIC = "CHANNEL_SPECIFIC"


class BroadcastStatus(str, enum.Enum):
    DRAFT = "DRAFT"
    SCHEDULED = "SCHEDULED"
    SENDING = "SENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class MessageStatus(str, enum.Enum):
    PENDING = "PENDING"
    SENT = "SENT"
    FAILED = "FAILED"


class Broadcast(Base):
    __tablename__ = "broadcasts"

    id = Column(String(32), primary_key=True)
    title = Column(String(255), nullable=False)
    message = Column(Text, nullable=False)
    target = Column(
        Enum(BroadcastTarget, name="broadcast_target", values_callable=lambda e: [m.value for m in e]),
        nullable=False,
    )
    # фильтры для PRODUCT_SPECIFIC / CHANNEL_SPECIFIC
    product_id = Column(String(32), ForeignKey("products.id", ondelete="SET NULL"), nullable=True)
    channel_id = Column(BigInteger, ForeignKey("channels.channel_id", ondelete="SET NULL"), nullable=True)
    excluded_user_ids = Column(JSON, default=list, nullable=False)
    status = Column(
        Enum(BroadcastStatus, name="broadcast_status", values_callable=lambda e: [m.value for m in e]),
        default=BroadcastStatus.DRAFT,
        nullable=False,
    )
    scheduled_at = Column(DateTime, nullable=True)
    sent_at = Column(DateTime, nullable=True)
    total_recipients = Column(Integer, default=0, nullable=False)
    sent_count = Column(Integer, default=0, nullable=False)
    failed_count = Column(Integer, default=0, nullable=False)
    created_by = Column(BigInteger, ForeignKey("users.telegram_id"), nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index("ix_broadcasts_status_scheduled", "status", "scheduled_at"),
    )

    messages = relationship("BroadcastMessage", back_populates="broadcast")

    def __repr__(self):
        return f"<Broadcast {self.id} {self.status.value} {self.sent_count}/{self.total_recipients}>"


class BroadcastMessage(Base):
    __tablename__ = "broadcast_messages"

    id = Column(String(32), primary_key=True)
    broadcast_id = Column(
        String(32),
        ForeignKey("broadcasts.id", ondelete="CASCADE"),
        nullable=False,
    )
    user_id = Column(BigInteger, ForeignKey("users.telegram_id", ondelete="CASCADE"), nullable=False)
    status = Column(
        Enum(MessageStatus, name="broadcast_message_status", values_callable=lambda e: [m.value for m in e]),
        default=MessageStatus.PENDING,
        nullable=False,
    )
    error = Column(String(255), nullable=True)
    sent_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        # одно сообщение на получателя в рамках рассылки
        UniqueConstraint("broadcast_id", "user_id", name="uq_broadcast_messages_recipient"),
        Index("ix_broadcast_messages_status", "broadcast_id", "status"),
    )

    broadcast = relationship("Broadcast", back_populates="messages")

    def __repr__(self):
        return f"<BroadcastMessage {self.broadcast_id} user={self.user_id} {self.status.value}>"
