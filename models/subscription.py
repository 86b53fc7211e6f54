import enum

from sqlalchemy import (
    Column, String, DateTime, BigInteger, ForeignKey, Enum, Index, CheckConstraint,
)
from sqlalchemy.orm import relationship

from core.clock import utcnow
from .base import Base


class SubscriptionStatus(str, enum.Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    REVOKED = "revoked"


class Subscription(Base):
    __tablename__ = "subscriptions"

    id = Column(String(32), primary_key=True)
    user_id = Column(
        BigInteger,
        ForeignKey("users.telegram_id", ondelete="CASCADE"),
        nullable=False,
    )
    product_id = Column(String(32), ForeignKey("products.id"), index=True, nullable=False)
    channel_id = Column(BigInteger, ForeignKey("channels.channel_id"), nullable=False)
    # одна подписка на один успешный платёж
    payment_id = Column(String(32), ForeignKey("payments.id"), unique=True, nullable=True)
    status = Column(
        Enum(
            SubscriptionStatus,
            name="subscription_status",
            values_callable=lambda e: [m.value for m in e],
        ),
        default=SubscriptionStatus.ACTIVE,
        nullable=False,
    )
    starts_at = Column(DateTime, nullable=False)
    expires_at = Column(DateTime, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("expires_at > starts_at", name="ck_subscriptions_period"),
        Index("ix_subscriptions_user_status", "user_id", "status"),
    )

    user = relationship("User")
    product = relationship("Product", lazy="joined")
    channel = relationship("Channel", lazy="joined")

    def is_effectively_active(self, now) -> bool:
        return self.status == SubscriptionStatus.ACTIVE and self.expires_at > now

    def __repr__(self):
        return f"<Subscription {self.id} {self.status.value} until {self.expires_at}>"
