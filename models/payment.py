import enum

from sqlalchemy import Column, String, Numeric, DateTime, BigInteger, ForeignKey, Enum
from sqlalchemy.orm import relationship

from core.clock import utcnow
from .base import Base


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


class Payment(Base):
    __tablename__ = "payments"

    id = Column(String(32), primary_key=True)
    user_id = Column(
        BigInteger,
        ForeignKey("users.telegram_id", ondelete="CASCADE"),
        index=True,
        nullable=False,
    )
    product_id = Column(String(32), ForeignKey("products.id"), index=True, nullable=False)
    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(16), nullable=False)
    status = Column(
        Enum(
            PaymentStatus,
            name="payment_status",
            values_callable=lambda e: [m.value for m in e],
        ),
        default=PaymentStatus.PENDING,
        nullable=False,
    )
    tx_hash = Column(String(128), nullable=True)
    memo = Column(String(32), unique=True, nullable=False)
    # id платежа во внешнем шлюзе (NOWPayments)
    external_id = Column(String(64), nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    user = relationship("User")
    product = relationship("Product", lazy="joined")

    def __repr__(self):
        return f"<Payment {self.id} {self.status.value} memo={self.memo}>"
