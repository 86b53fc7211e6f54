import enum

from sqlalchemy import (
    Column, String, Integer, Numeric, Boolean, DateTime, BigInteger,
    ForeignKey, Enum, CheckConstraint,
)
from sqlalchemy.orm import relationship

from core.clock import utcnow
from .base import Base


class PromoType(str, enum.Enum):
    PERCENTAGE = "PERCENTAGE"
    FIXED_AMOUNT = "FIXED_AMOUNT"


class PromoCode(Base):
    __tablename__ = "promo_codes"

    id = Column(String(32), primary_key=True)
    code = Column(String(64), unique=True, nullable=False)
    type = Column(
        Enum(PromoType, name="promo_type", values_callable=lambda e: [m.value for m in e]),
        nullable=False,
    )
    discount_value = Column(Numeric(12, 2), nullable=False)
    max_uses = Column(Integer, nullable=False)
    current_uses = Column(Integer, default=0, nullable=False)
    min_amount = Column(Numeric(12, 2), nullable=True)
    # промокод только для одного продукта, если задан
    product_id = Column(String(32), ForeignKey("products.id", ondelete="CASCADE"), nullable=True)
    valid_from = Column(DateTime, default=utcnow, nullable=False)
    valid_until = Column(DateTime, nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("max_uses > 0", name="ck_promo_codes_max_uses"),
        CheckConstraint(
            "current_uses >= 0 AND current_uses <= max_uses",
            name="ck_promo_codes_current_uses",
        ),
    )

    product = relationship("Product")
    usages = relationship("PromoUsage", back_populates="promo_code")

    def __repr__(self):
        return f"<PromoCode {self.code} {self.current_uses}/{self.max_uses}>"


class PromoUsage(Base):
    __tablename__ = "promo_usages"

    id = Column(String(32), primary_key=True)
    promo_id = Column(
        String(32),
        ForeignKey("promo_codes.id", ondelete="CASCADE"),
        index=True,
        nullable=False,
    )
    user_id = Column(BigInteger, ForeignKey("users.telegram_id"), index=True, nullable=False)
    payment_id = Column(String(32), ForeignKey("payments.id"), nullable=True)
    used_at = Column(DateTime, default=utcnow, nullable=False)

    promo_code = relationship("PromoCode", back_populates="usages")

    def __repr__(self):
        return f"<PromoUsage promo={self.promo_id} user={self.user_id}>"
