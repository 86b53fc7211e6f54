from sqlalchemy import (
    Column, String, Text, Integer, Numeric, Boolean, DateTime, BigInteger,
    ForeignKey, CheckConstraint,
)
from sqlalchemy.orm import relationship

from core.clock import utcnow
from .base import Base


class Product(Base):
    __tablename__ = "products"

    id = Column(String(32), primary_key=True)
    channel_id = Column(
        BigInteger,
        ForeignKey("channels.channel_id", ondelete="CASCADE"),
        index=True,
        nullable=False,
    )
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    price = Column(Numeric(12, 2), nullable=False)
    period_days = Column(Integer, nullable=False)
    discount_price = Column(Numeric(12, 2), nullable=True)
    is_trial = Column(Boolean, default=False, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    allow_demo = Column(Boolean, default=False, nullable=False)
    demo_days = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("period_days > 0", name="ck_products_period_days"),
        CheckConstraint("price >= 0", name="ck_products_price"),
        CheckConstraint("NOT allow_demo OR demo_days > 0", name="ck_products_demo_days"),
    )

    channel = relationship("Channel", back_populates="products", lazy="joined")

    @property
    def effective_price(self):
        if self.discount_price is not None and self.discount_price < self.price:
            return self.discount_price
        return self.price

    def __repr__(self):
        return f"<Product {self.id} {self.name} {self.price}/{self.period_days}d>"
