from sqlalchemy import Column, String, DateTime, BigInteger, Boolean, ForeignKey, Index, text
from sqlalchemy.orm import relationship

from core.clock import utcnow
from .base import Base


class DemoAccess(Base):
    __tablename__ = "demo_accesses"

    id = Column(String(32), primary_key=True)
    user_id = Column(
        BigInteger,
        ForeignKey("users.telegram_id", ondelete="CASCADE"),
        nullable=False,
    )
    product_id = Column(String(32), ForeignKey("products.id"), nullable=False)
    started_at = Column(DateTime, nullable=False)
    expires_at = Column(DateTime, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    reminder_sent = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        # не больше одного активного демо на пару (user, product)
        Index(
            "uq_demo_accesses_active_user_product",
            "user_id",
            "product_id",
            unique=True,
            postgresql_where=text("is_active"),
            sqlite_where=text("is_active"),
        ),
    )

    user = relationship("User")
    product = relationship("Product", lazy="joined")

    def is_effectively_active(self, now) -> bool:
        return bool(self.is_active) and self.expires_at > now

    def __repr__(self):
        return f"<DemoAccess {self.id} user={self.user_id} active={self.is_active}>"
