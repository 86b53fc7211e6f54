from sqlalchemy import Column, BigInteger, DateTime, String, ForeignKey
from sqlalchemy.orm import relationship

from core.clock import utcnow
from .base import Base


class User(Base):
    __tablename__ = "users"

    telegram_id = Column(BigInteger, primary_key=True, autoincrement=False)
    first_name = Column(String(128), nullable=False, default="User")
    username = Column(String(64), nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    admin = relationship("Admin", back_populates="user", uselist=False)

    def __repr__(self):
        return f"<User telegram_id={self.telegram_id} username={self.username}>"


class Admin(Base):
    __tablename__ = "admins"

    telegram_id = Column(
        BigInteger,
        ForeignKey("users.telegram_id", ondelete="CASCADE"),
        primary_key=True,
        autoincrement=False,
    )
    created_at = Column(DateTime, default=utcnow, nullable=False)

    user = relationship("User", back_populates="admin")

    def __repr__(self):
        return f"<Admin telegram_id={self.telegram_id}>"
