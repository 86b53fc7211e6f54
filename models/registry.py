# Импорт всех моделей, чтобы Base.metadata знал о каждой таблице
from models.base import Base
from models.user import User, Admin
from models.channel import Channel
from models.product import Product
from models.payment import Payment
from models.subscription import Subscription
from models.demo_access import DemoAccess
from models.promo_code import PromoCode, PromoUsage
from models.broadcast import Broadcast, BroadcastMessage

__all__ = [
    "Base",
    "User",
    "Admin",
    "Channel",
    "Product",
    "Payment",
    "Subscription",
    "DemoAccess",
    "PromoCode",
    "PromoUsage",
    "Broadcast",
    "BroadcastMessage",
]
