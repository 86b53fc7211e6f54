from pydantic import BaseModel

from schemas.common import Money


class AdminStats(BaseModel):
    total_users: int
    active_subscriptions: int
    active_demos: int
    total_products: int
    pending_payments: int
    total_revenue: Money
