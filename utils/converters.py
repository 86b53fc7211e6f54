"""Утилиты для преобразования моделей в схемы Pydantic."""
from collections.abc import Iterable
from datetime import datetime
from typing import List, Optional

from models.demo_access import DemoAccess
from models.payment import Payment
from models.subscription import Subscription
from schemas.demo import DemoAccessRead
from schemas.payment import PaymentRead, PaymentResult
from schemas.subscription import SubscriptionRead


def to_subscription_read(subscription: Subscription, now: datetime) -> SubscriptionRead:
    """Подписка с вычисленным по текущему времени is_active."""
    read = SubscriptionRead.model_validate(subscription)
    read.is_active = subscription.is_effectively_active(now)
    return read


def to_subscription_reads(subscriptions: Iterable[Subscription], now: datetime) -> List[SubscriptionRead]:
    return [to_subscription_read(s, now) for s in subscriptions]


def to_demo_read(demo: DemoAccess, now: datetime) -> DemoAccessRead:
    read = DemoAccessRead.model_validate(demo)
    read.effectively_active = demo.is_effectively_active(now)
    return read


def to_payment_result(
    payment: Payment, subscription: Optional[Subscription], now: datetime
) -> PaymentResult:
    return PaymentResult(
        payment=PaymentRead.model_validate(payment),
        subscription=to_subscription_read(subscription, now) if subscription else None,
    )
