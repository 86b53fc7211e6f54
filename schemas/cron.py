from pydantic import BaseModel


class SweepReport(BaseModel):
    expired_subscriptions: int = 0
    expired_demos: int = 0
    demo_reminders: int = 0
    failed_payments: int = 0
    confirmed_payments: int = 0
    broadcasts_sent: int = 0
