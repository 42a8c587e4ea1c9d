from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional


class OrderEvent(str, Enum):
    ORDER_CREATED = "order_created"
    PAYMENT_SUCCESS = "payment_success"
    PAYMENT_FAILED = "payment_failed"
    ORDER_CANCELLED = "order_cancelled"
    ORDER_EXPIRED = "order_expired"
    DUPLICATE_SETTLEMENT = "duplicate_settlement"

    REFUND_REQUESTED = "refund_requested"
    REFUND_COMPLETED = "refund_completed"
    REFUND_FAILED = "refund_failed"


@dataclass(frozen=True)
class OrderTransition:
    """One committed change in an order's lifecycle."""

    event: OrderEvent
    order_number: str
    status: str
    previous_status: Optional[str] = None
    meta: dict = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=datetime.utcnow)
