from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel

from bookpay.constants.order_status import OrderStatus


class MonitorState(str, Enum):
    ORDER_CREATED = "order_created"
    WINDOW_OPENED = "window_opened"
    POLLING = "polling"
    CLOSED_PENDING = "closed_pending"

    SETTLED = "settled"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    USER_CANCELLED = "user_cancelled"
    STOPPED = "stopped"


FINISHED_STATES = {
    MonitorState.SETTLED,
    MonitorState.FAILED,
    MonitorState.TIMED_OUT,
    MonitorState.USER_CANCELLED,
    MonitorState.STOPPED,
}


class CheckoutSession(BaseModel):
    """
    Everything the payment monitor knows about one checkout.

    Passed in explicitly and serialized only through ``checkpoint()``.
    """

    order_number: str
    user_id: Optional[int] = None
    payment_url: Optional[str] = None

    last_status: str = OrderStatus.PENDING.value
    state: MonitorState = MonitorState.ORDER_CREATED
    outcome_reason: Optional[str] = None

    started_at: Optional[datetime] = None
    last_polled_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @classmethod
    def from_order(cls, order, user_id: Optional[int] = None) -> "CheckoutSession":
        return cls(
            order_number=order.order_number,
            user_id=user_id if user_id is not None else order.user_id,
            payment_url=order.payment_url,
            last_status=order.status,
        )

    @property
    def finished(self) -> bool:
        return self.state in FINISHED_STATES

    def checkpoint(self) -> str:
        return self.model_dump_json()

    @classmethod
    def restore(cls, raw: str) -> "CheckoutSession":
        return cls.model_validate_json(raw)
