from enum import Enum


class OrderStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    REFUNDED = "refunded"


class RefundStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


ALLOWED_TRANSITIONS = {
    OrderStatus.PENDING: [
        OrderStatus.PAID,
        OrderStatus.FAILED,
        OrderStatus.CANCELLED,
        OrderStatus.EXPIRED,
    ],
    OrderStatus.PAID: [OrderStatus.REFUNDED],
    OrderStatus.FAILED: [],
    OrderStatus.CANCELLED: [],
    OrderStatus.EXPIRED: [],
    OrderStatus.REFUNDED: [],
}

def can_transition(current: str, target: str) -> bool:
    return OrderStatus(target) in ALLOWED_TRANSITIONS.get(OrderStatus(current), [])
