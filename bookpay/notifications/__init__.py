from .events import OrderEvent, OrderTransition
from .dispatcher import EventChannel, Subscription, order_events, dispatch_order_event

__all__ = [
    "OrderEvent",
    "OrderTransition",
    "EventChannel",
    "Subscription",
    "order_events",
    "dispatch_order_event",
]
