from .session import CheckoutSession, MonitorState
from .scheduler import AsyncioScheduler, ManualScheduler, RepeatingTask, Scheduler
from .window import BrowserWindow, PaymentWindow
from .status_source import HttpOrderStatusClient, LocalOrderStatusSource, OrderStatusSource
from .payment_monitor import MonitorUpdate, PaymentMonitor

__all__ = [
    "CheckoutSession",
    "MonitorState",
    "AsyncioScheduler",
    "ManualScheduler",
    "RepeatingTask",
    "Scheduler",
    "BrowserWindow",
    "PaymentWindow",
    "HttpOrderStatusClient",
    "LocalOrderStatusSource",
    "OrderStatusSource",
    "MonitorUpdate",
    "PaymentMonitor",
]
