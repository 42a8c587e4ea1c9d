import logging
import threading
from typing import Callable, Generic, Iterable, List, Optional, TypeVar

from bookpay.notifications.events import OrderEvent, OrderTransition

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Subscription:
    def __init__(
        self,
        channel: "EventChannel",
        handler: Callable,
        events: Optional[frozenset] = None,
        order_number: Optional[str] = None,
    ):
        self._channel = channel
        self.handler = handler
        self.events = events
        self.order_number = order_number
        self.active = True

    def matches(self, item) -> bool:
        if self.events is not None and getattr(item, "event", None) not in self.events:
            return False
        if self.order_number is not None and getattr(item, "order_number", None) != self.order_number:
            return False
        return True

    def unsubscribe(self):
        if self.active:
            self.active = False
            self._channel._remove(self)


class EventChannel(Generic[T]):
    """
    Typed publish/subscribe channel.

    Subscribers can narrow delivery to a set of event kinds (matched against
    ``item.event``) and/or a single order (``item.order_number``).
    A handler that raises is logged and skipped; it never reaches the publisher.
    """

    def __init__(self, name: str = "events"):
        self.name = name
        self._subscriptions: List[Subscription] = []
        self._lock = threading.Lock()

    def subscribe(
        self,
        handler: Callable[[T], None],
        *,
        events: Optional[Iterable] = None,
        order_number: Optional[str] = None,
    ) -> Subscription:
        subscription = Subscription(
            self,
            handler,
            events=frozenset(events) if events is not None else None,
            order_number=order_number,
        )
        with self._lock:
            self._subscriptions.append(subscription)
        return subscription

    def _remove(self, subscription: Subscription):
        with self._lock:
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)

    def publish(self, item: T) -> int:
        with self._lock:
            subscriptions = list(self._subscriptions)

        delivered = 0
        for subscription in subscriptions:
            if not subscription.active or not subscription.matches(item):
                continue
            try:
                subscription.handler(item)
                delivered += 1
            except Exception:
                logger.exception("Subscriber on %s channel failed for %r", self.name, item)

        return delivered

    def __len__(self):
        return len(self._subscriptions)


order_events: EventChannel[OrderTransition] = EventChannel("order")


def dispatch_order_event(
    *,
    event: OrderEvent,
    order,
    previous_status: Optional[str] = None,
    meta: Optional[dict] = None,
    channel: Optional[EventChannel] = None,
) -> OrderTransition:
    """
    Publish a committed transition. Call only after the transaction commits.
    """

    transition = OrderTransition(
        event=event,
        order_number=order.order_number,
        status=order.status,
        previous_status=previous_status,
        meta=meta or {},
    )

    logger.debug("Dispatching %s for %s", event.value, order.order_number)
    (channel or order_events).publish(transition)

    return transition
