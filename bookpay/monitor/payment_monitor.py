import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Optional

from bookpay.constants.order_status import OrderStatus
from bookpay.exceptions import OrderNotFound, OrderNotPending
from bookpay.monitor.scheduler import RepeatingTask, Scheduler, TimerHandle
from bookpay.monitor.session import CheckoutSession, MonitorState
from bookpay.monitor.status_source import OrderStatusSource
from bookpay.monitor.window import PaymentWindow
from bookpay.notifications import EventChannel, OrderTransition, Subscription

logger = logging.getLogger(__name__)

POLL_INTERVAL_SECONDS = 5.0
WINDOW_CHECK_INTERVAL_SECONDS = 1.0
CLOSE_GRACE_SECONDS = 2.0
MAX_DURATION_SECONDS = 30 * 60.0

STILL_PENDING = "still_pending"


@dataclass(frozen=True)
class MonitorUpdate:
    order_number: str
    state: MonitorState
    previous_state: Optional[MonitorState]
    status: str
    reason: Optional[str] = None
    occurred_at: datetime = field(default_factory=datetime.utcnow)

    @property
    def event(self) -> MonitorState:
        return self.state


class PaymentMonitor:
    """
    Client-side watcher for one checkout.

    Opens the hosted payment page, polls the order status, notices when the
    page is closed and reconciles the final outcome. It never changes order
    state itself; ``cancel()`` goes through the server's guarded transition.

    Everything runs on ``scheduler`` callbacks. Transitions from
    ``order_events`` are applied on the publisher's thread, so only wire that
    channel in when it publishes on the scheduler's thread.
    """

    def __init__(
        self,
        session: CheckoutSession,
        status_source: OrderStatusSource,
        window: PaymentWindow,
        scheduler: Scheduler,
        *,
        order_events: Optional[EventChannel[OrderTransition]] = None,
        updates: Optional[EventChannel[MonitorUpdate]] = None,
        checkpoint_sink: Optional[Callable[[str], None]] = None,
        poll_interval: float = POLL_INTERVAL_SECONDS,
        window_check_interval: float = WINDOW_CHECK_INTERVAL_SECONDS,
        close_grace: float = CLOSE_GRACE_SECONDS,
        max_duration: float = MAX_DURATION_SECONDS,
    ):
        self.session = session
        self.status_source = status_source
        self.window = window
        self.scheduler = scheduler
        self.order_events = order_events
        self.updates: EventChannel[MonitorUpdate] = updates or EventChannel("monitor")
        self.checkpoint_sink = checkpoint_sink

        self.close_grace = close_grace
        self.max_duration = max_duration
        self.visible = True

        self._poll_task = RepeatingTask(scheduler, poll_interval, self.check_status, name="poll")
        self._window_task = RepeatingTask(scheduler, window_check_interval, self._check_window, name="window")
        self._deadline: Optional[TimerHandle] = None
        self._grace: Optional[TimerHandle] = None
        self._subscription: Optional[Subscription] = None

    @property
    def state(self) -> MonitorState:
        return self.session.state

    @property
    def finished(self) -> bool:
        return self.session.finished

    @property
    def order_number(self) -> str:
        return self.session.order_number

    # ------------------------------------------------------------------
    # lifecycle
    # ------------------------------------------------------------------

    def start(self):
        """Open the payment page and begin polling. PaymentWindowBlocked leaves the monitor unstarted."""

        if self.state != MonitorState.ORDER_CREATED:
            raise RuntimeError(f"Monitor for {self.order_number} already started")
        if not self.session.payment_url:
            raise ValueError(f"Order {self.order_number} has no payment URL yet")

        self.window.open(self.session.payment_url)

        self.session.started_at = datetime.utcnow()
        self._transition(MonitorState.WINDOW_OPENED)

        self._arm(self.max_duration)
        self._transition(MonitorState.POLLING)

        if self.visible:
            self._resume_tasks(immediately=False)

    def resume(self):
        """Re-attach to a session restored from a checkpoint, without reopening the page."""

        if self.finished:
            return
        if self.state == MonitorState.ORDER_CREATED:
            return self.start()

        elapsed = 0.0
        if self.session.started_at:
            elapsed = (datetime.utcnow() - self.session.started_at).total_seconds()
        self._arm(self.max_duration - elapsed)

        if self.state == MonitorState.CLOSED_PENDING:
            self.check_status()
            return

        if self.state == MonitorState.WINDOW_OPENED:
            self._transition(MonitorState.POLLING)
        if self.visible:
            self._resume_tasks(immediately=True)

    def stop(self):
        """Detach: clears timers, leaves the order as it is on the server."""

        if not self.finished:
            self._finish(MonitorState.STOPPED)

    def set_visible(self, visible: bool):
        if visible == self.visible:
            return
        self.visible = visible

        if self.state != MonitorState.POLLING:
            return

        if visible:
            logger.debug(f"Monitor for {self.order_number} visible again, checking now")
            self._resume_tasks(immediately=True)
        else:
            self._poll_task.cancel()
            self._window_task.cancel()

    def cancel(self) -> MonitorState:
        """
        User-initiated cancel. If the server says the order already left
        ``pending``, the real status is fetched and reconciled instead.
        """

        if self.finished:
            return self.state

        try:
            order = self.status_source.cancel(self.order_number)
        except OrderNotPending as exc:
            logger.info(f"Cancel of {self.order_number} refused, order is {exc.current_status}")
            order = self.status_source.get_status(self.order_number)

        if self.finished:
            return self.state

        if order.status == OrderStatus.CANCELLED.value:
            self.session.last_status = order.status
            self.window.close()
            self._finish(MonitorState.USER_CANCELLED)
        else:
            self._observe(order.status)

        return self.state

    # ------------------------------------------------------------------
    # observations
    # ------------------------------------------------------------------

    def check_status(self) -> Optional[str]:
        """One status poll. Transport errors are logged and the next poll tries again."""

        if self.finished or self.state == MonitorState.ORDER_CREATED:
            return None

        try:
            order = self.status_source.get_status(self.order_number)
        except OrderNotFound:
            self._finish(MonitorState.FAILED, reason="order_not_found")
            return None
        except Exception as exc:
            logger.warning(f"Status check for {self.order_number} failed: {exc}")
            return None

        self.session.last_polled_at = datetime.utcnow()
        self._observe(order.status)
        return order.status

    def _on_order_transition(self, transition: OrderTransition):
        self._observe(transition.status)

    def _observe(self, status: str):
        # terminal states are sticky: late or stale observations change nothing
        if self.finished:
            logger.debug(f"Ignoring {status} for {self.order_number}, monitor already {self.state.value}")
            return

        self.session.last_status = status

        if status == OrderStatus.PAID.value:
            self.window.close()
            self._finish(MonitorState.SETTLED)
        elif status != OrderStatus.PENDING.value:
            self._finish(MonitorState.FAILED, reason=status)

    def _check_window(self):
        if self.state != MonitorState.POLLING or not self.window.closed():
            return

        logger.info(f"Payment page for {self.order_number} closed, final check in {self.close_grace}s")
        self._poll_task.cancel()
        self._window_task.cancel()
        self._transition(MonitorState.CLOSED_PENDING)
        self._grace = self.scheduler.call_later(self.close_grace, self._after_close)

    def _after_close(self):
        self._grace = None
        # one last look; a closed page is not a failure
        self.check_status()

    def _on_deadline(self):
        self._deadline = None
        if not self.finished:
            logger.info(f"Monitor for {self.order_number} gave up, order still pending")
            self._finish(MonitorState.TIMED_OUT, reason=STILL_PENDING)

    # ------------------------------------------------------------------
    # plumbing
    # ------------------------------------------------------------------

    def _arm(self, remaining: float):
        self._deadline = self.scheduler.call_later(max(remaining, 0.0), self._on_deadline)

        if self.order_events is not None and self._subscription is None:
            self._subscription = self.order_events.subscribe(
                self._on_order_transition, order_number=self.order_number
            )

    def _resume_tasks(self, immediately: bool):
        self._poll_task.start(immediately=immediately)
        if self.state == MonitorState.POLLING:
            self._window_task.start(immediately=immediately)

    def _clear_timers(self):
        self._poll_task.cancel()
        self._window_task.cancel()

        for handle in (self._deadline, self._grace):
            if handle is not None:
                handle.cancel()
        self._deadline = None
        self._grace = None

        if self._subscription is not None:
            self._subscription.unsubscribe()
            self._subscription = None

    def _finish(self, state: MonitorState, reason: Optional[str] = None):
        self._clear_timers()
        self.session.outcome_reason = reason
        self.session.finished_at = datetime.utcnow()
        self._transition(state, reason)

    def _transition(self, state: MonitorState, reason: Optional[str] = None):
        previous = self.session.state
        self.session.state = state
        logger.info(f"Monitor {self.order_number}: {previous.value} -> {state.value}")

        if self.checkpoint_sink is not None:
            self.checkpoint_sink(self.session.checkpoint())

        self.updates.publish(MonitorUpdate(
            order_number=self.order_number,
            state=state,
            previous_state=previous,
            status=self.session.last_status,
            reason=reason,
        ))
