import asyncio
import heapq
import itertools
import logging
from typing import Callable, List, Optional, Protocol, Tuple

logger = logging.getLogger(__name__)


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


class Scheduler(Protocol):
    """Cooperative timer source. Callbacks run one at a time and must not block."""

    def now(self) -> float: ...

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle: ...


class AsyncioScheduler:
    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        self._loop = loop

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    def now(self) -> float:
        return self.loop.time()

    def call_later(self, delay: float, callback: Callable[[], None]) -> asyncio.TimerHandle:
        return self.loop.call_later(delay, callback)


class _ManualTimer:
    def __init__(self, deadline: float, callback: Callable[[], None]):
        self.deadline = deadline
        self.callback = callback
        self.cancelled = False

    def cancel(self):
        self.cancelled = True


class ManualScheduler:
    """
    Virtual clock for tests. Time only moves in ``advance()``; timers due
    at the same instant fire in the order they were scheduled.
    """

    def __init__(self, start: float = 0.0):
        self._now = start
        self._seq = itertools.count()
        self._timers: List[Tuple[float, int, _ManualTimer]] = []

    def now(self) -> float:
        return self._now

    def call_later(self, delay: float, callback: Callable[[], None]) -> _ManualTimer:
        timer = _ManualTimer(self._now + max(delay, 0.0), callback)
        heapq.heappush(self._timers, (timer.deadline, next(self._seq), timer))
        return timer

    def advance(self, seconds: float):
        target = self._now + seconds

        while self._timers and self._timers[0][0] <= target:
            deadline, _, timer = heapq.heappop(self._timers)
            if timer.cancelled:
                continue
            self._now = deadline
            timer.callback()

        self._now = target

    @property
    def pending(self) -> int:
        return sum(1 for _, _, timer in self._timers if not timer.cancelled)


class RepeatingTask:
    """Runs ``callback`` every ``interval`` seconds until cancelled."""

    def __init__(self, scheduler: Scheduler, interval: float, callback: Callable[[], None], name: str = "task"):
        self.scheduler = scheduler
        self.interval = interval
        self.callback = callback
        self.name = name
        self.active = False
        self._handle: Optional[TimerHandle] = None

    def start(self, immediately: bool = False):
        if self.active:
            return
        self.active = True

        if immediately:
            self._run()
        else:
            self._schedule()

    def _schedule(self):
        self._handle = self.scheduler.call_later(self.interval, self._run)

    def _run(self):
        self._handle = None
        if not self.active:
            return

        try:
            self.callback()
        finally:
            # the callback may have cancelled us
            if self.active and self._handle is None:
                self._schedule()

    def cancel(self):
        self.active = False
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
