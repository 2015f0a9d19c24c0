from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from typing import Callable, Iterator, Protocol

from apscheduler.schedulers.background import BackgroundScheduler

logger = logging.getLogger("pulsebridge.scheduler")

TickFn = Callable[[], None]


class IntervalTimer(Protocol):
    def reschedule(self, period_s: float) -> None: ...

    def cancel(self) -> None: ...


TimerFactory = Callable[[float, TickFn], IntervalTimer]


class BackgroundIntervalTimer:
    """One interval job on its own APScheduler background scheduler."""

    job_id = "poll"

    def __init__(self, period_s: float, callback: TickFn) -> None:
        self.period_s = float(period_s)
        self._scheduler = BackgroundScheduler(timezone="UTC")
        self._scheduler.add_job(
            func=callback,
            trigger="interval",
            seconds=self.period_s,
            id=self.job_id,
            max_instances=1,
            replace_existing=True,
            coalesce=True,
        )
        self._scheduler.start()

    def reschedule(self, period_s: float) -> None:
        # A fresh interval trigger restarts the phase from now.
        self.period_s = float(period_s)
        self._scheduler.reschedule_job(self.job_id, trigger="interval", seconds=self.period_s)

    def cancel(self) -> None:
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)


class PollScheduler:
    """Cancellable periodic driver for a poll tick.

    - ``set_period`` reschedules the job; the new period starts counting from
      the moment of replacement.
    - A firing that lands while the previous tick is still running is skipped.
    - ``generation`` changes on every start/stop so a tick can tell whether
      the loop it belonged to is still current after a slow round trip.
    """

    def __init__(
        self,
        tick: TickFn,
        *,
        period_s: float,
        timer_factory: TimerFactory | None = None,
        name: str = "poll",
    ) -> None:
        self.name = name
        self._tick = tick
        self._period_s = float(period_s)
        self._timer_factory = timer_factory or BackgroundIntervalTimer
        self._timer: IntervalTimer | None = None
        self._generation = 0
        self._control_lock = threading.RLock()
        self._in_flight = threading.Lock()

    @property
    def running(self) -> bool:
        return self._timer is not None

    @property
    def period_s(self) -> float:
        return self._period_s

    @property
    def generation(self) -> int:
        return self._generation

    def start(self, *, immediate: bool = False) -> bool:
        """Arm the timer; with ``immediate`` also run one tick right away.

        Returns False when already running.
        """

        with self._control_lock:
            if self._timer is not None:
                return False
            self._generation += 1
            self._timer = self._timer_factory(self._period_s, self.run_once)
            logger.info("%s polling started (every %.1fs)", self.name, self._period_s)
        if immediate:
            self.run_once()
        return True

    def stop(self) -> bool:
        with self._control_lock:
            if self._timer is None:
                return False
            self._timer.cancel()
            self._timer = None
            self._generation += 1
            logger.info("%s polling stopped", self.name)
            return True

    def set_period(self, period_s: float) -> None:
        with self._control_lock:
            self._period_s = float(period_s)
            if self._timer is None:
                return
            self._timer.reschedule(self._period_s)
            logger.info("%s polling period now %.1fs", self.name, self._period_s)

    @contextmanager
    def exclusive(self) -> Iterator[None]:
        """Hold off ticks (waiting for one already running) for the block."""

        with self._in_flight:
            yield

    def run_once(self) -> bool:
        """Run one tick unless another is in flight. Returns whether it ran."""

        if not self._in_flight.acquire(blocking=False):
            logger.debug("%s tick skipped, previous tick still in flight", self.name)
            return False
        try:
            self._tick()
        except Exception:
            logger.exception("%s tick failed", self.name)
        finally:
            self._in_flight.release()
        return True
