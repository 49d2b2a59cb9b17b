from __future__ import annotations

import logging
import queue
import threading
from typing import Callable, List, Optional

from filtersync.logutil import log_exception_throttled


logger = logging.getLogger(__name__)


MIN_PERIOD_SECONDS = 5
MAX_PERIOD_SECONDS = 60 * 60
TRIGGER_QUEUE_SIZE = 2

# Shutdown message for the signal consumer.
_STOP = object()


class UpdateScheduler:
    """Drives update passes from a timer thread and from manual triggers.

    Only the consumer thread runs `run_pass`, so passes never overlap. The
    trigger queue is bounded: `trigger()` blocks while two requests are
    already pending.
    """

    def __init__(
        self,
        run_pass: Callable[[], None],
        interval_hours: Callable[[], int],
        *,
        min_period: float = MIN_PERIOD_SECONDS,
        max_period: float = MAX_PERIOD_SECONDS,
        queue_size: int = TRIGGER_QUEUE_SIZE,
    ):
        self._run_pass = run_pass
        self._interval_hours = interval_hours
        self.min_period = float(min_period)
        self.max_period = float(max_period)
        self._queue: "queue.Queue[object]" = queue.Queue(maxsize=int(queue_size))
        self._stopped = threading.Event()
        self._lock = threading.Lock()
        self._started = False
        self._threads: List[threading.Thread] = []

    @property
    def running(self) -> bool:
        return self._started and not self._stopped.is_set()

    def start(self) -> None:
        with self._lock:
            if self._started:
                return
            self._started = True

        consumer = threading.Thread(target=self._signal_loop, name="filters-updater", daemon=True)
        timer = threading.Thread(target=self._timer_loop, name="filters-timer", daemon=True)
        self._threads = [consumer, timer]
        consumer.start()
        timer.start()

    def trigger(self) -> bool:
        """Request an update pass. Blocks while the queue is full."""
        if self._stopped.is_set():
            logger.warning("Filters: update requested after shutdown, ignoring")
            return False
        self._queue.put(True)
        return True

    def stop(self) -> None:
        if self._stopped.is_set():
            return
        self._stopped.set()
        if self._started:
            self._queue.put(_STOP)

    def join(self, timeout: Optional[float] = None) -> None:
        for t in self._threads:
            t.join(timeout)

    def _timer_loop(self) -> None:
        # Grows while the network is down so a dead link doesn't cause a retry storm.
        period = self.min_period
        while not self._stopped.is_set():
            try:
                if int(self._interval_hours() or 0) == 0:
                    # Updates are disabled.
                    period = self.max_period
                    self._stopped.wait(period)
                    continue

                self._put_until_stopped(True)
            except Exception:
                log_exception_throttled(
                    logger,
                    "filters.scheduler.timer",
                    interval_seconds=300.0,
                    message="Filters: update timer failed",
                )

            self._stopped.wait(period)
            period = min(period * 2, self.max_period)

    def _put_until_stopped(self, item: object) -> None:
        while not self._stopped.is_set():
            try:
                self._queue.put(item, timeout=1.0)
                return
            except queue.Full:
                continue

    def _signal_loop(self) -> None:
        while True:
            msg = self._queue.get()
            if msg is _STOP:
                logger.debug("Filters: update loop stopped")
                return
            try:
                self._run_pass()
            except Exception:
                log_exception_throttled(
                    logger,
                    "filters.scheduler.pass",
                    interval_seconds=300.0,
                    message="Filters: update pass failed",
                )
