"""Cancellable timers for dispute deadlines and periodic sweeps.

Both schedulers run callbacks on daemon ``threading.Timer`` threads.
Callback failures are logged and never kill a periodic task.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable

logger = logging.getLogger(__name__)


class DeadlineScheduler:
    """Keyed one-shot timers.

    Scheduling a key that already has a timer replaces it. A fired or
    cancelled key is forgotten.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._timers: dict[str, threading.Timer] = {}

    def schedule(self, key: str, delay_seconds: float, callback: Callable[[], None]) -> None:
        timer = threading.Timer(max(delay_seconds, 0.0), self._fire, args=(key, callback))
        timer.daemon = True
        with self._lock:
            previous = self._timers.pop(key, None)
            self._timers[key] = timer
        if previous is not None:
            previous.cancel()
        timer.start()
        logger.debug(f"Scheduled deadline {key} in {delay_seconds:.0f}s")

    def cancel(self, key: str) -> bool:
        """Cancel the timer for ``key``. Returns False if none was pending."""
        with self._lock:
            timer = self._timers.pop(key, None)
        if timer is None:
            return False
        timer.cancel()
        logger.debug(f"Cancelled deadline {key}")
        return True

    def is_scheduled(self, key: str) -> bool:
        with self._lock:
            return key in self._timers

    def pending(self) -> list[str]:
        with self._lock:
            return list(self._timers)

    def shutdown(self) -> None:
        with self._lock:
            timers = list(self._timers.values())
            self._timers.clear()
        for timer in timers:
            timer.cancel()

    def _fire(self, key: str, callback: Callable[[], None]) -> None:
        with self._lock:
            current = self._timers.get(key)
            if current is None or current is not threading.current_thread():
                # Replaced or cancelled after the timer thread started
                return
            del self._timers[key]
        try:
            callback()
        except Exception:
            logger.exception(f"Deadline callback failed for {key}")


class PeriodicTask:
    """Run ``callback`` every ``interval_seconds`` until stopped."""

    def __init__(self, name: str, interval_seconds: float, callback: Callable[[], None]):
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self.name = name
        self.interval_seconds = interval_seconds
        self._callback = callback
        self._lock = threading.Lock()
        self._timer: threading.Timer | None = None
        self._running = False
        self.runs = 0

    @property
    def running(self) -> bool:
        return self._running

    def start(self) -> None:
        with self._lock:
            if self._running:
                return
            self._running = True
            self._arm()
        logger.info(f"Started periodic task {self.name} every {self.interval_seconds}s")

    def stop(self) -> None:
        with self._lock:
            self._running = False
            timer, self._timer = self._timer, None
        if timer is not None:
            timer.cancel()
        logger.info(f"Stopped periodic task {self.name}")

    def _arm(self) -> None:
        self._timer = threading.Timer(self.interval_seconds, self._run)
        self._timer.daemon = True
        self._timer.start()

    def _run(self) -> None:
        try:
            self._callback()
        except Exception:
            logger.exception(f"Periodic task {self.name} failed")
        finally:
            with self._lock:
                self.runs += 1
                if self._running:
                    self._arm()
