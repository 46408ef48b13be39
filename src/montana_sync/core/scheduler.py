"""Timers: a thread-based scheduler and a trailing debouncer."""

import threading
from collections.abc import Callable

from loguru import logger

from montana_sync.protocols import CancelHandle, SchedulerProtocol


class TimerScheduler:
    """Run callbacks on daemon timer threads."""

    def call_later(self, delay: float, callback: Callable[[], None]) -> CancelHandle:
        timer = threading.Timer(delay, callback)
        timer.daemon = True
        timer.start()
        return timer


class Debouncer:
    """Trailing debounce: callback runs once, delay seconds after the last trigger."""

    def __init__(
        self,
        scheduler: SchedulerProtocol,
        delay: float,
        callback: Callable[[], None],
        *,
        name: str = "debounce",
    ) -> None:
        self._scheduler = scheduler
        self.delay = delay
        self._callback = callback
        self._name = name
        self._lock = threading.Lock()
        self._handle: CancelHandle | None = None
        self._generation = 0

    @property
    def pending(self) -> bool:
        return self._handle is not None

    def trigger(self) -> None:
        """(Re)start the quiescence window."""
        with self._lock:
            if self._handle is not None:
                self._handle.cancel()
            self._generation += 1
            generation = self._generation
            self._handle = self._scheduler.call_later(self.delay, lambda: self._fire(generation))

    def cancel(self) -> None:
        with self._lock:
            if self._handle is not None:
                self._handle.cancel()
            self._handle = None
            self._generation += 1

    def flush(self) -> None:
        """Run a pending callback now instead of waiting for the window to end."""
        with self._lock:
            if self._handle is None:
                return
            self._handle.cancel()
            self._generation += 1
            generation = self._generation
        self._fire(generation)

    def _fire(self, generation: int) -> None:
        with self._lock:
            # A cancelled timer may still fire if it was already running
            if generation != self._generation:
                return
            self._handle = None
        try:
            self._callback()
        except Exception:
            logger.exception("{} callback failed", self._name)
