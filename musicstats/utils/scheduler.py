"""
Background interval timers

Used for the buffered store flush, the hourly aggregation and the periodic
cloud sync. Each timer owns one daemon thread that waits on a stop event, so
stop() returns promptly even with long intervals.
"""

import threading
from typing import Callable, Optional

from .logger import get_logger

logger = get_logger(__name__)


class IntervalTimer:
    """Run a callable every `interval` seconds on a daemon thread."""

    def __init__(
        self,
        name: str,
        interval: float,
        callback: Callable[[], None],
        run_immediately: bool = False,
    ) -> None:
        """
        Args:
            name: Name used for the thread and in log messages
            interval: Seconds between ticks
            callback: Work to perform on each tick
            run_immediately: Fire once right after start() instead of waiting a full interval
        """
        self.name = name
        self.interval = interval
        self._callback = callback
        self._run_immediately = run_immediately
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.is_running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name=self.name, daemon=True)
        self._thread.start()
        logger.debug(f"Timer started: {self.name} every {self.interval}s")

    def stop(self, timeout: float = 5.0) -> None:
        self._stop_event.set()
        thread = self._thread
        self._thread = None
        if thread and thread is not threading.current_thread():
            thread.join(timeout=timeout)
        logger.debug(f"Timer stopped: {self.name}")

    def _run(self) -> None:
        if self._run_immediately:
            self._tick()
        while not self._stop_event.wait(self.interval):
            self._tick()

    def _tick(self) -> None:
        # A failing tick must not kill the timer thread
        try:
            self._callback()
        except Exception as e:
            logger.error(f"Timer tick failed ({self.name}): {e}", exc_info=True)
