from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Optional

from .config import POLL_INTERVAL, REFRESH_DEBOUNCE

logger = logging.getLogger("newsflow")


class Debouncer:
    """Accepts a call only if `window` seconds passed since the last accepted one."""

    def __init__(self, window: float = REFRESH_DEBOUNCE, clock: Callable[[], float] = time.monotonic):
        self.window = window
        self.clock = clock
        self._last: Optional[float] = None
        self._lock = threading.Lock()

    def ready(self) -> bool:
        with self._lock:
            now = self.clock()
            if self._last is not None and now - self._last < self.window:
                return False
            self._last = now
            return True

    def touch(self) -> None:
        """Record a call that bypassed ready()."""
        with self._lock:
            self._last = self.clock()

    def reset(self) -> None:
        with self._lock:
            self._last = None


class Poller:
    """Calls `callback` every `interval` seconds on a daemon thread."""

    def __init__(self, callback: Callable[[], None], interval: float = POLL_INTERVAL, name: str = "poller"):
        self.callback = callback
        self.interval = interval
        self.name = name
        self._thread: Optional[threading.Thread] = None
        self._stop: Optional[threading.Event] = None
        self._lock = threading.Lock()

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Start polling, replacing any poller already running."""
        with self._lock:
            self._stop_locked()
            stop = threading.Event()
            thread = threading.Thread(
                target=self._run, args=(stop,), name=self.name, daemon=True
            )
            self._stop, self._thread = stop, thread
            thread.start()
        logger.info("Started %s every %ss", self.name, self.interval)

    def stop(self) -> None:
        with self._lock:
            self._stop_locked()

    def _stop_locked(self) -> None:
        if self._stop is not None:
            self._stop.set()
            logger.info("Stopped %s", self.name)
        self._stop = None
        self._thread = None

    def _run(self, stop: threading.Event) -> None:
        while not stop.wait(self.interval):
            try:
                self.callback()
            except Exception as e:
                logger.exception("%s tick failed: %s", self.name, e)
