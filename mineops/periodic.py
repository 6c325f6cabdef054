from __future__ import annotations

import logging
import threading
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class PeriodicTask:
    """Runs `func` every `interval` seconds on a daemon thread until cancelled.

    The interval is fixed for the life of the task; to change it, cancel the
    task and schedule a new one. Exceptions raised by `func` are logged and
    the loop carries on with the next period.
    """

    def __init__(
        self,
        interval: float,
        func: Callable[[], object],
        *,
        name: str = "periodic",
        run_immediately: bool = True,
    ) -> None:
        if interval <= 0:
            raise ValueError("interval must be positive")
        self.interval = float(interval)
        self.name = name
        self._func = func
        self._run_immediately = run_immediately
        self._stopped = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> "PeriodicTask":
        if self._thread is not None:
            raise RuntimeError(f"{self.name} already started")
        self._thread = threading.Thread(target=self._run, name=self.name, daemon=True)
        self._thread.start()
        return self

    def cancel(self) -> None:
        self._stopped.set()

    def _run(self) -> None:
        if self._run_immediately and not self._stopped.is_set():
            self._call()
        while not self._stopped.wait(self.interval):
            self._call()

    def _call(self) -> None:
        try:
            self._func()
        except Exception:
            logger.exception("%s: periodic call failed", self.name)


def schedule_periodic(
    interval: float, func: Callable[[], object], *, name: str = "periodic"
) -> PeriodicTask:
    """Start `func` now and then every `interval` seconds; returns the cancel handle."""
    return PeriodicTask(interval, func, name=name).start()
