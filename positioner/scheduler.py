# positioner/scheduler.py
from __future__ import annotations

import logging
import threading
from typing import Any, Callable, List, Optional

from positioner.reconciler import DuplicateReconciler
from positioner.sweeper import ExpirationSweeper

logger = logging.getLogger(__name__)


class PeriodicTask:
    """
    Runs `func` every `interval_seconds` on a daemon thread until stopped.
    Stopping only ends the wait between ticks; a tick already running
    (and any store call inside it) finishes on its own.
    """

    def __init__(self, name: str, interval_seconds: float, func: Callable[[], Any]) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be > 0")
        self.name = name
        self.interval_seconds = interval_seconds
        self.func = func
        self.ticks = 0
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive() and not self._stop.is_set()

    def start(self, run_immediately: bool = True) -> None:
        if self.is_running:
            return
        if self._thread is not None:
            # a stopped loop is still finishing its last tick
            self._thread.join()
        # each run owns its stop event
        self._stop = threading.Event()
        self._thread = threading.Thread(
            target=self._loop,
            args=(self._stop, run_immediately),
            name=self.name,
            daemon=True,
        )
        self._thread.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            if not self._thread.is_alive():
                self._thread = None

    def _loop(self, stop: threading.Event, run_immediately: bool) -> None:
        if run_immediately:
            self._tick()
        while not stop.wait(self.interval_seconds):
            self._tick()

    def _tick(self) -> None:
        self.ticks += 1
        try:
            self.func()
        except Exception:
            logger.exception("Periodic task %s failed", self.name)


class ExpirationMonitor:
    """
    Owns the background checks:
      - duplicate cleanup once at start (optionally periodic)
      - expiration sweep right away, then every sweep interval
    stop() cancels all of them together.
    """

    def __init__(
        self,
        sweeper: ExpirationSweeper,
        reconciler: DuplicateReconciler,
        sweep_interval_seconds: float = 300,
        reconcile_interval_seconds: float = 0,
        reconcile_on_start: bool = True,
    ) -> None:
        self.sweeper = sweeper
        self.reconciler = reconciler
        self.reconcile_on_start = reconcile_on_start
        self.tasks: List[PeriodicTask] = [PeriodicTask("expiration-sweep", sweep_interval_seconds, self.sweeper.sweep)]
        if reconcile_interval_seconds > 0:
            self.tasks.append(PeriodicTask("duplicate-cleanup", reconcile_interval_seconds, self.reconciler.reconcile))

    def start(self) -> None:
        if self.reconcile_on_start:
            try:
                self.reconciler.reconcile()
            except Exception:
                logger.exception("Startup duplicate cleanup failed")
        for task in self.tasks:
            # the periodic reconcile already ran once above
            task.start(run_immediately=task.name == "expiration-sweep" or not self.reconcile_on_start)

    def stop(self, timeout: Optional[float] = None) -> None:
        for task in self.tasks:
            task.stop(timeout)

    def __enter__(self) -> "ExpirationMonitor":
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()
