"""Background scheduler that triggers periodic batch runs and maintenance."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict

from ..errors import LeaseUnavailableError

LOGGER = logging.getLogger("ledger.scheduler")


@dataclass
class ScheduledTask:
    name: str
    interval: float
    handler: Callable[[], None]
    last_run: float = 0.0
    runs: int = 0


class SchedulerService:
    def __init__(self, tick: float = 1.0):
        self.tick = tick
        self._tasks: Dict[str, ScheduledTask] = {}
        self._thread: threading.Thread | None = None
        self._stop = threading.Event()

    @property
    def tasks(self) -> Dict[str, ScheduledTask]:
        return dict(self._tasks)

    def add_task(self, name: str, interval: float, handler: Callable[[], None]) -> None:
        if interval <= 0:
            raise ValueError(f"Task {name!r} needs a positive interval")
        self._tasks[name] = ScheduledTask(name=name, interval=interval, handler=handler)

    def run_pending(self, now: float | None = None) -> int:
        """Run every task whose interval has elapsed; returns how many ran."""
        now = time.time() if now is None else now
        ran = 0
        for task in list(self._tasks.values()):
            if now - task.last_run < task.interval:
                continue
            task.last_run = now
            try:
                task.handler()
                task.runs += 1
                ran += 1
            except LeaseUnavailableError as exc:
                LOGGER.info("Scheduled task %s skipped: %s", task.name, exc)
            except Exception as exc:
                LOGGER.exception("Scheduled task %s failed: %s", task.name, exc)
        return ran

    def start(self) -> None:
        if self._thread or not self._tasks:
            return

        def _loop():
            while not self._stop.is_set():
                self.run_pending()
                self._stop.wait(self.tick)

        self._thread = threading.Thread(target=_loop, name="ledger-scheduler", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        if self._thread:
            self._stop.set()
            self._thread.join(timeout=2)
            self._thread = None
            self._stop.clear()
