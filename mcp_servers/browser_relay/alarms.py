from __future__ import annotations

import asyncio
import contextlib
import inspect
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

_LOGGER = logging.getLogger("mcp.browser_relay.alarms")


@dataclass(slots=True)
class Alarm:
    name: str
    due_at: float
    callback: Callable[[], Any]


class AlarmScheduler:
    """Named one-shot timers keyed to wall-clock time.

    Due times are compared against ``time.time()`` rather than the loop clock,
    so an alarm that came due while the process was suspended fires on the next
    tick (or immediately on ``wake()``) instead of drifting by the suspended
    interval.
    """

    def __init__(self, *, tick_interval: float = 0.25) -> None:
        self.tick_interval = max(0.01, float(tick_interval))
        self._alarms: dict[str, Alarm] = {}
        self._task: asyncio.Task | None = None
        self._wake = asyncio.Event()
        self._running: set[asyncio.Task] = set()

    def create(self, name: str, delay: float, callback: Callable[[], Any]) -> Alarm:
        """Schedule (or reschedule) ``name`` to fire after ``delay`` seconds."""
        alarm = Alarm(name=name, due_at=time.time() + max(0.0, float(delay)), callback=callback)
        self._alarms[name] = alarm
        self._wake.set()
        return alarm

    def clear(self, name: str) -> bool:
        return self._alarms.pop(name, None) is not None

    def clear_all(self) -> None:
        self._alarms.clear()

    def get(self, name: str) -> Alarm | None:
        return self._alarms.get(name)

    def names(self) -> list[str]:
        return sorted(self._alarms)

    def wake(self) -> int:
        """Fire every overdue alarm now. Returns how many fired."""
        return self._fire_due()

    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.is_running():
            return
        self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        task = self._task
        self._task = None
        self._alarms.clear()
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        for running in list(self._running):
            running.cancel()
        if self._running:
            await asyncio.gather(*list(self._running), return_exceptions=True)

    async def _run(self) -> None:
        while True:
            self._fire_due()
            self._wake.clear()
            timeout = self.tick_interval
            if self._alarms:
                soonest = min(a.due_at for a in self._alarms.values())
                timeout = max(0.0, min(timeout, soonest - time.time()))
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(self._wake.wait(), timeout=timeout)

    def _fire_due(self) -> int:
        now = time.time()
        due = [a for a in self._alarms.values() if a.due_at <= now]
        for alarm in due:
            self._alarms.pop(alarm.name, None)
            _LOGGER.debug("alarm fired: %s", alarm.name)
            try:
                res = alarm.callback()
            except Exception:
                _LOGGER.exception("alarm callback failed: %s", alarm.name)
                continue
            if inspect.isawaitable(res):
                task = asyncio.ensure_future(res)
                self._running.add(task)
                task.add_done_callback(self._running.discard)
        return len(due)
