from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

_LOGGER = logging.getLogger("mcp.browser_relay.events")


@dataclass(slots=True)
class Subscription:
    emitter: EventEmitter
    event: str
    callback: Callable[..., Any]

    def cancel(self) -> None:
        self.emitter.unsubscribe(self.event, self.callback)


class EventEmitter:
    """Named observer lists.

    Callbacks may be plain functions or coroutine functions; coroutines are
    scheduled on the running loop. A failing observer is logged and skipped.
    """

    def __init__(self) -> None:
        self._observers: dict[str, list[Callable[..., Any]]] = {}
        self._tasks: set[asyncio.Task] = set()

    def subscribe(self, event: str, callback: Callable[..., Any]) -> Subscription:
        self._observers.setdefault(event, []).append(callback)
        return Subscription(self, event, callback)

    def unsubscribe(self, event: str, callback: Callable[..., Any]) -> bool:
        observers = self._observers.get(event)
        if not observers or callback not in observers:
            return False
        observers.remove(callback)
        if not observers:
            self._observers.pop(event, None)
        return True

    def observer_count(self, event: str) -> int:
        return len(self._observers.get(event, ()))

    def emit(self, event: str, *args: Any) -> int:
        observers = list(self._observers.get(event, ()))
        for cb in observers:
            try:
                res = cb(*args)
            except Exception:
                _LOGGER.exception("observer failed event=%s", event)
                continue
            if inspect.isawaitable(res):
                task = asyncio.ensure_future(res)
                self._tasks.add(task)
                task.add_done_callback(self._task_done)
        return len(observers)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            _LOGGER.error("async observer failed: %s", exc)

    async def drain(self) -> None:
        """Wait for scheduled coroutine observers."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
