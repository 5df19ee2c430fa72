from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any

from .errors import RequestTimeout

_LOGGER = logging.getLogger("mcp.browser_relay.pending")


@dataclass(slots=True)
class PendingRequest:
    id: int
    method: str
    future: asyncio.Future
    created_at: float = field(default_factory=time.time)


class PendingRequestTable:
    """Outstanding calls keyed by request id.

    Ids come from a per-table counter, so an id is never handed out twice while
    the table lives. Every entry settles at most once: settling or discarding
    removes it, and later responses for that id are reported as stale.
    """

    def __init__(self) -> None:
        self._next_id = 1
        self._pending: dict[int, PendingRequest] = {}

    def __len__(self) -> int:
        return len(self._pending)

    def __contains__(self, req_id: object) -> bool:
        return req_id in self._pending

    def ids(self) -> list[int]:
        return list(self._pending)

    def tracks(self, raw_id: Any) -> bool:
        try:
            return int(raw_id) in self._pending
        except (TypeError, ValueError):
            return False

    def create(self, method: str) -> tuple[int, asyncio.Future]:
        req_id = self._next_id
        self._next_id += 1
        fut = asyncio.get_running_loop().create_future()
        self._pending[req_id] = PendingRequest(id=req_id, method=method, future=fut)
        return req_id, fut

    def _take(self, raw_id: Any) -> PendingRequest | None:
        try:
            req_id = int(raw_id)
        except (TypeError, ValueError):
            return None
        return self._pending.pop(req_id, None)

    def resolve(self, raw_id: Any, result: Any) -> bool:
        entry = self._take(raw_id)
        if entry is None:
            _LOGGER.debug("stale response dropped id=%s", raw_id)
            return False
        if not entry.future.done():
            entry.future.set_result(result)
        return True

    def reject(self, raw_id: Any, exc: BaseException) -> bool:
        entry = self._take(raw_id)
        if entry is None:
            _LOGGER.debug("stale error response dropped id=%s", raw_id)
            return False
        if not entry.future.done():
            entry.future.set_exception(exc)
        return True

    def discard(self, req_id: int) -> None:
        entry = self._pending.pop(req_id, None)
        if entry is not None and not entry.future.done():
            entry.future.cancel()

    def fail_all(self, exc: BaseException) -> int:
        pending = list(self._pending.values())
        self._pending.clear()
        for entry in pending:
            if not entry.future.done():
                entry.future.set_exception(exc)
        return len(pending)

    async def wait(self, req_id: int, fut: asyncio.Future, *, method: str, timeout: float) -> Any:
        try:
            return await asyncio.wait_for(fut, timeout=max(0.001, float(timeout)))
        except asyncio.TimeoutError as exc:
            raise RequestTimeout(method, timeout) from exc
        finally:
            # Drop the slot so a late response cannot reach a stale caller.
            self._pending.pop(req_id, None)
