from __future__ import annotations

import asyncio

import pytest

from mcp_servers.browser_relay.errors import ConnectionClosed, RequestTimeout
from mcp_servers.browser_relay.pending import PendingRequestTable


def test_ids_are_monotonic_and_never_reused() -> None:
    async def _main() -> None:
        table = PendingRequestTable()
        a, _ = table.create("a")
        b, _ = table.create("b")
        assert b > a
        assert table.resolve(a, {"ok": True})
        c, _ = table.create("c")
        assert c > b
        assert a not in table
        assert sorted(table.ids()) == [b, c]

    asyncio.run(_main())


def test_settles_exactly_once_and_reports_stale() -> None:
    async def _main() -> None:
        table = PendingRequestTable()
        req_id, fut = table.create("getTabs")
        assert table.tracks(str(req_id))
        assert table.resolve(str(req_id), [1, 2])
        assert await fut == [1, 2]
        assert table.resolve(req_id, "again") is False
        assert table.reject(req_id, RuntimeError("late")) is False
        assert table.tracks("not-an-id") is False
        assert len(table) == 0

    asyncio.run(_main())


def test_wait_times_out_and_removes_entry() -> None:
    async def _main() -> None:
        table = PendingRequestTable()
        req_id, fut = table.create("slow")
        with pytest.raises(RequestTimeout) as ei:
            await table.wait(req_id, fut, method="slow", timeout=0.05)
        assert ei.value.kind == "request_timeout"
        assert ei.value.method == "slow"
        assert req_id not in table
        # A late response is now stale.
        assert table.resolve(req_id, {}) is False

    asyncio.run(_main())


def test_fail_all_rejects_every_entry() -> None:
    async def _main() -> None:
        table = PendingRequestTable()
        futs = [table.create(f"m{i}")[1] for i in range(3)]
        assert table.fail_all(ConnectionClosed("gone")) == 3
        assert len(table) == 0
        for fut in futs:
            with pytest.raises(ConnectionClosed):
                await fut

    asyncio.run(_main())


def test_discard_cancels_without_settling() -> None:
    async def _main() -> None:
        table = PendingRequestTable()
        req_id, fut = table.create("x")
        table.discard(req_id)
        assert fut.cancelled()
        assert req_id not in table

    asyncio.run(_main())
