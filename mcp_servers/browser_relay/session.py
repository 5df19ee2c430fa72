from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING, Any, Protocol

if TYPE_CHECKING:
    from .relay_client import RelayClient

_LOGGER = logging.getLogger("mcp.browser_relay.session")

STATUS_CONNECTING = "connecting"
STATUS_CONNECTED = "connected"
STATUS_DISCONNECTED = "disconnected"

BADGE_DISCONNECTED_TEXT = "✕"
BADGE_DISCONNECTED_COLOR = "#F44336"
BADGE_CONNECTED_COLOR = "#4CAF50"

_NON_AUTOMATABLE_SCHEMES = ("about:", "moz-extension:", "chrome:", "chrome-extension:")


class BrowserApi(Protocol):
    """Tab operations provided by the browser the counterpart runs in."""

    async def create_tab(self, url: str, *, active: bool) -> dict[str, Any]: ...

    async def query_tabs(self) -> list[dict[str, Any]]: ...

    async def get_tab(self, tab_id: int) -> dict[str, Any] | None: ...

    async def activate_tab(self, tab_id: int) -> None: ...

    async def set_badge(self, tab_id: int, text: str, color: str) -> None: ...


def _now_ms() -> int:
    return int(time.time() * 1000)


def _tab_info(tab: dict[str, Any], *, index: int | None = None) -> dict[str, Any]:
    return {
        "id": tab.get("id"),
        "title": tab.get("title"),
        "url": tab.get("url"),
        **({"index": index} if index is not None else {}),
    }


class Session:
    """One relay server seen from the counterpart: its connection and its own tab.

    Tab state is per session, so two automation clients never steer the same
    attached tab through this object.
    """

    def __init__(self, port: int, session_id: str, browser: BrowserApi | None = None) -> None:
        self.port = int(port)
        self.session_id = session_id
        self.browser = browser
        self.connection: RelayClient | None = None

        self.attached_tab_id: int | None = None
        self.attached_tab_info: dict[str, Any] | None = None
        self.stealth_mode = False
        self.tab_stealth_modes: dict[int, bool] = {}
        self.tech_stack: dict[int, Any] = {}

        self.status = STATUS_DISCONNECTED
        self.last_activity = _now_ms()

    def __repr__(self) -> str:
        return f"Session(port={self.port}, session_id={self.session_id!r}, status={self.status!r})"

    def update_activity(self) -> None:
        self.last_activity = _now_ms()

    def set_attached_tab(self, tab_id: int, info: dict[str, Any] | None) -> None:
        self.attached_tab_id = tab_id
        self.attached_tab_info = info
        _LOGGER.info("[Session %s] Attached to tab %s", self.session_id, tab_id)

    def clear_attached_tab(self) -> None:
        self.attached_tab_id = None
        self.attached_tab_info = None
        _LOGGER.info("[Session %s] Cleared attached tab", self.session_id)

    def set_tech_stack(self, tab_id: int, tech_stack: Any) -> None:
        self.tech_stack[tab_id] = tech_stack
        if self.attached_tab_id == tab_id and self.attached_tab_info is not None:
            self.attached_tab_info["techStack"] = tech_stack

    def _require_browser(self) -> BrowserApi:
        if self.browser is None:
            raise RuntimeError("No browser API attached to this session")
        return self.browser

    # ─────────────────────────────────────────────────────────────────────────
    # Tab operations
    # ─────────────────────────────────────────────────────────────────────────

    async def list_tabs(self) -> list[dict[str, Any]]:
        browser = self._require_browser()
        tabs = []
        for idx, tab in enumerate(await browser.query_tabs()):
            url = str(tab.get("url") or "")
            tabs.append(
                {
                    **_tab_info(tab, index=idx),
                    "active": bool(tab.get("active")),
                    "automatable": bool(url) and not url.startswith(_NON_AUTOMATABLE_SCHEMES),
                    "attachedToSession": self.session_id if tab.get("id") == self.attached_tab_id else None,
                }
            )
        return tabs

    async def create_tab(self, url: str = "about:blank", activate: bool = True, stealth: bool = False) -> dict[str, Any]:
        browser = self._require_browser()
        tab = await browser.create_tab(url, active=activate)
        tab_id = tab.get("id")

        index = None
        for idx, t in enumerate(await browser.query_tabs()):
            if t.get("id") == tab_id:
                index = idx
                break

        self.stealth_mode = bool(stealth)
        self.tab_stealth_modes[tab_id] = bool(stealth)
        self.attached_tab_id = tab_id
        self.attached_tab_info = {**_tab_info(tab, index=index), "techStack": self.tech_stack.get(tab_id)}
        await self.mark_tab_connected()
        _LOGGER.info("[Session %s] Created and attached to tab %s", self.session_id, tab_id)
        return {**self.attached_tab_info, "sessionId": self.session_id}

    async def select_tab(self, index: int, activate: bool = False, stealth: bool = False) -> dict[str, Any]:
        browser = self._require_browser()
        tabs = await browser.query_tabs()
        if index < 0 or index >= len(tabs):
            raise ValueError(f"Tab index {index} out of range (0-{len(tabs) - 1})")

        tab = tabs[index]
        tab_id = tab.get("id")
        self.stealth_mode = bool(stealth)
        self.tab_stealth_modes[tab_id] = bool(stealth)
        self.attached_tab_id = tab_id
        self.attached_tab_info = {**_tab_info(tab, index=index), "techStack": self.tech_stack.get(tab_id)}
        if activate:
            await browser.activate_tab(tab_id)
        await self.mark_tab_connected()
        _LOGGER.info("[Session %s] Selected tab %s at index %d", self.session_id, tab_id, index)
        return {**self.attached_tab_info, "sessionId": self.session_id}

    # ─────────────────────────────────────────────────────────────────────────
    # Badges
    # ─────────────────────────────────────────────────────────────────────────

    async def _set_badge(self, text: str, color: str) -> bool:
        tab_id = self.attached_tab_id
        if tab_id is None or self.browser is None:
            return False
        try:
            # The tab may have been closed already.
            if await self.browser.get_tab(tab_id) is None:
                return False
            await self.browser.set_badge(tab_id, text, color)
        except Exception as exc:  # noqa: BLE001
            _LOGGER.info("[Session %s] Could not update badge on tab %s: %s", self.session_id, tab_id, exc)
            return False
        return True

    async def mark_tab_connected(self) -> bool:
        return await self._set_badge(self.session_id[:2], BADGE_CONNECTED_COLOR)

    async def mark_tab_disconnected(self) -> bool:
        return await self._set_badge(BADGE_DISCONNECTED_TEXT, BADGE_DISCONNECTED_COLOR)

    def summary(self) -> dict[str, Any]:
        return {
            "port": self.port,
            "sessionId": self.session_id,
            "status": self.status,
            "attachedTabId": self.attached_tab_id,
            "lastActivity": self.last_activity,
            **({"stealth": True} if self.stealth_mode else {}),
        }
