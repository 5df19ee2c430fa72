"""Stored remote-relay credentials.

- Tokens live in a small JSON file (not encrypted), written atomically with
  0600 permissions.
- Access tokens are JWTs; claims are decoded WITHOUT signature checks. The
  remote relay validates them; here they only tell us who we are, where the
  relay lives and when the token expires.
"""

from __future__ import annotations

import base64
import json
import logging
import os
import time
from contextlib import suppress
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from .errors import AuthExpired

_LOGGER = logging.getLogger("mcp.browser_relay.credentials")


@dataclass(frozen=True, slots=True)
class UserInfo:
    email: str | None
    sub: str | None
    connection_url: str | None
    expires_at: int | None

    def is_expired(self, now: float | None = None) -> bool:
        if self.expires_at is None:
            return True
        return self.expires_at < int(now if now is not None else time.time())

    def to_dict(self) -> dict[str, Any]:
        return {
            "email": self.email,
            "sub": self.sub,
            "connection_url": self.connection_url,
            "expires_at": self.expires_at,
        }


def decode_jwt(token: str) -> dict[str, Any] | None:
    """Return the payload claims of ``token`` or None if it is not a JWT."""
    parts = str(token or "").split(".")
    if len(parts) != 3:
        return None
    segment = parts[1]
    segment += "=" * (-len(segment) % 4)
    try:
        payload = json.loads(base64.urlsafe_b64decode(segment.encode("ascii")).decode("utf-8"))
    except Exception as exc:  # noqa: BLE001
        _LOGGER.debug("JWT decode failed: %s", exc)
        return None
    return payload if isinstance(payload, dict) else None


def user_info_from_token(token: str) -> UserInfo | None:
    payload = decode_jwt(token)
    if payload is None:
        return None
    exp: int | None
    try:
        exp = int(payload["exp"]) if payload.get("exp") is not None else None
    except (TypeError, ValueError):
        exp = None
    sub = payload.get("sub")
    return UserInfo(
        email=payload.get("email") or sub or None,
        sub=str(sub) if sub is not None else None,
        connection_url=payload.get("connection_url") or None,
        expires_at=exp,
    )


class CredentialStore:
    def __init__(self, path: str | Path) -> None:
        self.path = Path(path).expanduser()

    def load(self) -> dict[str, str]:
        p = self.path
        try:
            if not p.exists() or not p.is_file():
                return {}
            obj = json.loads(p.read_text(encoding="utf-8", errors="replace"))
        except Exception as exc:  # noqa: BLE001
            _LOGGER.warning("Ignoring unreadable token file %s: %s", p, exc)
            return {}
        if not isinstance(obj, dict):
            return {}
        return {k: str(v) for k, v in obj.items() if k in {"access_token", "refresh_token"} and v}

    def save(self, access_token: str, refresh_token: str | None = None) -> None:
        p = self.path
        p.parent.mkdir(parents=True, exist_ok=True)
        payload = {"access_token": access_token, **({"refresh_token": refresh_token} if refresh_token else {})}
        tmp = p.with_suffix(p.suffix + ".tmp")
        tmp.write_text(json.dumps(payload, indent=2, sort_keys=True), encoding="utf-8")
        with suppress(Exception):
            os.chmod(tmp, 0o600)
        tmp.replace(p)
        with suppress(Exception):
            os.chmod(p, 0o600)

    def clear(self) -> bool:
        try:
            self.path.unlink()
        except FileNotFoundError:
            return False
        _LOGGER.info("Stored credentials cleared")
        return True

    @property
    def access_token(self) -> str | None:
        return self.load().get("access_token")

    def user_info(self) -> UserInfo | None:
        token = self.access_token
        if not token:
            return None
        return user_info_from_token(token)

    def is_authenticated(self) -> bool:
        info = self.user_info()
        return info is not None and not info.is_expired()

    def require_valid(self) -> tuple[str, UserInfo] | None:
        """Token and claims when logged in; None when not.

        An expired token is cleared before ``AuthExpired`` is raised, so the next
        enable falls back to local mode until the user logs in again.
        """
        token = self.access_token
        if not token:
            return None
        info = user_info_from_token(token)
        if info is None:
            return None
        if info.is_expired():
            self.clear()
            raise AuthExpired(
                "Stored login has expired. Log in again to use the remote relay.",
                details={"email": info.email} if info.email else None,
            )
        return token, info
