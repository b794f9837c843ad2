"""Persisted login: bearer token plus the signed-in user, kept in a JSON file."""
from __future__ import annotations

import json
import logging
from pathlib import Path

from opexhub.schemas import User

log = logging.getLogger(__name__)

TOKEN_KEY = "opex_token"
USER_KEY = "opex_user"


class SessionStore:
    def __init__(self, path: Path):
        self.path = path
        self._data: dict | None = None

    def _load(self) -> dict:
        if self._data is None:
            self._data = {}
            if self.path.exists():
                try:
                    self._data = json.loads(self.path.read_text(encoding="utf-8")) or {}
                except (OSError, json.JSONDecodeError) as exc:
                    log.warning("Unreadable session file %s: %s", self.path, exc)
        return self._data

    def _flush(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(self._load()), encoding="utf-8")

    @property
    def token(self) -> str | None:
        return self._load().get(TOKEN_KEY) or None

    @property
    def user(self) -> User | None:
        raw = self._load().get(USER_KEY)
        return User.model_validate(raw) if raw else None

    def save(self, token: str, user: User | dict) -> None:
        if isinstance(user, User):
            user = user.model_dump(by_alias=True, mode="json")
        data = self._load()
        data[TOKEN_KEY] = token
        data[USER_KEY] = user
        self._flush()

    def clear(self) -> None:
        self._data = {}
        if self.path.exists():
            self.path.unlink()


class MemorySessionStore(SessionStore):
    """Session kept in memory only; used by the MCP server's per-process login and tests."""

    def __init__(self, token: str | None = None, user: User | None = None):
        super().__init__(Path("."))
        self._data = {}
        if token:
            self._data[TOKEN_KEY] = token
        if user is not None:
            self._data[USER_KEY] = user.model_dump(by_alias=True, mode="json")

    def _flush(self) -> None:
        pass

    def clear(self) -> None:
        self._data = {}
