"""Per-session key-value state with typed accessors."""

from __future__ import annotations

import copy
from typing import Any, Dict, Iterable, List


FORM_DATA = "formData"
MFAID = "mfaid"
STATE = "state"
USERNAME = "username"
SESSIONID = "sessionid"
REQUEST = "request"
MESSAGES = "messages"
API_AUTH = "api_auth"


class SessionStore:
    """Session data for one session id.

    Reads and writes go to a local copy; ``write_close`` persists it to the
    backend. The backend needs ``load(sessionid) -> dict | None``,
    ``save(sessionid, data)`` and ``delete(sessionid)``.
    """

    def __init__(self, backend, sessionid: str | None) -> None:
        self._backend = backend
        self._sessionid = sessionid
        loaded = backend.load(sessionid) if sessionid else None
        self._data: Dict[str, Any] = copy.deepcopy(loaded) if isinstance(loaded, dict) else {}
        self._dirty = False
        self._closed = False
        self._stale_id: str | None = None

    @property
    def id(self) -> str | None:
        return self._sessionid

    def rebind(self, sessionid: str) -> None:
        """Move the data to a new session id (after authentication)."""
        if self._sessionid and self._sessionid != sessionid and self._stale_id is None:
            self._stale_id = self._sessionid
        self._sessionid = sessionid
        self._dirty = True

    def get(self, key: str, default: Any = None) -> Any:
        if key not in self._data:
            return default
        return copy.deepcopy(self._data[key])

    def has(self, key: str) -> bool:
        return key in self._data

    def set(self, key: str, value: Any) -> None:
        self._data[key] = copy.deepcopy(value)
        self._dirty = True

    def unset(self, keys: Iterable[str] | str) -> None:
        if isinstance(keys, str):
            keys = [keys]
        for key in keys:
            if key in self._data:
                del self._data[key]
                self._dirty = True

    def clear(self) -> None:
        if self._data:
            self._data = {}
            self._dirty = True

    def all(self) -> dict:
        return copy.deepcopy(self._data)

    # Form retry data is consumed once.
    def set_form_data(self, data: dict) -> None:
        self.set(FORM_DATA, data)

    def pop_form_data(self) -> dict | None:
        data = self.get(FORM_DATA)
        self.unset(FORM_DATA)
        return data if isinstance(data, dict) else None

    @property
    def mfaid(self) -> Any:
        return self.get(MFAID)

    @property
    def state(self) -> str | None:
        return self.get(STATE)

    @property
    def username(self) -> str | None:
        return self.get(USERNAME)

    @property
    def sessionid(self) -> str | None:
        return self.get(SESSIONID)

    @property
    def request_target(self) -> str | None:
        return self.get(REQUEST)

    @property
    def api_auth(self) -> dict | None:
        return self.get(API_AUTH)

    def push_messages(self, messages: List[dict]) -> None:
        if not messages:
            return
        stashed = self.get(MESSAGES) or []
        stashed.extend(messages)
        self.set(MESSAGES, stashed)

    def pop_messages(self) -> List[dict]:
        messages = self.get(MESSAGES) or []
        self.unset(MESSAGES)
        return messages

    def write_close(self) -> None:
        """Persist pending changes; later writes are still allowed but need another call."""
        if self._closed and not self._dirty:
            return
        if self._dirty and self._sessionid:
            self._backend.save(self._sessionid, copy.deepcopy(self._data))
            if self._stale_id and self._stale_id != self._sessionid:
                self._backend.delete(self._stale_id)
            self._stale_id = None
        self._dirty = False
        self._closed = True
