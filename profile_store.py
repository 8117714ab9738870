"""Per-user preference store with buffered, transactional writes."""

from __future__ import annotations

import copy
import logging
from typing import Any, Dict, List, Tuple


PROFILE_TYPE_ID = 1
PROFILE_TYPE_INT = 2
PROFILE_TYPE_STR = 3

_VALUE_TYPES = {PROFILE_TYPE_ID, PROFILE_TYPE_INT, PROFILE_TYPE_STR}

logger = logging.getLogger("beacon.profile")

Key = Tuple[str, int]


def _coerce(value: Any, value_type: int) -> Any:
    if value_type not in _VALUE_TYPES:
        raise ValueError(f"Unknown profile value type {value_type}")
    if value_type == PROFILE_TYPE_STR:
        return "" if value is None else str(value)
    if isinstance(value, bool):
        return int(value)
    return int(value)


class ProfileStore:
    """Profile entries of one user.

    Values are loaded lazily from the backend on first read. ``update`` and
    ``delete`` only buffer changes; ``flush`` writes them through the backend
    within the caller's transaction.
    """

    def __init__(self, userid: Any, backend) -> None:
        self._userid = userid
        self._backend = backend
        self._loaded: Dict[Key, Any] | None = None
        self._pending_updates: Dict[Key, tuple] = {}
        self._pending_deletes: set[Key] = set()

    @property
    def userid(self) -> Any:
        return self._userid

    def _values(self) -> Dict[Key, Any]:
        if self._loaded is None:
            rows = self._backend.load(self._userid) if self._userid is not None else []
            self._loaded = {(row["idx"], row.get("idx2", 0)): row["value"] for row in rows}
        return self._loaded

    def get(self, idx: str, default: Any = None, idx2: int = 0) -> Any:
        key = (idx, idx2)
        if key in self._pending_deletes:
            return default
        if key in self._pending_updates:
            return copy.deepcopy(self._pending_updates[key][0])
        values = self._values()
        if key in values:
            return copy.deepcopy(values[key])
        return default

    def get_array(self, idx: str, default: List[Any] | None = None) -> List[Any]:
        found: Dict[int, Any] = {}
        for (key_idx, key_idx2), value in self._values().items():
            if key_idx == idx:
                found[key_idx2] = value
        for (key_idx, key_idx2), (value, _) in self._pending_updates.items():
            if key_idx == idx:
                found[key_idx2] = value
        for key_idx, key_idx2 in self._pending_deletes:
            if key_idx == idx:
                found.pop(key_idx2, None)
        if not found:
            return list(default or [])
        return [found[i] for i in sorted(found)]

    def update(self, idx: str, value: Any, value_type: int, idx2: int = 0) -> None:
        key = (idx, idx2)
        coerced = _coerce(value, value_type)
        self._pending_deletes.discard(key)
        if key not in self._pending_updates and self._values().get(key) == coerced:
            return
        self._pending_updates[key] = (coerced, value_type)

    def update_array(self, idx: str, values: List[Any], value_type: int) -> None:
        self.delete(idx)
        for pos, value in enumerate(values):
            self.update(idx, value, value_type, idx2=pos)

    def delete(self, idx: str, idx2: int | None = None) -> None:
        keys = [key for key in self._values() if key[0] == idx and (idx2 is None or key[1] == idx2)]
        keys += [key for key in self._pending_updates if key[0] == idx and (idx2 is None or key[1] == idx2)]
        for key in keys:
            self._pending_updates.pop(key, None)
            if key in self._values():
                self._pending_deletes.add(key)

    def is_modified(self) -> bool:
        return bool(self._pending_updates or self._pending_deletes)

    def flush(self, tx) -> bool:
        if not self.is_modified():
            return True
        deletes = sorted(self._pending_deletes)
        updates = [(idx, idx2, value, value_type) for (idx, idx2), (value, value_type) in sorted(self._pending_updates.items())]
        ok = self._backend.write(tx, self._userid, updates, deletes)
        if not ok:
            logger.warning("profile_flush_failed userid=%s updates=%s deletes=%s", self._userid, len(updates), len(deletes))
            return False
        values = self._values()
        for key in deletes:
            values.pop(key, None)
        for idx, idx2, value, _ in updates:
            values[(idx, idx2)] = value
        self._pending_updates.clear()
        self._pending_deletes.clear()
        return True
