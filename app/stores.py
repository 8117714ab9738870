"""In-memory stores and transaction stubs used when USE_DB is off."""

from __future__ import annotations

import copy
import uuid
from typing import Any, Callable, Dict, List
from datetime import datetime, timezone


HOST_STATUS_MONITORED = 0
HOST_STATUS_NOT_MONITORED = 1
HOST_STATUS_TEMPLATE = 3

TRIGGER_STATUS_ENABLED = 0
TRIGGER_STATUS_DISABLED = 1


def _now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class InMemoryTx:
    """Collects writes and applies them only on commit."""

    def __init__(self) -> None:
        self.committed = False
        self.rolled_back = False
        self._on_commit: List[Callable[[], None]] = []

    def on_commit(self, fn: Callable[[], None]) -> None:
        self._on_commit.append(fn)

    def commit(self) -> None:
        if self.committed or self.rolled_back:
            raise RuntimeError("transaction already finished")
        for fn in self._on_commit:
            fn()
        self._on_commit = []
        self.committed = True

    def rollback(self) -> None:
        self._on_commit = []
        self.rolled_back = True


class InMemoryTxManager:
    def __init__(self) -> None:
        self.started: List[InMemoryTx] = []

    def begin(self) -> InMemoryTx:
        tx = InMemoryTx()
        self.started.append(tx)
        return tx


class MemorySessionBackend:
    def __init__(self) -> None:
        self._sessions: Dict[str, dict] = {}

    def load(self, sessionid: str) -> dict | None:
        data = self._sessions.get(sessionid)
        return copy.deepcopy(data) if data is not None else None

    def save(self, sessionid: str, data: dict) -> None:
        self._sessions[sessionid] = copy.deepcopy(data)

    def delete(self, sessionid: str) -> None:
        self._sessions.pop(sessionid, None)


class MemoryProfileBackend:
    def __init__(self) -> None:
        self._rows: Dict[Any, Dict[tuple, Any]] = {}

    def load(self, userid: Any) -> list[dict]:
        rows = self._rows.get(userid, {})
        return [{"idx": idx, "idx2": idx2, "value": copy.deepcopy(value)} for (idx, idx2), value in sorted(rows.items())]

    def write(self, tx: InMemoryTx, userid: Any, updates: list[tuple], deletes: list[tuple]) -> bool:
        def apply() -> None:
            rows = self._rows.setdefault(userid, {})
            for key in deletes:
                rows.pop(key, None)
            for idx, idx2, value, _ in updates:
                rows[(idx, idx2)] = copy.deepcopy(value)

        tx.on_commit(apply)
        return True


class MemoryUserStore:
    """Users plus the web sessions that authenticate them."""

    def __init__(self) -> None:
        self._users: Dict[str, dict] = {}
        self._sessions: Dict[str, dict] = {}

    def add_user(self, user: dict) -> dict:
        record = {
            "userid": str(user.get("userid") or uuid.uuid4().int % 10**8),
            "username": user["username"],
            "type": user.get("type", 1),
            "url": user.get("url", ""),
            "debug_mode": user.get("debug_mode", 0),
            "theme": user.get("theme", "default"),
            "mfaid": user.get("mfaid", 0),
            "mfa": copy.deepcopy(user.get("mfa")),
        }
        self._users[record["userid"]] = record
        return copy.deepcopy(record)

    def get_user(self, userid: str) -> dict | None:
        user = self._users.get(str(userid))
        return copy.deepcopy(user) if user else None

    def update_user(self, userid: str, changes: dict) -> None:
        user = self._users.get(str(userid))
        if user is None:
            raise KeyError("user not found")
        user.update(copy.deepcopy(changes))

    def find_user(self, username: str) -> dict | None:
        for user in self._users.values():
            if user["username"] == username:
                return copy.deepcopy(user)
        return None

    def create_session(self, userid: str, status: str = "active") -> str:
        sessionid = uuid.uuid4().hex
        self._sessions[sessionid] = {"sessionid": sessionid, "userid": str(userid), "status": status, "created_at": _now()}
        return sessionid

    def get_session(self, sessionid: str | None) -> dict | None:
        if not sessionid:
            return None
        session = self._sessions.get(sessionid)
        return copy.deepcopy(session) if session else None

    def activate_session(self, sessionid: str) -> None:
        if sessionid in self._sessions:
            self._sessions[sessionid]["status"] = "active"

    def drop_session(self, sessionid: str) -> None:
        self._sessions.pop(sessionid, None)


class MemoryTriggerStore:
    def __init__(self) -> None:
        self._triggers: Dict[str, dict] = {}

    def add(self, trigger: dict) -> str:
        triggerid = str(trigger["triggerid"])
        record = {
            "triggerid": triggerid,
            "description": trigger.get("description", ""),
            "expression": trigger.get("expression", ""),
            "recovery_mode": trigger.get("recovery_mode", 0),
            "recovery_expression": trigger.get("recovery_expression", ""),
            "priority": trigger.get("priority", 0),
            "status": trigger.get("status", TRIGGER_STATUS_ENABLED),
            "state": trigger.get("state", 0),
            "value": trigger.get("value", 0),
            "error": trigger.get("error", ""),
            "opdata": trigger.get("opdata", ""),
            "hosts": copy.deepcopy(trigger.get("hosts") or []),
            "dependencies": copy.deepcopy(trigger.get("dependencies") or []),
            "tags": copy.deepcopy(trigger.get("tags") or []),
            "templateid": trigger.get("templateid"),
            "discovery_rule": copy.deepcopy(trigger.get("discovery_rule")),
            "ts_delete": trigger.get("ts_delete", 0),
        }
        self._triggers[triggerid] = record
        return triggerid

    def get(self, triggerids: List[Any] | None = None) -> Dict[str, dict]:
        if triggerids is None:
            return copy.deepcopy(self._triggers)
        wanted = {str(tid) for tid in triggerids}
        return {tid: copy.deepcopy(rec) for tid, rec in self._triggers.items() if tid in wanted}

    def update_status(self, triggerids: List[Any], status: int) -> bool:
        ids = [str(tid) for tid in triggerids]
        if any(tid not in self._triggers for tid in ids):
            return False
        for tid in ids:
            self._triggers[tid]["status"] = status
        return True

    def delete(self, triggerids: List[Any]) -> bool:
        ids = [str(tid) for tid in triggerids]
        if any(tid not in self._triggers for tid in ids):
            return False
        for tid in ids:
            del self._triggers[tid]
        for trigger in self._triggers.values():
            trigger["dependencies"] = [d for d in trigger["dependencies"] if str(d["triggerid"]) not in ids]
        return True


class MemoryMonitoringStore:
    """Hosts, their interfaces and latest item values for dashboard widgets."""

    def __init__(self) -> None:
        self._hosts: Dict[str, dict] = {}
        self._items: Dict[str, dict] = {}

    def add_host(self, host: dict) -> str:
        hostid = str(host["hostid"])
        self._hosts[hostid] = {
            "hostid": hostid,
            "name": host.get("name", hostid),
            "status": host.get("status", HOST_STATUS_MONITORED),
            "groupids": [str(g) for g in host.get("groupids") or []],
            "interfaces": copy.deepcopy(host.get("interfaces") or []),
        }
        return hostid

    def add_item(self, item: dict) -> str:
        itemid = str(item["itemid"])
        self._items[itemid] = {
            "itemid": itemid,
            "hostid": str(item["hostid"]),
            "name": item.get("name", ""),
            "value_type": item.get("value_type", 0),
            "units": item.get("units", ""),
            "lastvalue": item.get("lastvalue"),
        }
        return itemid

    def get_hosts(self, groupids: List[Any] | None = None, monitored_only: bool = True) -> List[dict]:
        wanted = {str(g) for g in groupids} if groupids else None
        hosts = []
        for host in sorted(self._hosts.values(), key=lambda h: h["name"]):
            if monitored_only and host["status"] != HOST_STATUS_MONITORED:
                continue
            if wanted is not None and not wanted.intersection(host["groupids"]):
                continue
            hosts.append(copy.deepcopy(host))
        return hosts

    def get_items(self, hostids: List[str], name: str) -> Dict[str, dict]:
        wanted = set(hostids)
        found: Dict[str, dict] = {}
        for item in self._items.values():
            if item["hostid"] in wanted and item["name"] == name and item["hostid"] not in found:
                found[item["hostid"]] = copy.deepcopy(item)
        return found
