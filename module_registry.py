"""In-memory registry of installed frontend modules and their status."""

from __future__ import annotations

import copy
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List


MODULE_STATUS_DISABLED = 0
MODULE_STATUS_ENABLED = 1

Issue = Dict[str, Any]

_FIELDS = ("moduleid", "id", "relative_path", "status", "config")


def _now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _issue(code: str, message: str, path: str | None = None, detail: dict | None = None) -> Issue:
    return {"code": code, "message": message, "path": path, "detail": detail}


def _project(record: dict, output: Iterable[str] | None) -> dict:
    if output is None:
        return copy.deepcopy(record)
    return {key: copy.deepcopy(record[key]) for key in output if key in record}


class ModuleRegistry:
    """Persisted module rows keyed by integer ``moduleid``.

    ``get`` always returns rows keyed by moduleid. ``update`` is
    all-or-nothing: one bad row rejects the whole batch.
    """

    def __init__(self) -> None:
        self._modules: Dict[int, dict] = {}
        self._audit: Dict[int, List[dict]] = {}
        self._next_id = 1
        self._last_errors: List[Issue] = []

    def create(self, records: List[dict]) -> List[int]:
        created: List[int] = []
        for rec in records:
            moduleid = int(rec.get("moduleid") or self._next_id)
            if moduleid in self._modules:
                raise ValueError(f"module {moduleid} already exists")
            status = rec.get("status", MODULE_STATUS_DISABLED)
            if status not in (MODULE_STATUS_DISABLED, MODULE_STATUS_ENABLED):
                raise ValueError(f"invalid status {status!r}")
            self._modules[moduleid] = {
                "moduleid": moduleid,
                "id": rec.get("id") or rec.get("relative_path"),
                "relative_path": rec["relative_path"],
                "status": status,
                "config": copy.deepcopy(rec.get("config") or {}),
            }
            self._next_id = max(self._next_id, moduleid + 1)
            created.append(moduleid)
        return created

    def get(
        self,
        moduleids: Iterable[Any] | None = None,
        output: Iterable[str] | None = None,
        sortfield: str | None = None,
        filter: dict | None = None,
    ) -> Dict[int, dict]:
        if moduleids is None:
            selected = list(self._modules.values())
        else:
            wanted = set()
            for mid in moduleids:
                try:
                    wanted.add(int(mid))
                except (TypeError, ValueError):
                    continue
            selected = [rec for mid, rec in self._modules.items() if mid in wanted]
        if filter:
            selected = [rec for rec in selected if all(rec.get(key) == val for key, val in filter.items())]
        if sortfield:
            if sortfield not in _FIELDS:
                raise ValueError(f"cannot sort by {sortfield}")
            selected = sorted(selected, key=lambda rec: rec.get(sortfield))
        else:
            selected = sorted(selected, key=lambda rec: rec["moduleid"])
        return {rec["moduleid"]: _project(rec, output) for rec in selected}

    def update(self, records: List[dict], actor: dict | None = None, reason: str = "update") -> bool:
        errors: List[Issue] = []
        changes: List[tuple[int, dict]] = []
        for idx, rec in enumerate(records):
            try:
                moduleid = int(rec.get("moduleid"))
            except (TypeError, ValueError):
                errors.append(_issue("MODULE_INVALID", "moduleid is required", f"records[{idx}].moduleid"))
                continue
            current = self._modules.get(moduleid)
            if current is None:
                errors.append(_issue("MODULE_NOT_FOUND", "module not found", f"records[{idx}].moduleid"))
                continue
            patch: dict = {}
            if "status" in rec:
                if rec["status"] not in (MODULE_STATUS_DISABLED, MODULE_STATUS_ENABLED):
                    errors.append(_issue("MODULE_INVALID", "invalid status", f"records[{idx}].status"))
                    continue
                patch["status"] = rec["status"]
            if "config" in rec:
                if not isinstance(rec["config"], dict):
                    errors.append(_issue("MODULE_INVALID", "config must be an object", f"records[{idx}].config"))
                    continue
                patch["config"] = copy.deepcopy(rec["config"])
            changes.append((moduleid, patch))

        self._last_errors = errors
        if errors:
            return False

        for moduleid, patch in changes:
            before = self._modules[moduleid]
            after = {**copy.deepcopy(before), **patch}
            self._modules[moduleid] = after
            self._audit.setdefault(moduleid, []).insert(
                0,
                {
                    "audit_id": str(uuid.uuid4()),
                    "moduleid": moduleid,
                    "action": reason,
                    "from_status": before.get("status"),
                    "to_status": after.get("status"),
                    "actor": actor,
                    "at": _now(),
                },
            )
        return True

    def last_errors(self) -> List[Issue]:
        return list(self._last_errors)

    def history(self, moduleid: int) -> list[dict]:
        return list(self._audit.get(int(moduleid), []))
