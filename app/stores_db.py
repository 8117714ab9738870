"""Postgres-backed stores used when USE_DB=1.

Tables: ``module``, ``profiles``, ``sessions_data``, ``users``,
``web_sessions``, ``triggers``, ``hosts``, ``items``. JSON columns hold the
nested parts of a row (trigger hosts, tags, user mfa data).
"""

from __future__ import annotations

import contextvars
import copy
import json
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List

import psycopg2

from app.db import clear_active_conn, execute, fetch_all, fetch_one, get_conn, get_pool, init_pool, set_active_conn
from module_registry import MODULE_STATUS_DISABLED, MODULE_STATUS_ENABLED, _issue


logger = logging.getLogger("beacon.stores")


def _json_dumps(value: object) -> str:
    return json.dumps(value, default=str)


def _ensure_json(value):
    if isinstance(value, str):
        return json.loads(value)
    return value


def _now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class _TxContext:
    def __init__(self, conn, pool):
        self.conn = conn
        self.pool = pool
        self.depth = 1
        self.failed = False


_TX_CONTEXT: contextvars.ContextVar[_TxContext | None] = contextvars.ContextVar("beacon_tx_context", default=None)


class DbTx:
    """One transaction; nested ``begin`` calls share the outer connection."""

    def __init__(self, ctx: _TxContext):
        self._ctx = ctx
        self._hooks: list = []

    @property
    def conn(self):
        return self._ctx.conn

    def on_commit(self, fn) -> None:
        self._hooks.append(fn)

    def _release(self) -> None:
        ctx = self._ctx
        ctx.pool.putconn(ctx.conn)
        _TX_CONTEXT.set(None)
        clear_active_conn()

    def commit(self) -> None:
        ctx = self._ctx
        if ctx.depth > 1:
            ctx.depth -= 1
        else:
            try:
                if ctx.failed:
                    ctx.conn.rollback()
                    return
                ctx.conn.commit()
            finally:
                self._release()
        for fn in self._hooks:
            fn()
        self._hooks = []

    def rollback(self) -> None:
        ctx = self._ctx
        ctx.failed = True
        self._hooks = []
        if ctx.depth > 1:
            ctx.depth -= 1
            return
        try:
            ctx.conn.rollback()
        finally:
            self._release()


class DbTxManager:
    def begin(self) -> DbTx:
        ctx = _TX_CONTEXT.get()
        if ctx is not None:
            ctx.depth += 1
            return DbTx(ctx)
        init_pool()
        pool = get_pool()
        conn = pool.getconn()
        ctx = _TxContext(conn, pool)
        _TX_CONTEXT.set(ctx)
        set_active_conn(conn)
        return DbTx(ctx)


class DbSessionBackend:
    def load(self, sessionid: str) -> dict | None:
        with get_conn() as conn:
            row = fetch_one(
                conn,
                "select data from sessions_data where sessionid=%s",
                [sessionid],
                query_name="sessions_data.load",
            )
        return _ensure_json(row["data"]) if row else None

    def save(self, sessionid: str, data: dict) -> None:
        with get_conn() as conn:
            execute(
                conn,
                """
                insert into sessions_data (sessionid, data, updated_at)
                values (%s, %s, %s)
                on conflict (sessionid) do update set data=excluded.data, updated_at=excluded.updated_at
                """,
                [sessionid, _json_dumps(data), _now()],
                query_name="sessions_data.save",
            )

    def delete(self, sessionid: str) -> None:
        with get_conn() as conn:
            execute(conn, "delete from sessions_data where sessionid=%s", [sessionid], query_name="sessions_data.delete")


class DbProfileBackend:
    """Rows of ``profiles(userid, idx, idx2, value_id, value_int, value_str, type)``."""

    _COLUMNS = {1: "value_id", 2: "value_int", 3: "value_str"}

    def load(self, userid: Any) -> list[dict]:
        with get_conn() as conn:
            rows = fetch_all(
                conn,
                "select idx, idx2, type, value_id, value_int, value_str from profiles where userid=%s order by idx, idx2",
                [userid],
                query_name="profiles.load",
            )
        return [{"idx": r["idx"], "idx2": r["idx2"], "value": r[self._COLUMNS[r["type"]]]} for r in rows]

    def write(self, tx: DbTx, userid: Any, updates: list[tuple], deletes: list[tuple]) -> bool:
        try:
            for idx, idx2 in deletes:
                execute(
                    tx.conn,
                    "delete from profiles where userid=%s and idx=%s and idx2=%s",
                    [userid, idx, idx2],
                    query_name="profiles.delete",
                )
            for idx, idx2, value, value_type in updates:
                values = {column: None for column in self._COLUMNS.values()}
                values[self._COLUMNS[value_type]] = value
                execute(
                    tx.conn,
                    """
                    insert into profiles (userid, idx, idx2, type, value_id, value_int, value_str)
                    values (%s, %s, %s, %s, %s, %s, %s)
                    on conflict (userid, idx, idx2) do update
                    set type=excluded.type, value_id=excluded.value_id,
                        value_int=excluded.value_int, value_str=excluded.value_str
                    """,
                    [userid, idx, idx2, value_type, values["value_id"], values["value_int"], values["value_str"]],
                    query_name="profiles.upsert",
                )
        except psycopg2.Error as exc:
            logger.warning("profile_write_failed userid=%s error=%s", userid, exc)
            return False
        return True


class DbModuleRegistry:
    def __init__(self) -> None:
        self._last_errors: List[dict] = []

    def create(self, records: List[dict]) -> List[int]:
        created: List[int] = []
        with get_conn() as conn:
            for rec in records:
                row = fetch_one(
                    conn,
                    """
                    insert into module (id, relative_path, status, config)
                    values (%s, %s, %s, %s)
                    returning moduleid
                    """,
                    [
                        rec.get("id") or rec["relative_path"],
                        rec["relative_path"],
                        rec.get("status", MODULE_STATUS_DISABLED),
                        _json_dumps(rec.get("config") or {}),
                    ],
                    query_name="module.create",
                )
                created.append(int(row["moduleid"]))
        return created

    def get(
        self,
        moduleids: Iterable[Any] | None = None,
        output: Iterable[str] | None = None,
        sortfield: str | None = None,
        filter: dict | None = None,
    ) -> Dict[int, dict]:
        where: List[str] = []
        params: List[Any] = []
        if moduleids is not None:
            ids = []
            for mid in moduleids:
                try:
                    ids.append(int(mid))
                except (TypeError, ValueError):
                    continue
            where.append("moduleid = any(%s)")
            params.append(ids)
        for key, value in (filter or {}).items():
            if key not in ("id", "relative_path", "status"):
                raise ValueError(f"cannot filter by {key}")
            where.append(f"{key} = %s")
            params.append(value)
        order = sortfield or "moduleid"
        if order not in ("moduleid", "id", "relative_path", "status"):
            raise ValueError(f"cannot sort by {order}")
        sql = "select moduleid, id, relative_path, status, config from module"
        if where:
            sql += " where " + " and ".join(where)
        sql += f" order by {order}, moduleid"
        with get_conn() as conn:
            rows = fetch_all(conn, sql, params, query_name="module.get")
        result: Dict[int, dict] = {}
        for row in rows:
            record = {**row, "moduleid": int(row["moduleid"]), "config": _ensure_json(row["config"]) or {}}
            if output is not None:
                record = {key: record[key] for key in output if key in record}
            result[int(row["moduleid"])] = record
        return result

    def update(self, records: List[dict], actor: dict | None = None, reason: str = "update") -> bool:
        errors = []
        for idx, rec in enumerate(records):
            if rec.get("status", MODULE_STATUS_DISABLED) not in (MODULE_STATUS_DISABLED, MODULE_STATUS_ENABLED):
                errors.append(_issue("MODULE_INVALID", "invalid status", f"records[{idx}].status"))
        self._last_errors = errors
        if errors:
            return False
        try:
            self._apply(records, actor, reason)
        except LookupError as exc:
            logger.warning("module_update_failed error=%s", exc)
            return False
        return True

    def _apply(self, records: List[dict], actor: dict | None, reason: str) -> None:
        with get_conn() as conn:
            for idx, rec in enumerate(records):
                count = execute(
                    conn,
                    "update module set status=%s where moduleid=%s",
                    [rec["status"], int(rec["moduleid"])],
                    query_name="module.update",
                )
                if count != 1:
                    # Raising rolls back every row already updated on this connection.
                    self._last_errors = [_issue("MODULE_NOT_FOUND", "module not found", f"records[{idx}].moduleid")]
                    raise LookupError(f"module {rec['moduleid']} not found")
                execute(
                    conn,
                    """
                    insert into module_audit (moduleid, action, to_status, actor, at)
                    values (%s, %s, %s, %s, %s)
                    """,
                    [int(rec["moduleid"]), reason, rec["status"], (actor or {}).get("username"), _now()],
                    query_name="module_audit.insert",
                )

    def last_errors(self) -> List[dict]:
        return list(self._last_errors)

    def history(self, moduleid: int) -> list[dict]:
        with get_conn() as conn:
            return fetch_all(
                conn,
                "select moduleid, action, to_status, actor, at from module_audit where moduleid=%s order by at desc",
                [int(moduleid)],
                query_name="module_audit.list",
            )


class DbUserStore:
    def _user_from_row(self, row: dict) -> dict:
        user = dict(row)
        user["userid"] = str(user["userid"])
        user["mfa"] = _ensure_json(user.get("mfa"))
        return user

    def get_user(self, userid: str) -> dict | None:
        with get_conn() as conn:
            row = fetch_one(
                conn,
                "select userid, username, type, url, debug_mode, theme, mfaid, mfa from users where userid=%s",
                [int(userid)],
                query_name="users.get",
            )
        return self._user_from_row(row) if row else None

    def find_user(self, username: str) -> dict | None:
        with get_conn() as conn:
            row = fetch_one(
                conn,
                "select userid, username, type, url, debug_mode, theme, mfaid, mfa from users where username=%s",
                [username],
                query_name="users.find",
            )
        return self._user_from_row(row) if row else None

    def update_user(self, userid: str, changes: dict) -> None:
        allowed = {"url", "debug_mode", "theme", "mfaid", "mfa"}
        sets, params = [], []
        for key, value in changes.items():
            if key not in allowed:
                raise ValueError(f"cannot update user field {key}")
            sets.append(f"{key}=%s")
            params.append(_json_dumps(value) if key == "mfa" else value)
        if not sets:
            return
        with get_conn() as conn:
            execute(conn, f"update users set {', '.join(sets)} where userid=%s", params + [int(userid)], query_name="users.update")

    def create_session(self, userid: str, status: str = "active") -> str:
        sessionid = uuid.uuid4().hex
        with get_conn() as conn:
            execute(
                conn,
                "insert into web_sessions (sessionid, userid, status, created_at) values (%s, %s, %s, %s)",
                [sessionid, int(userid), status, _now()],
                query_name="web_sessions.create",
            )
        return sessionid

    def get_session(self, sessionid: str | None) -> dict | None:
        if not sessionid:
            return None
        with get_conn() as conn:
            row = fetch_one(
                conn,
                "select sessionid, userid, status from web_sessions where sessionid=%s",
                [sessionid],
                query_name="web_sessions.get",
            )
        if not row:
            return None
        return {**row, "userid": str(row["userid"])}

    def activate_session(self, sessionid: str) -> None:
        with get_conn() as conn:
            execute(conn, "update web_sessions set status='active' where sessionid=%s", [sessionid], query_name="web_sessions.activate")

    def drop_session(self, sessionid: str) -> None:
        with get_conn() as conn:
            execute(conn, "delete from web_sessions where sessionid=%s", [sessionid], query_name="web_sessions.drop")


class DbTriggerStore:
    _SELECT = """
        select triggerid, description, expression, recovery_mode, recovery_expression, priority, status,
               state, value, error, opdata, hosts, dependencies, tags, templateid, discovery_rule, ts_delete
        from triggers
    """

    def _from_row(self, row: dict) -> dict:
        trigger = dict(row)
        trigger["triggerid"] = str(trigger["triggerid"])
        for key in ("hosts", "dependencies", "tags"):
            trigger[key] = _ensure_json(trigger.get(key)) or []
        trigger["discovery_rule"] = _ensure_json(trigger.get("discovery_rule"))
        return trigger

    def get(self, triggerids: List[Any] | None = None) -> Dict[str, dict]:
        with get_conn() as conn:
            if triggerids is None:
                rows = fetch_all(conn, self._SELECT + " order by triggerid", query_name="triggers.list")
            else:
                ids = [int(tid) for tid in triggerids]
                rows = fetch_all(conn, self._SELECT + " where triggerid = any(%s)", [ids], query_name="triggers.get")
        return {str(row["triggerid"]): self._from_row(row) for row in rows}

    def _change(self, sql: str, params: list, ids: List[int], query_name: str) -> bool:
        try:
            with get_conn() as conn:
                count = execute(conn, sql, params, query_name=query_name)
                if count != len(set(ids)):
                    raise LookupError("some triggers do not exist")
        except LookupError as exc:
            logger.warning("%s_failed error=%s", query_name, exc)
            return False
        return True

    def update_status(self, triggerids: List[Any], status: int) -> bool:
        ids = [int(tid) for tid in triggerids]
        return self._change("update triggers set status=%s where triggerid = any(%s)", [status, ids], ids, "triggers.update_status")

    def delete(self, triggerids: List[Any]) -> bool:
        ids = [int(tid) for tid in triggerids]
        if not self._change("delete from triggers where triggerid = any(%s)", [ids], ids, "triggers.delete"):
            return False
        with get_conn() as conn:
            execute(
                conn,
                """
                update triggers set dependencies = (
                    select coalesce(jsonb_agg(d), '[]'::jsonb)
                    from jsonb_array_elements(dependencies) d
                    where (d->>'triggerid')::bigint <> all(%s)
                )
                where exists (
                    select 1 from jsonb_array_elements(dependencies) d
                    where (d->>'triggerid')::bigint = any(%s)
                )
                """,
                [ids, ids],
                query_name="triggers.drop_dependencies",
            )
        return True


class DbMonitoringStore:
    def get_hosts(self, groupids: List[Any] | None = None, monitored_only: bool = True) -> List[dict]:
        where, params = [], []
        if monitored_only:
            where.append("status = 0")
        if groupids:
            where.append("groupids && %s")
            params.append([str(g) for g in groupids])
        sql = "select hostid, name, status, groupids, interfaces from hosts"
        if where:
            sql += " where " + " and ".join(where)
        sql += " order by name"
        with get_conn() as conn:
            rows = fetch_all(conn, sql, params, query_name="hosts.list")
        return [
            {**row, "hostid": str(row["hostid"]), "interfaces": _ensure_json(row.get("interfaces")) or []}
            for row in rows
        ]

    def get_items(self, hostids: List[str], name: str) -> Dict[str, dict]:
        with get_conn() as conn:
            rows = fetch_all(
                conn,
                """
                select distinct on (hostid) itemid, hostid, name, value_type, units, lastvalue
                from items where hostid = any(%s) and name=%s
                order by hostid, itemid
                """,
                [[int(h) for h in hostids], name],
                query_name="items.by_name",
            )
        return {str(row["hostid"]): {**copy.deepcopy(row), "hostid": str(row["hostid"]), "itemid": str(row["itemid"])} for row in rows}
