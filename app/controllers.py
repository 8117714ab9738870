"""Concrete console actions and the action name -> controller table."""

from __future__ import annotations

import json
import logging
import math
import time
from typing import Any, Dict, List

from controller import (
    ControllerContext,
    ResponseData,
    ResponseFatal,
    ResponseRedirect,
    validate_input,
)
from module_manager import ModuleManager
from module_registry import MODULE_STATUS_DISABLED, MODULE_STATUS_ENABLED
from profile_store import PROFILE_TYPE_ID, PROFILE_TYPE_INT, PROFILE_TYPE_STR
from app.auth import UI_ADMINISTRATION_GENERAL, has_capability
from app.stores import (
    HOST_STATUS_MONITORED,
    HOST_STATUS_NOT_MONITORED,
    HOST_STATUS_TEMPLATE,
    TRIGGER_STATUS_DISABLED,
    TRIGGER_STATUS_ENABLED,
)
from app.views import (
    DATA_HOST_NAME,
    DATA_ITEM_VALUE,
    DATA_TEXT,
    DISPLAY_AS_IS,
    SEVERITIES,
)


logger = logging.getLogger("beacon.controllers")

ROWS_PER_PAGE = 50

ORDER_TOP_N = 2
ORDER_BOTTOM_N = 3

TAG_OPERATOR_LIKE = 0
TAG_OPERATOR_EQUAL = 1


def _json_block(ctx: ControllerContext, output: dict) -> None:
    ctx.set_response(ResponseData(data={"main_block": json.dumps(output)}, layout="json"))


def _messages_text(ctx: ControllerContext) -> List[str]:
    return [msg["message"] for msg in ctx.messages.get_and_clear()]


class ModuleUpdateController:
    """Enable or disable a set of modules after a what-if conflict check."""

    rules = {
        "moduleids": "required|not_empty|array_db module.moduleid",
        "status": "in 1",
        "form_refresh": "int32",
    }

    def __init__(self) -> None:
        self.modules: Dict[int, dict] = {}

    def validate_step(self, ctx: ControllerContext) -> bool:
        ok = validate_input(ctx, self.rules)
        if not ok:
            _json_block(ctx, {"error": {"messages": _messages_text(ctx)}})
        return ok

    def authorize_step(self, ctx: ControllerContext) -> bool:
        if not ctx.access.check_access(UI_ADMINISTRATION_GENERAL):
            return False
        moduleids = ctx.get_input("moduleids")
        self.modules = ctx.service("modules").get(moduleids=moduleids, output=[])
        return len(self.modules) == len(moduleids)

    def execute_step(self, ctx: ControllerContext) -> None:
        registry = ctx.service("modules")
        set_status = MODULE_STATUS_ENABLED if ctx.has_input("status") else MODULE_STATUS_DISABLED

        db_modules = registry.get(output=["relative_path", "status"], sortfield="relative_path")
        manager = ModuleManager(ctx.service("modules_dir"))
        manager_enabled = ModuleManager(ctx.service("modules_dir"))

        update_names: List[str] = []
        for moduleid, db_module in db_modules.items():
            new_status = set_status if moduleid in self.modules else db_module["status"]
            if new_status == MODULE_STATUS_ENABLED:
                manifest = manager_enabled.add_module(db_module["relative_path"])
            else:
                manifest = manager.add_module(db_module["relative_path"])
            if moduleid in self.modules and manifest:
                update_names.append(manifest["name"])

        errors = manager_enabled.check_conflicts()["conflicts"]
        for error in errors:
            ctx.messages.error(error)

        result = False
        if not errors:
            update = [{"moduleid": moduleid, "status": set_status} for moduleid in self.modules]
            result = registry.update(update, actor=ctx.user, reason="enable" if set_status else "disable")
            if not result:
                for issue in registry.last_errors():
                    ctx.messages.error(issue["message"])

        name = update_names[0] if update_names else ""
        if result:
            logger.info(
                "module_status_changed moduleids=%s status=%s user=%s",
                sorted(self.modules),
                set_status,
                ctx.user.get("username"),
            )
            output: Dict[str, Any] = {"success": {"title": f"Module updated: {name}."}}
            messages = _messages_text(ctx)
            if messages:
                output["success"]["messages"] = messages
        else:
            logger.info("module_update_rejected moduleids=%s conflicts=%s", sorted(self.modules), len(errors))
            output = {"error": {"title": f"Cannot update module: {name}.", "messages": _messages_text(ctx)}}

        _json_block(ctx, output)


def _profile_prefix(context: str) -> str:
    return "web.hosts.triggers" if context == "host" else "web.templates.triggers"


def _context_capability(context: str) -> str:
    return "ui.configuration.hosts" if context == "host" else "ui.configuration.templates"


def _clean_tags(raw: Any) -> List[dict]:
    tags = []
    for entry in raw or []:
        if not isinstance(entry, dict):
            continue
        tag = str(entry.get("tag") or "").strip()
        value = str(entry.get("value") or "")
        if tag == "" and value == "":
            continue
        try:
            operator = int(entry.get("operator", TAG_OPERATOR_LIKE))
        except (TypeError, ValueError):
            operator = TAG_OPERATOR_LIKE
        tags.append({"tag": tag, "value": value, "operator": operator})
    return tags


def _paging(total: int, page: int, rows_per_page: int) -> dict:
    pages = max(1, math.ceil(total / rows_per_page))
    current = min(max(page, 1), pages)
    first = (current - 1) * rows_per_page
    return {
        "total": total,
        "current": current,
        "pages": list(range(1, pages + 1)) if total else [],
        "first": first + 1 if total else 0,
        "last": min(first + rows_per_page, total),
        "offset": first,
    }


class TriggerListController:
    """Filterable trigger list, with the filter remembered in the user profile."""

    rules = {
        "context": "required|in host,template",
        "filter_set": "in 1",
        "filter_rst": "in 1",
        "filter_name": "string",
        "filter_priority": "array",
        "filter_state": "in -1,0,1",
        "filter_status": "in -1,0,1",
        "filter_value": "in -1,0,1",
        "filter_hostids": "array_id",
        "filter_tags": "array",
        "sort": "in description,priority,status",
        "sortorder": "in ASC,DESC",
        "page": "int32|ge 1",
    }

    def validate_step(self, ctx: ControllerContext) -> bool:
        ok = validate_input(ctx, self.rules)
        if not ok and ctx.has_input("context"):
            # Bad filter values are dropped; the list is still shown.
            return True
        if not ok:
            ctx.set_response(ResponseFatal(messages=ctx.messages.get_and_clear()))
        return ok

    def authorize_step(self, ctx: ControllerContext) -> bool:
        return ctx.access.check_access(_context_capability(ctx.get_input("context")))

    def _update_filter(self, ctx: ControllerContext, prefix: str) -> None:
        profile = ctx.profile
        if ctx.has_input("filter_set"):
            profile.update(f"{prefix}.filter_name", ctx.get_input("filter_name", ""), PROFILE_TYPE_STR)
            priorities = [int(p) for p in ctx.get_input("filter_priority", []) if str(p).isdigit() and int(p) in SEVERITIES]
            profile.update_array(f"{prefix}.filter_priority", priorities, PROFILE_TYPE_INT)
            profile.update(f"{prefix}.filter_state", ctx.get_input("filter_state", -1), PROFILE_TYPE_INT)
            profile.update(f"{prefix}.filter_status", ctx.get_input("filter_status", -1), PROFILE_TYPE_INT)
            profile.update(f"{prefix}.filter_value", ctx.get_input("filter_value", -1), PROFILE_TYPE_INT)
            profile.update_array(f"{prefix}.filter_hostids", ctx.get_input("filter_hostids", []), PROFILE_TYPE_ID)
            tags = _clean_tags(ctx.get_input("filter_tags"))
            profile.update_array(f"{prefix}.filter.tags.tag", [t["tag"] for t in tags], PROFILE_TYPE_STR)
            profile.update_array(f"{prefix}.filter.tags.value", [t["value"] for t in tags], PROFILE_TYPE_STR)
            profile.update_array(f"{prefix}.filter.tags.operator", [t["operator"] for t in tags], PROFILE_TYPE_INT)
        elif ctx.has_input("filter_rst"):
            for idx in (
                "filter_name",
                "filter_priority",
                "filter_state",
                "filter_status",
                "filter_value",
                "filter_hostids",
                "filter.tags.tag",
                "filter.tags.value",
                "filter.tags.operator",
            ):
                profile.delete(f"{prefix}.{idx}")

        if ctx.has_input("sort"):
            profile.update(f"{prefix}.sort", ctx.get_input("sort"), PROFILE_TYPE_STR)
        if ctx.has_input("sortorder"):
            profile.update(f"{prefix}.sortorder", ctx.get_input("sortorder"), PROFILE_TYPE_STR)

    def _read_filter(self, ctx: ControllerContext, prefix: str) -> dict:
        profile = ctx.profile
        tags = [
            {"tag": tag, "value": value, "operator": operator}
            for tag, value, operator in zip(
                profile.get_array(f"{prefix}.filter.tags.tag"),
                profile.get_array(f"{prefix}.filter.tags.value"),
                profile.get_array(f"{prefix}.filter.tags.operator"),
            )
        ]
        return {
            "name": profile.get(f"{prefix}.filter_name", ""),
            "priority": profile.get_array(f"{prefix}.filter_priority"),
            "state": int(profile.get(f"{prefix}.filter_state", -1)),
            "status": int(profile.get(f"{prefix}.filter_status", -1)),
            "value": int(profile.get(f"{prefix}.filter_value", -1)),
            "hostids": [str(h) for h in profile.get_array(f"{prefix}.filter_hostids")],
            "tags": tags,
        }

    @staticmethod
    def _matches(trigger: dict, context: str, flt: dict) -> bool:
        hosts = trigger.get("hosts") or []
        statuses = {host.get("status") for host in hosts}
        if context == "host" and not statuses & {HOST_STATUS_MONITORED, HOST_STATUS_NOT_MONITORED}:
            return False
        if context == "template" and HOST_STATUS_TEMPLATE not in statuses:
            return False
        if flt["name"] and flt["name"].lower() not in trigger["description"].lower():
            return False
        if flt["priority"] and trigger["priority"] not in flt["priority"]:
            return False
        if flt["status"] != -1 and trigger["status"] != flt["status"]:
            return False
        if flt["state"] != -1 and (trigger["status"] != TRIGGER_STATUS_ENABLED or trigger["state"] != flt["state"]):
            return False
        if context == "host" and flt["value"] != -1 and trigger["value"] != flt["value"]:
            return False
        if flt["hostids"] and not {str(host["hostid"]) for host in hosts} & set(flt["hostids"]):
            return False
        for wanted in flt["tags"]:
            found = False
            for tag in trigger.get("tags") or []:
                if tag.get("tag") != wanted["tag"]:
                    continue
                if wanted["operator"] == TAG_OPERATOR_EQUAL:
                    found = tag.get("value", "") == wanted["value"]
                else:
                    found = wanted["value"].lower() in tag.get("value", "").lower()
                if found:
                    break
            if not found:
                return False
        return True

    def execute_step(self, ctx: ControllerContext) -> None:
        context = ctx.get_input("context")
        prefix = _profile_prefix(context)
        self._update_filter(ctx, prefix)
        flt = self._read_filter(ctx, prefix)

        sort = ctx.profile.get(f"{prefix}.sort", "description")
        sortorder = ctx.profile.get(f"{prefix}.sortorder", "ASC")

        store = ctx.service("triggers")
        all_triggers = store.get()
        triggers = [t for t in all_triggers.values() if self._matches(t, context, flt)]
        triggers.sort(key=lambda t: (t[sort].lower() if isinstance(t[sort], str) else t[sort], t["triggerid"]))
        if sortorder == "DESC":
            triggers.reverse()

        rows_per_page = int(ctx.user.get("rows_per_page") or ROWS_PER_PAGE)
        paging = _paging(len(triggers), int(ctx.get_input("page", 1)), rows_per_page)
        page_triggers = triggers[paging["offset"]:paging["offset"] + rows_per_page]

        parent_templates: Dict[str, dict] = {}
        for trigger in page_triggers:
            parent = all_triggers.get(str(trigger.get("templateid") or ""))
            if parent and parent.get("hosts"):
                host = parent["hosts"][0]
                parent_templates[trigger["triggerid"]] = {"hostid": str(host["hostid"]), "name": host["name"]}

        dep_ids = {str(dep["triggerid"]) for t in page_triggers for dep in t.get("dependencies") or []}
        dep_triggers = {str(tid): t for tid, t in store.get(list(dep_ids)).items()}
        for trigger in page_triggers:
            trigger["dependencies"] = [
                {"triggerid": str(dep["triggerid"])}
                for dep in trigger.get("dependencies") or []
                if str(dep["triggerid"]) in dep_triggers
            ]

        allowed_templates: List[str] = []
        if has_capability(ctx.user, "ui.configuration.templates"):
            allowed_templates = sorted({p["hostid"] for p in parent_templates.values()})

        data = {
            "context": context,
            "filter": flt,
            "sort": sort,
            "sortorder": sortorder,
            "triggers": page_triggers,
            "paging": paging if paging["total"] else None,
            "parent_templates": parent_templates,
            "allowed_ui_conf_templates": allowed_templates,
            "dep_triggers": dep_triggers,
            "tags": {t["triggerid"]: t.get("tags") or [] for t in page_triggers},
            "show_value_column": context == "host",
            "show_info_column": context == "host",
            "single_selected_hostid": flt["hostids"][0] if len(flt["hostids"]) == 1 else 0,
            "now": time.time(),
        }
        ctx.set_response(ResponseData(data=data, view="configuration.triggers.list", title="Configuration of triggers"))


class TriggerMassStatusController:
    """Bulk enable, disable or delete of selected triggers."""

    rules = {
        "g_triggerid": "required|not_empty|array_id",
        "context": "required|in host,template",
    }

    _ACTIONS = {
        "trigger.massenable": ("enable", "enabled"),
        "trigger.massdisable": ("disable", "disabled"),
        "trigger.massdelete": ("delete", "deleted"),
    }

    def __init__(self) -> None:
        self.triggers: Dict[str, dict] = {}

    def _list_url(self, ctx: ControllerContext) -> str:
        return f"zabbix.php?action=trigger.list&context={ctx.get_input('context', 'host')}"

    def validate_step(self, ctx: ControllerContext) -> bool:
        ok = validate_input(ctx, self.rules)
        if not ok:
            ctx.set_response(
                ResponseRedirect(location=self._list_url(ctx), messages=ctx.messages.get_and_clear())
            )
        return ok

    def authorize_step(self, ctx: ControllerContext) -> bool:
        if not ctx.access.check_access(_context_capability(ctx.get_input("context"))):
            return False
        triggerids = list(dict.fromkeys(str(tid) for tid in ctx.get_input("g_triggerid")))
        self.triggers = ctx.service("triggers").get(triggerids)
        return len(self.triggers) == len(triggerids)

    def execute_step(self, ctx: ControllerContext) -> None:
        verb, past = self._ACTIONS[ctx.action]
        store = ctx.service("triggers")
        ids = list(self.triggers)
        if verb == "delete":
            result = store.delete(ids)
        else:
            status = TRIGGER_STATUS_ENABLED if verb == "enable" else TRIGGER_STATUS_DISABLED
            result = store.update_status(ids, status)

        noun = "Trigger" if len(ids) == 1 else "Triggers"
        if result:
            ctx.messages.info(f"{noun} {past}")
            logger.info("triggers_%s count=%s user=%s", past, len(ids), ctx.user.get("username"))
        else:
            ctx.messages.error(f"Cannot {verb} {noun.lower()}")
        ctx.set_response(ResponseRedirect(location=self._list_url(ctx), messages=ctx.messages.get_and_clear()))


def _int(value: Any, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _widget_fields(ctx: ControllerContext) -> dict:
    raw = ctx.get_input("fields")
    if not raw:
        return {}
    fields = json.loads(raw)
    return fields if isinstance(fields, dict) else {}


class _WidgetController:
    rules = {
        "name": "string",
        "fields": "json",
        "view_mode": "in 0,1",
        "initial_load": "in 0,1",
    }
    capability = "ui.monitoring.dashboard"

    def validate_step(self, ctx: ControllerContext) -> bool:
        ok = validate_input(ctx, self.rules)
        if not ok:
            _json_block(ctx, {"error": {"messages": _messages_text(ctx)}})
        return ok

    def authorize_step(self, ctx: ControllerContext) -> bool:
        return ctx.access.check_access(self.capability)

    def _respond(self, ctx: ControllerContext, view: str, data: dict) -> None:
        data.setdefault("name", ctx.get_input("name", self.default_name))
        data["user"] = {"debug_mode": ctx.user.get("debug_mode", 0)}
        messages = ctx.messages.get_and_clear()
        if messages:
            data["messages"] = messages
        ctx.set_response(ResponseData(data=data, view=view, layout="widget"))


def _column_values(column: dict, hosts: List[dict], monitoring) -> Dict[str, Any]:
    data_type = column.get("data")
    if data_type == DATA_HOST_NAME:
        return {host["hostid"]: host["name"] for host in hosts}
    if data_type == DATA_TEXT:
        return {host["hostid"]: column.get("text", "") for host in hosts}
    items = monitoring.get_items([host["hostid"] for host in hosts], column.get("item", ""))
    return {hostid: item for hostid, item in items.items() if item.get("lastvalue") is not None}


def _sort_value(value: Any) -> Any:
    if isinstance(value, dict):
        value = value.get("lastvalue")
    try:
        return (0, float(value))
    except (TypeError, ValueError):
        return (1, str(value))


class TopHostsWidgetController(_WidgetController):
    default_name = "Top hosts"

    def execute_step(self, ctx: ControllerContext) -> None:
        started = time.perf_counter()
        fields = _widget_fields(ctx)
        columns = [c for c in fields.get("columns") or [] if isinstance(c, dict)]
        if not columns:
            self._respond(ctx, "monitoring.widget.tophosts", {"configuration": [], "rows": []})
            return

        order_index = _int(fields.get("column"), 0)
        if not 0 <= order_index < len(columns):
            order_index = 0
        order = _int(fields.get("order"), ORDER_TOP_N)
        show_lines = max(1, min(_int(fields.get("show_lines"), 10), 100))

        monitoring = ctx.service("monitoring")
        hosts = monitoring.get_hosts(groupids=fields.get("groupids") or None)
        values = [_column_values(column, hosts, monitoring) for column in columns]

        order_values = values[order_index]
        ordered = [host for host in hosts if host["hostid"] in order_values]
        ordered.sort(key=lambda h: _sort_value(order_values[h["hostid"]]), reverse=order == ORDER_TOP_N)
        ordered = ordered[:show_lines]

        rows = []
        for host in ordered:
            row = []
            for column, column_values in zip(columns, values):
                found = column_values.get(host["hostid"])
                if column.get("data", DATA_ITEM_VALUE) == DATA_ITEM_VALUE:
                    item = found or {}
                    row.append({"value": item.get("lastvalue"), "item": item, "hostid": host["hostid"]})
                else:
                    row.append({"value": found, "hostid": host["hostid"]})
            rows.append(row)

        configuration = []
        for column in columns:
            config = dict(column)
            config.setdefault("data", DATA_ITEM_VALUE)
            config.setdefault("display", DISPLAY_AS_IS)
            configuration.append(config)

        data = {"configuration": configuration, "rows": rows, "profiler": {"started": started, "queries": []}}
        self._respond(ctx, "monitoring.widget.tophosts", data)


class HostAvailWidgetController(_WidgetController):
    default_name = "Host availability"

    def execute_step(self, ctx: ControllerContext) -> None:
        fields = _widget_fields(ctx)
        hosts = ctx.service("monitoring").get_hosts(groupids=fields.get("groupids") or None)
        data = {
            "fields": {key: fields[key] for key in ("interface_type", "layout", "only_totals") if key in fields},
            "view_mode": int(ctx.get_input("view_mode", 0)),
            "hosts": hosts,
        }
        self._respond(ctx, "widget.hostavail", data)


class NavTreeWidgetController(_WidgetController):
    default_name = "Map navigation tree"
    capability = "ui.monitoring.maps"

    def execute_step(self, ctx: ControllerContext) -> None:
        fields = _widget_fields(ctx)
        items = [item for item in fields.get("navtree") or [] if isinstance(item, dict)]
        severity_config = {str(level): {"name": name, "style": css} for level, (name, css) in SEVERITIES.items()}
        problems = {str(item.get("id")): {str(level): 0 for level in SEVERITIES} for item in items}
        data = {
            "navtree_items": items,
            "navtree_items_opened": fields.get("navtree_items_opened") or [],
            "navtree_item_selected": fields.get("navtree_item_selected") or 0,
            "maps_accessible": sorted({str(item["mapid"]) for item in items if item.get("mapid")}),
            "problems": problems,
            "severity_config": severity_config,
            "show_unavailable": fields.get("show_unavailable", 0),
            "initial_load": int(ctx.get_input("initial_load", 1)),
            "max_depth": _int(fields.get("max_depth"), 10),
        }
        self._respond(ctx, "widget.navtree", data)


CONTROLLERS = {
    "module.update": ModuleUpdateController,
    "trigger.list": TriggerListController,
    "trigger.massenable": TriggerMassStatusController,
    "trigger.massdisable": TriggerMassStatusController,
    "trigger.massdelete": TriggerMassStatusController,
    "widget.tophosts.view": TopHostsWidgetController,
    "widget.hostavail.view": HostAvailWidgetController,
    "widget.navtree.view": NavTreeWidgetController,
}


def get_controller(action: str):
    factory = CONTROLLERS.get(action)
    return factory() if factory is not None else None
