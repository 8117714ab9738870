"""View renderers: data bag in, markup or JSON-ready dict out."""

from __future__ import annotations

import time
from typing import Any, Dict, List

from app.template_render import render_template, render_view
from app.widgets import HostAvailWidget, NavigationTree


# Top hosts column settings
DATA_ITEM_VALUE = 1
DATA_HOST_NAME = 2
DATA_TEXT = 3

DISPLAY_AS_IS = 1
DISPLAY_BAR = 2
DISPLAY_INDICATORS = 3

GROUP_DEBUG_MODE_ENABLED = 1
ZBX_HINTBOX_CONTENT_LIMIT = 4096

ITEM_VALUE_TYPE_FLOAT = 0
ITEM_VALUE_TYPE_UINT64 = 3

# Trigger list
TRIGGER_STATUS_ENABLED = 0
TRIGGER_STATUS_DISABLED = 1
TRIGGER_STATE_NORMAL = 0
TRIGGER_STATE_UNKNOWN = 1
TRIGGER_VALUE_FALSE = 0
TRIGGER_VALUE_TRUE = 1
HOST_STATUS_MONITORED = 0
HOST_STATUS_NOT_MONITORED = 1
ZBX_RECOVERY_MODE_RECOVERY_EXPRESSION = 1
NAME_DELIMITER = ": "

SEVERITIES = {
    0: ("Not classified", "na-bg"),
    1: ("Information", "info-bg"),
    2: ("Warning", "warning-bg"),
    3: ("Average", "average-bg"),
    4: ("High", "high-bg"),
    5: ("Disaster", "disaster-bg"),
}


def _as_float(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def format_history_value(value: Any, item: dict | None) -> str:
    item = item or {}
    units = item.get("units") or ""
    if item.get("value_type") in (ITEM_VALUE_TYPE_FLOAT, ITEM_VALUE_TYPE_UINT64):
        number = _as_float(value)
        if number is not None:
            text = f"{number:.4f}".rstrip("0").rstrip(".") if number != int(number) else str(int(number))
            return f"{text} {units}".strip()
    return "" if value is None else str(value)


def _threshold_color(value: Any, thresholds: List[dict], base_color: str) -> str:
    color = base_color
    number = _as_float(value)
    for threshold in thresholds:
        limit = _as_float(threshold.get("threshold"))
        if number is None or limit is None or number < limit:
            break
        color = threshold.get("color", color)
    return color


def build_tophosts_cell(column: dict, column_config: dict) -> dict:
    value = column.get("value")
    data_type = column_config.get("data")
    display = column_config.get("display")

    if data_type == DATA_HOST_NAME:
        cell = {"kind": "host", "value": value, "hostid": column.get("hostid")}
    elif data_type == DATA_TEXT:
        cell = {"kind": "text", "value": value}
    elif display == DISPLAY_AS_IS:
        cell = {
            "kind": "as_is",
            "value": format_history_value(value, column.get("item")),
            "hint": "" if value is None else str(value)[:ZBX_HINTBOX_CONTENT_LIMIT],
        }
    else:
        cell = {
            "kind": "gauge",
            "value": value,
            "thresholds": [
                {"threshold": t.get("threshold"), "color": t.get("color")}
                for t in column_config.get("thresholds") or []
            ],
            "solid": display == DISPLAY_BAR,
            "fill": f"#{column_config['base_color']}" if "base_color" in column_config else None,
            "min": column_config.get("min"),
            "max": column_config.get("max"),
        }

    color = column_config.get("base_color", "")
    if "thresholds" in column_config and column_config.get("display") == DISPLAY_AS_IS:
        color = _threshold_color(value, column_config["thresholds"], color)

    cell["background"] = color if cell["kind"] != "gauge" and color != "" else None
    return cell


def render_messages(messages: List[dict] | None) -> str | None:
    if not messages:
        return None
    return render_template("messages.html", {"messages": messages})


def render_tophosts(data: dict) -> dict:
    configuration = data["configuration"]
    rows = []
    for columns in data["rows"]:
        rows.append([build_tophosts_cell(column, configuration[i]) for i, column in enumerate(columns)])

    output = {
        "name": data["name"],
        "body": render_view("monitoring.widget.tophosts", {"headers": [c.get("name", "") for c in configuration], "rows": rows}),
    }
    messages = render_messages(data.get("messages"))
    if messages is not None:
        output["messages"] = messages
    if (data.get("user") or {}).get("debug_mode") == GROUP_DEBUG_MODE_ENABLED:
        output["debug"] = render_debug(data.get("profiler") or {})
    return output


def render_debug(profiler: dict) -> str:
    started = profiler.get("started")
    elapsed = (time.perf_counter() - started) * 1000 if isinstance(started, float) else 0.0
    return render_template("debug.html", {"elapsed_ms": round(elapsed, 2), "queries": profiler.get("queries", [])})


def render_json_layout(data: dict) -> str:
    """AJAX layout: the body is the ``main_block`` string."""
    return data["main_block"]


def _severity_cell(priority: int) -> dict:
    name, css = SEVERITIES.get(int(priority), SEVERITIES[0])
    return {"label": name, "class": css}


def trigger_indicator(status: int, state: int | None = None) -> str:
    if status == TRIGGER_STATUS_ENABLED:
        return "Unknown" if state == TRIGGER_STATE_UNKNOWN else "Enabled"
    return "Disabled"


def trigger_indicator_style(status: int, state: int | None = None) -> str:
    if status == TRIGGER_STATUS_ENABLED:
        return "grey" if state == TRIGGER_STATE_UNKNOWN else "green"
    return "red"


def _lifetime_indicator(now: float, ts_delete: int) -> str:
    seconds = max(int(ts_delete - now), 0)
    days, rest = divmod(seconds, 86400)
    hours, rest = divmod(rest, 3600)
    minutes = rest // 60
    if seconds == 0:
        return "The trigger is not discovered anymore and will be deleted the next time discovery rule is processed."
    return f"The trigger is not discovered anymore and will be deleted in {days}d {hours}h {minutes}m."


def _trigger_url(context: str, **args: Any) -> str:
    return "zabbix.php?" + "&".join(
        [f"{key}={value}" for key, value in {"action": "trigger.edit", **args, "context": context}.items()]
    )


def build_trigger_row(trigger: dict, data: dict, now: float) -> dict:
    context = data["context"]
    triggerid = trigger["triggerid"]

    description: List[dict] = []
    template = (data.get("parent_templates") or {}).get(triggerid)
    if template:
        editable = template["hostid"] in set(data.get("allowed_ui_conf_templates") or [])
        description.append({"kind": "template", "label": template["name"], "editable": editable})
    if trigger.get("discovery_rule"):
        rule = trigger["discovery_rule"]
        description.append(
            {
                "kind": "discovery",
                "label": rule["name"],
                "url": f"trigger_prototypes.php?parent_discoveryid={rule['itemid']}&context={context}",
            }
        )
    description.append({"kind": "name", "label": trigger["description"], "url": _trigger_url(context, triggerid=triggerid)})

    dependencies = []
    for dependency in trigger.get("dependencies") or []:
        dep = data["dep_triggers"][dependency["triggerid"]]
        hosts = ", ".join(host["name"] for host in dep.get("hosts") or [])
        dependencies.append(
            {
                "label": hosts + NAME_DELIMITER + dep["description"],
                "url": _trigger_url(context, triggerid=dep["triggerid"]),
                "class": trigger_indicator_style(dep["status"]),
            }
        )

    info = []
    if data.get("show_info_column"):
        if trigger["status"] == TRIGGER_STATUS_ENABLED and trigger.get("error"):
            info.append({"kind": "error", "message": trigger["error"]})
        if trigger.get("ts_delete", 0) > 0:
            info.append({"kind": "lifetime", "message": _lifetime_indicator(now, trigger["ts_delete"])})

    status_action = "trigger.massenable" if trigger["status"] == TRIGGER_STATUS_DISABLED else "trigger.massdisable"
    status = {
        "label": trigger_indicator(trigger["status"], trigger.get("state")),
        "class": trigger_indicator_style(trigger["status"], trigger.get("state")),
        "url": f"zabbix.php?action={status_action}&g_triggerid[]={triggerid}&context={context}",
    }

    hosts = None
    if not data.get("single_selected_hostid"):
        hosts = ", ".join(host["name"] for host in trigger.get("hosts") or [])

    if trigger.get("recovery_mode") == ZBX_RECOVERY_MODE_RECOVERY_EXPRESSION:
        expression = {"problem": trigger["expression"], "recovery": trigger.get("recovery_expression", "")}
    else:
        expression = {"problem": trigger["expression"], "recovery": None}

    value = None
    first_host = (trigger.get("hosts") or [{}])[0]
    if first_host.get("status") in (HOST_STATUS_MONITORED, HOST_STATUS_NOT_MONITORED):
        problem = trigger.get("value") == TRIGGER_VALUE_TRUE
        value = {"label": "PROBLEM" if problem else "OK", "class": "problem-unack-fg" if problem else "ok-unack-fg"}

    return {
        "triggerid": triggerid,
        "severity": _severity_cell(trigger.get("priority", 0)),
        "value": value,
        "hosts": hosts,
        "description": description,
        "dependencies": dependencies,
        "opdata": trigger.get("opdata", ""),
        "expression": expression,
        "status": status,
        "info": info,
        "tags": (data.get("tags") or {}).get(triggerid, []),
    }


def _sort_header(label: str, field: str, data: dict) -> dict:
    active = data["sort"] == field
    next_order = "DESC" if active and data["sortorder"] == "ASC" else "ASC"
    return {
        "label": label,
        "url": f"zabbix.php?action=trigger.list&context={data['context']}&sort={field}&sortorder={next_order}",
        "arrow": (data["sortorder"].lower() if active else None),
    }


def render_trigger_list(data: dict) -> str:
    now = data.get("now") or time.time()
    headers: List[Dict[str, Any]] = [_sort_header("Severity", "priority", data)]
    if data.get("show_value_column"):
        headers.append({"label": "Value"})
    if not data.get("single_selected_hostid"):
        headers.append({"label": "Host" if data["context"] == "host" else "Template"})
    headers.append(_sort_header("Name", "description", data))
    headers.extend([{"label": "Operational data"}, {"label": "Expression"}])
    headers.append(_sort_header("Status", "status", data))
    if data.get("show_info_column"):
        headers.append({"label": "Info"})
    headers.append({"label": "Tags"})

    filter_tags = data["filter"].get("tags") or [{"tag": "", "value": "", "operator": 0}]
    context = {
        **data,
        "headers": headers,
        "rows": [build_trigger_row(trigger, data, now) for trigger in data["triggers"]],
        "flt": data["filter"],
        "filter_tags": filter_tags,
        "severities": SEVERITIES,
    }
    return render_view("configuration.triggers.list", context)


def render_page(view: str, data: dict, layout: dict) -> str:
    """Render a full HTML page: sidebar, messages and the view body."""
    if view == "configuration.triggers.list":
        body = render_trigger_list(data)
    else:
        body = render_view(view, data)
    return render_template(
        "layout.html",
        {
            "title": layout.get("title") or "Beacon",
            "menu": layout.get("menu") or [],
            "messages": layout.get("messages") or [],
            "theme": (layout.get("user") or {}).get("theme", "default"),
            "body": body,
        },
    )


def render_mfa_login(data: dict) -> str:
    mfa = data.get("mfa") or {}
    error = data.get("error")
    context = {
        "request_target": data.get("request_target", ""),
        "qr_code_url": data.get("qr_code_url"),
        "totp_secret": data.get("totp_secret"),
        "hash_function": mfa.get("hash_function"),
        "code_length": mfa.get("code_length") or 6,
        "error": error.get("message") if isinstance(error, dict) else error,
    }
    return render_page("mfa.login", context, {"title": "Beacon"})


def render_warning(header: str, messages: List[str], buttons: List[dict] | None = None, layout: dict | None = None) -> str:
    data = {"header": header, "messages": messages, "buttons": buttons or []}
    return render_page("general.warning", data, layout or {"title": "Warning"})


def render_access_denied(user: dict | None, layout: dict | None = None) -> str:
    messages = ["No permissions to referred object or it does not exist!"]
    if not user or user.get("userid") is None:
        messages.append("You are logged in as \"guest\". You must login to view this page.")
        buttons = [{"label": "Login", "url": "index.php"}]
    else:
        messages.append(f"You are logged in as \"{user.get('username')}\". You have no permissions to view this page.")
        buttons = [{"label": "Go to dashboard", "url": "zabbix.php?action=dashboard.view"}]
    return render_warning("Access denied", messages, buttons, layout)


def render_login(request_target: str = "") -> str:
    return render_page("index.login", {"request_target": request_target}, {"title": "Beacon"})


def _widget_output(data: dict, body: str) -> dict:
    output = {"name": data["name"], "body": body}
    messages = render_messages(data.get("messages"))
    if messages is not None:
        output["messages"] = messages
    return output


def render_hostavail(data: dict) -> dict:
    widget = HostAvailWidget(data.get("fields"), data.get("view_mode", 0))
    output = _widget_output(data, widget.to_html(data.get("hosts") or []))
    output["has_padding"] = widget.has_padding()
    return output


def render_navtree(data: dict) -> dict:
    tree = NavigationTree(data)
    output = _widget_output(data, tree.to_html())
    output["script_data"] = tree.get_script_data()
    return output


WIDGET_RENDERERS = {
    "monitoring.widget.tophosts": render_tophosts,
    "widget.hostavail": render_hostavail,
    "widget.navtree": render_navtree,
}
