"""Dashboard widget bodies that carry state for the client-side runtime."""

from __future__ import annotations

from typing import Any, Dict, List

from app.template_render import render_template


DASHBOARD_VIEW_MODE_NORMAL = 0
DASHBOARD_VIEW_MODE_EDIT = 1

INTERFACE_TYPE_AGENT = 1
INTERFACE_TYPE_SNMP = 2
INTERFACE_TYPE_IPMI = 3
INTERFACE_TYPE_JMX = 4

INTERFACE_AVAILABLE_UNKNOWN = 0
INTERFACE_AVAILABLE_TRUE = 1
INTERFACE_AVAILABLE_FALSE = 2

INTERFACE_TYPES = {
    INTERFACE_TYPE_AGENT: "Agent",
    INTERFACE_TYPE_SNMP: "SNMP",
    INTERFACE_TYPE_JMX: "JMX",
    INTERFACE_TYPE_IPMI: "IPMI",
}

AVAILABILITY_LABELS = {
    INTERFACE_AVAILABLE_TRUE: "Available",
    INTERFACE_AVAILABLE_FALSE: "Not available",
    INTERFACE_AVAILABLE_UNKNOWN: "Unknown",
}


class HostAvailWidget:
    """Host availability widget: interface counts by availability."""

    def __init__(self, fields: Dict[str, Any] | None = None, view_mode: int = DASHBOARD_VIEW_MODE_NORMAL) -> None:
        self.fields = dict(fields or {})
        self.view_mode = view_mode

    def has_padding(self) -> bool:
        if self.view_mode != DASHBOARD_VIEW_MODE_NORMAL:
            return False
        if self.fields.get("only_totals", 0) != 0:
            return False
        interface_type = self.fields.get("interface_type")
        return interface_type is None or len(interface_type) != 1

    def count(self, hosts: List[dict]) -> Dict[str, Dict[int, int]]:
        selected = [t for t in self.fields.get("interface_type") or [] if t in INTERFACE_TYPES] or list(INTERFACE_TYPES)
        counts: Dict[str, Dict[int, int]] = {}
        totals = {status: 0 for status in AVAILABILITY_LABELS}
        for type_id in selected:
            counts[INTERFACE_TYPES[type_id]] = {status: 0 for status in AVAILABILITY_LABELS}
        for host in hosts:
            for interface in host.get("interfaces") or []:
                type_id = interface.get("type")
                if type_id not in selected:
                    continue
                available = interface.get("available", INTERFACE_AVAILABLE_UNKNOWN)
                if available not in AVAILABILITY_LABELS:
                    available = INTERFACE_AVAILABLE_UNKNOWN
                counts[INTERFACE_TYPES[type_id]][available] += 1
                totals[available] += 1
        counts["Total"] = totals
        return counts

    def to_html(self, hosts: List[dict]) -> str:
        counts = self.count(hosts)
        if self.fields.get("only_totals"):
            counts = {"Total": counts["Total"]}
        return render_template(
            "widget.hostavail.html",
            {
                "counts": counts,
                "labels": AVAILABILITY_LABELS,
                "layout": self.fields.get("layout", 0),
                "padded": self.has_padding(),
            },
        )


class NavigationTree:
    """Map navigation tree widget state handed to the browser."""

    def __init__(self, data: Dict[str, Any]) -> None:
        self.data = data

    def get_script_data(self) -> dict:
        data = self.data
        return {
            "problems": data.get("problems", {}),
            "severity_levels": data.get("severity_config", {}),
            "navtree": data.get("navtree_items", []),
            "navtree_items_opened": [str(itemid) for itemid in data.get("navtree_items_opened", [])],
            "navtree_item_selected": int(data.get("navtree_item_selected") or 0),
            "maps_accessible": [str(mapid) for mapid in data.get("maps_accessible", [])],
            "show_unavailable": int(data.get("show_unavailable") or 0),
            "initial_load": int(data.get("initial_load", 1)),
            "max_depth": int(data.get("max_depth") or 10),
        }

    def to_html(self) -> str:
        return render_template(
            "widget.navtree.html",
            {
                "items": self.data.get("navtree_items", []),
                "script_data": self.get_script_data(),
            },
        )
