"""Main sidebar menu, filtered by what the user may access."""

from __future__ import annotations

import copy
from typing import Any, Dict, List

from app.auth import has_capability


def _page(label: str, action: str, capability: str, items: List[dict] | None = None) -> dict:
    page = {"label": label, "url": f"zabbix.php?action={action}", "capability": capability}
    if items:
        page["items"] = items
    return page


def _sub(label: str, action: str) -> dict:
    return {"label": label, "url": f"zabbix.php?action={action}"}


MENU: List[Dict[str, Any]] = [
    {"label": "Dashboards", "url": "zabbix.php?action=dashboard.view", "capability": "ui.monitoring.dashboard"},
    {
        "label": "Monitoring",
        "pages": [
            _page("Problems", "problem.view", "ui.monitoring.problems"),
            _page("Hosts", "host.view", "ui.monitoring.hosts"),
            _page("Latest data", "latest.view", "ui.monitoring.latest_data"),
            _page("Maps", "map.view", "ui.monitoring.maps"),
            _page("Discovery", "discovery.view", "ui.monitoring.discovery"),
        ],
    },
    {
        "label": "Services",
        "pages": [
            _page("Services", "service.list", "ui.services.services"),
            _page("SLA", "sla.list", "ui.services.sla"),
            _page("SLA report", "slareport.list", "ui.services.sla_report"),
        ],
    },
    {
        "label": "Inventory",
        "pages": [
            _page("Overview", "inventory.overview", "ui.inventory.overview"),
            _page("Hosts", "inventory.hosts", "ui.inventory.hosts"),
        ],
    },
    {
        "label": "Reports",
        "pages": [
            _page("System information", "report.status", "ui.reports.system_info"),
            _page("Scheduled reports", "scheduledreport.list", "ui.reports.scheduled_reports"),
            _page("Availability report", "availabilityreport.list", "ui.reports.availability_report"),
            _page("Top 100 triggers", "toptriggers.list", "ui.reports.top_triggers"),
            _page("Audit log", "auditlog.list", "ui.reports.audit"),
            _page("Action log", "actionlog.list", "ui.reports.action_log"),
            _page("Notifications", "report.notifications", "ui.reports.notifications"),
        ],
    },
    {
        "label": "Data collection",
        "pages": [
            _page("Template groups", "templategroup.list", "ui.configuration.template_groups"),
            _page("Host groups", "hostgroup.list", "ui.configuration.host_groups"),
            _page("Templates", "template.list", "ui.configuration.templates"),
            _page("Hosts", "host.list", "ui.configuration.hosts"),
            _page("Triggers", "trigger.list&context=host", "ui.configuration.triggers"),
            _page("Maintenance", "maintenance.list", "ui.configuration.maintenance"),
            _page("Event correlation", "correlation.list", "ui.configuration.event_correlation"),
            _page("Discovery", "discovery.list", "ui.configuration.discovery"),
        ],
    },
    {
        "label": "Alerts",
        "pages": [
            _page(
                "Actions",
                "action.list&eventsource=0",
                "ui.configuration.actions",
                items=[
                    _sub("Trigger actions", "action.list&eventsource=0"),
                    _sub("Service actions", "action.list&eventsource=4"),
                    _sub("Discovery actions", "action.list&eventsource=1"),
                    _sub("Autoregistration actions", "action.list&eventsource=2"),
                    _sub("Internal actions", "action.list&eventsource=3"),
                ],
            ),
            _page("Media types", "mediatype.list", "ui.administration.media_types"),
            _page("Scripts", "script.list", "ui.administration.scripts"),
        ],
    },
    {
        "label": "Users",
        "pages": [
            _page("User groups", "usergroup.list", "ui.administration.user_groups"),
            _page("User roles", "userrole.list", "ui.administration.user_roles"),
            _page("Users", "user.list", "ui.administration.users"),
            _page("API tokens", "token.list", "ui.administration.api_tokens"),
            _page("Authentication", "authentication.edit", "ui.administration.authentication"),
        ],
    },
    {
        "label": "Administration",
        "pages": [
            _page(
                "General",
                "gui.edit",
                "ui.administration.general",
                items=[
                    _sub("GUI", "gui.edit"),
                    _sub("Autoregistration", "autoreg.edit"),
                    _sub("Images", "image.list"),
                    _sub("Icon mapping", "iconmap.list"),
                    _sub("Regular expressions", "regex.list"),
                    _sub("Trigger displaying options", "trigdisplay.edit"),
                    _sub("Geographical maps", "geomaps.edit"),
                    _sub("Modules", "module.list"),
                    _sub("Other", "miscconfig.edit"),
                ],
            ),
            _page("Audit log", "audit.settings.edit", "ui.administration.audit_log"),
            _page("Housekeeping", "housekeeping.edit", "ui.administration.housekeeping"),
            _page("Proxies", "proxy.list", "ui.administration.proxies"),
            _page("Macros", "macros.edit", "ui.administration.general"),
            _page(
                "Queue",
                "queue.overview",
                "ui.administration.queue",
                items=[
                    _sub("Queue overview", "queue.overview"),
                    _sub("Queue overview by proxy", "queue.overview.proxy"),
                    _sub("Queue details", "queue.details"),
                ],
            ),
        ],
    },
]


def get_menu(user: dict | None) -> List[dict]:
    menu: List[dict] = []
    for section in MENU:
        if "pages" not in section:
            if has_capability(user, section["capability"]):
                menu.append(copy.deepcopy(section))
            continue
        pages = [copy.deepcopy(page) for page in section["pages"] if has_capability(user, page["capability"])]
        if pages:
            menu.append({"label": section["label"], "pages": pages})
    return menu


def get_first_url(user: dict | None) -> str | None:
    for section in get_menu(user):
        if "url" in section:
            return section["url"]
        for page in section["pages"]:
            return page["url"]
    return None
