"""Session cookie authentication and the capability-based access policy."""

from __future__ import annotations

import logging
import os
import time
from typing import Any, Dict, Optional

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from beacon.session_cookie import decode_cookie
from session_store import SessionStore


USER_TYPE_GUEST = 0
USER_TYPE_USER = 1
USER_TYPE_ADMIN = 2
USER_TYPE_SUPER_ADMIN = 3

UI_ADMINISTRATION_GENERAL = "ui.administration.general"

_USER_CAPABILITIES = {
    "ui.monitoring.dashboard",
    "ui.monitoring.problems",
    "ui.monitoring.hosts",
    "ui.monitoring.latest_data",
    "ui.monitoring.maps",
    "ui.monitoring.discovery",
    "ui.services.services",
    "ui.services.sla_report",
    "ui.inventory.overview",
    "ui.inventory.hosts",
    "ui.reports.availability_report",
    "ui.reports.top_triggers",
}

_ADMIN_CAPABILITIES = _USER_CAPABILITIES | {
    "ui.services.sla",
    "ui.configuration.template_groups",
    "ui.configuration.host_groups",
    "ui.configuration.templates",
    "ui.configuration.hosts",
    "ui.configuration.triggers",
    "ui.configuration.maintenance",
    "ui.configuration.discovery",
    "ui.configuration.actions",
    "ui.configuration.event_correlation",
    "ui.reports.scheduled_reports",
    "ui.reports.action_log",
    "ui.reports.notifications",
}

_SUPER_ADMIN_CAPABILITIES = _ADMIN_CAPABILITIES | {
    "ui.reports.system_info",
    "ui.reports.audit",
    "ui.administration.media_types",
    "ui.administration.scripts",
    "ui.administration.user_groups",
    "ui.administration.user_roles",
    "ui.administration.users",
    "ui.administration.api_tokens",
    "ui.administration.authentication",
    UI_ADMINISTRATION_GENERAL,
    "ui.administration.audit_log",
    "ui.administration.housekeeping",
    "ui.administration.proxies",
    "ui.administration.queue",
}

_CAPABILITIES_BY_TYPE = {
    USER_TYPE_GUEST: set(),
    USER_TYPE_USER: _USER_CAPABILITIES,
    USER_TYPE_ADMIN: _ADMIN_CAPABILITIES,
    USER_TYPE_SUPER_ADMIN: _SUPER_ADMIN_CAPABILITIES,
}

GUEST_USER: Dict[str, Any] = {
    "userid": None,
    "username": "guest",
    "type": USER_TYPE_GUEST,
    "url": "",
    "debug_mode": 0,
    "theme": "default",
}

DEV_USER: Dict[str, Any] = {
    "userid": "1",
    "username": "Admin",
    "type": USER_TYPE_SUPER_ADMIN,
    "url": "",
    "debug_mode": 0,
    "theme": "default",
}

logger = logging.getLogger("beacon.auth")


class AccessDeniedError(Exception):
    """Raised by ``AccessPolicy.deny_access``; ends the request with the access denied page."""

    def __init__(self, user: dict | None = None, capability: str | None = None) -> None:
        super().__init__("No permissions to referred object or it does not exist!")
        self.user = user
        self.capability = capability


def auth_disabled() -> bool:
    return os.getenv("BEACON_DISABLE_AUTH", "").strip().lower() in ("1", "true", "yes")


def has_capability(user: dict | None, capability: str) -> bool:
    if not isinstance(user, dict):
        return False
    return capability in _CAPABILITIES_BY_TYPE.get(user.get("type", USER_TYPE_GUEST), set())


class AccessPolicy:
    def __init__(self, user: dict | None) -> None:
        self._user = user or GUEST_USER
        self._last_capability: str | None = None

    @property
    def user(self) -> dict:
        return self._user

    def is_authenticated(self) -> bool:
        return self._user.get("type", USER_TYPE_GUEST) != USER_TYPE_GUEST

    def check_access(self, capability: str) -> bool:
        self._last_capability = capability
        return has_capability(self._user, capability)

    def deny_access(self) -> None:
        raise AccessDeniedError(self._user, self._last_capability)


class SessionAuthMiddleware(BaseHTTPMiddleware):
    """Resolves the session cookie into ``request.state.user`` and ``request.state.session``."""

    def __init__(self, app, users, sessions, cookie_name: str, secret: Optional[str]) -> None:
        super().__init__(app)
        self._users = users
        self._sessions = sessions
        self._cookie_name = cookie_name
        self._secret = secret

    def _resolve_user(self, sessionid: str | None) -> dict:
        if auth_disabled():
            return dict(DEV_USER)
        web_session = self._users.get_session(sessionid)
        if not web_session:
            return dict(GUEST_USER)
        if web_session.get("status") != "active":
            return dict(GUEST_USER)
        user = self._users.get_user(web_session["userid"])
        if not user:
            logger.warning("auth_orphan_session sessionid=%s", sessionid)
            return dict(GUEST_USER)
        return user

    async def dispatch(self, request: Request, call_next):
        start = time.perf_counter()
        if request.url.path in {"/health"}:
            return await call_next(request)

        payload = decode_cookie(request.cookies.get(self._cookie_name), self._secret)
        sessionid = payload.get("sessionid") if isinstance(payload.get("sessionid"), str) else None
        if sessionid is None and auth_disabled():
            sessionid = "dev"

        request.state.cookie_payload = payload
        request.state.user = self._resolve_user(sessionid)
        request.state.session = SessionStore(self._sessions, sessionid)
        request.state.auth_ms = (time.perf_counter() - start) * 1000
        try:
            return await call_next(request)
        finally:
            request.state.session.write_close()
