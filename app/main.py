"""FastAPI app for the Beacon administration console."""

from __future__ import annotations

import os
import re
import sys
from pathlib import Path
from typing import Any, Iterable

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse, Response

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def _load_env_file(path: Path) -> None:
    if not path.exists():
        return
    for line in path.read_text(encoding="utf-8").splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        value = value.strip().strip('"').strip("'")
        if key and key not in os.environ:
            os.environ[key] = value


_load_env_file(ROOT / "app" / ".env")

import logging
import time

import anyio

from beacon.session_cookie import encode_cookie
from controller import ControllerContext, Response as ControllerResponse, dispatch
from module_registry import ModuleRegistry
from profile_store import ProfileStore
from app.auth import AccessDeniedError, AccessPolicy, SessionAuthMiddleware
from app.controllers import get_controller
from app.db import get_db_stats, reset_db_stats
from app.menu import get_first_url, get_menu
from app.mfa import CHALLENGE_ISSUED, CONFIRMED, REDIRECT_REQUIRED, login_url, resolve_request_target, run_mfa_flow
from app.stores import (
    InMemoryTxManager,
    MemoryMonitoringStore,
    MemoryProfileBackend,
    MemorySessionBackend,
    MemoryTriggerStore,
    MemoryUserStore,
)
from app.user_api import MFA_TYPE_TOTP, JsonRpcUserApi, LocalUserApi
from app.views import (
    WIDGET_RENDERERS,
    render_access_denied,
    render_json_layout,
    render_login,
    render_mfa_login,
    render_page,
    render_warning,
)


app = FastAPI(title="Beacon Console")
logger = logging.getLogger("beacon")
logging.basicConfig(level=logging.INFO)

USE_DB = os.getenv("USE_DB", "").strip() == "1"
APP_ENV = os.getenv("APP_ENV", os.getenv("ENV", "dev")).strip().lower() or "dev"
IS_DEV = APP_ENV == "dev"
REQ_SLOW_MS = float(os.getenv("BEACON_REQ_SLOW_MS", "250"))
COOKIE_NAME = os.getenv("BEACON_SESSION_COOKIE", "beacon_session").strip() or "beacon_session"
SECRET_KEY = os.getenv("BEACON_SECRET_KEY", "").strip() or None
MODULES_DIR = os.getenv("BEACON_MODULES_DIR", "").strip() or str(ROOT / "modules")
API_URL = os.getenv("BEACON_API_URL", "").strip()
API_TIMEOUT = float(os.getenv("BEACON_API_TIMEOUT", "10"))
USE_HTTPS = os.getenv("BEACON_HTTPS", "").strip() == "1"

MFA_METHODS = {
    "1": {"type": MFA_TYPE_TOTP, "name": "TOTP", "hash_function": "SHA-1", "code_length": 6},
}

if SECRET_KEY is None:
    logger.warning("session_cookie_unsigned reason=BEACON_SECRET_KEY is not set")

if USE_DB:
    from app.stores_db import (
        DbModuleRegistry,
        DbMonitoringStore,
        DbProfileBackend,
        DbSessionBackend,
        DbTriggerStore,
        DbTxManager,
        DbUserStore,
    )

    module_registry = DbModuleRegistry()
    session_backend = DbSessionBackend()
    profile_backend = DbProfileBackend()
    users = DbUserStore()
    trigger_store = DbTriggerStore()
    monitoring_store = DbMonitoringStore()
    tx_mgr = DbTxManager()
else:
    module_registry = ModuleRegistry()
    session_backend = MemorySessionBackend()
    profile_backend = MemoryProfileBackend()
    users = MemoryUserStore()
    trigger_store = MemoryTriggerStore()
    monitoring_store = MemoryMonitoringStore()
    tx_mgr = InMemoryTxManager()

if API_URL:
    user_api = JsonRpcUserApi(API_URL, timeout=API_TIMEOUT)
else:
    user_api = LocalUserApi(users, MFA_METHODS, secret_key=SECRET_KEY)

SERVICES: dict[str, Any] = {
    "modules": module_registry,
    "modules_dir": MODULES_DIR,
    "triggers": trigger_store,
    "monitoring": monitoring_store,
}


@app.middleware("http")
async def timing_middleware(request: Request, call_next):
    reset_db_stats()
    start = time.perf_counter()
    response = await call_next(request)
    total_ms = (time.perf_counter() - start) * 1000
    auth_ms = getattr(request.state, "auth_ms", 0.0)
    db_stats = get_db_stats()
    action = request.query_params.get("action") or "-"
    logger.info(
        "%s %s %s action=%s total_ms=%.1f auth_ms=%.1f db_ms=%.1f db_q=%s",
        request.method,
        request.url.path,
        response.status_code,
        action,
        total_ms,
        auth_ms,
        db_stats["ms"],
        db_stats["queries"],
    )
    if total_ms >= REQ_SLOW_MS:
        logger.warning(
            "slow_request method=%s path=%s action=%s total_ms=%.1f db_ms=%.1f status=%s",
            request.method,
            request.url.path,
            action,
            total_ms,
            db_stats["ms"],
            response.status_code,
        )
    if IS_DEV:
        response.headers["X-Req-MS"] = f"{total_ms:.1f}"
        response.headers["X-DB-MS"] = f"{db_stats['ms']:.1f}"
        response.headers["X-Queries"] = str(db_stats["queries"])
    return response


app.add_middleware(
    SessionAuthMiddleware,
    users=users,
    sessions=session_backend,
    cookie_name=COOKIE_NAME,
    secret=SECRET_KEY,
)


def _error_response(code: str, message: str, path: str | None = None, detail: dict | None = None, status: int = 400) -> JSONResponse:
    body = {
        "ok": False,
        "errors": [{"code": code, "message": message, "path": path, "detail": detail}],
        "warnings": [],
    }
    return JSONResponse(jsonable_encoder(body), status_code=status)


@app.exception_handler(AccessDeniedError)
async def access_denied_handler(request: Request, exc: AccessDeniedError):
    user = getattr(request.state, "user", None)
    return HTMLResponse(render_access_denied(user, {"title": "Access denied", "menu": get_menu(user)}), status_code=403)


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("unhandled_error path=%s", request.url.path)
    return _error_response("INTERNAL_ERROR", "Unexpected server error", detail={"error": str(exc)}, status=500)


@app.get("/health")
async def health() -> dict:
    return {"ok": True}


_BRACKETS_RE = re.compile(r"^([^\[\]]+)((?:\[[^\[\]]*\])+)$")
_SEGMENT_RE = re.compile(r"\[([^\[\]]*)\]")


def _assign(target: dict, name: str, parts: list[str], value: Any) -> None:
    if not parts:
        target[name] = value
        return
    head = parts[0]
    if head == "":
        current = target.get(name)
        if not isinstance(current, list):
            current = []
            target[name] = current
        current.append(value)
        return
    current = target.get(name)
    if not isinstance(current, dict):
        current = {}
        target[name] = current
    _assign(current, head, parts[1:], value)


def _listify(value: Any) -> Any:
    if isinstance(value, dict):
        value = {key: _listify(val) for key, val in value.items()}
        if value and all(key.isdigit() for key in value):
            return [value[key] for key in sorted(value, key=int)]
    return value


def parse_params(items: Iterable[tuple[str, Any]]) -> dict:
    """Build request parameters from form-style pairs.

    ``a[]=1&a[]=2`` gives a list, ``t[0][tag]=x`` a list of dicts.
    """
    params: dict = {}
    for key, value in items:
        match = _BRACKETS_RE.match(key)
        if match is None:
            params[key] = value
            continue
        _assign(params, match.group(1), _SEGMENT_RE.findall(match.group(2)), value)
    return {key: _listify(val) for key, val in params.items()}


async def _request_params(request: Request) -> dict:
    params = parse_params(request.query_params.multi_items())
    if request.method != "POST":
        return params
    content_type = request.headers.get("content-type", "")
    if content_type.startswith("application/json"):
        try:
            body = await request.json()
        except ValueError:
            body = None
        if isinstance(body, dict):
            params.update(body)
    else:
        form = await request.form()
        params.update(parse_params(form.multi_items()))
    return params


def _layout(request: Request, ctx: ControllerContext | None, title: str | None) -> dict:
    user = request.state.user
    messages = request.state.session.pop_messages()
    if ctx is not None:
        messages += ctx.messages.get_and_clear()
    return {"title": title, "menu": get_menu(user), "messages": messages, "user": user}


def _render_response(request: Request, ctx: ControllerContext, response: ControllerResponse) -> Response:
    session = request.state.session
    if response.kind == "data":
        if response.layout == "json":
            return Response(render_json_layout(response.data), media_type="application/json")
        if response.layout == "widget":
            return JSONResponse(jsonable_encoder(WIDGET_RENDERERS[response.view](response.data)))
        return HTMLResponse(render_page(response.view, response.data, _layout(request, ctx, response.title)))
    if response.kind == "redirect":
        if response.form_data:
            session.set_form_data(response.form_data)
        session.push_messages(list(response.messages) + ctx.messages.get_and_clear())
        return RedirectResponse(response.location, status_code=302)
    if response.kind == "fatal":
        messages = [msg["message"] for msg in list(response.messages) + ctx.messages.get_and_clear()]
        buttons = [{"label": "Go back", "url": response.location}]
        return HTMLResponse(render_warning("Fatal error", messages, buttons, _layout(request, None, "Fatal error")), status_code=400)
    raise RuntimeError(f"Controller for action '{ctx.action}' did not set a response")


@app.api_route("/zabbix.php", methods=["GET", "POST"])
async def zabbix(request: Request):
    params = await _request_params(request)
    action = params.pop("action", None)
    controller = get_controller(action) if isinstance(action, str) else None
    if controller is None:
        logger.info("unknown_action action=%s", action)
        html = render_warning(
            "Page not found",
            ["The requested page was not found."],
            layout=_layout(request, None, "Page not found"),
        )
        return HTMLResponse(html, status_code=404)

    user = request.state.user
    ctx = ControllerContext(
        action,
        params,
        session=request.state.session,
        profile=ProfileStore(user.get("userid"), profile_backend),
        access=AccessPolicy(user),
        tx_mgr=tx_mgr,
        user=user,
        services=SERVICES,
    )
    response = await anyio.to_thread.run_sync(dispatch, controller, ctx)
    return _render_response(request, ctx, response)


def _finalize_login(sessionid: str) -> dict:
    users.activate_session(sessionid)
    web_session = users.get_session(sessionid)
    if not web_session:
        return {}
    return users.get_user(web_session["userid"]) or {}


@app.api_route("/index_mfa.php", methods=["GET", "POST"])
async def index_mfa(request: Request):
    params = await _request_params(request)
    host = request.headers.get("host")
    scheme = "https" if USE_HTTPS else "http"
    outcome = await anyio.to_thread.run_sync(
        lambda: run_mfa_flow(
            params,
            request.state.cookie_payload,
            request.state.session,
            user_api,
            host=host,
            callback_url=f"{scheme}://{host}/index_mfa.php",
            finalize=_finalize_login,
            first_url=get_first_url,
        )
    )

    if outcome.kind == CHALLENGE_ISSUED:
        request_target = resolve_request_target(params.get("request", ""), host)
        return HTMLResponse(render_mfa_login({**outcome.view_data, "request_target": request_target}))
    if outcome.kind == REDIRECT_REQUIRED:
        return RedirectResponse(outcome.location, status_code=302)
    if outcome.kind == CONFIRMED:
        redirect = RedirectResponse(outcome.location, status_code=302)
        redirect.set_cookie(
            COOKIE_NAME,
            encode_cookie({"sessionid": outcome.sessionid}, SECRET_KEY or ""),
            httponly=True,
            samesite="lax",
            secure=USE_HTTPS,
        )
        logger.info("mfa_login_completed")
        return redirect

    messages = [outcome.reason] if outcome.reason else []
    messages.append("You must login to view this page.")
    html = render_warning("You are not logged in", messages, [{"label": "Login", "url": login_url()}])
    return HTMLResponse(html)


@app.get("/index.php")
async def index(request: Request):
    host = request.headers.get("host")
    return HTMLResponse(render_login(resolve_request_target(request.query_params.get("request", ""), host)))


logger.info("beacon_config use_db=%s modules_dir=%s remote_api=%s env=%s", USE_DB, MODULES_DIR, bool(API_URL), APP_ENV)
