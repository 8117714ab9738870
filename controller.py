"""Request dispatch: validate, authorize, execute, flush profile."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Protocol

from validator import VALIDATION_OK, validate


logger = logging.getLogger("beacon.controller")


class MessageBag:
    """User-visible messages accumulated while handling one request."""

    def __init__(self) -> None:
        self._messages: List[dict] = []

    def error(self, message: str) -> None:
        self._messages.append({"type": "error", "message": message})

    def info(self, message: str) -> None:
        self._messages.append({"type": "info", "message": message})

    def extend(self, messages: List[dict]) -> None:
        for msg in messages or []:
            if isinstance(msg, dict) and msg.get("message"):
                self._messages.append({"type": msg.get("type") or "info", "message": msg["message"]})

    def has_errors(self) -> bool:
        return any(msg["type"] == "error" for msg in self._messages)

    def peek(self) -> List[dict]:
        return list(self._messages)

    def get_and_clear(self) -> List[dict]:
        messages = self._messages
        self._messages = []
        return messages


@dataclass
class Response:
    kind: str = "null"


@dataclass
class ResponseData(Response):
    """Data bag for a view. ``layout`` is ``html`` or ``json``."""

    data: Dict[str, Any] = field(default_factory=dict)
    view: str | None = None
    layout: str = "html"
    title: str | None = None
    kind: str = "data"


@dataclass
class ResponseRedirect(Response):
    location: str = ""
    form_data: Dict[str, Any] | None = None
    messages: List[dict] = field(default_factory=list)
    kind: str = "redirect"


@dataclass
class ResponseFatal(Response):
    location: str = "index.php"
    messages: List[dict] = field(default_factory=list)
    kind: str = "fatal"


NULL_RESPONSE = Response()


class Controller(Protocol):
    def validate_step(self, ctx: "ControllerContext") -> bool: ...

    def authorize_step(self, ctx: "ControllerContext") -> bool: ...

    def execute_step(self, ctx: "ControllerContext") -> None: ...


class ControllerContext:
    """Everything a controller may touch while handling one request."""

    def __init__(
        self,
        action: str,
        params: dict,
        *,
        session,
        profile,
        access,
        tx_mgr,
        user: dict | None = None,
        services: dict | None = None,
        messages: MessageBag | None = None,
    ) -> None:
        self.action = action
        self.params = dict(params or {})
        self.session = session
        self.profile = profile
        self.access = access
        self.tx_mgr = tx_mgr
        self.user = user or {}
        self.services = services or {}
        self.messages = messages or MessageBag()
        self.input: Dict[str, Any] = {}
        self.validation_result: int | None = None
        self._response: Response = NULL_RESPONSE

    def set_response(self, response: Response) -> None:
        self._response = response

    def get_response(self) -> Response:
        return self._response

    def has_input(self, name: str) -> bool:
        return name in self.input

    def get_input(self, name: str, default: Any = None) -> Any:
        return self.input.get(name, default)

    def get_input_all(self) -> dict:
        return dict(self.input)

    def service(self, name: str):
        if name not in self.services:
            raise KeyError(f"Service '{name}' is not configured")
        return self.services[name]


def validate_input(ctx: ControllerContext, rules: Dict[str, str], lookup=None) -> bool:
    """Validate the request parameters merged with remembered form data.

    Returns True only when every rule passed. Recoverable errors still fill
    ``ctx.input`` with the fields that passed.
    """
    params = dict(ctx.params)
    form_data = ctx.session.pop_form_data() if ctx.session is not None else None
    if form_data:
        params.update(form_data)

    result = validate(params, rules, lookup=lookup)
    for error in result.errors:
        ctx.messages.error(error)
    ctx.validation_result = result.status
    if not result.is_fatal:
        ctx.input = result.input
    if result.errors:
        logger.info("input_rejected action=%s fatal=%s errors=%s", ctx.action, result.is_fatal, len(result.errors))
    return result.status == VALIDATION_OK


def _flush_profile(ctx: ControllerContext) -> None:
    profile = ctx.profile
    if profile is None or not profile.is_modified():
        return
    tx = ctx.tx_mgr.begin()
    try:
        result = profile.flush(tx)
    except Exception:
        tx.rollback()
        raise
    if result:
        tx.commit()
    else:
        tx.rollback()


def dispatch(controller: Controller, ctx: ControllerContext) -> Response:
    """Run one controller for one request.

    A failed ``validate_step`` ends dispatch with whatever response it set.
    An authorization result other than True calls ``ctx.access.deny_access()``,
    which does not return. Profile changes are flushed once the request was
    not denied.
    """
    if controller.validate_step(ctx):
        if controller.authorize_step(ctx) is not True:
            logger.warning("access_denied action=%s user=%s", ctx.action, ctx.user.get("username"))
            ctx.access.deny_access()
            raise RuntimeError("deny_access() returned")
        controller.execute_step(ctx)

    _flush_profile(ctx)
    return ctx.get_response()
