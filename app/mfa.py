"""Multi-factor login flow as an explicit state walk.

The flow never renders or redirects itself. ``run_mfa_flow`` returns an
``MfaOutcome`` and the HTTP layer turns it into a page or a redirect.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List
from urllib.parse import urlencode

from beacon.url_validator import validate_same_site
from session_store import MFAID, REQUEST, SESSIONID, STATE, USERNAME, SessionStore
from app.user_api import INCORRECT_CODE_MESSAGE, MFA_TYPE_DUO, MFA_TYPE_TOTP, AuthApiError


CHALLENGE_ISSUED = "challenge_issued"
REDIRECT_REQUIRED = "redirect_required"
CONFIRMED = "confirmed"
REJECTED = "rejected"

logger = logging.getLogger("beacon.mfa")


@dataclass
class MfaOutcome:
    kind: str
    view_data: Dict[str, Any] = field(default_factory=dict)
    location: str | None = None
    reason: str | None = None
    sessionid: str | None = None

    @property
    def is_redirect(self) -> bool:
        return self.kind in (REDIRECT_REQUIRED, CONFIRMED)


def login_url(request_target: str = "") -> str:
    args = {"form": "default"}
    if request_target:
        args["request"] = request_target
    return "index.php?" + urlencode(args)


def resolve_request_target(value: Any, host: str | None) -> str:
    """Keep a post-login target only when it points back to this site."""
    if not isinstance(value, str) or value == "":
        return ""
    return value if validate_same_site(value, host) else ""


def _response_data(params: dict, session: SessionStore, cookie_payload: dict) -> dict:
    state = session.state if session.has(STATE) else cookie_payload.get("state", "")
    username = session.username if session.has(USERNAME) else cookie_payload.get("username", "")
    return {
        "verification_code": params.get("verification_code", ""),
        "totp_secret": params.get("totp_secret"),
        "duo_code": params.get("duo_code"),
        "duo_state": params.get("state"),
        "state": state or "",
        "username": username or "",
    }


def _issue_challenge(api, required: dict, redirect_uri: str, session: SessionStore) -> MfaOutcome:
    try:
        data = api.get_confirm_data({**required, "redirect_uri": redirect_uri})
    except AuthApiError as exc:
        logger.info("mfa_challenge_failed error=%s", exc.message)
        return MfaOutcome(REJECTED, reason=exc.message)

    mfa_type = (data.get("mfa") or {}).get("type")
    if mfa_type == MFA_TYPE_TOTP:
        return MfaOutcome(CHALLENGE_ISSUED, view_data=data)
    if mfa_type == MFA_TYPE_DUO:
        session.set(STATE, data.get("state"))
        session.set(USERNAME, data.get("username"))
        session.set(SESSIONID, data.get("sessionid"))
        return MfaOutcome(REDIRECT_REQUIRED, location=data.get("prompt_uri"))
    logger.warning("mfa_unknown_method type=%s", mfa_type)
    return MfaOutcome(REJECTED, reason=None)


def _confirm_challenge(
    api,
    required: dict,
    redirect_uri: str,
    params: dict,
    session: SessionStore,
    cookie_payload: dict,
    request_target: str,
    finalize: Callable[[str], dict],
    first_url: Callable[[dict], str | None],
) -> MfaOutcome:
    data = dict(required)
    data["redirect_uri"] = redirect_uri
    data["mfa_response_data"] = _response_data(params, session, cookie_payload)

    try:
        confirmed = api.confirm(data)
    except AuthApiError as exc:
        if exc.message == INCORRECT_CODE_MESSAGE:
            retry = {key: val for key, val in data.items() if key != "mfa_response_data"}
            retry["qr_code_url"] = params.get("qr_code_url")
            retry["totp_secret"] = params.get("totp_secret")
            retry["mfa"] = {"type": MFA_TYPE_TOTP, "hash_function": params.get("hash_function")}
            retry["error"] = {"message": exc.message}
            return MfaOutcome(CHALLENGE_ISSUED, view_data=retry, reason=exc.message)
        logger.info("mfa_confirm_failed error=%s", exc.message)
        return MfaOutcome(REJECTED, reason=exc.message)

    if not confirmed:
        return MfaOutcome(REJECTED, reason=None)

    sessionid = confirmed["sessionid"]
    user = finalize(sessionid)
    session.rebind(sessionid)
    session.set(SESSIONID, sessionid)
    session.unset([MFAID, STATE, USERNAME])
    session.set("api_auth", {"type": "frontend", "auth": sessionid})

    targets: List[str | None] = [request_target, user.get("url") if user else None, first_url(user or {})]
    location = next((target for target in targets if target), "index.php")
    return MfaOutcome(CONFIRMED, location=location, sessionid=sessionid)


def run_mfa_flow(
    params: dict,
    cookie_payload: dict,
    session: SessionStore,
    api,
    *,
    host: str | None,
    callback_url: str,
    finalize: Callable[[str], dict],
    first_url: Callable[[dict], str | None],
) -> MfaOutcome:
    """Walk one step of the MFA login.

    ``finalize(sessionid)`` authenticates the new session and returns its user;
    ``first_url(user)`` gives the first menu URL available to the user.
    """
    request_target = resolve_request_target(params.get("request", ""), host)

    mfaid = cookie_payload.get("mfaid") if isinstance(cookie_payload, dict) else None
    # 0 or "0" means no second factor
    if mfaid is None or str(mfaid).strip() in ("", "0"):
        return MfaOutcome(REDIRECT_REQUIRED, location=login_url(request_target))

    if request_target:
        session.set(REQUEST, request_target)

    redirect_uri = callback_url + ("&" if "?" in callback_url else "?") + urlencode({"request": request_target})
    required = {key: cookie_payload[key] for key in ("sessionid", "mfaid") if key in cookie_payload}

    if not session.has(STATE) and "enter" not in params:
        return _issue_challenge(api, required, redirect_uri, session)
    return _confirm_challenge(
        api,
        required,
        redirect_uri,
        params,
        session,
        cookie_payload,
        request_target,
        finalize,
        first_url,
    )
