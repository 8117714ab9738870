"""Session cookie codec: base64-encoded JSON carrying its own ``sign`` field."""

from __future__ import annotations

import base64
import binascii
import hashlib
import json
from typing import Any

from itsdangerous import Signer


_SALT = "beacon.session-cookie"


def _signer(secret: str) -> Signer:
    return Signer(secret, salt=_SALT, digest_method=hashlib.sha256)


def _signing_input(payload: dict) -> bytes:
    data = {key: val for key, val in payload.items() if key != "sign"}
    return json.dumps(data, sort_keys=True, separators=(",", ":")).encode("utf-8")


def sign_payload(payload: dict, secret: str) -> str:
    """Return the signature of every payload key except ``sign``."""
    return _signer(secret).get_signature(_signing_input(payload)).decode("ascii")


def encode_cookie(payload: dict, secret: str) -> str:
    data = {key: val for key, val in payload.items() if key != "sign"}
    data["sign"] = sign_payload(data, secret)
    raw = json.dumps(data, separators=(",", ":")).encode("utf-8")
    return base64.b64encode(raw).decode("ascii")


def decode_cookie(value: str | None, secret: str | None = None) -> dict[str, Any]:
    """Decode a cookie value.

    Anything that is not base64 JSON describing an object decodes to ``{}``.
    When ``secret`` is given the signature must match as well.
    """
    if not value:
        return {}
    try:
        raw = base64.b64decode(value.encode("ascii"), validate=True)
        data = json.loads(raw.decode("utf-8"))
    except (binascii.Error, UnicodeError, ValueError):
        return {}
    if not isinstance(data, dict):
        return {}
    if secret is not None:
        sign = data.get("sign")
        if not isinstance(sign, str) or not _signer(secret).verify_signature(_signing_input(data), sign):
            return {}
    return data
