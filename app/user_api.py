"""User authentication API used by the multi-factor login flow."""

from __future__ import annotations

import hashlib
import itertools
import logging
from typing import Any, Dict, Optional, Protocol

import httpx
import pyotp

from app.secrets import SecretStoreError, decrypt_secret, encrypt_secret


MFA_TYPE_TOTP = 1
MFA_TYPE_DUO = 2

INCORRECT_CODE_MESSAGE = "The verification code was incorrect, please try again."

_DIGESTS = {
    "SHA-1": hashlib.sha1,
    "SHA-256": hashlib.sha256,
    "SHA-512": hashlib.sha512,
}

logger = logging.getLogger("beacon.user_api")


class AuthApiError(Exception):
    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class UserApi(Protocol):
    def get_confirm_data(self, data: dict) -> dict: ...

    def confirm(self, data: dict) -> dict | None: ...


class JsonRpcUserApi:
    """Talks to a remote user API over JSON-RPC 2.0."""

    def __init__(self, url: str, timeout: float = 10.0, client: httpx.Client | None = None) -> None:
        self._url = url
        self._timeout = timeout
        self._client = client
        self._ids = itertools.count(1)

    def _call(self, method: str, params: dict) -> Any:
        payload = {"jsonrpc": "2.0", "method": method, "params": params, "id": next(self._ids)}
        try:
            if self._client is not None:
                resp = self._client.post(self._url, json=payload, timeout=self._timeout)
            else:
                resp = httpx.post(self._url, json=payload, timeout=self._timeout)
            resp.raise_for_status()
            body = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("user_api_call_failed method=%s error=%s", method, exc)
            raise AuthApiError("Unable to connect to the authentication API.") from exc
        if not isinstance(body, dict):
            raise AuthApiError("Invalid response from the authentication API.")
        error = body.get("error")
        if error:
            message = error.get("data") or error.get("message") if isinstance(error, dict) else str(error)
            raise AuthApiError(str(message))
        return body.get("result")

    def get_confirm_data(self, data: dict) -> dict:
        result = self._call("user.getConfirmData", data)
        if not isinstance(result, dict):
            raise AuthApiError("Invalid response from the authentication API.")
        return result

    def confirm(self, data: dict) -> dict | None:
        result = self._call("user.confirm", data)
        return result if isinstance(result, dict) and result else None


class LocalUserApi:
    """TOTP confirmation against the local user store.

    Users without an enrolled secret get a fresh secret and QR code URL with
    the challenge; the secret is stored (encrypted) on the first correct code.
    """

    def __init__(self, users, mfa_methods: Dict[Any, dict], secret_key: Optional[str] = None, issuer: str = "Beacon") -> None:
        self._users = users
        self._methods = {str(mfaid): method for mfaid, method in mfa_methods.items()}
        self._secret_key = secret_key
        self._issuer = issuer

    def _pending(self, data: dict) -> tuple[dict, dict, dict]:
        web_session = self._users.get_session(data.get("sessionid"))
        if not web_session or web_session.get("status") != "mfa_pending":
            raise AuthApiError("Session terminated, re-login, please.")
        user = self._users.get_user(web_session["userid"])
        if not user:
            raise AuthApiError("Session terminated, re-login, please.")
        method = self._methods.get(str(data.get("mfaid") or user.get("mfaid")))
        if not method:
            raise AuthApiError("Incorrect multi-factor authentication method.")
        if method.get("type") != MFA_TYPE_TOTP:
            raise AuthApiError("Duo Universal Prompt is not supported by the local authentication API.")
        return web_session, user, method

    def _enrolled_secret(self, user: dict) -> str | None:
        token = (user.get("mfa") or {}).get("totp_secret_enc")
        if not token:
            return None
        try:
            return decrypt_secret(token, self._secret_key)
        except SecretStoreError as exc:
            logger.warning("mfa_secret_unreadable userid=%s", user.get("userid"))
            raise AuthApiError("Unable to read the TOTP secret.") from exc

    def _totp(self, secret: str, method: dict) -> pyotp.TOTP:
        hash_function = method.get("hash_function") or "SHA-1"
        return pyotp.TOTP(secret, digits=int(method.get("code_length") or 6), digest=_DIGESTS.get(hash_function, hashlib.sha1))

    def get_confirm_data(self, data: dict) -> dict:
        web_session, user, method = self._pending(data)
        result = {
            "sessionid": web_session["sessionid"],
            "mfaid": data.get("mfaid"),
            "username": user["username"],
            "mfa": {
                "type": MFA_TYPE_TOTP,
                "name": method.get("name", "TOTP"),
                "hash_function": method.get("hash_function") or "SHA-1",
                "code_length": int(method.get("code_length") or 6),
            },
        }
        if self._enrolled_secret(user) is None:
            secret = pyotp.random_base32()
            result["totp_secret"] = secret
            result["qr_code_url"] = self._totp(secret, method).provisioning_uri(name=user["username"], issuer_name=self._issuer)
        return result

    def confirm(self, data: dict) -> dict | None:
        web_session, user, method = self._pending(data)
        response = data.get("mfa_response_data") or {}
        code = str(response.get("verification_code") or "").strip()
        enrolled = self._enrolled_secret(user)
        secret = enrolled or response.get("totp_secret")
        if not secret or not code:
            raise AuthApiError("Incorrect verification code.")
        if not self._totp(secret, method).verify(code, valid_window=1):
            logger.info("mfa_code_rejected userid=%s", user["userid"])
            raise AuthApiError(INCORRECT_CODE_MESSAGE)
        if enrolled is None:
            mfa = dict(user.get("mfa") or {})
            mfa["totp_secret_enc"] = encrypt_secret(secret, self._secret_key)
            self._users.update_user(user["userid"], {"mfa": mfa})
        self._users.drop_session(web_session["sessionid"])
        sessionid = self._users.create_session(user["userid"], status="active")
        logger.info("mfa_confirmed userid=%s", user["userid"])
        return {"sessionid": sessionid, "userid": user["userid"]}
