from __future__ import annotations

import base64
import os

from cryptography.fernet import Fernet, InvalidToken


class SecretStoreError(RuntimeError):
    pass


def _get_fernet(key: str | None = None) -> Fernet:
    key = (key if key is not None else os.getenv("BEACON_SECRET_KEY", "")).strip()
    if not key:
        raise SecretStoreError("BEACON_SECRET_KEY is not set")
    try:
        # Accept raw 32-byte text or a urlsafe base64 Fernet key
        if len(key) == 32:
            key = base64.urlsafe_b64encode(key.encode("utf-8")).decode("utf-8")
        return Fernet(key.encode("utf-8"))
    except Exception as exc:
        raise SecretStoreError("Invalid BEACON_SECRET_KEY") from exc


def encrypt_secret(value: str, key: str | None = None) -> str:
    token = _get_fernet(key).encrypt(value.encode("utf-8"))
    return token.decode("utf-8")


def decrypt_secret(token: str, key: str | None = None) -> str:
    try:
        value = _get_fernet(key).decrypt(token.encode("utf-8"))
        return value.decode("utf-8")
    except InvalidToken as exc:
        raise SecretStoreError("Invalid secret token") from exc
