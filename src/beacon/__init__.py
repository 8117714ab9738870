"""Beacon console kernel utilities."""

from .session_cookie import decode_cookie, encode_cookie, sign_payload
from .url_validator import validate_same_site

__all__ = [
    "decode_cookie",
    "encode_cookie",
    "sign_payload",
    "validate_same_site",
]
