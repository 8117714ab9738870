"""Same-site URL checks for post-login redirect targets."""

from __future__ import annotations

from urllib.parse import urlsplit


_ALLOWED_SCHEMES = {"", "http", "https"}


def validate_same_site(url: str | None, host: str | None = None) -> bool:
    """Return True when ``url`` points back to this site.

    Relative URLs are accepted; protocol-relative URLs (``//evil``) and
    absolute URLs are accepted only when their host equals ``host``.
    """
    if not isinstance(url, str):
        return False
    url = url.strip()
    if not url or any(ch in url for ch in ("\r", "\n", "\\")):
        return False
    try:
        parts = urlsplit(url)
    except ValueError:
        return False
    if parts.scheme.lower() not in _ALLOWED_SCHEMES:
        return False
    if not parts.netloc:
        return not parts.scheme
    if host is None:
        return False
    return parts.netloc.lower() == host.lower()
