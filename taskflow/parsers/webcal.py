"""webcal:// URL conversion for calendar feeds."""
from __future__ import annotations

import re
from urllib.parse import urlsplit

_WEBCAL_RE = re.compile(r"^webcal://", re.IGNORECASE)
_HTTP_ONLY_HOSTS = {"localhost", "127.0.0.1", "::1"}


def _is_valid_http_url(url: str) -> bool:
    try:
        parts = urlsplit(url)
    except ValueError:
        return False
    return parts.scheme in ("http", "https") and bool(parts.netloc) and not any(c.isspace() for c in url)


def _host_of(url_without_scheme: str) -> str:
    authority = url_without_scheme.split("/")[0].split("?")[0].lower()
    if authority.startswith("["):
        return authority[1:].split("]")[0]
    return authority.split(":")[0]


def convert_webcal_url(url: str) -> dict:
    """Normalise a calendar URL to http(s).

    ``webcal://`` becomes ``https://``, except for loopback hosts which get
    ``http://``. Plain http(s) URLs pass through unchanged.
    """
    trimmed = (url or "").strip()
    if not trimmed:
        return {"success": False, "originalUrl": url, "error": "URL cannot be empty", "wasWebcal": False}

    if not _WEBCAL_RE.match(trimmed):
        if _is_valid_http_url(trimmed):
            return {"success": True, "convertedUrl": trimmed, "originalUrl": url, "wasWebcal": False}
        return {
            "success": False,
            "originalUrl": url,
            "error": "Invalid URL format. Please provide a valid http://, https://, or webcal:// URL",
            "wasWebcal": False,
        }

    rest = _WEBCAL_RE.sub("", trimmed)
    scheme = "http://" if _host_of(rest) in _HTTP_ONLY_HOSTS else "https://"
    converted = scheme + rest
    if not _is_valid_http_url(converted):
        return {"success": False, "originalUrl": url, "error": "Converted URL is not valid", "wasWebcal": True}
    return {"success": True, "convertedUrl": converted, "originalUrl": url, "wasWebcal": True}
