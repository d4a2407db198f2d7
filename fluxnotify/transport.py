"""JSON-over-HTTP delivery of notification payloads."""

from __future__ import annotations

import ipaddress
import json
import re
import ssl
import urllib.error
import urllib.request
from typing import Any, Mapping
from urllib.parse import SplitResult, urlsplit

DEFAULT_TIMEOUT = 15.0

_SCHEME = re.compile(r"[A-Za-z][A-Za-z0-9+.\-]*")


class PostError(Exception):
    """Sending a notification failed."""

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


def _parse_request_uri(raw: str) -> SplitResult:
    """Accept only an absolute URI or an absolute path."""
    if not raw:
        raise ValueError("empty url")
    if any(ord(ch) < 0x20 or ord(ch) == 0x7F for ch in raw):
        raise ValueError("invalid control character in URL")
    parts = urlsplit(raw)
    if raw.startswith("/"):
        return parts
    if not parts.scheme or not _SCHEME.fullmatch(parts.scheme):
        raise ValueError("invalid URI for request")
    if " " in parts.netloc:
        raise ValueError("invalid character ' ' in host name")
    return parts


def _is_loopback(host: str | None) -> bool:
    if not host:
        return False
    if host == "localhost":
        return True
    try:
        return ipaddress.ip_address(host).is_loopback
    except ValueError:
        return False


def _build_opener(url: str, proxy_url: str, ca_data: str | None) -> urllib.request.OpenerDirector:
    handlers: list[urllib.request.BaseHandler] = []
    if proxy_url:
        handlers.append(urllib.request.ProxyHandler({"http": proxy_url, "https": proxy_url}))
    elif _is_loopback(urlsplit(url).hostname):
        handlers.append(urllib.request.ProxyHandler({}))
    if ca_data is not None:
        context = ssl.create_default_context(cadata=ca_data)
        handlers.append(urllib.request.HTTPSHandler(context=context))
    return urllib.request.build_opener(*handlers)


def post_json(
    url: str,
    payload: Any,
    proxy_url: str = "",
    ca_data: str | None = None,
    headers: Mapping[str, str] | None = None,
    timeout: float = DEFAULT_TIMEOUT,
) -> int:
    """POST ``payload`` as JSON and return the response status code."""
    try:
        body = json.dumps(payload, ensure_ascii=False).encode("utf-8")
    except (TypeError, ValueError) as err:
        raise PostError(f"marshalling notification payload failed: {err}") from err
    try:
        request = urllib.request.Request(url, data=body, method="POST")
        request.add_header("Content-Type", "application/json")
        for name, value in (headers or {}).items():
            request.add_header(name, value)
        opener = _build_opener(url, proxy_url, ca_data)
        with opener.open(request, timeout=timeout) as response:
            response.read()
            return response.status
    except urllib.error.HTTPError as err:
        detail = err.read().decode("utf-8", "replace")
        raise PostError(
            f"request failed with status code {err.code}, {detail}", status=err.code
        ) from err
    except (urllib.error.URLError, OSError, ValueError) as err:
        raise PostError(f"request failed: {err}") from err