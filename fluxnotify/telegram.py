"""Telegram notifier."""

from __future__ import annotations

from typing import Callable
from urllib.parse import parse_qsl, urlsplit

from fluxnotify.events import (
    EVENT_SEVERITY_ERROR,
    META_COMMIT_STATUS_KEY,
    META_COMMIT_STATUS_UPDATE_VALUE,
    Event,
)
from fluxnotify.transport import post_json

TELEGRAM_API = "https://api.telegram.org"

# Characters the Telegram MarkdownV2 parse mode requires to be escaped.
_SPECIAL_CHARS = "\\.-_[]()~>`#+=|{}!*"

_PARSE_MODES = {"markdown": "Markdown", "markdownv2": "MarkdownV2", "html": "HTML", "none": None, "": None}


def escape_string(text: str) -> str:
    """Escape the characters that Telegram MarkdownV2 treats specially."""
    for char in _SPECIAL_CHARS:
        text = text.replace(char, "\\" + char)
    return text


def send_telegram(url: str, message: str) -> None:
    """Deliver a message described by a ``telegram://`` service URL."""
    parts = urlsplit(url)
    if parts.scheme != "telegram":
        raise ValueError(f"unsupported service URL scheme {parts.scheme!r}")
    token, sep, _ = parts.netloc.rpartition("@")
    if not sep or not token:
        raise ValueError("telegram URL has no bot token")
    query = {key.lower(): value for key, value in parse_qsl(parts.query)}
    channels = [channel for channel in query.get("channels", "").split(",") if channel]
    if not channels:
        raise ValueError("telegram URL has no channels")
    mode = query.get("parsemode", "")
    if mode.lower() not in _PARSE_MODES:
        raise ValueError(f"unknown telegram parse mode {mode!r}")
    parse_mode = _PARSE_MODES[mode.lower()]
    for channel in channels:
        payload = {"chat_id": channel, "text": message}
        if parse_mode:
            payload["parse_mode"] = parse_mode
        post_json(f"{TELEGRAM_API}/bot{token}/sendMessage", payload)


class Telegram:
    """Posts events to a Telegram channel."""

    def __init__(
        self,
        channel: str,
        token: str,
        send: Callable[[str, str], None] = send_telegram,
    ) -> None:
        if not channel:
            raise ValueError("empty Telegram channel")
        self.channel = channel
        self.token = token
        self.send = send

    def post(self, event: Event) -> None:
        """Send the event, skipping commit status updates."""
        if event.has_metadata(META_COMMIT_STATUS_KEY, META_COMMIT_STATUS_UPDATE_VALUE):
            return
        emoji = "🚨" if event.severity == EVENT_SEVERITY_ERROR else "💫"
        ref = event.involved_object
        heading = f"{emoji} {ref.kind.lower()}/{ref.name}/{ref.namespace}"
        metadata = "".join(
            f"\\- *{escape_string(key)}*: {escape_string(value)}\n"
            for key, value in (event.metadata or {}).items()
        )
        message = f"*{escape_string(heading)}*\n{escape_string(event.message)}\n{metadata}"
        url = f"telegram://{self.token}@telegram?channels={self.channel}&parseMode=markDownv2"
        self.send(url, message)