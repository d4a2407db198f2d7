"""Microsoft Teams notifier."""

from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum
from typing import Any

from fluxnotify.events import (
    EVENT_SEVERITY_ERROR,
    META_COMMIT_STATUS_KEY,
    META_COMMIT_STATUS_UPDATE_VALUE,
    Event,
)
from fluxnotify.transport import PostError, _parse_request_uri, post_json

# Teams currently supports Adaptive Cards only up to this version.
ADAPTIVE_CARD_VERSION = "1.4"

_DEPRECATED_CONNECTOR_SUFFIX = ".webhook.office.com"
_SUMMARY_KEY = "summary"


class TeamsSchema(IntEnum):
    """Message format expected by the webhook."""

    DEPRECATED_CONNECTOR = 0
    ADAPTIVE_CARD = 1


@dataclass
class MSTeams:
    """Posts events to an MS Teams incoming webhook."""

    url: str
    proxy_url: str = ""
    ca_data: str | None = None
    schema: TeamsSchema = TeamsSchema.ADAPTIVE_CARD

    @classmethod
    def from_url(cls, hook_url: str, proxy_url: str = "", ca_data: str | None = None) -> MSTeams:
        """Validate the webhook URL and pick the schema it expects."""
        try:
            parts = _parse_request_uri(hook_url)
        except ValueError as err:
            raise ValueError(f"invalid MS Teams webhook URL {hook_url}: '{err}'") from err
        schema = TeamsSchema.ADAPTIVE_CARD
        host = parts.netloc.rpartition("@")[2].split(":")[0]
        if host.endswith(_DEPRECATED_CONNECTOR_SUFFIX):
            schema = TeamsSchema.DEPRECATED_CONNECTOR
        return cls(url=hook_url, proxy_url=proxy_url, ca_data=ca_data, schema=schema)

    def post(self, event: Event) -> None:
        """Send the event, skipping commit status updates."""
        if event.has_metadata(META_COMMIT_STATUS_KEY, META_COMMIT_STATUS_UPDATE_VALUE):
            return
        ref = event.involved_object
        obj_name = f"{ref.kind.lower()}/{ref.name}.{ref.namespace}"
        if self.schema == TeamsSchema.DEPRECATED_CONNECTOR:
            payload = build_deprecated_connector_payload(event, obj_name)
        else:
            payload = build_adaptive_card_payload(event, obj_name)
        try:
            post_json(self.url, payload, self.proxy_url, self.ca_data)
        except PostError as err:
            raise PostError(f"postMessage failed: {err}", status=err.status) from err


def build_deprecated_connector_payload(event: Event, obj_name: str) -> dict[str, Any]:
    """A legacy MessageCard for Office 365 connectors."""
    facts = [{"name": key, "value": value} for key, value in (event.metadata or {}).items()]
    return {
        "@type": "MessageCard",
        "@context": "http://schema.org/extensions",
        "themeColor": "FF0000" if event.severity == EVENT_SEVERITY_ERROR else "0076D7",
        "summary": obj_name,
        "sections": [
            {
                "activityTitle": event.message,
                "activitySubtitle": obj_name,
                "facts": facts,
            }
        ],
    }


def build_adaptive_card_payload(event: Event, obj_name: str) -> dict[str, Any]:
    """An Adaptive Card message; the summary fact first, the rest by key."""
    message: dict[str, Any] = {"type": "TextBlock"}
    if event.message:
        message["text"] = event.message
    if event.severity == EVENT_SEVERITY_ERROR:
        message["color"] = "attention"
    message["wrap"] = True

    metadata = event.metadata or {}
    facts = []
    if _SUMMARY_KEY in metadata:
        facts.append({"title": _SUMMARY_KEY, "value": metadata[_SUMMARY_KEY]})
    facts.extend(
        {"title": key, "value": metadata[key]} for key in sorted(metadata) if key != _SUMMARY_KEY
    )

    title: dict[str, Any] = {"type": "TextBlock"}
    if obj_name:
        title["text"] = obj_name
    title.update(size="large", weight="bolder", wrap=True)

    fact_set: dict[str, Any] = {"type": "FactSet"}
    if facts:
        fact_set["facts"] = facts

    return {
        "type": "message",
        "attachments": [
            {
                "contentType": "application/vnd.microsoft.card.adaptive",
                "content": {
                    "$schema": "http://adaptivecards.io/schemas/adaptive-card.json",
                    "type": "AdaptiveCard",
                    "version": ADAPTIVE_CARD_VERSION,
                    "body": [
                        {
                            "type": "Container",
                            "items": [title, message, fact_set],
                        }
                    ],
                },
            }
        ],
    }