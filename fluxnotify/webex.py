"""Webex notifier."""

from __future__ import annotations

from dataclasses import dataclass

from fluxnotify.events import (
    EVENT_SEVERITY_ERROR,
    META_COMMIT_STATUS_KEY,
    META_COMMIT_STATUS_UPDATE_VALUE,
    Event,
)
from fluxnotify.transport import PostError, _parse_request_uri, post_json


@dataclass
class Webex:
    """Posts events as Markdown messages to a Webex space."""

    url: str
    room_id: str = ""
    token: str = ""
    proxy_url: str = ""
    ca_data: str | None = None

    @classmethod
    def from_url(
        cls,
        hook_url: str,
        proxy_url: str = "",
        ca_data: str | None = None,
        channel: str = "",
        token: str = "",
    ) -> Webex:
        """Validate the API URL; ``channel`` is the Webex room id."""
        try:
            _parse_request_uri(hook_url)
        except ValueError as err:
            raise ValueError(f"invalid Webex hook URL {hook_url}: '{err}'") from err
        return cls(
            url=hook_url,
            room_id=channel,
            token=token,
            proxy_url=proxy_url,
            ca_data=ca_data,
        )

    def create_markdown(self, event: Event) -> str:
        """The Markdown text of the message for ``event``."""
        emoji = "💣" if event.severity == EVENT_SEVERITY_ERROR else "✅"
        ref = event.involved_object
        lines = [
            f"{emoji} **{ref.kind.lower()}/{ref.name}.{ref.namespace}**\n",
            f"{event.message}\n",
        ]
        lines.extend(f">**{key}**: {value}\n" for key, value in (event.metadata or {}).items())
        return "".join(lines)

    def post(self, event: Event) -> None:
        """Send the event, skipping commit status updates."""
        if event.has_metadata(META_COMMIT_STATUS_KEY, META_COMMIT_STATUS_UPDATE_VALUE):
            return
        payload = {}
        if self.room_id:
            payload["roomId"] = self.room_id
        markdown = self.create_markdown(event)
        if markdown:
            payload["markdown"] = markdown
        try:
            post_json(
                self.url,
                payload,
                self.proxy_url,
                self.ca_data,
                headers={"Authorization": "Bearer " + self.token},
            )
        except PostError as err:
            raise PostError(f"postMessage failed: {err}", status=err.status) from err