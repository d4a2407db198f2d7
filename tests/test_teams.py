import json
import threading
from http.server import BaseHTTPRequestHandler, HTTPServer

import pytest

from fluxnotify.events import Event, ObjectReference
from fluxnotify.teams import (
    MSTeams,
    TeamsSchema,
    build_adaptive_card_payload,
    build_deprecated_connector_payload,
)
from fluxnotify.transport import PostError


class _Recorder(BaseHTTPRequestHandler):
    def do_POST(self):
        length = int(self.headers.get("Content-Length", 0))
        self.server.bodies.append(json.loads(self.rfile.read(length)))
        self.send_response(self.server.status)
        self.end_headers()

    def log_message(self, *args):
        pass


@pytest.fixture
def server():
    httpd = HTTPServer(("127.0.0.1", 0), _Recorder)
    httpd.bodies = []
    httpd.status = 200
    thread = threading.Thread(target=httpd.serve_forever, daemon=True)
    thread.start()
    yield httpd
    httpd.shutdown()
    httpd.server_close()


def _url(httpd):
    return f"http://127.0.0.1:{httpd.server_address[1]}"


def _test_event():
    return Event(
        involved_object=ObjectReference(kind="GitRepository", name="webapp", namespace="gitops-system"),
        severity="info",
        message="message",
        reason="reason",
        metadata={"test": "metadata"},
    )


@pytest.mark.parametrize(
    "url, schema",
    [
        ("https://xxx.webhook.office.com", TeamsSchema.DEPRECATED_CONNECTOR),
        ("https://xxx.webhook.office.com:443", TeamsSchema.DEPRECATED_CONNECTOR),
        ("https://xxx-webhook.office.com", TeamsSchema.ADAPTIVE_CARD),
        (
            "https://prod-28.northeurope.logic.azure.com:443/workflows/xxx/triggers/manual/paths/invoke",
            TeamsSchema.ADAPTIVE_CARD,
        ),
    ],
)
def test_from_url_schema(url, schema):
    assert MSTeams.from_url(url).schema == schema


@pytest.mark.parametrize("url", ["", "not a url", "webhook.office.com"])
def test_from_url_invalid(url):
    with pytest.raises(ValueError, match="invalid MS Teams webhook URL"):
        MSTeams.from_url(url)


def test_post_deprecated_connector(server):
    teams = MSTeams.from_url(_url(server))
    teams.schema = TeamsSchema.DEPRECATED_CONNECTOR
    teams.post(_test_event())
    payload = server.bodies[0]
    assert payload["sections"][0]["activitySubtitle"] == "gitrepository/webapp.gitops-system"
    assert payload["sections"][0]["facts"][0]["value"] == "metadata"


def test_post_adaptive_card(server):
    teams = MSTeams.from_url(_url(server))
    teams.schema = TeamsSchema.ADAPTIVE_CARD
    teams.post(_test_event())
    assert server.bodies[0] == {
        "type": "message",
        "attachments": [
            {
                "contentType": "application/vnd.microsoft.card.adaptive",
                "content": {
                    "$schema": "http://adaptivecards.io/schemas/adaptive-card.json",
                    "type": "AdaptiveCard",
                    "version": "1.4",
                    "body": [
                        {
                            "type": "Container",
                            "items": [
                                {
                                    "type": "TextBlock",
                                    "size": "large",
                                    "text": "gitrepository/webapp.gitops-system",
                                    "weight": "bolder",
                                    "wrap": True,
                                },
                                {"type": "TextBlock", "text": "message", "wrap": True},
                                {
                                    "type": "FactSet",
                                    "facts": [{"title": "test", "value": "metadata"}],
                                },
                            ],
                        }
                    ],
                },
            }
        ],
    }


@pytest.mark.parametrize("schema", list(TeamsSchema))
def test_post_skips_commit_status_update(server, schema):
    teams = MSTeams(url=_url(server), schema=schema)
    event = _test_event()
    event.metadata["commit_status"] = "update"
    teams.post(event)
    assert server.bodies == []


@pytest.mark.parametrize("severity", ["error", "info"])
def test_post_empty_message(server, severity):
    teams = MSTeams.from_url(_url(server) + "/token")
    event = _test_event()
    event.message = ""
    event.severity = severity
    event.metadata["commit_status"] = ""
    teams.post(event)
    message_block = server.bodies[0]["attachments"][0]["content"]["body"][0]["items"][1]
    assert "text" not in message_block
    assert ("color" in message_block) == (severity == "error")


def test_post_server_error(server):
    server.status = 500
    teams = MSTeams.from_url(_url(server))
    with pytest.raises(PostError, match="postMessage failed") as info:
        teams.post(_test_event())
    assert info.value.status == 500


def test_deprecated_connector_error_color():
    event = _test_event()
    event.severity = "error"
    assert build_deprecated_connector_payload(event, "x")["themeColor"] == "FF0000"
    event.severity = "info"
    assert build_deprecated_connector_payload(event, "x")["themeColor"] == "0076D7"


def test_adaptive_card_error_color():
    event = _test_event()
    event.severity = "error"
    items = build_adaptive_card_payload(event, "x")["attachments"][0]["content"]["body"][0]["items"]
    assert items[1]["color"] == "attention"


def test_adaptive_card_summary_first_then_sorted():
    event = _test_event()
    event.metadata = {"zeta": "z", "summary": "s", "alpha": "a"}
    items = build_adaptive_card_payload(event, "x")["attachments"][0]["content"]["body"][0]["items"]
    assert [fact["title"] for fact in items[2]["facts"]] == ["summary", "alpha", "zeta"]


def test_adaptive_card_without_metadata_omits_facts():
    event = _test_event()
    event.metadata = None
    items = build_adaptive_card_payload(event, "x")["attachments"][0]["content"]["body"][0]["items"]
    assert items[2] == {"type": "FactSet"}