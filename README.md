# fluxnotify

`fluxnotify` routes events from a GitOps control plane to chat services and
accepts incoming webhooks that ask for resources to be reconciled. It uses
only the standard library.

It has two halves:

* **Event forwarding.** `fluxnotify.eventserver.EventServer` accepts posted
  events, keeps only the metadata of the object's API group, drops duplicates
  with a `RateLimiter`, matches each event against alerts with
  `fluxnotify.alerts.AlertFilter`, and hands every matching alert's copy of the
  event to a dispatcher function you supply, for example one that calls
  `MSTeams.post`, `Telegram.post` or `Webex.post`.
* **Webhook receiving.** `fluxnotify.receiverserver.ReceiverServer` finds the
  `Receiver` registered for a webhook path, checks the request for the
  receiver's type with `fluxnotify.receivers.validate_payload`, and sets the
  `reconcile.fluxcd.io/requestedAt` annotation on the resources the receiver
  points at.

## Installing

```
pip install .
pip install ".[test]"   # with pytest, to run the tests
```

## Events

```python
from fluxnotify.events import Event

event = Event.from_dict({
    "involvedObject": {
        "kind": "GitRepository",
        "name": "webapp",
        "namespace": "gitops-system",
    },
    "severity": "info",
    "message": "message",
    "reason": "ApplySucceeded",
    "metadata": {"test": "metadata"},
})
event.to_dict()                                  # back to the JSON form
event.has_metadata("commit_status", "update")   # False
```

`Event.from_dict` raises `ValueError` for fields of the wrong type.

## Notifiers

```python
from fluxnotify.teams import MSTeams

teams = MSTeams.from_url("https://prod-28.example.com/workflows/hook")
teams.post(event)
```

Webhook URLs whose host ends in `.webhook.office.com` get a legacy
MessageCard (`TeamsSchema.DEPRECATED_CONNECTOR`); every other URL gets an
Adaptive Card (`TeamsSchema.ADAPTIVE_CARD`), with the `summary` fact first and
the other metadata sorted by key. `build_deprecated_connector_payload` and
`build_adaptive_card_payload` return the payloads without sending them.

```python
from fluxnotify.telegram import Telegram

def send(url, message):
    print(url)
    print(message)

telegram = Telegram("channel", "token", send)
telegram.post(event)
```

Telegram messages are MarkdownV2; `escape_string` escapes the characters that
format requires. Without a `send` function, `send_telegram` posts the message
to the Telegram Bot API for each channel in the `telegram://` URL.

```python
from fluxnotify.webex import Webex

webex = Webex.from_url("https://webexapis.example.com/v1/messages", "", None, "room", "token")
print(webex.create_markdown(event))
webex.post(event)   # sent with "Authorization: Bearer <token>"
```

Every notifier skips events whose metadata has `commit_status` set to
`update`. Payloads are sent with `fluxnotify.transport.post_json`, which takes
an optional proxy URL and PEM CA data, and raises `PostError` (with the HTTP
`status`, when there was one) on failure.

`fluxnotify.util` holds shared helpers: `parse_git_address`,
`parse_revision`, `split_camelcase`, `format_name_and_description`,
`generate_commit_status_id`, `sha1_string` and `basic_auth`.

## Matching events to alerts

```python
from fluxnotify.alerts import Alert, AlertFilter, AlertSpec, CrossNamespaceObjectReference

alert = Alert(
    name="on-call",
    namespace="gitops-system",
    spec=AlertSpec(
        event_sources=[CrossNamespaceObjectReference(kind="GitRepository", name="*")],
        exclusion_list=["^debug"],
        summary="production cluster",
    ),
)
alert_filter = AlertFilter()
alert_filter.filter_alerts_for_event([alert], event)   # [alert]
```

An alert matches when it is not suspended, one of its event sources (whose
namespace defaults to the alert's) has the event's kind and namespace and a
name that is `*` or the event's name, its severity is `info` or equal to the
event's, and its inclusion and exclusion regular expressions allow the
message. A source with `match_labels` is checked against the labels returned
by the `labels_lookup` callable given to `AlertFilter`. Problems such as an
invalid regular expression are recorded as warnings on the filter's
`EventRecorder` (`alert_filter.recorder.events`).

## Running the event server

```python
import threading
from fluxnotify.eventserver import EventServer, RateLimiter

def dispatch(notification, alert):
    teams.post(notification)

server = EventServer(
    "127.0.0.1:9090",
    lambda: [alert],
    dispatch,
    alert_filter=alert_filter,
    rate_limiter=RateLimiter(interval=300, tokens=1),
    no_cross_namespace_refs=True,
)

stop = threading.Event()
threading.Thread(target=server.serve, args=(stop,)).start()
# ...
stop.set()
```

`EventServer.handle(body)` processes one request body directly and returns a
`Response`: 400 for a body that is not an event, 429 with rate-limit headers
for a duplicate within the interval (keyed by `event_key`), and 202
otherwise. Dispatch runs in a background thread; failures are recorded on the
alert filter's recorder. The helpers `cleanup_metadata` and `event_key` can
also be used on their own.

## Running the receiver server

```python
from fluxnotify.alerts import CrossNamespaceObjectReference
from fluxnotify.receivers import Receiver, ReceiverSpec, ReceiverType
from fluxnotify.receiverserver import KubeObject, ObjectStore, ReceiverServer

store = ObjectStore([
    Receiver(
        name="github",
        namespace="flux-system",
        spec=ReceiverSpec(
            type=ReceiverType.GITHUB,
            secret_ref="webhook-token",
            resources=[CrossNamespaceObjectReference(kind="GitRepository", name="webapp")],
        ),
        webhook_path="/hook/abc",
        conditions={"Ready": "True"},
    ),
    KubeObject(kind="Secret", name="webhook-token", namespace="flux-system",
               data={"token": b"token"}),
    KubeObject(kind="GitRepository", name="webapp", namespace="flux-system",
               api_version="source.toolkit.fluxcd.io/v1"),
])

server = ReceiverServer("127.0.0.1:9292", store)
status = server.handle_payload("/hook/abc", headers, body)
```

`handle_payload` returns 404 when no receiver has the path, 503 when the
receiver is suspended or not ready, 400 when the token secret is missing or
the request fails validation, 500 when a resource could not be annotated, and
200 otherwise. Resources named `*` are selected by `match_labels`; a missing
`api_version` falls back to `DEFAULT_FLUX_API_VERSIONS` for Flux kinds.
`ReceiverServer.serve(stop)` listens like the event server.

Receiver types are listed in `ReceiverType`: generic, generic-hmac, github,
gitlab, bitbucket, harbor, dockerhub, quay, gcr, nexus, acr and cdevents.
`verify_hmac_signature` and `validate_github_signature` check HMAC
signatures, and `get_group_version` splits an API version:

```python
from fluxnotify.receivers import get_group_version, verify_hmac_signature
import hashlib, hmac

body = b'{"action": "push"}'
signature = hmac.new(b"token", body, hashlib.sha1).hexdigest()
verify_hmac_signature(b"token", signature, body)   # True
get_group_version("source.toolkit.fluxcd.io/v1")   # ("source.toolkit.fluxcd.io", "v1")
```

## What it does not do

* It has no command-line program; you build the servers in Python and call
  `serve` yourself.
* It does not talk to a cluster. Alerts come from the `list_alerts` callable,
  labels from `labels_lookup`, and receivers, secrets and resources from the
  in-memory `ObjectStore`.
* It does not read provider resources or secrets to choose a notifier; the
  `dispatcher` you pass to `EventServer` decides how each notification is sent.
* It exports no metrics.