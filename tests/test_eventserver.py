import http.client
import json
import socket
import threading
import time

import pytest

from fluxnotify.alerts import (
    Alert,
    AlertFilter,
    AlertSpec,
    CrossNamespaceObjectReference,
    EventRecorder,
)
from fluxnotify.events import Event, ObjectReference
from fluxnotify.eventserver import EventServer, RateLimiter, cleanup_metadata, event_key

TEST_NAMESPACE = "foo-ns"
GROUP = "kustomize.toolkit.fluxcd.io"

_LABELS = {
    (TEST_NAMESPACE, "podinfo"): {"app": "podinfo"},
    (TEST_NAMESPACE, "podinfo-two"): {"app": "podinfo-two"},
}


def _labels_lookup(ref):
    return _LABELS[(ref.namespace, ref.name)]


class _Dispatcher:
    def __init__(self, fail=False):
        self.calls = []
        self.called = threading.Event()
        self.fail = fail

    def __call__(self, event, alert):
        self.calls.append((event, alert))
        self.called.set()
        if self.fail:
            raise RuntimeError("boom")


def _base_alert(**spec):
    defaults = dict(
        provider_ref="provider-foo",
        event_severity="info",
        event_sources=[
            CrossNamespaceObjectReference(kind="Bucket", name="hyacinth", namespace=TEST_NAMESPACE),
            CrossNamespaceObjectReference(kind="Kustomization", name="*"),
            CrossNamespaceObjectReference(
                kind="GitRepository", name="*", match_labels={"app": "podinfo"}
            ),
            CrossNamespaceObjectReference(kind="Kustomization", name="*", namespace="test"),
        ],
    )
    defaults.update(spec)
    return Alert(name="alert-foo", namespace=TEST_NAMESPACE, spec=AlertSpec(**defaults))


def _base_event(**changes):
    ref = dict(kind="Bucket", name="hyacinth", namespace=TEST_NAMESPACE)
    ref.update(changes.pop("ref", {}))
    data = dict(
        involved_object=ObjectReference(**ref),
        severity="info",
        timestamp="2024-01-01T00:00:00Z",
        message="well that happened",
        reason="event-happened",
        reporting_controller="source-controller",
    )
    data.update(changes)
    return Event(**data)


def _body(event):
    return json.dumps(event.to_dict()).encode("utf-8")


def _server(alerts, dispatcher, recorder=None, no_cross=True, limiter=None):
    return EventServer(
        "127.0.0.1:0",
        lambda: alerts,
        dispatcher,
        AlertFilter(_labels_lookup, recorder or EventRecorder()),
        limiter or RateLimiter(interval=300),
        no_cross,
    )


def _wait_for(predicate, timeout=2.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return predicate()


@pytest.mark.parametrize(
    "alert_spec, event_changes, forwarded",
    [
        ({}, {}, True),
        ({}, {"ref": {"kind": "GitRepository"}}, False),
        ({}, {"ref": {"name": "slop"}}, False),
        ({}, {"ref": {"namespace": "all-buckets"}}, False),
        ({"inclusion_list": ["^included"]}, {"message": "included"}, True),
        ({"inclusion_list": ["^included"]}, {"message": "not included"}, False),
        ({"exclusion_list": ["doesnotoccur", "excluded"]}, {"message": "this is excluded"}, False),
        (
            {"inclusion_list": ["^included"], "exclusion_list": ["excluded"]},
            {"message": "included excluded"},
            False,
        ),
        ({}, {"ref": {"kind": "Kustomization", "name": "test"}, "message": "test"}, True),
        (
            {},
            {
                "ref": {
                    "kind": "GitRepository",
                    "name": "podinfo",
                    "api_version": "source.toolkit.fluxcd.io/v1",
                },
                "message": "test",
            },
            True,
        ),
        (
            {},
            {
                "ref": {
                    "kind": "GitRepository",
                    "name": "podinfo-two",
                    "api_version": "source.toolkit.fluxcd.io/v1",
                },
                "message": "test",
            },
            False,
        ),
        (
            {},
            {"ref": {"kind": "Kustomization", "name": "test", "namespace": "test"}, "message": "test"},
            False,
        ),
    ],
)
def test_event_forwarding(alert_spec, event_changes, forwarded):
    dispatcher = _Dispatcher()
    server = _server([_base_alert(**alert_spec)], dispatcher)
    response = server.handle(_body(_base_event(**event_changes)))
    assert response.status == 202
    if forwarded:
        assert dispatcher.called.wait(2)
    else:
        assert not dispatcher.called.wait(0.3)


def test_cross_namespace_event_is_recorded():
    recorder = EventRecorder()
    dispatcher = _Dispatcher()
    server = _server([_base_alert()], dispatcher, recorder=recorder)
    event = _base_event(ref={"kind": "Kustomization", "name": "test", "namespace": "test"})
    assert server.handle(_body(event)).status == 202
    assert [e.reason for e in recorder.events] == ["NotificationDispatchFailed"]
    assert "cross-namespace references have been blocked" in recorder.events[0].message


def test_cross_namespace_allowed_when_not_blocked():
    dispatcher = _Dispatcher()
    server = _server([_base_alert()], dispatcher, no_cross=False)
    event = _base_event(ref={"kind": "Kustomization", "name": "test", "namespace": "test"})
    assert server.handle(_body(event)).status == 202
    assert dispatcher.called.wait(2)


def test_dispatched_event_is_enhanced_and_token_removed():
    dispatcher = _Dispatcher()
    server = _server([_base_alert(summary="some summary text")], dispatcher)
    event = _base_event(
        ref={"kind": "Kustomization", "name": "test", "api_version": f"{GROUP}/v1"},
        metadata={f"{GROUP}/token": "token", f"{GROUP}/revision": "rev1"},
    )
    assert server.handle(_body(event)).status == 202
    assert dispatcher.called.wait(2)
    sent, alert = dispatcher.calls[0]
    assert alert.name == "alert-foo"
    assert sent.metadata == {"revision": "rev1", "summary": "some summary text"}


def test_dispatcher_failure_is_recorded():
    recorder = EventRecorder()
    server = _server([_base_alert()], _Dispatcher(fail=True), recorder=recorder)
    assert server.handle(_body(_base_event())).status == 202
    assert _wait_for(lambda: len(recorder.events) == 1)
    assert recorder.events[0].reason == "NotificationDispatchFailed"
    assert recorder.events[0].message == (
        "failed to send notification for Bucket/foo-ns/hyacinth: boom"
    )


def test_list_alerts_failure_discards_event():
    dispatcher = _Dispatcher()

    def broken():
        raise RuntimeError("api down")

    server = EventServer("127.0.0.1:0", broken, dispatcher, AlertFilter(_labels_lookup))
    assert server.handle(_body(_base_event())).status == 202
    assert not dispatcher.called.wait(0.3)


@pytest.mark.parametrize("body", [b"{not json", b'{"message": 5}', b"[1, 2]"])
def test_bad_body_is_rejected(body):
    server = _server([], _Dispatcher())
    assert server.handle(body).status == 400


_RATE_CASES = [
    ("1", "Health check passed", None, False),
    ("1", "Health check passed", None, True),
    ("1", "Health check timed out for [Deployment 'foo/bar']", None, False),
    ("2", "Health check passed", None, False),
    ("3", "Health check passed", None, False),
    ("2", "Health check passed", None, True),
    ("4", "Health check passed", {f"{GROUP}/revision": "rev1"}, False),
    ("4", "Health check passed", {f"{GROUP}/revision": "rev1"}, True),
    ("4", "Health check passed", {f"{GROUP}/revision": "rev2"}, False),
    ("4", "Health check passed", {f"{GROUP}/token": "token1"}, False),
    ("4", "Health check passed", {f"{GROUP}/token": "token1"}, True),
    ("4", "Health check passed", {f"{GROUP}/token": "token2"}, False),
]


def test_duplicate_events_are_rate_limited():
    server = _server([], _Dispatcher(), limiter=RateLimiter(interval=600))
    for name, message, metadata, limited in _RATE_CASES:
        event = Event(
            involved_object=ObjectReference(
                api_version=f"{GROUP}/v1", kind="Kustomization", name=name, namespace=name
            ),
            severity="info",
            message=message,
            metadata=metadata,
        )
        response = server.handle(_body(event))
        if limited:
            assert response.status == 429
            assert response.headers["X-RateLimit-Remaining"] == "0"
        else:
            assert response.status == 202


def test_cleanup_metadata_without_metadata():
    event = Event(
        involved_object=ObjectReference(
            api_version=f"{GROUP}/v1", kind="Kustomization", name="foo", namespace="foo-ns"
        )
    )
    cleanup_metadata(event)
    assert event.metadata == {}


def test_cleanup_metadata_with_metadata():
    event = Event(
        involved_object=ObjectReference(
            api_version=f"{GROUP}/v1", kind="Kustomization", name="foo", namespace="foo-ns"
        ),
        metadata={
            GROUP + "/foo": "fooval",
            GROUP + "/bar": "barval",
            GROUP + "/checksum": "aaaaa",
            GROUP + "/digest": "bbbbbbbb",
            "source.toolkit.fluxcd.io/baz": "bazval",
            GROUP + "/zzz": "zzzz",
            GROUP + "/aa/bb": "cc",
        },
    )
    cleanup_metadata(event)
    assert event.metadata == {"foo": "fooval", "bar": "barval", "zzz": "zzzz", "aa/bb": "cc"}


def test_event_key_properties():
    event = _base_event()
    key = event_key(event)
    assert len(key) == 64
    assert all(ch in "0123456789abcdef" for ch in key)
    assert event_key(_base_event()) == key
    assert event_key(_base_event(severity="error")) == key
    assert event_key(_base_event(message="other")) != key
    assert event_key(_base_event(metadata={"revision": "rev1"})) != key
    assert event_key(_base_event(metadata={"token": "token"})) != key
    assert event_key(_base_event(metadata={"other": "x"})) == key


def test_rate_limiter_refills_after_interval():
    now = [1000.0]
    limiter = RateLimiter(interval=10, tokens=2, clock=lambda: now[0])
    first = limiter.take("k")
    assert (first.ok, first.remaining, first.limit, first.reset) == (True, 1, 2, 1010.0)
    assert limiter.take("k").ok
    assert not limiter.take("k").ok
    assert limiter.take("other").ok
    now[0] = 1010.0
    assert limiter.take("k").ok


@pytest.mark.parametrize("interval, tokens", [(0, 1), (10, 0)])
def test_rate_limiter_rejects_bad_config(interval, tokens):
    with pytest.raises(ValueError):
        RateLimiter(interval=interval, tokens=tokens)


def test_serve_over_http():
    with socket.socket() as sock:
        sock.bind(("127.0.0.1", 0))
        port = sock.getsockname()[1]
    dispatcher = _Dispatcher()
    server = EventServer(
        f"127.0.0.1:{port}", lambda: [_base_alert()], dispatcher, AlertFilter(_labels_lookup)
    )
    stop = threading.Event()
    thread = threading.Thread(target=server.serve, args=(stop,), daemon=True)
    thread.start()
    try:
        status = None
        deadline = time.monotonic() + 3
        while status is None and time.monotonic() < deadline:
            try:
                conn = http.client.HTTPConnection("127.0.0.1", port, timeout=2)
                conn.request("POST", "/", body=_body(_base_event()),
                             headers={"Content-Type": "application/json"})
                status = conn.getresponse().status
                conn.close()
            except ConnectionRefusedError:
                time.sleep(0.05)
        assert status == 202
        assert dispatcher.called.wait(2)
    finally:
        stop.set()
        thread.join(timeout=5)
    assert not thread.is_alive()