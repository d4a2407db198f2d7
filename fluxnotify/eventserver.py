"""HTTP server that receives events and forwards them to matching alerts."""

from __future__ import annotations

import copy
import hashlib
import json
import logging
import threading
import time
from dataclasses import dataclass, field
from email.utils import formatdate
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Callable, Iterable

from fluxnotify.alerts import (
    EVENT_TYPE_WARNING,
    Alert,
    AlertFilter,
    exclude_internal_metadata,
    involved_object_string,
)
from fluxnotify.events import (
    META_CHECKSUM_KEY,
    META_DIGEST_KEY,
    META_REVISION_KEY,
    META_TOKEN_KEY,
    Event,
)

logger = logging.getLogger(__name__)

DEFAULT_RATE_LIMIT_INTERVAL = 300.0

ListAlerts = Callable[[], Iterable[Alert]]
Dispatcher = Callable[[Event, Alert], Any]


def cleanup_metadata(event: Event) -> None:
    """Keep only the metadata of the object's API group, without the group prefix."""
    group = event.involved_object.group()
    excluded = {
        f"{group}/{META_CHECKSUM_KEY}".lower(),
        f"{group}/{META_DIGEST_KEY}".lower(),
    }
    prefix = f"{group}/"
    event.metadata = {
        key.removeprefix(prefix): value
        for key, value in (event.metadata or {}).items()
        if key.startswith(group) and key.lower() not in excluded
    }


def event_key(event: Event) -> str:
    """Hex SHA-256 key identifying duplicate events."""
    ref = event.involved_object
    comps = [
        "event",
        "name=" + ref.name,
        "namespace=" + ref.namespace,
        "kind=" + ref.kind,
        "message=" + event.message,
    ]
    metadata = event.metadata or {}
    if META_REVISION_KEY in metadata:
        comps.append("revision=" + metadata[META_REVISION_KEY])
    if META_TOKEN_KEY in metadata:
        comps.append("token=" + metadata[META_TOKEN_KEY])
    return hashlib.sha256("/".join(comps).encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class TakeResult:
    """Outcome of taking a token from a bucket."""

    limit: int
    remaining: int
    reset: float
    ok: bool


@dataclass
class _Bucket:
    available: int
    reset_at: float


class RateLimiter:
    """In-memory token buckets keyed by string, refilled every interval."""

    def __init__(
        self,
        interval: float = DEFAULT_RATE_LIMIT_INTERVAL,
        tokens: int = 1,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if interval <= 0:
            raise ValueError("interval must be positive")
        if tokens <= 0:
            raise ValueError("tokens must be positive")
        self.interval = interval
        self.tokens = tokens
        self.clock = clock
        self._buckets: dict[str, _Bucket] = {}
        self._lock = threading.Lock()
        self._next_sweep = clock() + interval

    def _sweep(self, now: float) -> None:
        if now < self._next_sweep:
            return
        self._buckets = {k: b for k, b in self._buckets.items() if b.reset_at > now}
        self._next_sweep = now + self.interval

    def take(self, key: str) -> TakeResult:
        """Take one token for ``key``; ``ok`` is false when none is left."""
        now = self.clock()
        with self._lock:
            self._sweep(now)
            bucket = self._buckets.get(key)
            if bucket is None or now >= bucket.reset_at:
                bucket = _Bucket(self.tokens, now + self.interval)
                self._buckets[key] = bucket
            if bucket.available > 0:
                bucket.available -= 1
                return TakeResult(self.tokens, bucket.available, bucket.reset_at, True)
            return TakeResult(self.tokens, 0, bucket.reset_at, False)


@dataclass
class Response:
    """Status and headers sent back for an event request."""

    status: int
    headers: dict[str, str] = field(default_factory=dict)


def _split_address(address: str) -> tuple[str, int]:
    host, sep, port = address.rpartition(":")
    if not sep or not port.isdigit():
        raise ValueError(f"invalid listen address {address!r}")
    return host.strip("[]"), int(port)


class EventServer:
    """Accepts events over HTTP and dispatches them to the alerts they match."""

    def __init__(
        self,
        address: str,
        list_alerts: ListAlerts,
        dispatcher: Dispatcher,
        alert_filter: AlertFilter | None = None,
        rate_limiter: RateLimiter | None = None,
        no_cross_namespace_refs: bool = False,
    ) -> None:
        self.address = address
        self.list_alerts = list_alerts
        self.dispatcher = dispatcher
        self.alert_filter = alert_filter if alert_filter is not None else AlertFilter()
        self.rate_limiter = rate_limiter if rate_limiter is not None else RateLimiter()
        self.no_cross_namespace_refs = no_cross_namespace_refs

    def handle(self, body: bytes) -> Response:
        """Process one posted event body and return the HTTP response."""
        try:
            data = json.loads(body) if body.strip() else None
            event = Event.from_dict({} if data is None else data)
        except (ValueError, UnicodeDecodeError) as err:
            logger.error("decoding the request body failed: %s", err)
            return Response(400)

        cleanup_metadata(event)

        result = self.rate_limiter.take(event_key(event))
        reset = formatdate(result.reset, usegmt=True)
        headers = {
            "X-RateLimit-Limit": str(result.limit),
            "X-RateLimit-Remaining": str(result.remaining),
            "X-RateLimit-Reset": reset,
        }
        if not result.ok:
            headers["Retry-After"] = reset
            logger.debug("Discarding event, rate limiting duplicate events")
            return Response(429, headers)

        self._handle_event(event)
        return Response(202, headers)

    def _handle_event(self, event: Event) -> None:
        exclude_internal_metadata(event)
        try:
            alerts = list(self.list_alerts())
        except Exception:
            logger.exception("failed to get alerts for the event")
            alerts = []
        matched = self.alert_filter.filter_alerts_for_event(alerts, event)
        if not matched:
            logger.info("discarding event, no alerts found for the involved object")
            return
        logger.info("dispatching event: %s", event.message)
        for alert in matched:
            try:
                self._dispatch_notification(event, alert)
            except Exception as err:
                logger.error("failed to dispatch notification: %s", err)
                self.alert_filter.recorder.eventf(
                    alert, EVENT_TYPE_WARNING, "NotificationDispatchFailed",
                    "failed to dispatch notification for %s: %s",
                    involved_object_string(event.involved_object), err,
                )

    def _notification_for(self, event: Event, alert: Alert) -> Event:
        ref = event.involved_object
        if self.no_cross_namespace_refs and ref.namespace != alert.namespace:
            raise PermissionError(
                "discarding event, access denied to cross-namespace sources: "
                f"alert '{alert.namespace}/{alert.name}' can't process event from "
                f"'{involved_object_string(ref)}', cross-namespace references have been blocked"
            )
        notification = copy.deepcopy(event)
        self.alert_filter.enhance_event_with_alert_metadata(notification, alert)
        return notification

    def _dispatch_notification(self, event: Event, alert: Alert) -> None:
        notification = self._notification_for(event, alert)

        def send() -> None:
            try:
                self.dispatcher(notification, alert)
            except Exception as err:
                logger.error("failed to send notification: %s", err)
                self.alert_filter.recorder.eventf(
                    alert, EVENT_TYPE_WARNING, "NotificationDispatchFailed",
                    "failed to send notification for %s: %s",
                    involved_object_string(event.involved_object), err,
                )

        threading.Thread(target=send, daemon=True).start()

    def _request_handler(self) -> type[BaseHTTPRequestHandler]:
        server = self

        class _Handler(BaseHTTPRequestHandler):
            def _respond(self) -> None:
                try:
                    length = int(self.headers.get("Content-Length") or 0)
                    body = self.rfile.read(length) if length > 0 else b""
                except (ValueError, OSError) as err:
                    logger.error("reading the request body failed: %s", err)
                    response = Response(400)
                else:
                    response = server.handle(body)
                self.send_response(response.status)
                for name, value in response.headers.items():
                    self.send_header(name, value)
                self.send_header("Content-Length", "0")
                self.end_headers()

            do_POST = do_PUT = do_GET = do_PATCH = do_DELETE = _respond

            def log_message(self, format: str, *args: Any) -> None:
                logger.debug(format, *args)

        return _Handler

    def serve(self, stop: threading.Event) -> None:
        """Listen on the address until ``stop`` is set, then shut down."""
        httpd = ThreadingHTTPServer(_split_address(self.address), self._request_handler())
        httpd.daemon_threads = True
        thread = threading.Thread(target=httpd.serve_forever, daemon=True)
        thread.start()
        try:
            stop.wait()
        finally:
            httpd.shutdown()
            httpd.server_close()
            thread.join(timeout=5)
            logger.info("Event server stopped")