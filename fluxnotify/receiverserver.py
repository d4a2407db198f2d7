"""HTTP server that turns webhook calls into reconcile requests."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Iterable, Mapping
from urllib.parse import quote

from fluxnotify.alerts import CrossNamespaceObjectReference
from fluxnotify.eventserver import _split_address
from fluxnotify.receivers import (
    RECEIVER_KIND,
    RECEIVER_WEBHOOK_PATH,
    Fetch,
    Receiver,
    ValidationError,
    get_group_version,
    validate_payload,
)

logger = logging.getLogger(__name__)

SECRET_KIND = "Secret"
RECONCILE_REQUEST_ANNOTATION = "reconcile.fluxcd.io/requestedAt"

# API versions used for Flux kinds when a resource reference names none.
DEFAULT_FLUX_API_VERSIONS = {
    "Bucket": "source.toolkit.fluxcd.io/v1",
    "HelmChart": "source.toolkit.fluxcd.io/v1",
    "HelmRepository": "source.toolkit.fluxcd.io/v1",
    "GitRepository": "source.toolkit.fluxcd.io/v1",
    "OCIRepository": "source.toolkit.fluxcd.io/v1beta2",
    "ImageRepository": "image.toolkit.fluxcd.io/v1beta2",
}


@dataclass
class KubeObject:
    """A generic cluster object: metadata plus optional secret data."""

    kind: str
    name: str
    namespace: str = ""
    api_version: str = ""
    labels: dict[str, str] = field(default_factory=dict)
    annotations: dict[str, str] = field(default_factory=dict)
    data: dict[str, bytes] = field(default_factory=dict)


def _key(obj: Any) -> tuple[str, str, str]:
    return obj.kind, obj.namespace, obj.name


class ObjectStore:
    """Thread-safe in-memory collection of objects keyed by kind, namespace and name."""

    def __init__(self, objects: Iterable[Any] = ()) -> None:
        self._objects: dict[tuple[str, str, str], Any] = {}
        self._lock = threading.Lock()
        for obj in objects:
            self.add(obj)

    def add(self, obj: Any) -> None:
        """Store ``obj``, replacing any object with the same key."""
        with self._lock:
            self._objects[_key(obj)] = obj

    def get(self, kind: str, namespace: str, name: str) -> Any:
        """The object with this key; KeyError when there is none."""
        with self._lock:
            try:
                return self._objects[(kind, namespace, name)]
            except KeyError:
                raise KeyError(f"{kind} '{namespace}/{name}' not found") from None

    def list(
        self,
        kind: str,
        namespace: str | None = None,
        labels: Mapping[str, str] | None = None,
    ) -> list[Any]:
        """Objects of ``kind``, in all namespaces when ``namespace`` is None."""
        with self._lock:
            objects = list(self._objects.values())
        return [
            obj
            for obj in objects
            if obj.kind == kind
            and (namespace is None or obj.namespace == namespace)
            and all((obj.labels or {}).get(k) == v for k, v in (labels or {}).items())
        ]

    def patch_annotations(self, obj: Any, annotations: Mapping[str, str]) -> Any:
        """Replace the annotations of the stored object matching ``obj``."""
        with self._lock:
            stored = self._objects.get(_key(obj))
            if stored is None:
                raise KeyError(f"{obj.kind} '{obj.namespace}/{obj.name}' not found")
            stored.annotations = dict(annotations)
            return stored


def index_receiver_webhook_path(receiver: Receiver) -> list[str]:
    """The receiver's webhook path as an index value, if it has one."""
    return [receiver.webhook_path] if receiver.webhook_path else []


def _in_group(obj: Any, group: str) -> bool:
    api_version = getattr(obj, "api_version", "")
    return not api_version or get_group_version(api_version)[0] == group


class ReceiverServer:
    """Serves webhook requests and annotates the resources receivers point at."""

    def __init__(self, address: str, store: ObjectStore, fetch: Fetch | None = None) -> None:
        self.address = address
        self.store = store
        self.fetch = fetch

    def handle_payload(self, path: str, headers: Mapping[str, str], body: bytes) -> int:
        """Process one webhook request and return the HTTP status code."""
        digest = quote(path.removeprefix(RECEIVER_WEBHOOK_PATH), safe="")
        logger.info("handling request: %s", digest)

        try:
            receivers = [
                r
                for r in self.store.list(RECEIVER_KIND)
                if isinstance(r, Receiver) and path in index_receiver_webhook_path(r)
            ]
        except Exception:
            logger.exception("unable to list receivers")
            return 500
        if not receivers:
            return 404

        receiver = receivers[0]
        if receiver.spec.suspend or not receiver.is_ready():
            reason = "receiver is suspended" if receiver.spec.suspend else "receiver is not ready"
            logger.error("unable to process request: %s (%s/%s)", reason, receiver.namespace, receiver.name)
            return 503

        try:
            token = self.token(receiver)
        except ValueError as err:
            logger.error("unable to validate payload: unable to read token, error: %s", err)
            return 400
        try:
            validate_payload(receiver, token, headers, body, self.fetch)
        except ValidationError as err:
            logger.error("unable to validate payload: %s", err)
            return 400

        with_errors = False
        for resource in receiver.spec.resources:
            try:
                self.request_reconciliation(resource, receiver.namespace)
            except ValueError as err:
                logger.error("unable to request reconciliation: %s", err)
                with_errors = True
        return 500 if with_errors else 200

    def token(self, receiver: Receiver) -> str:
        """The webhook token from the receiver's secret."""
        secret_name = f"{receiver.namespace}/{receiver.spec.secret_ref}"
        try:
            secret = self.store.get(SECRET_KIND, receiver.namespace, receiver.spec.secret_ref)
        except KeyError as err:
            raise ValueError(
                f"unable to read token from secret '{secret_name}' error: {err}"
            ) from err
        data = getattr(secret, "data", None) or {}
        if "token" not in data:
            raise ValueError(f"invalid '{secret_name}' secret data: required field 'token'")
        value = data["token"]
        return value.decode("utf-8", "replace") if isinstance(value, bytes) else str(value)

    def request_reconciliation(
        self, resource: CrossNamespaceObjectReference, default_namespace: str
    ) -> None:
        """Annotate every object the reference selects; raise ValueError on failure."""
        namespace = resource.namespace or default_namespace
        api_version = resource.api_version
        if not api_version:
            api_version = DEFAULT_FLUX_API_VERSIONS.get(resource.kind, "")
            if not api_version:
                raise ValueError(f"apiVersion must be specified for kind '{resource.kind}'")
        group, _ = get_group_version(api_version)

        if resource.name == "*":
            if resource.match_labels is None:
                raise ValueError("matchLabels field not set when using wildcard '*' as name")
            logger.debug(
                "annotate resources by matchLabel for kind '%s' in '%s': %s",
                resource.kind, namespace, resource.match_labels,
            )
            objects = [
                obj
                for obj in self.store.list(resource.kind, namespace or None, resource.match_labels)
                if _in_group(obj, group)
            ]
            if not objects:
                logger.error(
                    "error annotating resources: no '%s' resources found with matching labels '%s' in '%s' namespace",
                    resource.kind, resource.match_labels, namespace,
                )
                return
            for obj in objects:
                try:
                    self.annotate(obj)
                except ValueError as err:
                    raise ValueError(
                        f"failed to annotate resource: '{obj.kind}/{obj.name}.{namespace}': {err}"
                    ) from err
                logger.info("resource '%s/%s.%s' annotated", obj.kind, obj.name, namespace)
            return

        object_key = f"{namespace}/{resource.name}"
        try:
            obj = self.store.get(resource.kind, namespace, resource.name)
            if not _in_group(obj, group):
                raise KeyError(f"{resource.kind} '{object_key}' not found in group '{group}'")
        except KeyError as err:
            raise ValueError(f"unable to read {resource.kind} '{object_key}' error: {err}") from err
        try:
            self.annotate(obj)
        except ValueError as err:
            raise ValueError(
                f"failed to annotate resource: '{resource.kind}/{resource.name}.{namespace}': {err}"
            ) from err
        logger.info("resource '%s/%s.%s' annotated", resource.kind, resource.name, namespace)

    def annotate(self, obj: Any) -> None:
        """Set the reconcile-request annotation on ``obj`` to the current time."""
        annotations = dict(obj.annotations or {})
        annotations[RECONCILE_REQUEST_ANNOTATION] = str(datetime.now().astimezone())
        try:
            self.store.patch_annotations(obj, annotations)
        except KeyError as err:
            raise ValueError(
                f"unable to annotate {obj.kind} '{obj.namespace}/{obj.name}' error: {err}"
            ) from err
        obj.annotations = annotations

    def _request_handler(self) -> type[BaseHTTPRequestHandler]:
        server = self

        class _Handler(BaseHTTPRequestHandler):
            def _respond(self) -> None:
                if not self.path.startswith(RECEIVER_WEBHOOK_PATH):
                    status = 404
                else:
                    try:
                        length = int(self.headers.get("Content-Length") or 0)
                        body = self.rfile.read(length) if length > 0 else b""
                    except (ValueError, OSError) as err:
                        logger.error("reading the request body failed: %s", err)
                        status = 400
                    else:
                        status = server.handle_payload(self.path, dict(self.headers.items()), body)
                self.send_response(status)
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
            logger.info("Receiver server stopped")