"""Webhook receivers and the validation of the payloads they accept."""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import logging
import re
import urllib.error
import urllib.request
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Mapping
from urllib.parse import parse_qs

from fluxnotify.alerts import CrossNamespaceObjectReference

logger = logging.getLogger(__name__)

RECEIVER_KIND = "Receiver"
RECEIVER_API_VERSION = "notification.toolkit.fluxcd.io/v1"
RECEIVER_WEBHOOK_PATH = "/hook/"
READY_CONDITION = "Ready"

GITHUB_SHA1_SIGNATURE_HEADER = "X-Hub-Signature"
GITHUB_SHA256_SIGNATURE_HEADER = "X-Hub-Signature-256"
GCR_TOKEN_INDEX = len("Bearer ")

Fetch = Callable[[str], bytes]

_SIGNATURE_HASHES = {
    "sha1": hashlib.sha1,
    "sha256": hashlib.sha256,
    "sha512": hashlib.sha512,
}
_CDEVENT_TYPE = re.compile(r"dev\.cdevents\.[a-z]+\.[a-z]+\.\d+\.\d+\.\d+(-[0-9A-Za-z.\-]+)?")


class ReceiverType(str, Enum):
    """Kinds of webhook a receiver understands."""

    GENERIC = "generic"
    GENERIC_HMAC = "generic-hmac"
    GITHUB = "github"
    GITLAB = "gitlab"
    BITBUCKET = "bitbucket"
    HARBOR = "harbor"
    DOCKERHUB = "dockerhub"
    QUAY = "quay"
    GCR = "gcr"
    NEXUS = "nexus"
    ACR = "acr"
    CDEVENTS = "cdevents"


@dataclass
class ReceiverSpec:
    """What a receiver accepts and which resources it reconciles."""

    type: str = ""
    events: list[str] = field(default_factory=list)
    resources: list[CrossNamespaceObjectReference] = field(default_factory=list)
    secret_ref: str = ""
    suspend: bool = False


@dataclass
class Receiver:
    """A receiver resource together with its status."""

    name: str = ""
    namespace: str = ""
    spec: ReceiverSpec = field(default_factory=ReceiverSpec)
    webhook_path: str = ""
    conditions: dict[str, str] = field(default_factory=dict)
    labels: dict[str, str] = field(default_factory=dict)
    annotations: dict[str, str] = field(default_factory=dict)
    kind: str = RECEIVER_KIND
    api_version: str = RECEIVER_API_VERSION

    def is_ready(self) -> bool:
        """Whether the Ready condition is True."""
        return self.conditions.get(READY_CONDITION) == "True"


class ValidationError(ValueError):
    """A webhook request was rejected."""


def verify_hmac_signature(key: bytes | str, signature: str, payload: bytes) -> bool:
    """Compare a hex HMAC-SHA1 signature of the payload in constant time."""
    if isinstance(key, str):
        key = key.encode("utf-8")
    expected = hmac.new(key, payload, hashlib.sha1).hexdigest()
    return hmac.compare_digest(signature.encode("utf-8"), expected.encode("utf-8"))


def validate_github_signature(signature: str, payload: bytes, key: bytes | str) -> None:
    """Check a ``<algo>=<hex>`` HMAC signature; raise ValidationError if it is wrong."""
    if isinstance(key, str):
        key = key.encode("utf-8")
    if not signature:
        raise ValidationError("missing signature")
    algo, sep, hex_digest = signature.partition("=")
    if not sep:
        raise ValidationError(f"error parsing signature {signature!r}")
    hash_func = _SIGNATURE_HASHES.get(algo)
    if hash_func is None:
        raise ValidationError(f"unknown hash type prefix: {algo!r}")
    try:
        given = bytes.fromhex(hex_digest)
    except ValueError as err:
        raise ValidationError(f"error decoding signature {signature!r}: {err}") from err
    actual = hmac.new(key, payload, hash_func).digest()
    if not hmac.compare_digest(given, actual):
        raise ValidationError("payload signature check failed")


def get_group_version(api_version: str) -> tuple[str, str]:
    """Split ``group/version``; a bare version has an empty group."""
    parts = api_version.split("/")
    if len(parts) == 1:
        return "", parts[0]
    return parts[0], parts[1]


def _http_get(url: str) -> bytes:
    try:
        with urllib.request.urlopen(url, timeout=15) as response:
            return response.read()
    except urllib.error.HTTPError as err:
        return err.read()


def _decode_first(body: bytes) -> Any:
    """Decode the first JSON value of the body, ignoring what follows."""
    text = body.decode("utf-8").lstrip()
    value, _ = json.JSONDecoder().raw_decode(text)
    return value


def _object(value: Any) -> dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValueError("expected a JSON object")
    return value


def _strings(obj: Mapping[str, Any], *keys: str) -> dict[str, str]:
    result = {}
    for key in keys:
        value = obj.get(key)
        if value is None:
            result[key] = ""
        elif isinstance(value, str):
            result[key] = value
        else:
            raise ValueError(f"field {key!r} must be a string")
    return result


def authenticate_gcr_request(bearer: str, token_index: int = GCR_TOKEN_INDEX, fetch: Fetch | None = None) -> None:
    """Check a Google-issued bearer token against the token info endpoint."""
    if len(bearer) < token_index:
        raise ValidationError(f"Authorization header is missing or malformed: {bearer}")
    token = bearer[token_index:]
    url = f"https://oauth2.googleapis.com/tokeninfo?id_token={token}"
    try:
        response = (fetch or _http_get)(url)
    except Exception as err:
        raise ValidationError(f"cannot verify authenticity of payload: {err}") from err
    try:
        _strings(_object(_decode_first(response)), "aud")
    except ValueError as err:
        raise ValidationError(f"cannot decode auth payload: {err}") from err


def _check_event_allowed(event: str, allowed: list[str], what: str) -> None:
    if allowed and not any(event.casefold() == e.casefold() for e in allowed):
        raise ValidationError(f"the {what} '{event}' is not authorised")


def _validate_github_payload(headers: Mapping[str, str], body: bytes, token: str) -> None:
    media_type = headers.get("content-type", "").split(";")[0].strip().lower()
    if media_type == "application/json":
        pass
    elif media_type == "application/x-www-form-urlencoded":
        try:
            parse_qs(body.decode("utf-8"))
        except UnicodeDecodeError as err:
            raise ValidationError(f"error parsing form payload: {err}") from err
    else:
        raise ValidationError(f"webhook request has unsupported Content-Type {media_type!r}")
    if token:
        signature = headers.get(GITHUB_SHA256_SIGNATURE_HEADER.lower()) or headers.get(
            GITHUB_SHA1_SIGNATURE_HEADER.lower(), ""
        )
        validate_github_signature(signature, body, token)


def _validate_cdevent(body: bytes) -> None:
    data = _object(json.loads(body.decode("utf-8")))
    context = _object(data.get("context"))
    fields = _strings(context, "id", "source", "type", "version", "timestamp")
    for key in ("id", "source", "type", "version", "timestamp"):
        if not fields[key]:
            raise ValueError(f"context.{key} is required")
    if not _CDEVENT_TYPE.fullmatch(fields["type"]):
        raise ValueError(f"invalid CDEvent type {fields['type']!r}")
    try:
        datetime.fromisoformat(fields["timestamp"].replace("Z", "+00:00")[:26].rstrip("+") or "x")
    except ValueError:
        stamp = fields["timestamp"]
        if not re.fullmatch(r"\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}(\.\d+)?(Z|[+-]\d{2}:\d{2})", stamp):
            raise ValueError(f"invalid timestamp {stamp!r}") from None
    subject = _object(data.get("subject"))
    if not _strings(subject, "id")["id"]:
        raise ValueError("subject.id is required")


def validate_payload(
    receiver: Receiver,
    token: str,
    headers: Mapping[str, str],
    body: bytes,
    fetch: Fetch | None = None,
) -> None:
    """Authenticate and check a webhook request; raise ValidationError when rejected."""
    hdrs = {name.lower(): value for name, value in headers.items()}
    events = receiver.spec.events
    kind = receiver.spec.type

    if kind == ReceiverType.GENERIC:
        return
    if kind == ReceiverType.GENERIC_HMAC:
        try:
            validate_github_signature(hdrs.get("x-signature", ""), body, token)
        except ValidationError as err:
            raise ValidationError(f"unable to validate HMAC signature: {err}") from err
        return
    if kind == ReceiverType.GITHUB:
        try:
            _validate_github_payload(hdrs, body, token)
        except ValidationError as err:
            raise ValidationError(f"the GitHub signature header is invalid, err: {err}") from err
        event = hdrs.get("x-github-event", "")
        _check_event_allowed(event, events, "GitHub event")
        logger.info("handling GitHub event: %s", event)
        return
    if kind == ReceiverType.GITLAB:
        if hdrs.get("x-gitlab-token", "") != token:
            raise ValidationError("the X-Gitlab-Token header value does not match the receiver token")
        event = hdrs.get("x-gitlab-event", "")
        _check_event_allowed(event, events, "GitLab event")
        logger.info("handling GitLab event: %s", event)
        return
    if kind == ReceiverType.CDEVENTS:
        event = hdrs.get("ce-type", "")
        try:
            _validate_cdevent(body)
        except ValueError as err:
            raise ValidationError(f"unable to validate CDEvent event: {err}") from err
        _check_event_allowed(event, events, "CDEvent")
        logger.info("handling CDEvent: %s", event)
        return
    if kind == ReceiverType.BITBUCKET:
        try:
            _validate_github_payload(hdrs, body, token)
        except ValidationError as err:
            raise ValidationError(
                f"the Bitbucket server signature header is invalid, err: {err}"
            ) from err
        event = hdrs.get("x-event-key", "")
        _check_event_allowed(event, events, "Bitbucket server event")
        logger.info("handling Bitbucket server event: %s", event)
        return
    if kind == ReceiverType.QUAY:
        try:
            data = _object(_decode_first(body))
            fields = _strings(data, "docker_url")
            tags = data.get("updated_tags")
            if tags is not None and not (
                isinstance(tags, list) and all(isinstance(t, str) for t in tags)
            ):
                raise ValueError("updated_tags must be a list of strings")
        except ValueError as err:
            raise ValidationError("cannot decode Quay webhook payload") from err
        logger.info("handling Quay event from %s", fields["docker_url"])
        return
    if kind == ReceiverType.HARBOR:
        if hdrs.get("authorization", "") != token:
            raise ValidationError(
                "the Harbor Authorization header value does not match the receiver token"
            )
        logger.info("handling Harbor event")
        return
    if kind == ReceiverType.DOCKERHUB:
        try:
            data = _object(_decode_first(body))
            tag = _strings(_object(data.get("push_data")), "tag")["tag"]
            repo_url = _strings(_object(data.get("repository")), "repo_url")["repo_url"]
        except ValueError as err:
            raise ValidationError("cannot decode DockerHub webhook payload") from err
        logger.info("handling DockerHub event from %s for tag %s", repo_url, tag)
        return
    if kind == ReceiverType.GCR:
        try:
            authenticate_gcr_request(hdrs.get("authorization", ""), GCR_TOKEN_INDEX, fetch)
        except ValidationError as err:
            raise ValidationError(f"cannot authenticate GCR request: {err}") from err
        try:
            message = _object(_object(_decode_first(body)).get("message"))
            encoded = _strings(message, "data", "messageId", "publishTime", "subscription")["data"]
        except ValueError as err:
            raise ValidationError("cannot decode GCR webhook payload") from err
        try:
            raw = base64.b64decode(encoded, validate=True)
        except (binascii.Error, ValueError):
            raw = b""
        try:
            decoded = _strings(_object(json.loads(raw.decode("utf-8"))), "action", "digest", "tag")
        except ValueError as err:
            raise ValidationError("cannot decode GCR webhook body") from err
        logger.info("handling GCR event from %s for tag %s", decoded["digest"], decoded["tag"])
        return
    if kind == ReceiverType.NEXUS:
        signature = hdrs.get("x-nexus-webhook-signature", "")
        if not signature:
            raise ValidationError("Nexus signature is missing from header")
        if not verify_hmac_signature(token, signature, body):
            raise ValidationError("invalid Nexus signature")
        try:
            fields = _strings(_object(json.loads(body.decode("utf-8"))), "action", "repositoryName")
        except ValueError as err:
            raise ValidationError(f"cannot decode Nexus webhook payload: {err}") from err
        logger.info("handling Nexus event from %s", fields["repositoryName"])
        return
    if kind == ReceiverType.ACR:
        try:
            data = _object(_decode_first(body))
            _strings(data, "action")
            target = _strings(_object(data.get("target")), "repository", "tag")
        except ValueError as err:
            raise ValidationError(f"cannot decode ACR webhook payload: {err}") from err
        logger.info("handling ACR event from %s for tag %s", target["repository"], target["tag"])
        return

    raise ValidationError(f"receiver type '{kind}' not supported")