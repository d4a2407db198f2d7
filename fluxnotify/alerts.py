"""Matching events against alerts and preparing them for dispatch."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Iterable, Mapping

from fluxnotify.events import (
    EVENT_SEVERITY_INFO,
    META_TOKEN_KEY,
    Event,
    ObjectReference,
)

logger = logging.getLogger(__name__)

EVENT_TYPE_NORMAL = "Normal"
EVENT_TYPE_WARNING = "Warning"

_LABEL_NAME = re.compile(r"[A-Za-z0-9]([-A-Za-z0-9_.]*[A-Za-z0-9])?")
_DNS_SUBDOMAIN = re.compile(r"[a-z0-9]([-a-z0-9]*[a-z0-9])?(\.[a-z0-9]([-a-z0-9]*[a-z0-9])?)*")

LabelsLookup = Callable[[ObjectReference], Mapping[str, str]]


@dataclass
class CrossNamespaceObjectReference:
    """Reference to an object that may live in another namespace."""

    kind: str = ""
    name: str = ""
    namespace: str = ""
    api_version: str = ""
    match_labels: dict[str, str] | None = None


@dataclass
class AlertSpec:
    """What an alert listens to and how it decorates events."""

    provider_ref: str = ""
    event_sources: list[CrossNamespaceObjectReference] = field(default_factory=list)
    event_severity: str = EVENT_SEVERITY_INFO
    event_metadata: dict[str, str] = field(default_factory=dict)
    inclusion_list: list[str] = field(default_factory=list)
    exclusion_list: list[str] = field(default_factory=list)
    summary: str = ""
    suspend: bool = False


@dataclass
class Alert:
    """An alert resource."""

    name: str = ""
    namespace: str = ""
    spec: AlertSpec = field(default_factory=AlertSpec)
    kind: str = "Alert"


@dataclass(frozen=True)
class RecordedEvent:
    """A Kubernetes event emitted about an object."""

    obj: Any
    event_type: str
    reason: str
    message: str


class EventRecorder:
    """Collects the events emitted about alerts."""

    def __init__(self) -> None:
        self.events: list[RecordedEvent] = []

    def eventf(self, obj: Any, event_type: str, reason: str, message: str, *args: Any) -> None:
        """Record an event whose message is formatted with ``args``."""
        text = message % args if args else message
        self.events.append(RecordedEvent(obj, event_type, reason, text))
        logger.debug("event %s %s: %s", event_type, reason, text)


def involved_object_string(ref: ObjectReference) -> str:
    """``kind/namespace/name`` of an event's object."""
    return f"{ref.kind}/{ref.namespace}/{ref.name}"


def cross_ns_object_ref_string(ref: CrossNamespaceObjectReference) -> str:
    """``kind/namespace/name`` of an event source."""
    return f"{ref.kind}/{ref.namespace}/{ref.name}"


def exclude_internal_metadata(event: Event) -> None:
    """Remove internal metadata entries from the event in place."""
    if not event.metadata:
        return
    event.metadata.pop(META_TOKEN_KEY, None)


def _validate_label_key(key: str) -> None:
    prefix, sep, name = key.rpartition("/")
    if sep:
        if not prefix or len(prefix) > 253 or not _DNS_SUBDOMAIN.fullmatch(prefix):
            raise ValueError(f"invalid label key prefix {prefix!r}")
    if not name or len(name) > 63 or not _LABEL_NAME.fullmatch(name):
        raise ValueError(f"invalid label key {key!r}")


def _validate_label_value(value: str) -> None:
    if value and (len(value) > 63 or not _LABEL_NAME.fullmatch(value)):
        raise ValueError(f"invalid label value {value!r}")


def _selector_matches(match_labels: Mapping[str, str], labels: Mapping[str, str]) -> bool:
    for key, value in match_labels.items():
        _validate_label_key(key)
        _validate_label_value(value)
    return all(labels.get(key) == value for key, value in match_labels.items())


class AlertFilter:
    """Decides which alerts an event is delivered to."""

    def __init__(
        self,
        labels_lookup: LabelsLookup | None = None,
        recorder: EventRecorder | None = None,
    ) -> None:
        self.labels_lookup = labels_lookup
        self.recorder = recorder if recorder is not None else EventRecorder()

    def filter_alerts_for_event(self, alerts: Iterable[Alert], event: Event) -> list[Alert]:
        """Alerts that are active, match a source and allow the message."""
        return [
            alert
            for alert in alerts
            if not alert.spec.suspend
            and self.event_matches_alert_sources(event, alert)
            and self.message_is_included(event.message, alert)
            and not self.message_is_excluded(event.message, alert)
        ]

    def event_matches_alert_sources(self, event: Event, alert: Alert) -> bool:
        """Whether any alert source matches; sources default to the alert namespace."""
        for source in alert.spec.event_sources:
            if not source.namespace:
                source = replace(source, namespace=alert.namespace)
            if self.event_matches_alert_source(event, alert, source):
                return True
        return False

    def event_matches_alert_source(
        self, event: Event, alert: Alert, source: CrossNamespaceObjectReference
    ) -> bool:
        """Whether the event matches one source and the alert severity."""
        ref = event.involved_object
        if ref.namespace != source.namespace or ref.kind != source.kind:
            return False
        severity = alert.spec.event_severity
        if event.severity != severity and severity != EVENT_SEVERITY_INFO:
            return False
        if source.name != "*" and source.name != ref.name:
            return False
        if source.match_labels is None:
            return True

        try:
            if self.labels_lookup is None:
                raise LookupError("no way to look up the involved object")
            labels = self.labels_lookup(ref)
        except Exception:
            logger.exception("error getting the involved object")
            self.recorder.eventf(
                alert, EVENT_TYPE_WARNING, "SourceFetchFailed",
                "error getting source object %s", involved_object_string(ref),
            )
            return False

        try:
            return _selector_matches(source.match_labels, labels or {})
        except ValueError:
            source_str = cross_ns_object_ref_string(source)
            logger.exception("error using matchLabels from event source %s", source_str)
            self.recorder.eventf(
                alert, EVENT_TYPE_WARNING, "InvalidConfig",
                "error using matchLabels from event source %s", source_str,
            )
            return False

    def _first_match(self, patterns: list[str], message: str, alert: Alert, kind: str) -> bool:
        for pattern in patterns:
            try:
                compiled = re.compile(pattern)
            except re.error:
                logger.exception("failed to compile %s regex: %s", kind, pattern)
                self.recorder.eventf(
                    alert, EVENT_TYPE_WARNING, "InvalidConfig",
                    f"failed to compile {kind} regex: %s", pattern,
                )
                continue
            if compiled.search(message):
                return True
        return False

    def message_is_included(self, message: str, alert: Alert) -> bool:
        """True when there is no inclusion list or a rule matches."""
        if not alert.spec.inclusion_list:
            return True
        return self._first_match(alert.spec.inclusion_list, message, alert, "inclusion")

    def message_is_excluded(self, message: str, alert: Alert) -> bool:
        """True when an exclusion rule matches the message."""
        if not alert.spec.exclusion_list:
            return False
        return self._first_match(alert.spec.exclusion_list, message, alert, "exclusion")

    def enhance_event_with_alert_metadata(self, event: Event, alert: Alert) -> None:
        """Add the alert's metadata and summary to the event in place."""
        meta = event.metadata if event.metadata is not None else {}
        for key, value in alert.spec.event_metadata.items():
            if key not in meta:
                meta[key] = value
            else:
                logger.info("metadata key found in the existing set of metadata: %s", key)
                self.recorder.eventf(
                    alert, EVENT_TYPE_WARNING, "MetadataAppendFailed",
                    "metadata key found in the existing set of metadata for '%s' in %s",
                    key, involved_object_string(event.involved_object),
                )
        if alert.spec.summary:
            meta["summary"] = alert.spec.summary
        if meta:
            event.metadata = meta