"""Events emitted by controllers and the references they carry."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping

EVENT_SEVERITY_INFO = "info"
EVENT_SEVERITY_ERROR = "error"

META_REVISION_KEY = "revision"
META_TOKEN_KEY = "token"
META_CHECKSUM_KEY = "checksum"
META_DIGEST_KEY = "digest"
META_COMMIT_STATUS_KEY = "commit_status"
META_COMMIT_STATUS_UPDATE_VALUE = "update"

# (attribute name, JSON key) pairs of an object reference.
_REF_FIELDS = (
    ("kind", "kind"),
    ("namespace", "namespace"),
    ("name", "name"),
    ("uid", "uid"),
    ("api_version", "apiVersion"),
    ("resource_version", "resourceVersion"),
    ("field_path", "fieldPath"),
)


def _string(data: Mapping[str, Any], key: str) -> str:
    value = data.get(key)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ValueError(f"field {key!r} must be a string")
    return value


@dataclass
class ObjectReference:
    """Reference to the object an event is about."""

    kind: str = ""
    name: str = ""
    namespace: str = ""
    api_version: str = ""
    uid: str = ""
    resource_version: str = ""
    field_path: str = ""

    def group(self) -> str:
        """The API group of the referenced object, empty for the core group."""
        parts = self.api_version.split("/")
        if len(parts) == 2:
            return parts[0]
        return ""


def _ref_from_dict(data: Mapping[str, Any]) -> ObjectReference:
    if not isinstance(data, Mapping):
        raise ValueError("involvedObject must be a JSON object")
    return ObjectReference(**{attr: _string(data, key) for attr, key in _REF_FIELDS})


def _ref_to_dict(ref: ObjectReference) -> dict[str, str]:
    return {key: getattr(ref, attr) for attr, key in _REF_FIELDS if getattr(ref, attr)}


@dataclass
class Event:
    """A notification event as posted to the event server."""

    involved_object: ObjectReference = field(default_factory=ObjectReference)
    severity: str = ""
    timestamp: str | None = None
    message: str = ""
    reason: str = ""
    metadata: dict[str, str] | None = None
    reporting_controller: str = ""
    reporting_instance: str = ""

    def has_metadata(self, key: str, value: str) -> bool:
        """Whether the metadata holds ``key`` with exactly ``value``."""
        return self.metadata is not None and self.metadata.get(key) == value

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Event:
        """Build an event from its decoded JSON form."""
        if not isinstance(data, Mapping):
            raise ValueError("event must be a JSON object")
        metadata = data.get("metadata")
        if metadata is not None:
            if not isinstance(metadata, Mapping) or not all(
                isinstance(k, str) and isinstance(v, str) for k, v in metadata.items()
            ):
                raise ValueError("event metadata must map strings to strings")
            metadata = dict(metadata)
        timestamp = data.get("timestamp")
        if timestamp is not None and not isinstance(timestamp, str):
            raise ValueError("field 'timestamp' must be a string")
        return cls(
            involved_object=_ref_from_dict(data.get("involvedObject") or {}),
            severity=_string(data, "severity"),
            timestamp=timestamp,
            message=_string(data, "message"),
            reason=_string(data, "reason"),
            metadata=metadata,
            reporting_controller=_string(data, "reportingController"),
            reporting_instance=_string(data, "reportingInstance"),
        )

    def to_dict(self) -> dict[str, Any]:
        """The JSON form of the event."""
        data: dict[str, Any] = {
            "involvedObject": _ref_to_dict(self.involved_object),
            "severity": self.severity,
            "timestamp": self.timestamp,
            "message": self.message,
            "reason": self.reason,
        }
        if self.metadata:
            data["metadata"] = dict(self.metadata)
        data["reportingController"] = self.reporting_controller
        if self.reporting_instance:
            data["reportingInstance"] = self.reporting_instance
        return data