import pytest

from fluxnotify.events import (
    META_COMMIT_STATUS_KEY,
    META_COMMIT_STATUS_UPDATE_VALUE,
    Event,
    ObjectReference,
)


def _wire_event():
    return {
        "involvedObject": {
            "kind": "Kustomization",
            "namespace": "foo-ns",
            "name": "foo",
            "apiVersion": "kustomize.toolkit.fluxcd.io/v1",
        },
        "severity": "info",
        "timestamp": "2024-01-02T03:04:05Z",
        "message": "Health check passed",
        "reason": "ApplySucceeded",
        "metadata": {"revision": "rev1"},
        "reportingController": "kustomize-controller",
    }


def test_from_dict_reads_wire_fields():
    data = _wire_event()
    event = Event.from_dict(data)
    assert event.involved_object.kind == data["involvedObject"]["kind"]
    assert event.involved_object.api_version == data["involvedObject"]["apiVersion"]
    assert event.message == data["message"]
    assert event.metadata == data["metadata"]
    assert event.reporting_controller == data["reportingController"]


def test_to_dict_round_trips_wire_form():
    data = _wire_event()
    assert Event.from_dict(data).to_dict() == data


def test_empty_metadata_is_omitted():
    data = _wire_event()
    del data["metadata"]
    event = Event.from_dict(data)
    assert event.metadata is None
    assert event.to_dict() == data


def test_event_round_trip():
    event = Event(
        involved_object=ObjectReference(kind="Bucket", name="b", namespace="ns", uid="u"),
        severity="error",
        message="m",
        reason="r",
        metadata={"k": "v"},
        reporting_instance="inst",
    )
    assert Event.from_dict(event.to_dict()) == event


def test_has_metadata():
    event = Event(metadata={META_COMMIT_STATUS_KEY: META_COMMIT_STATUS_UPDATE_VALUE})
    assert event.has_metadata(META_COMMIT_STATUS_KEY, META_COMMIT_STATUS_UPDATE_VALUE)
    assert not event.has_metadata(META_COMMIT_STATUS_KEY, "other")
    assert not Event().has_metadata(META_COMMIT_STATUS_KEY, META_COMMIT_STATUS_UPDATE_VALUE)


@pytest.mark.parametrize(
    "api_version, expected",
    [
        ("kustomize.toolkit.fluxcd.io/v1", "kustomize.toolkit.fluxcd.io"),
        ("v1", ""),
        ("", ""),
        ("a/b/c", ""),
    ],
)
def test_group(api_version, expected):
    assert ObjectReference(api_version=api_version).group() == expected


@pytest.mark.parametrize(
    "data",
    [
        ["not", "a", "mapping"],
        {"metadata": {"k": 1}},
        {"message": 5},
        {"involvedObject": "x"},
        {"timestamp": 12},
    ],
)
def test_from_dict_rejects_bad_input(data):
    with pytest.raises(ValueError):
        Event.from_dict(data)