from __future__ import annotations

from datetime import UTC, datetime
from typing import ClassVar

import pytest

from twinop.exceptions import MalformedSpecError
from twinop.models import (
    DesiredSpec,
    FieldBinding,
    GenericSpecV1,
    ReportedState,
    SyncPhase,
    ThermostatMode,
    ThermostatSpecV1,
    Twin,
    TwinIdentity,
    known_schemas,
    parse_desired_spec,
    parse_timestamp,
    register_schema,
)
from twinop.models.spec import flatten_document, is_missing, lookup_path


def test_thermostat_spec_parses_camel_case_document() -> None:
    spec = parse_desired_spec("thermostat/v1", {"targetTemp": 21, "mode": "heat", "tolerance": 0.5})

    assert isinstance(spec, ThermostatSpecV1)
    assert spec.target_temp == 21.0
    assert spec.mode == ThermostatMode.HEAT
    assert spec.bindings() == [
        FieldBinding("targetTemp", "reportedTemp", 21.0, 0.5),
        FieldBinding("mode", "mode", "heat"),
    ]


def test_unknown_schema_is_malformed() -> None:
    with pytest.raises(MalformedSpecError) as excinfo:
        parse_desired_spec("thermostat/v9", {"targetTemp": 21})

    assert excinfo.value.schema == "thermostat/v9"


@pytest.mark.parametrize(
    "document",
    [
        {},
        {"targetTemp": "warm"},
        {"targetTemp": 21, "tolerance": -1},
        {"targetTemp": 21, "mode": "turbo"},
    ],
)
def test_invalid_thermostat_documents_are_malformed(document: dict) -> None:
    with pytest.raises(MalformedSpecError, match="invalid thermostat/v1 spec"):
        parse_desired_spec("thermostat/v1", document)


def test_thermostat_device_owned_fields_are_not_owned() -> None:
    spec = parse_desired_spec("thermostat/v1", {"targetTemp": 21})

    assert spec.owns("targetTemp")
    assert spec.owns("mode")
    assert not spec.owns("reportedTemp")
    assert not spec.owns("firmwareVersion")
    assert not spec.owns("batteryLevel")


def test_generic_spec_binds_every_leaf_and_honours_device_owned_prefixes() -> None:
    spec = parse_desired_spec(
        "generic/v1",
        {"properties": {"power": "on", "display": {"brightness": 40}}, "deviceOwned": ["meta"]},
    )

    assert isinstance(spec, GenericSpecV1)
    assert [b.path for b in spec.bindings()] == ["display.brightness", "power"]
    assert not spec.owns("meta")
    assert not spec.owns("meta.firmware")
    assert spec.owns("metadata")


def test_register_schema_adds_a_new_tag() -> None:
    class LampSpec(DesiredSpec):
        SCHEMA: ClassVar[str] = "test-lamp/v1"

        on: bool

        def bindings(self) -> list[FieldBinding]:
            return [FieldBinding("on", "on", self.on)]

    register_schema(LampSpec)

    assert "test-lamp/v1" in known_schemas()
    spec = parse_desired_spec("test-lamp/v1", {"on": True})
    assert spec.bindings() == [FieldBinding("on", "on", True)]


def test_register_schema_requires_a_tag() -> None:
    class Untagged(DesiredSpec):
        pass

    with pytest.raises(ValueError):
        register_schema(Untagged)


def test_field_binding_numeric_comparison_uses_tolerance() -> None:
    binding = FieldBinding("targetTemp", "reportedTemp", 21.0, tolerance=0.5)

    assert binding.satisfied_by(21)
    assert binding.satisfied_by(21.4)
    assert not binding.satisfied_by(21.6)
    assert not binding.satisfied_by("21")
    assert FieldBinding("mode", "mode", "heat").satisfied_by("heat")


def test_lookup_path_distinguishes_missing_from_none() -> None:
    document = {"a": {"b": None}, "c": 1}

    assert lookup_path(document, "a.b") is None
    assert is_missing(lookup_path(document, "a.x"))
    assert is_missing(lookup_path(document, "c.d"))
    assert flatten_document({"a": {"b": 1, "c": {}}, "d": [1, 2]}) == {"a.b": 1, "a.c": {}, "d": [1, 2]}


def test_twin_parses_wire_form() -> None:
    twin = Twin.model_validate(
        {
            "namespace": "ns",
            "name": "thermostat-1",
            "labels": {"app": "hvac"},
            "schema": "thermostat/v1",
            "spec": {"targetTemp": 21},
            "resourceVersion": 7,
            "generation": 2,
            "status": {"phase": "InSync", "observedGeneration": 2, "lastObservedAt": 1_700_000_000_000},
        }
    )

    assert twin.identity == TwinIdentity("ns", "thermostat-1")
    assert twin.schema_tag == "thermostat/v1"
    assert twin.resource_version == 7
    assert twin.status.phase == SyncPhase.IN_SYNC
    assert twin.status.last_observed_at == datetime(2023, 11, 14, 22, 13, 20, tzinfo=UTC)
    assert twin.to_wire()["schema"] == "thermostat/v1"
    assert twin.to_wire()["resourceVersion"] == 7


def test_twin_rejects_blank_identity() -> None:
    with pytest.raises(ValueError):
        Twin(namespace=" ", name="x")


def test_twin_label_selector_matching() -> None:
    twin = Twin(namespace="ns", name="t", labels={"app": "hvac", "tier": "edge"})

    assert twin.matches({})
    assert twin.matches({"app": "hvac"})
    assert not twin.matches({"app": "hvac", "tier": "core"})
    assert not twin.matches({"zone": "a"})


def test_twin_identity_string_form_round_trips() -> None:
    identity = TwinIdentity.parse("ns/thermostat-1")

    assert str(identity) == "ns/thermostat-1"
    for bad in ("thermostat-1", "/x", "ns/", "a/b/c"):
        with pytest.raises(ValueError):
            TwinIdentity.parse(bad)


def test_parse_timestamp_accepts_seconds_millis_and_iso() -> None:
    expected = datetime(2023, 11, 14, 22, 13, 20, tzinfo=UTC)

    assert parse_timestamp(1_700_000_000) == expected
    assert parse_timestamp(1_700_000_000_000) == expected
    assert parse_timestamp("2023-11-14T22:13:20Z") == expected
    assert parse_timestamp("") is None


def test_reported_state_for_identity() -> None:
    report = ReportedState.for_identity(
        TwinIdentity("ns", "thermostat-1"),
        {"reportedTemp": 18},
        sequence=3,
        observed_at="2023-11-14T22:13:20Z",
    )

    assert report.identity == TwinIdentity("ns", "thermostat-1")
    assert report.sequence == 3
    assert report.observed_at == datetime(2023, 11, 14, 22, 13, 20, tzinfo=UTC)


@pytest.mark.parametrize("value", [1e300, -1e300, "1e300", {"seconds": 5}])
def test_parse_timestamp_rejects_out_of_range_values(value: object) -> None:
    with pytest.raises(ValueError):
        parse_timestamp(value)


def test_unknown_schema_error_lists_known_schemas() -> None:
    with pytest.raises(MalformedSpecError, match="thermostat/v1"):
        parse_desired_spec("boiler/v7", {})
