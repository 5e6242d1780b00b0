"""Data models for twins, desired specs and reported state."""

from twinop.models._base import TwinBaseModel, UtcTimestamp, parse_timestamp
from twinop.models.reported import CommandKind, DeviceCommand, ReportedState
from twinop.models.spec import (
    DesiredSpec,
    FieldBinding,
    GenericSpecV1,
    OwnershipPredicate,
    ThermostatMode,
    ThermostatSpecV1,
    known_schemas,
    parse_desired_spec,
    register_schema,
)
from twinop.models.twin import (
    Condition,
    ConditionStatus,
    ConditionType,
    SyncPhase,
    Twin,
    TwinIdentity,
    TwinStatus,
)

__all__ = [
    "CommandKind",
    "Condition",
    "ConditionStatus",
    "ConditionType",
    "DesiredSpec",
    "DeviceCommand",
    "FieldBinding",
    "GenericSpecV1",
    "OwnershipPredicate",
    "ReportedState",
    "SyncPhase",
    "ThermostatMode",
    "ThermostatSpecV1",
    "Twin",
    "TwinBaseModel",
    "TwinIdentity",
    "TwinStatus",
    "UtcTimestamp",
    "known_schemas",
    "parse_desired_spec",
    "parse_timestamp",
    "register_schema",
]
