"""Desired-spec schemas.

A twin carries an opaque ``spec`` document plus a schema tag such as
``thermostat/v1``. The tag selects one of the registered spec models;
validation happens when the reconciler loads the twin, and an unknown tag
or a document that fails validation surfaces as
:class:`~twinop.exceptions.MalformedSpecError`.

Each schema declares how its desired fields bind to the device's reported
document and which fields the device owns. Device-owned fields are never
diffed, so the operator does not fight the device over values only the
device may set.
"""

from __future__ import annotations

import math
from collections.abc import Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import Any, ClassVar

from pydantic import Field, ValidationError, field_validator

from twinop.exceptions import MalformedSpecError
from twinop.models._base import TwinBaseModel

OwnershipPredicate = Callable[[str], bool]
"""Returns ``True`` when the operator owns the field at the given dotted path."""


@dataclass(frozen=True, slots=True)
class FieldBinding:
    """Pairs a desired field with the reported field that must match it."""

    path: str
    reported_path: str
    value: Any
    tolerance: float = 0.0

    def satisfied_by(self, observed: Any) -> bool:
        if _is_number(self.value) and _is_number(observed):
            return math.isclose(float(observed), float(self.value), abs_tol=self.tolerance)
        return bool(observed == self.value)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def flatten_document(document: dict[str, Any], prefix: str = "") -> dict[str, Any]:
    """Flatten nested dicts into ``dotted.path -> leaf`` pairs (lists are leaves)."""
    flat: dict[str, Any] = {}
    for key, value in document.items():
        path = f"{prefix}.{key}" if prefix else str(key)
        if isinstance(value, dict) and value:
            flat.update(flatten_document(value, path))
        else:
            flat[path] = value
    return flat


_MISSING = object()


def lookup_path(document: dict[str, Any], path: str) -> Any:
    """Resolve a dotted path in a nested document; returns a sentinel when absent."""
    current: Any = document
    for part in path.split("."):
        if not isinstance(current, dict) or part not in current:
            return _MISSING
        current = current[part]
    return current


def is_missing(value: Any) -> bool:
    return value is _MISSING


class DesiredSpec(TwinBaseModel):
    """Base for schema-specific desired specs."""

    SCHEMA: ClassVar[str] = ""
    DEVICE_OWNED: ClassVar[frozenset[str]] = frozenset()

    def bindings(self) -> list[FieldBinding]:
        raise NotImplementedError

    def device_owned_paths(self) -> frozenset[str]:
        return self.DEVICE_OWNED

    def owns(self, path: str) -> bool:
        """Default ownership rule: everything not declared device-owned."""
        owned_by_device = self.device_owned_paths()
        return not any(path == field or path.startswith(f"{field}.") for field in owned_by_device)


class ThermostatMode(StrEnum):
    OFF = "off"
    HEAT = "heat"
    COOL = "cool"
    AUTO = "auto"


class ThermostatSpecV1(DesiredSpec):
    SCHEMA: ClassVar[str] = "thermostat/v1"
    DEVICE_OWNED: ClassVar[frozenset[str]] = frozenset({"firmwareVersion", "batteryLevel", "reportedTemp"})

    target_temp: float
    mode: ThermostatMode | None = None
    tolerance: float = Field(default=0.0, ge=0.0)

    @field_validator("target_temp")
    @classmethod
    def _finite(cls, value: float) -> float:
        if not math.isfinite(value):
            raise ValueError("targetTemp must be a finite number")
        return value

    def bindings(self) -> list[FieldBinding]:
        bindings = [FieldBinding("targetTemp", "reportedTemp", self.target_temp, self.tolerance)]
        if self.mode is not None:
            bindings.append(FieldBinding("mode", "mode", self.mode.value))
        return bindings


class GenericSpecV1(DesiredSpec):
    """Schema-less twin: every desired leaf must equal the same path in the report."""

    SCHEMA: ClassVar[str] = "generic/v1"

    properties: dict[str, Any] = Field(default_factory=dict)
    device_owned: tuple[str, ...] = ()

    def device_owned_paths(self) -> frozenset[str]:
        return frozenset(self.device_owned)

    def bindings(self) -> list[FieldBinding]:
        return [FieldBinding(path, path, value) for path, value in sorted(flatten_document(self.properties).items())]


_SCHEMAS: dict[str, type[DesiredSpec]] = {
    ThermostatSpecV1.SCHEMA: ThermostatSpecV1,
    GenericSpecV1.SCHEMA: GenericSpecV1,
}


def register_schema(model: type[DesiredSpec]) -> None:
    """Register an additional desired-spec schema keyed by its ``SCHEMA`` tag."""
    if not model.SCHEMA:
        raise ValueError(f"{model.__name__} does not declare a SCHEMA tag")
    _SCHEMAS[model.SCHEMA] = model


def known_schemas() -> frozenset[str]:
    return frozenset(_SCHEMAS)


def parse_desired_spec(schema: str, document: dict[str, Any]) -> DesiredSpec:
    """Validate *document* against the schema named by *schema*."""
    model = _SCHEMAS.get(schema.strip())
    if model is None:
        known = ", ".join(sorted(known_schemas()))
        raise MalformedSpecError(f"unknown spec schema {schema!r} (known: {known})", schema=schema)
    try:
        return model.model_validate(document)
    except ValidationError as exc:
        details = "; ".join(
            f"{'.'.join(str(part) for part in err['loc']) or '<root>'}: {err['msg']}" for err in exc.errors()
        )
        raise MalformedSpecError(f"invalid {schema} spec: {details}", schema=schema) from exc
