"""Device-reported state and the commands sent back to devices."""

from __future__ import annotations

from enum import StrEnum
from typing import Any

from pydantic import Field, field_validator

from twinop.models._base import TwinBaseModel, UtcTimestamp, utcnow
from twinop.models.twin import TwinIdentity


class ReportedState(TwinBaseModel):
    """Latest reported state of one device (the observed state snapshot)."""

    namespace: str
    name: str
    state: dict[str, Any] = Field(default_factory=dict)
    observed_at: UtcTimestamp = Field(default_factory=utcnow)
    sequence: int | None = None

    @field_validator("namespace", "name")
    @classmethod
    def _non_empty(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValueError("namespace and name must be non-empty")
        return stripped

    @property
    def identity(self) -> TwinIdentity:
        return TwinIdentity(self.namespace, self.name)

    @classmethod
    def for_identity(
        cls,
        identity: TwinIdentity,
        state: dict[str, Any],
        *,
        sequence: int | None = None,
        observed_at: Any = None,
    ) -> ReportedState:
        kwargs: dict[str, Any] = {"namespace": identity.namespace, "name": identity.name, "state": state}
        if sequence is not None:
            kwargs["sequence"] = sequence
        if observed_at is not None:
            kwargs["observed_at"] = observed_at
        return cls(**kwargs)


class CommandKind(StrEnum):
    SET = "set"
    REPORT = "report"


class DeviceCommand(TwinBaseModel):
    """Idempotent corrective command published to a device.

    ``set`` asks the device to adopt ``value`` at ``path``; ``report``
    asks it to publish a fresh reported state.
    """

    kind: CommandKind
    path: str | None = None
    value: Any = None
    resource_version: int = 0
    issued_at: UtcTimestamp = Field(default_factory=utcnow)

    @classmethod
    def set_field(cls, path: str, value: Any, *, resource_version: int) -> DeviceCommand:
        return cls(kind=CommandKind.SET, path=path, value=value, resource_version=resource_version)

    @classmethod
    def request_report(cls, *, resource_version: int) -> DeviceCommand:
        return cls(kind=CommandKind.REPORT, resource_version=resource_version)
