"""Twin resource models: identity, status block and the resource itself."""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from pydantic import Field, field_validator

from twinop.models._base import TwinBaseModel, UtcTimestamp


@dataclass(frozen=True, order=True, slots=True)
class TwinIdentity:
    """Globally unique twin identity (namespace + name)."""

    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"

    @classmethod
    def parse(cls, value: str) -> TwinIdentity:
        """Parse the ``namespace/name`` form."""
        namespace, sep, name = value.strip().partition("/")
        if not sep or not namespace or not name or "/" in name:
            raise ValueError(f"twin identity must look like 'namespace/name', got {value!r}")
        return cls(namespace, name)


class SyncPhase(StrEnum):
    UNKNOWN = "Unknown"
    IN_SYNC = "InSync"
    OUT_OF_SYNC = "OutOfSync"
    ERROR = "Error"


class ConditionType(StrEnum):
    IN_SYNC = "InSync"
    DEGRADED = "Degraded"


class ConditionStatus(StrEnum):
    TRUE = "True"
    FALSE = "False"
    UNKNOWN = "Unknown"


class Condition(TwinBaseModel):
    """A single user-visible condition in the twin status."""

    type: ConditionType
    status: ConditionStatus = ConditionStatus.UNKNOWN
    reason: str = ""
    message: str = ""
    last_transition_time: UtcTimestamp = None


class TwinStatus(TwinBaseModel):
    """Status block; the only part of a twin the operator ever writes."""

    phase: SyncPhase = SyncPhase.UNKNOWN
    conditions: tuple[Condition, ...] = ()
    last_observed_at: UtcTimestamp = None
    last_error: str | None = None
    observed_generation: int = 0
    discrepancies: tuple[str, ...] = ()

    def condition(self, condition_type: ConditionType) -> Condition | None:
        for condition in self.conditions:
            if condition.type == condition_type:
                return condition
        return None


class Twin(TwinBaseModel):
    """A twin resource as read from the state store."""

    namespace: str
    name: str
    labels: dict[str, str] = Field(default_factory=dict)
    schema_tag: str = Field(default="", alias="schema")
    spec: dict[str, Any] = Field(default_factory=dict)
    resource_version: int = 0
    generation: int = 0
    status: TwinStatus = Field(default_factory=TwinStatus)

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

    def matches(self, selector: dict[str, str]) -> bool:
        """Whether every ``key=value`` pair of *selector* is present in the labels."""
        return all(self.labels.get(key) == value for key, value in selector.items())
