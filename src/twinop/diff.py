"""Delta computation and corrective action planning.

``compute_delta`` compares a validated desired spec with the reported
document and lists the owned fields that disagree. ``plan_actions`` turns
that delta into device commands, consulting the :class:`CommandLedger`
so that a pass over an unchanged spec and an unchanged snapshot issues
nothing new: actions are recomputed every pass but never repeated against
the same observation.
"""

from __future__ import annotations

import json
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from twinop.models.reported import DeviceCommand
from twinop.models.spec import DesiredSpec, OwnershipPredicate, is_missing, lookup_path
from twinop.models.twin import TwinIdentity
from twinop.state.policy import is_expired
from twinop.state.snapshots import ObservedSnapshot

DEFAULT_COMMAND_TTL: float = 30.0

_REPORT_KEY = "<report>"


@dataclass(frozen=True, slots=True)
class Discrepancy:
    """One owned field whose reported value does not satisfy the desired value."""

    path: str
    reported_path: str
    desired: Any
    observed: Any = None
    missing: bool = False

    def describe(self) -> str:
        if self.missing:
            return f"{self.path}: desired {self.desired!r}, not reported"
        return f"{self.path}: desired {self.desired!r}, reported {self.observed!r}"


def compute_delta(
    spec: DesiredSpec,
    reported: dict[str, Any],
    *,
    owns: OwnershipPredicate | None = None,
) -> list[Discrepancy]:
    """List the owned desired fields that *reported* does not satisfy."""
    predicate = owns if owns is not None else spec.owns
    delta: list[Discrepancy] = []
    for binding in spec.bindings():
        if not predicate(binding.path):
            continue
        observed = lookup_path(reported, binding.reported_path)
        if is_missing(observed):
            delta.append(Discrepancy(binding.path, binding.reported_path, binding.value, missing=True))
        elif not binding.satisfied_by(observed):
            delta.append(Discrepancy(binding.path, binding.reported_path, binding.value, observed))
    return delta


def _value_key(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)


@dataclass(frozen=True, slots=True)
class _IssuedCommand:
    value_key: str
    revision: int
    issued_at: float


class CommandLedger:
    """Remembers which commands were issued against which observation.

    An entry suppresses an identical command (same path, same desired value)
    until a newer snapshot revision arrives or ``ttl_seconds`` elapse, so an
    unresponsive device is eventually asked again.
    """

    def __init__(
        self,
        *,
        ttl_seconds: float = DEFAULT_COMMAND_TTL,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl_seconds = ttl_seconds
        self._clock = clock
        self._issued: dict[TwinIdentity, dict[str, _IssuedCommand]] = {}

    def already_issued(self, identity: TwinIdentity, path: str, value: Any, revision: int) -> bool:
        entry = self._issued.get(identity, {}).get(path)
        if entry is None:
            return False
        if entry.value_key != _value_key(value) or entry.revision != revision:
            return False
        return not is_expired(self._clock(), entry.issued_at, self._ttl_seconds)

    def record(self, identity: TwinIdentity, path: str, value: Any, revision: int) -> None:
        self._issued.setdefault(identity, {})[path] = _IssuedCommand(
            value_key=_value_key(value),
            revision=revision,
            issued_at=self._clock(),
        )

    def retain(self, identity: TwinIdentity, paths: set[str]) -> None:
        """Drop entries for paths that are no longer out of sync."""
        entries = self._issued.get(identity)
        if entries is None:
            return
        for path in list(entries):
            if path not in paths:
                del entries[path]
        if not entries:
            del self._issued[identity]

    def forget(self, identity: TwinIdentity) -> None:
        self._issued.pop(identity, None)


@dataclass(frozen=True, slots=True)
class PlannedAction:
    """A command to publish plus the ledger key that makes it idempotent."""

    command: DeviceCommand
    path: str
    value: Any
    revision: int


@dataclass(slots=True)
class Plan:
    snapshot_known: bool
    discrepancies: list[Discrepancy] = field(default_factory=list)
    actions: list[PlannedAction] = field(default_factory=list)
    suppressed: int = 0

    @property
    def in_sync(self) -> bool:
        return self.snapshot_known and not self.discrepancies


def plan_actions(
    identity: TwinIdentity,
    spec: DesiredSpec,
    snapshot: ObservedSnapshot | None,
    *,
    resource_version: int,
    ledger: CommandLedger,
    owns: OwnershipPredicate | None = None,
) -> Plan:
    """Compute the delta and the commands that still need to be issued.

    Without a snapshot nothing is known about the device, so instead of
    issuing corrections blindly the plan asks the device for a report.
    """
    if snapshot is None:
        plan = Plan(snapshot_known=False)
        if ledger.already_issued(identity, _REPORT_KEY, None, 0):
            plan.suppressed = 1
        else:
            plan.actions.append(
                PlannedAction(
                    command=DeviceCommand.request_report(resource_version=resource_version),
                    path=_REPORT_KEY,
                    value=None,
                    revision=0,
                )
            )
        return plan

    delta = compute_delta(spec, snapshot.report.state, owns=owns)
    plan = Plan(snapshot_known=True, discrepancies=delta)
    ledger.retain(identity, {d.path for d in delta})
    for discrepancy in delta:
        if ledger.already_issued(identity, discrepancy.path, discrepancy.desired, snapshot.revision):
            plan.suppressed += 1
            continue
        plan.actions.append(
            PlannedAction(
                command=DeviceCommand.set_field(
                    discrepancy.path,
                    discrepancy.desired,
                    resource_version=resource_version,
                ),
                path=discrepancy.path,
                value=discrepancy.desired,
                revision=snapshot.revision,
            )
        )
    return plan
