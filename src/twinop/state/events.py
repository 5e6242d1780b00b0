"""Normalized change events.

Adapters convert whatever their backend delivers (watch stream lines,
MQTT messages, in-memory notifications) into these events. Only the
operator's bridges consume them.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import StrEnum

from twinop.models.twin import Twin, TwinIdentity


class TwinEventType(StrEnum):
    ADDED = "ADDED"
    MODIFIED = "MODIFIED"
    DELETED = "DELETED"


class ReconcileReason(StrEnum):
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"
    REPORTED = "reported"
    RESYNC = "resync"
    RETRY = "retry"


_REASON_FOR_EVENT: dict[TwinEventType, ReconcileReason] = {
    TwinEventType.ADDED: ReconcileReason.CREATED,
    TwinEventType.MODIFIED: ReconcileReason.UPDATED,
    TwinEventType.DELETED: ReconcileReason.DELETED,
}


@dataclass(frozen=True, slots=True)
class TwinEvent:
    """A change notification from the state store watch stream."""

    type: TwinEventType
    twin: Twin

    @property
    def identity(self) -> TwinIdentity:
        return self.twin.identity

    @property
    def reason(self) -> ReconcileReason:
        return _REASON_FOR_EVENT[self.type]


@dataclass(slots=True)
class ReconcileTask:
    """A pending reconciliation inside the work queue (one per identity)."""

    identity: TwinIdentity
    reason: ReconcileReason
    enqueued_at: float = field(default_factory=time.monotonic)
