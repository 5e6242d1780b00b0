"""Status projection.

:func:`project_status` is a pure function from the previous status and the
outcome of a reconciliation pass to the next status. Given the same inputs
it always returns the same status, which lets the reconciler skip writes
that would not change anything (an unchanged status is never rewritten, so
status writes cannot feed back into endless watch events).

Phase transitions::

    Unknown|OutOfSync|InSync --no discrepancies--> InSync
    Unknown|InSync|OutOfSync --discrepancies-----> OutOfSync
    *                        --failure-----------> Error
    Error                    --first success-----> Unknown
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum

from twinop.models.twin import Condition, ConditionStatus, ConditionType, SyncPhase, TwinStatus


class OutcomeKind(StrEnum):
    IN_SYNC = "in_sync"
    OUT_OF_SYNC = "out_of_sync"
    AWAITING_REPORT = "awaiting_report"
    FAILED = "failed"
    MALFORMED = "malformed"


@dataclass(frozen=True, slots=True)
class ReconcileOutcome:
    """What a reconciliation pass found, as input to the projector."""

    kind: OutcomeKind
    generation: int
    at: datetime
    observed_at: datetime | None = None
    discrepancies: tuple[str, ...] = ()
    error: str | None = None
    reason: str = ""

    @property
    def failed(self) -> bool:
        return self.kind in (OutcomeKind.FAILED, OutcomeKind.MALFORMED)


def _next_phase(previous: SyncPhase, outcome: ReconcileOutcome) -> SyncPhase:
    if outcome.failed:
        return SyncPhase.ERROR
    if previous == SyncPhase.ERROR:
        return SyncPhase.UNKNOWN
    if outcome.kind == OutcomeKind.IN_SYNC:
        return SyncPhase.IN_SYNC
    if outcome.kind == OutcomeKind.OUT_OF_SYNC:
        return SyncPhase.OUT_OF_SYNC
    return SyncPhase.UNKNOWN


def _desired_conditions(
    phase: SyncPhase, outcome: ReconcileOutcome
) -> list[tuple[ConditionType, ConditionStatus, str, str]]:
    if phase == SyncPhase.ERROR:
        reason = outcome.reason or ("MalformedSpec" if outcome.kind == OutcomeKind.MALFORMED else "ReconcileFailed")
        message = outcome.error or ""
        return [
            (ConditionType.IN_SYNC, ConditionStatus.UNKNOWN, reason, message),
            (ConditionType.DEGRADED, ConditionStatus.TRUE, reason, message),
        ]
    if phase == SyncPhase.IN_SYNC:
        return [
            (ConditionType.IN_SYNC, ConditionStatus.TRUE, "Converged", "reported state matches desired spec"),
            (ConditionType.DEGRADED, ConditionStatus.FALSE, "Healthy", ""),
        ]
    if phase == SyncPhase.OUT_OF_SYNC:
        return [
            (ConditionType.IN_SYNC, ConditionStatus.FALSE, "CorrectionIssued", "; ".join(outcome.discrepancies)),
            (ConditionType.DEGRADED, ConditionStatus.FALSE, "Healthy", ""),
        ]
    reason = "Recovered" if outcome.kind != OutcomeKind.AWAITING_REPORT else "AwaitingReport"
    return [
        (ConditionType.IN_SYNC, ConditionStatus.UNKNOWN, reason, ""),
        (ConditionType.DEGRADED, ConditionStatus.FALSE, "Healthy", ""),
    ]


def project_status(previous: TwinStatus, outcome: ReconcileOutcome) -> TwinStatus:
    """Return the status that follows *previous* after *outcome*.

    Outcomes computed for an older spec generation than the one the
    previous status was computed for are stale and leave it untouched.
    """
    if outcome.generation < previous.observed_generation:
        return previous

    phase = _next_phase(previous.phase, outcome)

    conditions: list[Condition] = []
    for condition_type, status, reason, message in _desired_conditions(phase, outcome):
        prior = previous.condition(condition_type)
        if prior is not None and prior.status == status:
            transition_time = prior.last_transition_time
        else:
            transition_time = outcome.at
        conditions.append(
            Condition(
                type=condition_type,
                status=status,
                reason=reason,
                message=message,
                last_transition_time=transition_time,
            )
        )

    return TwinStatus(
        phase=phase,
        conditions=tuple(conditions),
        last_observed_at=outcome.observed_at if outcome.observed_at is not None else previous.last_observed_at,
        last_error=outcome.error if phase == SyncPhase.ERROR else None,
        observed_generation=outcome.generation,
        discrepancies=outcome.discrepancies if phase == SyncPhase.OUT_OF_SYNC else (),
    )
