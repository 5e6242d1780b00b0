"""Reconciler: one pass of the Loading → Diffing → Acting → Updating-Status machine.

The reconciler holds no per-twin state between passes apart from the
shared snapshot cache and command ledger. It never touches the work queue
and never waits on event streams; it reports back what the caller should
do with the identity (retry with backoff, requeue now, or forget the
backoff) through :class:`ReconcileResult`.

All failures are resolved here, at the per-identity boundary:

* ``NotFound`` while loading is terminal: the task is dropped without a
  status write.
* ``Conflict`` while writing status drops the computed status and asks
  for an immediate requeue, so the next pass reads the newer version.
* ``NotFound`` while writing status is terminal, like while loading.
* Transient adapter failures (unreachable, timeout) record an ``Error``
  status and ask for a retry with backoff.
* A malformed spec records an ``Error`` status and is *not* retried on a
  timer; the next spec change re-triggers it.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import TypeVar

from twinop.adapters.base import ReportedStateAdapter, StateStoreAdapter
from twinop.diff import CommandLedger, Plan, plan_actions
from twinop.exceptions import (
    MalformedSpecError,
    TwinConflictError,
    TwinNotFoundError,
    TwinTimeoutError,
    TwinTransientError,
    TwinUnreachableError,
)
from twinop.models._base import utcnow
from twinop.models.spec import OwnershipPredicate, parse_desired_spec
from twinop.models.twin import SyncPhase, Twin, TwinIdentity, TwinStatus
from twinop.state.events import ReconcileTask
from twinop.state.snapshots import SnapshotCache
from twinop.status import OutcomeKind, ReconcileOutcome, project_status

_logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_CALL_TIMEOUT: float = 10.0


class Phase(StrEnum):
    LOADING = "Loading"
    DIFFING = "Diffing"
    ACTING = "Acting"
    UPDATING_STATUS = "Updating-Status"
    IDLE = "Idle"
    RETRYING = "Retrying"


class Disposition(StrEnum):
    """What the caller should do with the identity after a pass."""

    DONE = "done"
    RETRY = "retry"
    REQUEUE = "requeue"
    DROPPED = "dropped"


@dataclass(slots=True)
class ReconcileResult:
    identity: TwinIdentity
    phase: Phase
    disposition: Disposition
    outcome: ReconcileOutcome | None = None
    status: TwinStatus | None = None
    actions_issued: int = 0
    status_written: bool = False
    error: str | None = None
    trail: list[Phase] = field(default_factory=list)


class Reconciler:
    """Runs reconciliation passes for single identities."""

    def __init__(
        self,
        *,
        store: StateStoreAdapter,
        reported: ReportedStateAdapter,
        snapshots: SnapshotCache,
        ledger: CommandLedger,
        call_timeout: float = DEFAULT_CALL_TIMEOUT,
        ownership: Mapping[str, OwnershipPredicate] | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._reported = reported
        self._snapshots = snapshots
        self._ledger = ledger
        self._call_timeout = call_timeout
        self._ownership = dict(ownership or {})
        self._clock = clock

    async def _call(self, operation: str, awaitable: Awaitable[T]) -> T:
        """Await an adapter call under the configured deadline."""
        try:
            return await asyncio.wait_for(awaitable, timeout=self._call_timeout)
        except TimeoutError as exc:
            raise TwinTimeoutError(
                f"{operation} exceeded {self._call_timeout:.1f}s",
                operation=operation,
                timeout=self._call_timeout,
            ) from exc

    def forget(self, identity: TwinIdentity) -> None:
        """Drop cached observations and issued-command memory for *identity*."""
        self._snapshots.forget(identity)
        self._ledger.forget(identity)

    async def reconcile(self, task: ReconcileTask) -> ReconcileResult:
        identity = task.identity
        trail = [Phase.LOADING]
        _logger.debug("Reconciling %s (reason=%s)", identity, task.reason)

        try:
            twin = await self._call("get", self._store.get(identity))
        except TwinNotFoundError:
            _logger.debug("Twin %s no longer exists, dropping", identity)
            self.forget(identity)
            return ReconcileResult(identity, Phase.IDLE, Disposition.DROPPED, trail=trail)
        except TwinTransientError as exc:
            # Nothing was loaded, so there is no resource version to guard a status write.
            _logger.warning("Loading %s failed: %s", identity, exc)
            return ReconcileResult(
                identity, Phase.RETRYING, Disposition.RETRY, error=str(exc), trail=[*trail, Phase.RETRYING]
            )

        try:
            spec = parse_desired_spec(twin.schema_tag, twin.spec)
        except MalformedSpecError as exc:
            _logger.warning("Twin %s has a malformed spec: %s", identity, exc)
            outcome = ReconcileOutcome(
                kind=OutcomeKind.MALFORMED,
                generation=twin.generation,
                at=self._clock(),
                error=str(exc),
                reason="MalformedSpec",
            )
            return await self._finish(twin, outcome, Disposition.DONE, trail, actions_issued=0)

        trail.append(Phase.DIFFING)
        snapshot = self._snapshots.get(identity)
        plan = plan_actions(
            identity,
            spec,
            snapshot,
            resource_version=twin.resource_version,
            ledger=self._ledger,
            owns=self._ownership.get(twin.schema_tag),
        )

        trail.append(Phase.ACTING)
        issued = 0
        try:
            for action in plan.actions:
                await self._call("publish", self._reported.publish(identity, action.command))
                self._ledger.record(identity, action.path, action.value, action.revision)
                issued += 1
        except TwinTransientError as exc:
            _logger.warning("Acting on %s failed after %d action(s): %s", identity, issued, exc)
            outcome = ReconcileOutcome(
                kind=OutcomeKind.FAILED,
                generation=twin.generation,
                at=self._clock(),
                observed_at=snapshot.report.observed_at if snapshot is not None else None,
                error=str(exc),
                reason=_failure_reason(exc),
            )
            return await self._finish(twin, outcome, Disposition.RETRY, trail, actions_issued=issued)

        outcome = self._outcome_for(twin, plan, snapshot.report.observed_at if snapshot is not None else None)
        if issued or plan.suppressed:
            _logger.info(
                "Twin %s: %d discrepancy(ies), %d action(s) issued, %d already pending",
                identity,
                len(plan.discrepancies),
                issued,
                plan.suppressed,
            )
        disposition = Disposition.REQUEUE if twin.status.phase == SyncPhase.ERROR else Disposition.DONE
        return await self._finish(twin, outcome, disposition, trail, actions_issued=issued)

    def _outcome_for(self, twin: Twin, plan: Plan, observed_at: datetime | None) -> ReconcileOutcome:
        if not plan.snapshot_known:
            kind = OutcomeKind.AWAITING_REPORT
        elif plan.in_sync:
            kind = OutcomeKind.IN_SYNC
        else:
            kind = OutcomeKind.OUT_OF_SYNC
        return ReconcileOutcome(
            kind=kind,
            generation=twin.generation,
            at=self._clock(),
            observed_at=observed_at,
            discrepancies=tuple(d.describe() for d in plan.discrepancies),
        )

    async def _finish(
        self,
        twin: Twin,
        outcome: ReconcileOutcome,
        disposition: Disposition,
        trail: list[Phase],
        *,
        actions_issued: int,
    ) -> ReconcileResult:
        identity = twin.identity
        trail.append(Phase.UPDATING_STATUS)
        status = project_status(twin.status, outcome)
        result = ReconcileResult(
            identity,
            Phase.UPDATING_STATUS,
            disposition,
            outcome=outcome,
            status=status,
            actions_issued=actions_issued,
            error=outcome.error,
            trail=trail,
        )

        if status == twin.status:
            _logger.debug("Status of %s unchanged, skipping write", identity)
        else:
            try:
                await self._call(
                    "update_status",
                    self._store.update_status(identity, twin.resource_version, status),
                )
                result.status_written = True
            except TwinConflictError:
                # A labels-only or status-only write keeps the generation, so no
                # watch event may follow; run a fresh pass against the new version.
                _logger.debug("Status write for %s lost a version race, requeueing", identity)
                if result.disposition != Disposition.RETRY:
                    result.disposition = Disposition.REQUEUE
            except TwinNotFoundError:
                _logger.debug("Twin %s deleted before its status was written", identity)
                self.forget(identity)
                result.disposition = Disposition.DROPPED
            except TwinTransientError as exc:
                _logger.warning("Writing status of %s failed: %s", identity, exc)
                result.error = str(exc)
                result.disposition = Disposition.RETRY

        result.phase = Phase.RETRYING if result.disposition == Disposition.RETRY else Phase.IDLE
        trail.append(result.phase)
        return result


def _failure_reason(exc: TwinTransientError) -> str:
    if isinstance(exc, TwinTimeoutError):
        return "Timeout"
    if isinstance(exc, TwinUnreachableError):
        return "Unreachable"
    return "TransientFailure"
