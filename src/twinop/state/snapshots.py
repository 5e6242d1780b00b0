"""Observed state snapshot cache.

This is the only component allowed to hold device-reported state. It is
shared by every worker; mutation is a per-key replace of an immutable
entry, so readers always see either the old or the new snapshot, never a
mix of both.

Nothing here is persisted: after a restart the cache is rebuilt from the
reported-state subscription.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from twinop.models.reported import ReportedState
from twinop.models.twin import TwinIdentity
from twinop.state.policy import should_accept_snapshot

_logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ObservedSnapshot:
    """A cached report plus the local revision it was stored under.

    ``revision`` increases by one for every accepted report of the same
    twin; the command ledger uses it to tell "same observation" from
    "newer observation".
    """

    report: ReportedState
    revision: int


class SnapshotCache:
    """In-memory per-twin cache of the latest accepted report."""

    def __init__(self, *, skew_allowance_seconds: float = 0.0) -> None:
        self._skew_allowance_seconds = skew_allowance_seconds
        self._snapshots: dict[TwinIdentity, ObservedSnapshot] = {}

    def __len__(self) -> int:
        return len(self._snapshots)

    def __contains__(self, identity: object) -> bool:
        return identity in self._snapshots

    def apply(self, report: ReportedState) -> ObservedSnapshot | None:
        """Store *report* if it is fresher than the cached one.

        Returns the new snapshot, or ``None`` when the report was stale or
        a redelivery of the cached one. A dropped report keeps the cached
        revision, so the command ledger still sees the same observation.
        """
        identity = report.identity
        cached = self._snapshots.get(identity)
        if cached is not None and cached.report == report:
            _logger.debug("Dropping duplicate report for %s (seq=%s)", identity, report.sequence)
            return None
        if cached is not None and not should_accept_snapshot(
            cached_sequence=cached.report.sequence,
            incoming_sequence=report.sequence,
            cached_observed_at=cached.report.observed_at,
            incoming_observed_at=report.observed_at,
            skew_allowance_seconds=self._skew_allowance_seconds,
        ):
            _logger.debug(
                "Dropping stale report for %s (cached seq=%s incoming seq=%s)",
                identity,
                cached.report.sequence,
                report.sequence,
            )
            return None

        revision = cached.revision + 1 if cached is not None else 1
        snapshot = ObservedSnapshot(report=report, revision=revision)
        self._snapshots[identity] = snapshot
        return snapshot

    def get(self, identity: TwinIdentity) -> ObservedSnapshot | None:
        return self._snapshots.get(identity)

    def forget(self, identity: TwinIdentity) -> None:
        self._snapshots.pop(identity, None)
