from __future__ import annotations

from datetime import UTC, datetime, timedelta

from twinop.models import ReportedState, TwinIdentity
from twinop.state.policy import is_expired, should_accept_snapshot
from twinop.state.snapshots import SnapshotCache

THERMOSTAT = TwinIdentity("ns", "thermostat-1")
T0 = datetime(2026, 1, 1, tzinfo=UTC)


def _report(temp: float, *, sequence: int | None = None, observed_at: datetime = T0) -> ReportedState:
    return ReportedState.for_identity(THERMOSTAT, {"reportedTemp": temp}, sequence=sequence, observed_at=observed_at)


def test_newer_sequence_replaces_snapshot_and_bumps_revision() -> None:
    cache = SnapshotCache()

    first = cache.apply(_report(18, sequence=1))
    second = cache.apply(_report(21, sequence=2))

    assert first is not None and first.revision == 1
    assert second is not None and second.revision == 2
    cached = cache.get(THERMOSTAT)
    assert cached is not None
    assert cached.report.state == {"reportedTemp": 21}


def test_out_of_order_report_is_dropped() -> None:
    cache = SnapshotCache()
    cache.apply(_report(21, sequence=5))

    assert cache.apply(_report(18, sequence=4)) is None
    cached = cache.get(THERMOSTAT)
    assert cached is not None
    assert cached.report.state == {"reportedTemp": 21}
    assert cached.revision == 1


def test_redelivered_report_keeps_cached_revision() -> None:
    cache = SnapshotCache()
    first = cache.apply(_report(18, sequence=7))

    assert cache.apply(_report(18, sequence=7)) is None
    # Same sequence, different payload: still the report already cached.
    assert cache.apply(_report(19, sequence=7)) is None
    # Redelivery without a sequence marker.
    cache.apply(_report(20, sequence=None, observed_at=T0 + timedelta(seconds=1)))
    assert cache.apply(_report(20, sequence=None, observed_at=T0 + timedelta(seconds=1))) is None

    cached = cache.get(THERMOSTAT)
    assert first is not None and first.revision == 1
    assert cached is not None and cached.revision == 2


def test_accept_policy_rejects_equal_sequence() -> None:
    assert not should_accept_snapshot(
        cached_sequence=7,
        incoming_sequence=7,
        cached_observed_at=T0,
        incoming_observed_at=T0 + timedelta(seconds=5),
        skew_allowance_seconds=0.0,
    )



def test_timestamps_order_reports_without_sequence() -> None:
    cache = SnapshotCache(skew_allowance_seconds=5.0)
    cache.apply(_report(21, observed_at=T0))

    # Within the skew allowance an older timestamp is still accepted.
    assert cache.apply(_report(20, observed_at=T0 - timedelta(seconds=3))) is not None
    assert cache.apply(_report(19, observed_at=T0 - timedelta(seconds=30))) is None


def test_forget_drops_snapshot() -> None:
    cache = SnapshotCache()
    cache.apply(_report(18, sequence=1))
    assert THERMOSTAT in cache
    assert len(cache) == 1

    cache.forget(THERMOSTAT)

    assert cache.get(THERMOSTAT) is None
    assert len(cache) == 0
    # Revisions restart after a forget.
    snapshot = cache.apply(_report(18, sequence=1))
    assert snapshot is not None and snapshot.revision == 1


def test_accept_policy_without_any_ordering_signal() -> None:
    assert should_accept_snapshot(
        cached_sequence=None,
        incoming_sequence=7,
        cached_observed_at=None,
        incoming_observed_at=None,
        skew_allowance_seconds=0.0,
    )


def test_is_expired() -> None:
    assert not is_expired(now=105.0, issued_at=100.0, ttl_seconds=10.0)
    assert is_expired(now=110.0, issued_at=100.0, ttl_seconds=10.0)
    assert not is_expired(now=1e9, issued_at=100.0, ttl_seconds=0.0)
