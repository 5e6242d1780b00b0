"""Deterministic snapshot acceptance policy.

Device reports can arrive out of order (broker redelivery, reconnects,
shared subscriptions). This module decides whether an incoming report is
fresher than the cached one; it contains *no* payload parsing.
"""

from __future__ import annotations

from datetime import datetime


def should_accept_snapshot(
    *,
    cached_sequence: int | None,
    incoming_sequence: int | None,
    cached_observed_at: datetime | None,
    incoming_observed_at: datetime | None,
    skew_allowance_seconds: float,
) -> bool:
    """Decide whether an incoming report replaces the cached one.

    Policy:
    - If both carry a sequence marker: accept only a strictly newer sequence.
      An equal sequence is a redelivery of the report already cached.
    - Otherwise compare observed timestamps, tolerating clock skew.
    - With no usable signal, newest arrival wins.
    """
    if cached_sequence is not None and incoming_sequence is not None:
        return incoming_sequence > cached_sequence

    if cached_observed_at is not None and incoming_observed_at is not None:
        age = (cached_observed_at - incoming_observed_at).total_seconds()
        return age <= skew_allowance_seconds

    return True


def is_expired(now: float, issued_at: float, ttl_seconds: float) -> bool:
    return ttl_seconds > 0 and (now - issued_at) >= ttl_seconds
