"""Deduplicating, rate-limited work queue of twin identities.

The queue decouples event arrival from processing and enforces the
single-writer rule: an identity handed out by :meth:`WorkQueue.get` is
"in progress" until :meth:`WorkQueue.done` is called, and it is never
handed out a second time in the meantime. Adds that arrive while an
identity is in progress are parked and re-queued by ``done`` so no update
is lost.

Failing identities are re-added through :meth:`WorkQueue.retry` after a
per-identity exponential backoff (capped at a ceiling and reset by
:meth:`WorkQueue.forget` after a successful pass).

The queue itself never fails; every operation is infallible except
``get`` after :meth:`WorkQueue.shutdown`, which raises
:class:`~twinop.exceptions.QueueShutDown`.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque

from twinop.exceptions import QueueShutDown
from twinop.models.twin import TwinIdentity
from twinop.state.events import ReconcileReason, ReconcileTask

_logger = logging.getLogger(__name__)

DEFAULT_BACKOFF_BASE: float = 0.5
DEFAULT_BACKOFF_CEILING: float = 60.0


class ItemBackoff:
    """Per-identity exponential backoff: ``base * 2**failures`` capped at ``ceiling``."""

    def __init__(self, base: float = DEFAULT_BACKOFF_BASE, ceiling: float = DEFAULT_BACKOFF_CEILING) -> None:
        if base <= 0:
            raise ValueError("backoff base must be positive")
        if ceiling < base:
            raise ValueError("backoff ceiling must be >= base")
        self._base = base
        self._ceiling = ceiling
        self._failures: dict[TwinIdentity, int] = {}

    @property
    def base(self) -> float:
        return self._base

    @property
    def ceiling(self) -> float:
        return self._ceiling

    def failures(self, identity: TwinIdentity) -> int:
        return self._failures.get(identity, 0)

    def next_delay(self, identity: TwinIdentity) -> float:
        """Return the current delay for *identity* and double it for next time."""
        failures = self._failures.get(identity, 0)
        delay = min(self._base * (2**failures), self._ceiling)
        # Stop counting once capped so the exponent cannot grow without bound.
        if delay < self._ceiling:
            self._failures[identity] = failures + 1
        else:
            self._failures[identity] = failures
        return delay

    def forget(self, identity: TwinIdentity) -> None:
        self._failures.pop(identity, None)


class WorkQueue:
    """Async work queue holding at most one pending task per identity."""

    def __init__(
        self,
        *,
        backoff_base: float = DEFAULT_BACKOFF_BASE,
        backoff_ceiling: float = DEFAULT_BACKOFF_CEILING,
    ) -> None:
        self._order: deque[TwinIdentity] = deque()
        # Pending tasks, both queued and parked behind an in-progress pass.
        self._pending: dict[TwinIdentity, ReconcileTask] = {}
        self._processing: set[TwinIdentity] = set()
        self._delayed: dict[TwinIdentity, asyncio.TimerHandle] = {}
        self._backoff = ItemBackoff(backoff_base, backoff_ceiling)
        self._wakeup = asyncio.Event()
        self._shutting_down = False

    def __len__(self) -> int:
        """Number of identities ready to be handed out."""
        return len(self._order)

    @property
    def backoff(self) -> ItemBackoff:
        return self._backoff

    @property
    def shutting_down(self) -> bool:
        return self._shutting_down

    @property
    def in_progress(self) -> frozenset[TwinIdentity]:
        return frozenset(self._processing)

    def is_pending(self, identity: TwinIdentity) -> bool:
        return identity in self._pending

    def add(self, identity: TwinIdentity, reason: ReconcileReason) -> None:
        """Enqueue *identity*, or merge into its already-pending task."""
        if self._shutting_down:
            return

        task = self._pending.get(identity)
        if task is not None:
            # Latest reason wins; only the data read at load time matters.
            task.reason = reason
            return

        self._pending[identity] = ReconcileTask(identity=identity, reason=reason)
        if identity in self._processing:
            _logger.debug("Parking %s (%s) until the in-flight pass finishes", identity, reason)
            return

        self._order.append(identity)
        self._wakeup.set()

    def add_after(self, identity: TwinIdentity, reason: ReconcileReason, delay: float) -> None:
        """Enqueue *identity* once *delay* seconds have elapsed."""
        if self._shutting_down:
            return
        if delay <= 0:
            self.add(identity, reason)
            return

        previous = self._delayed.pop(identity, None)
        if previous is not None:
            previous.cancel()
        loop = asyncio.get_running_loop()
        self._delayed[identity] = loop.call_later(delay, self._fire_delayed, identity, reason)

    def _fire_delayed(self, identity: TwinIdentity, reason: ReconcileReason) -> None:
        self._delayed.pop(identity, None)
        self.add(identity, reason)

    async def get(self) -> ReconcileTask:
        """Wait for the next identity and mark it in progress."""
        while True:
            if self._shutting_down:
                raise QueueShutDown("work queue is shutting down")
            if self._order:
                identity = self._order.popleft()
                task = self._pending.pop(identity)
                self._processing.add(identity)
                return task
            self._wakeup.clear()
            await self._wakeup.wait()

    def done(self, identity: TwinIdentity) -> None:
        """Release *identity*; re-queue it if it was re-added meanwhile."""
        self._processing.discard(identity)
        if self._shutting_down:
            return
        if identity in self._pending:
            self._order.append(identity)
            self._wakeup.set()

    def retry(self, identity: TwinIdentity) -> float:
        """Re-add *identity* after its current backoff delay; returns that delay."""
        delay = self._backoff.next_delay(identity)
        _logger.debug("Retrying %s in %.2fs", identity, delay)
        self.add_after(identity, ReconcileReason.RETRY, delay)
        return delay

    def forget(self, identity: TwinIdentity) -> None:
        """Reset the backoff of *identity* after a successful pass."""
        self._backoff.forget(identity)

    def discard(self, identity: TwinIdentity) -> bool:
        """Drop queued, parked and delayed work for *identity* and reset its backoff.

        A pass already in progress is not interrupted. Returns whether any
        work was dropped.
        """
        handle = self._delayed.pop(identity, None)
        if handle is not None:
            handle.cancel()
        pending = self.is_pending(identity)
        if pending:
            del self._pending[identity]
            if identity in self._order:
                self._order.remove(identity)
        self._backoff.forget(identity)
        return pending or handle is not None

    def shutdown(self) -> None:
        """Stop handing out work and unblock every waiting ``get``."""
        if self._shutting_down:
            return
        self._shutting_down = True
        for handle in self._delayed.values():
            handle.cancel()
        self._delayed.clear()
        self._wakeup.set()
