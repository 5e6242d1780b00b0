"""Operator runtime: context object, adapter bridges and the worker pool.

Everything a worker needs is carried by an explicit :class:`OperatorContext`
built once at startup; nothing is registered process-wide.

Two bridges turn adapter streams into work-queue entries:

* the store bridge opens the watch stream, lists every twin, enqueues the
  matching ones and then follows the watch;
* the reports bridge subscribes to the device channel, stores each report
  in the snapshot cache and enqueues the twin when the report is fresh.

Both bridges restart their stream with capped exponential backoff when it
ends or fails; a restarted watch is followed by a full resync. The operator
is ready once the initial listing succeeded and the device channel
connected.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Iterable, Mapping
from dataclasses import dataclass
from typing import Any

from twinop.adapters.base import ReportedStateAdapter, StateStoreAdapter
from twinop.config import OperatorConfig
from twinop.diff import CommandLedger
from twinop.exceptions import QueueShutDown, TwinTransientError
from twinop.models.reported import ReportedState
from twinop.models.spec import OwnershipPredicate
from twinop.models.twin import Twin, TwinIdentity
from twinop.queue import WorkQueue
from twinop.reconciler import Disposition, ReconcileResult, Reconciler
from twinop.state.events import ReconcileReason, TwinEvent, TwinEventType
from twinop.state.snapshots import SnapshotCache

_logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OperatorContext:
    """Shared collaborators handed to every worker and bridge."""

    config: OperatorConfig
    store: StateStoreAdapter
    reported: ReportedStateAdapter
    queue: WorkQueue
    snapshots: SnapshotCache
    ledger: CommandLedger
    reconciler: Reconciler

    @classmethod
    def build(
        cls,
        config: OperatorConfig,
        store: StateStoreAdapter,
        reported: ReportedStateAdapter,
        *,
        ownership: Mapping[str, OwnershipPredicate] | None = None,
    ) -> OperatorContext:
        queue = WorkQueue(backoff_base=config.backoff_base, backoff_ceiling=config.backoff_ceiling)
        snapshots = SnapshotCache(skew_allowance_seconds=config.snapshot_skew)
        ledger = CommandLedger(ttl_seconds=config.command_ttl)
        reconciler = Reconciler(
            store=store,
            reported=reported,
            snapshots=snapshots,
            ledger=ledger,
            call_timeout=config.call_timeout,
            ownership=ownership,
        )
        return cls(
            config=config,
            store=store,
            reported=reported,
            queue=queue,
            snapshots=snapshots,
            ledger=ledger,
            reconciler=reconciler,
        )


async def _close_stream(stream: AsyncIterator[Any] | None) -> None:
    aclose = getattr(stream, "aclose", None)
    if aclose is not None:
        await aclose()


class Operator:
    """Runs the bridges, the periodic resync and a bounded worker pool."""

    def __init__(self, context: OperatorContext) -> None:
        self._ctx = context
        self._known: set[TwinIdentity] = set()
        self._generations: dict[TwinIdentity, int] = {}
        self._store_synced = False
        self._reported_connected = False
        self._ready = asyncio.Event()
        self._stopping = False
        self._bridges: list[asyncio.Task[None]] = []
        self._workers: list[asyncio.Task[None]] = []

    @property
    def context(self) -> OperatorContext:
        return self._ctx

    @property
    def running(self) -> bool:
        return bool(self._workers) and not self._stopping

    def is_ready(self) -> bool:
        return self._ready.is_set()

    def is_alive(self) -> bool:
        return self.running and not any(task.done() for task in self._workers)

    async def wait_ready(self, timeout: float | None = None) -> None:
        await asyncio.wait_for(self._ready.wait(), timeout=timeout)

    async def __aenter__(self) -> Operator:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.stop()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self._workers:
            return
        if self._ctx.queue.shutting_down:
            raise RuntimeError("an operator cannot be restarted once stopped")
        config = self._ctx.config
        _logger.info(
            "Starting operator with %d worker(s), resync every %.0fs, selector=%s",
            config.workers,
            config.resync_interval,
            config.label_selector or "<all>",
        )
        self._stopping = False
        self._store_synced = False
        self._reported_connected = False
        self._workers = [
            asyncio.create_task(self._worker(index), name=f"twinop-worker-{index}") for index in range(config.workers)
        ]
        self._bridges = [
            asyncio.create_task(self._pump_store(), name="twinop-store-bridge"),
            asyncio.create_task(self._pump_reports(), name="twinop-reports-bridge"),
        ]
        if config.resync_interval > 0:
            self._bridges.append(asyncio.create_task(self._resync_loop(), name="twinop-resync"))

    async def stop(self) -> None:
        """Stop accepting work and drain in-flight passes.

        Queued but unstarted work is dropped; the next start resyncs it.
        """
        if not self._workers or self._stopping:
            return
        _logger.info("Stopping operator, draining %d in-flight pass(es)", len(self._ctx.queue.in_progress))
        self._stopping = True
        self._ready.clear()
        self._ctx.queue.shutdown()

        for task in self._bridges:
            task.cancel()
        await asyncio.gather(*self._bridges, return_exceptions=True)
        self._bridges = []

        _, pending = await asyncio.wait(self._workers, timeout=self._ctx.config.shutdown_timeout)
        if pending:
            _logger.warning(
                "%d worker(s) did not finish within %.1fs, cancelling",
                len(pending),
                self._ctx.config.shutdown_timeout,
            )
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
        self._workers = []

        await self._ctx.reported.close()
        _logger.info("Operator stopped")

    async def run_until(self, stop: asyncio.Event) -> None:
        """Run until *stop* is set, then drain."""
        await self.start()
        try:
            await stop.wait()
        finally:
            await self.stop()

    # ------------------------------------------------------------------
    # Workers
    # ------------------------------------------------------------------

    async def _worker(self, index: int) -> None:
        queue = self._ctx.queue
        while True:
            try:
                task = await queue.get()
            except QueueShutDown:
                _logger.debug("Worker %d exiting", index)
                return
            try:
                result = await self._ctx.reconciler.reconcile(task)
                self._dispose(result)
            except Exception:
                # One identity must never take the worker down with it.
                _logger.error("Unexpected failure reconciling %s", task.identity, exc_info=True)
                if task.identity in self._known:
                    queue.retry(task.identity)
            finally:
                queue.done(task.identity)

    def _dispose(self, result: ReconcileResult) -> None:
        queue = self._ctx.queue
        identity = result.identity
        if identity not in self._known:
            # Deleted or deselected while the pass ran.
            self._ctx.reconciler.forget(identity)
            queue.discard(identity)
            return
        if result.disposition == Disposition.RETRY:
            delay = queue.retry(identity)
            _logger.info("Twin %s will be retried in %.2fs: %s", identity, delay, result.error)
        elif result.disposition == Disposition.REQUEUE:
            queue.forget(identity)
            queue.add(identity, ReconcileReason.RESYNC)
        else:
            queue.forget(identity)

    # ------------------------------------------------------------------
    # Store bridge
    # ------------------------------------------------------------------

    def _restart_delay(self, attempt: int) -> float:
        config = self._ctx.config
        return min(config.backoff_base * (2**attempt), config.backoff_ceiling)

    def _selected(self, twin: Twin) -> bool:
        return twin.matches(self._ctx.config.label_selector)

    def _drop(self, identity: TwinIdentity) -> None:
        self._known.discard(identity)
        self._generations.pop(identity, None)
        self._ctx.reconciler.forget(identity)
        if self._ctx.queue.discard(identity):
            _logger.debug("Discarded queued work for %s", identity)

    def _sync_listing(self, twins: Iterable[Twin], reason: ReconcileReason) -> None:
        listed: set[TwinIdentity] = set()
        for twin in twins:
            if not self._selected(twin):
                continue
            identity = twin.identity
            listed.add(identity)
            self._known.add(identity)
            self._generations[identity] = twin.generation
            self._ctx.queue.add(identity, reason)
        for identity in self._known - listed:
            _logger.debug("Twin %s vanished from the listing, forgetting it", identity)
            self._drop(identity)

    def _handle_event(self, event: TwinEvent) -> None:
        identity = event.identity
        if event.type == TwinEventType.DELETED:
            if identity in self._known:
                _logger.debug("Twin %s deleted", identity)
                self._drop(identity)
                self._ctx.queue.add(identity, ReconcileReason.DELETED)
            return

        if not self._selected(event.twin):
            if identity in self._known:
                _logger.debug("Twin %s no longer matches the label selector", identity)
                self._drop(identity)
            return

        if (
            event.type == TwinEventType.MODIFIED
            and identity in self._known
            and self._generations.get(identity) == event.twin.generation
        ):
            # Status-only writes leave the generation alone.
            return

        self._known.add(identity)
        self._generations[identity] = event.twin.generation
        self._ctx.queue.add(identity, event.reason)

    async def _pump_store(self) -> None:
        store = self._ctx.store
        attempt = 0
        reason = ReconcileReason.CREATED
        while not self._stopping:
            events: AsyncIterator[TwinEvent] | None = None
            try:
                events = store.watch()
                twins = await asyncio.wait_for(store.list(), timeout=self._ctx.config.call_timeout)
                self._sync_listing(twins, reason)
                _logger.info("Listed %d twin(s), %d selected", len(twins), len(self._known))
                self._store_synced = True
                self._update_ready()
                attempt = 0
                async for event in events:
                    self._handle_event(event)
                _logger.warning("Twin watch stream ended, restarting")
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                _logger.warning("Twin watch failed: %s", exc, exc_info=not isinstance(exc, TwinTransientError))
            finally:
                await _close_stream(events)

            reason = ReconcileReason.RESYNC
            delay = self._restart_delay(attempt)
            attempt += 1
            await asyncio.sleep(delay)

    # ------------------------------------------------------------------
    # Reports bridge
    # ------------------------------------------------------------------

    def _handle_report(self, report: ReportedState) -> None:
        snapshot = self._ctx.snapshots.apply(report)
        if snapshot is None:
            return
        identity = report.identity
        if identity in self._known:
            self._ctx.queue.add(identity, ReconcileReason.REPORTED)
        else:
            _logger.debug("Cached report for %s, which is not a selected twin", identity)

    async def _pump_reports(self) -> None:
        reported = self._ctx.reported
        attempt = 0
        while not self._stopping:
            reports: AsyncIterator[ReportedState] | None = None
            try:
                reports = reported.subscribe()
                await asyncio.wait_for(reported.connect(), timeout=self._ctx.config.call_timeout)
                _logger.info("Device channel connected")
                self._reported_connected = True
                self._update_ready()
                attempt = 0
                async for report in reports:
                    self._handle_report(report)
                _logger.warning("Reported-state stream ended, restarting")
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                _logger.warning(
                    "Reported-state stream failed: %s", exc, exc_info=not isinstance(exc, TwinTransientError)
                )
            finally:
                await _close_stream(reports)

            delay = self._restart_delay(attempt)
            attempt += 1
            await asyncio.sleep(delay)

    def _update_ready(self) -> None:
        if self._store_synced and self._reported_connected and not self._ready.is_set():
            _logger.info("Operator ready")
            self._ready.set()

    # ------------------------------------------------------------------
    # Resync
    # ------------------------------------------------------------------

    async def resync(self) -> int:
        """List every twin and enqueue the selected ones; returns how many."""
        try:
            twins = await asyncio.wait_for(self._ctx.store.list(), timeout=self._ctx.config.call_timeout)
        except (TwinTransientError, TimeoutError) as exc:
            _logger.warning("Resync listing failed: %s", exc)
            return 0
        self._sync_listing(twins, ReconcileReason.RESYNC)
        _logger.debug("Resync enqueued %d twin(s)", len(self._known))
        return len(self._known)

    async def _resync_loop(self) -> None:
        interval = self._ctx.config.resync_interval
        while not self._stopping:
            await asyncio.sleep(interval)
            await self.resync()
