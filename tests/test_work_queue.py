from __future__ import annotations

import asyncio

import pytest

from twinop.exceptions import QueueShutDown
from twinop.models.twin import TwinIdentity
from twinop.queue import ItemBackoff, WorkQueue
from twinop.state.events import ReconcileReason

THERMOSTAT = TwinIdentity("ns", "thermostat-1")
LAMP = TwinIdentity("ns", "lamp-1")


@pytest.mark.asyncio
async def test_add_merges_pending_entries_for_same_identity() -> None:
    queue = WorkQueue()
    queue.add(THERMOSTAT, ReconcileReason.CREATED)
    queue.add(THERMOSTAT, ReconcileReason.UPDATED)

    assert len(queue) == 1
    task = await queue.get()
    assert task.identity == THERMOSTAT
    # Latest reason wins.
    assert task.reason == ReconcileReason.UPDATED


@pytest.mark.asyncio
async def test_get_hands_out_identities_in_enqueue_order() -> None:
    queue = WorkQueue()
    queue.add(THERMOSTAT, ReconcileReason.CREATED)
    queue.add(LAMP, ReconcileReason.CREATED)

    first = await queue.get()
    second = await queue.get()
    assert [first.identity, second.identity] == [THERMOSTAT, LAMP]
    assert queue.in_progress == frozenset({THERMOSTAT, LAMP})


@pytest.mark.asyncio
async def test_update_while_in_progress_yields_exactly_one_more_pass() -> None:
    queue = WorkQueue()
    queue.add(THERMOSTAT, ReconcileReason.CREATED)
    task = await queue.get()

    queue.add(THERMOSTAT, ReconcileReason.UPDATED)
    queue.add(THERMOSTAT, ReconcileReason.REPORTED)
    # Never handed out twice concurrently.
    assert len(queue) == 0
    assert queue.is_pending(THERMOSTAT)
    with pytest.raises(TimeoutError):
        await asyncio.wait_for(queue.get(), timeout=0.05)

    queue.done(task.identity)
    again = await asyncio.wait_for(queue.get(), timeout=1.0)
    assert again.identity == THERMOSTAT
    assert again.reason == ReconcileReason.REPORTED

    queue.done(again.identity)
    assert len(queue) == 0
    assert not queue.is_pending(THERMOSTAT)
    assert queue.in_progress == frozenset()


@pytest.mark.asyncio
async def test_blocked_get_wakes_up_on_add() -> None:
    queue = WorkQueue()
    waiter = asyncio.create_task(queue.get())
    await asyncio.sleep(0)
    assert not waiter.done()

    queue.add(LAMP, ReconcileReason.RESYNC)
    task = await asyncio.wait_for(waiter, timeout=1.0)
    assert task.identity == LAMP


@pytest.mark.asyncio
async def test_retry_re_adds_identity_after_backoff() -> None:
    queue = WorkQueue(backoff_base=0.01, backoff_ceiling=0.04)
    queue.add(THERMOSTAT, ReconcileReason.CREATED)
    task = await queue.get()

    delay = queue.retry(task.identity)
    queue.done(task.identity)
    assert delay == pytest.approx(0.01)
    assert len(queue) == 0

    retried = await asyncio.wait_for(queue.get(), timeout=1.0)
    assert retried.identity == THERMOSTAT
    assert retried.reason == ReconcileReason.RETRY
    assert queue.backoff.failures(THERMOSTAT) == 1

    queue.done(retried.identity)
    queue.forget(retried.identity)
    assert queue.backoff.failures(THERMOSTAT) == 0


def test_backoff_grows_monotonically_up_to_ceiling() -> None:
    backoff = ItemBackoff(base=0.5, ceiling=4.0)

    delays = [backoff.next_delay(THERMOSTAT) for _ in range(10)]

    assert delays == [0.5, 1.0, 2.0, 4.0, 4.0, 4.0, 4.0, 4.0, 4.0, 4.0]
    assert all(later >= earlier for earlier, later in zip(delays, delays[1:]))
    assert max(delays) == 4.0


def test_backoff_is_tracked_per_identity_and_reset_by_forget() -> None:
    backoff = ItemBackoff(base=1.0, ceiling=10.0)
    backoff.next_delay(THERMOSTAT)
    backoff.next_delay(THERMOSTAT)

    assert backoff.next_delay(LAMP) == 1.0
    backoff.forget(THERMOSTAT)
    assert backoff.next_delay(THERMOSTAT) == 1.0


def test_backoff_rejects_invalid_bounds() -> None:
    with pytest.raises(ValueError):
        ItemBackoff(base=0.0, ceiling=1.0)
    with pytest.raises(ValueError):
        ItemBackoff(base=2.0, ceiling=1.0)


@pytest.mark.asyncio
async def test_shutdown_unblocks_waiting_get() -> None:
    queue = WorkQueue()
    waiter = asyncio.create_task(queue.get())
    await asyncio.sleep(0)

    queue.shutdown()

    with pytest.raises(QueueShutDown):
        await asyncio.wait_for(waiter, timeout=1.0)
    with pytest.raises(QueueShutDown):
        await queue.get()


@pytest.mark.asyncio
async def test_shutdown_drops_queued_and_delayed_work() -> None:
    queue = WorkQueue(backoff_base=0.01, backoff_ceiling=0.01)
    queue.add(THERMOSTAT, ReconcileReason.CREATED)
    queue.add_after(LAMP, ReconcileReason.RETRY, 0.01)

    queue.shutdown()
    queue.add(LAMP, ReconcileReason.UPDATED)
    await asyncio.sleep(0.03)

    assert queue.shutting_down
    assert not queue.is_pending(LAMP)
    with pytest.raises(QueueShutDown):
        await queue.get()


@pytest.mark.asyncio
async def test_discard_drops_queued_parked_and_delayed_work() -> None:
    queue = WorkQueue(backoff_base=0.01, backoff_ceiling=0.01)
    queue.add(LAMP, ReconcileReason.CREATED)
    queue.add(THERMOSTAT, ReconcileReason.CREATED)
    task = await queue.get()
    assert task.identity == LAMP
    # Parked behind the in-flight pass.
    queue.add(LAMP, ReconcileReason.UPDATED)
    queue.retry(THERMOSTAT)

    assert queue.discard(LAMP)
    assert queue.discard(THERMOSTAT)
    assert not queue.discard(THERMOSTAT)
    queue.done(LAMP)
    await asyncio.sleep(0.03)

    assert len(queue) == 0
    assert not queue.is_pending(LAMP)
    assert not queue.is_pending(THERMOSTAT)
    assert queue.backoff.failures(THERMOSTAT) == 0
    with pytest.raises(TimeoutError):
        await asyncio.wait_for(queue.get(), timeout=0.05)
