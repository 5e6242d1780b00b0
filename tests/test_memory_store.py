from __future__ import annotations

import asyncio

import pytest

from twinop.adapters import InMemoryReportedState, InMemoryStateStore
from twinop.exceptions import TwinConflictError, TwinNotFoundError, TwinUnreachableError
from twinop.models import DeviceCommand, ReportedState, SyncPhase, Twin, TwinIdentity, TwinStatus
from twinop.state.events import ReconcileReason, TwinEventType

THERMOSTAT = TwinIdentity("ns", "thermostat-1")


def _twin(target: float = 21.0) -> Twin:
    return Twin(namespace="ns", name="thermostat-1", schema_tag="thermostat/v1", spec={"targetTemp": target})


@pytest.mark.asyncio
async def test_concurrent_status_writes_with_same_stale_version_exactly_one_wins() -> None:
    store = InMemoryStateStore(latency=0.01)
    version = store.apply(_twin()).resource_version

    results = await asyncio.gather(
        store.update_status(THERMOSTAT, version, TwinStatus(phase=SyncPhase.IN_SYNC)),
        store.update_status(THERMOSTAT, version, TwinStatus(phase=SyncPhase.OUT_OF_SYNC)),
        return_exceptions=True,
    )

    winners = [r for r in results if isinstance(r, Twin)]
    conflicts = [r for r in results if isinstance(r, TwinConflictError)]
    assert len(winners) == 1
    assert len(conflicts) == 1
    assert conflicts[0].expected_version == version
    assert store.status_writes == 1
    assert (await store.get(THERMOSTAT)).status == winners[0].status


@pytest.mark.asyncio
async def test_generation_moves_only_on_spec_change() -> None:
    store = InMemoryStateStore()

    created = store.apply(_twin())
    relabelled = store.apply(_twin().model_copy(update={"labels": {"app": "hvac"}}))
    changed = store.apply(_twin(22.0))
    written = await store.update_status(THERMOSTAT, changed.resource_version, TwinStatus(phase=SyncPhase.IN_SYNC))

    assert [created.generation, relabelled.generation, changed.generation, written.generation] == [1, 1, 2, 2]
    assert created.resource_version < relabelled.resource_version < changed.resource_version
    assert written.resource_version > changed.resource_version
    # Spec edits keep the status the operator wrote.
    assert store.apply(_twin(23.0)).status.phase == SyncPhase.IN_SYNC


@pytest.mark.asyncio
async def test_watch_reports_every_change() -> None:
    store = InMemoryStateStore()
    events = store.watch()

    twin = store.apply(_twin())
    await store.update_status(THERMOSTAT, twin.resource_version, TwinStatus())
    store.delete(THERMOSTAT)
    store.close()

    received = [event async for event in events]
    assert [e.type for e in received] == [TwinEventType.ADDED, TwinEventType.MODIFIED, TwinEventType.DELETED]
    assert [e.reason for e in received] == [ReconcileReason.CREATED, ReconcileReason.UPDATED, ReconcileReason.DELETED]


@pytest.mark.asyncio
async def test_missing_twin_and_unreachable_store() -> None:
    store = InMemoryStateStore()

    with pytest.raises(TwinNotFoundError):
        await store.get(THERMOSTAT)
    with pytest.raises(TwinNotFoundError):
        await store.update_status(THERMOSTAT, 1, TwinStatus())

    store.apply(_twin())
    store.unreachable = True
    with pytest.raises(TwinUnreachableError):
        await store.list()


@pytest.mark.asyncio
async def test_reported_state_channel_fans_out_and_records_commands() -> None:
    reported = InMemoryReportedState()
    first = reported.subscribe()
    second = reported.subscribe()
    await reported.connect()

    reported.report(ReportedState.for_identity(THERMOSTAT, {"reportedTemp": 18}))
    await reported.publish(THERMOSTAT, DeviceCommand.set_field("targetTemp", 21.0, resource_version=1))
    await reported.close()

    assert [r.state async for r in first] == [{"reportedTemp": 18}]
    assert [r.state async for r in second] == [{"reportedTemp": 18}]
    assert [(identity, command.path) for identity, command in reported.published] == [(THERMOSTAT, "targetTemp")]

    reported.unreachable = True
    with pytest.raises(TwinUnreachableError):
        await reported.publish(THERMOSTAT, DeviceCommand.request_report(resource_version=1))
