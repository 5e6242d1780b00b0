"""In-memory adapters.

Useful for local runs and as test doubles. The state store mirrors the
semantics the operator relies on from a real cluster API: a global,
monotonically increasing resource version, optimistic-concurrency status
writes and a watch stream that reports every change (status writes
included).
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable
from typing import Any

from twinop.adapters._streams import Fanout
from twinop.exceptions import TwinConflictError, TwinNotFoundError, TwinUnreachableError
from twinop.models.reported import DeviceCommand, ReportedState
from twinop.models.twin import Twin, TwinIdentity, TwinStatus
from twinop.state.events import TwinEvent, TwinEventType

_logger = logging.getLogger(__name__)


class InMemoryStateStore:
    """Dict-backed twin store with resource versions and a watch stream."""

    def __init__(self, *, latency: float = 0.0) -> None:
        self._twins: dict[TwinIdentity, Twin] = {}
        self._version = 0
        self._events: Fanout[TwinEvent] = Fanout()
        self.latency = latency
        self.unreachable = False
        self.status_writes = 0

    def _next_version(self) -> int:
        self._version += 1
        return self._version

    async def _round_trip(self, operation: str) -> None:
        if self.latency > 0:
            await asyncio.sleep(self.latency)
        if self.unreachable:
            raise TwinUnreachableError(f"state store unreachable during {operation}", endpoint="memory")

    # ------------------------------------------------------------------
    # Writes performed by users/automation
    # ------------------------------------------------------------------

    def apply(self, twin: Twin) -> Twin:
        """Create or replace a twin's desired spec (status is preserved).

        The generation moves only when the schema or spec changes.
        """
        identity = twin.identity
        existing = self._twins.get(identity)
        updates: dict[str, Any] = {"resource_version": self._next_version(), "generation": 1}
        if existing is not None:
            spec_changed = existing.spec != twin.spec or existing.schema_tag != twin.schema_tag
            updates["generation"] = existing.generation + 1 if spec_changed else existing.generation
            updates["status"] = existing.status
        stored = twin.model_copy(update=updates)
        self._twins[identity] = stored
        event_type = TwinEventType.MODIFIED if existing is not None else TwinEventType.ADDED
        self._events.publish(TwinEvent(type=event_type, twin=stored))
        return stored

    def delete(self, identity: TwinIdentity) -> None:
        twin = self._twins.pop(identity, None)
        if twin is not None:
            self._events.publish(TwinEvent(type=TwinEventType.DELETED, twin=twin))

    def close(self) -> None:
        """End every open watch stream."""
        self._events.close()

    # ------------------------------------------------------------------
    # StateStoreAdapter
    # ------------------------------------------------------------------

    async def list(self) -> list[Twin]:
        await self._round_trip("list")
        return [self._twins[key] for key in sorted(self._twins)]

    def watch(self) -> AsyncIterator[TwinEvent]:
        return self._events.stream()

    async def get(self, identity: TwinIdentity) -> Twin:
        await self._round_trip("get")
        twin = self._twins.get(identity)
        if twin is None:
            raise TwinNotFoundError(f"twin {identity} not found", identity=str(identity))
        return twin

    async def update_status(self, identity: TwinIdentity, resource_version: int, status: TwinStatus) -> Twin:
        await self._round_trip("update_status")
        current = self._twins.get(identity)
        if current is None:
            raise TwinNotFoundError(f"twin {identity} not found", identity=str(identity))
        if current.resource_version != resource_version:
            raise TwinConflictError(
                f"twin {identity} is at version {current.resource_version}, not {resource_version}",
                identity=str(identity),
                expected_version=resource_version,
                current_version=current.resource_version,
            )
        updated = current.model_copy(update={"status": status, "resource_version": self._next_version()})
        self._twins[identity] = updated
        self.status_writes += 1
        self._events.publish(TwinEvent(type=TwinEventType.MODIFIED, twin=updated))
        return updated


class InMemoryReportedState:
    """In-memory device channel.

    ``report`` plays the device side of the subscription; ``published``
    records every command the operator sent. An optional ``on_publish``
    hook lets tests simulate a device reacting to commands.
    """

    def __init__(
        self,
        *,
        latency: float = 0.0,
        on_publish: Callable[[TwinIdentity, DeviceCommand], None] | None = None,
    ) -> None:
        self._reports: Fanout[ReportedState] = Fanout()
        self.latency = latency
        self.unreachable = False
        self.connected = False
        self.published: list[tuple[TwinIdentity, DeviceCommand]] = []
        self.on_publish = on_publish

    def report(self, report: ReportedState) -> None:
        self._reports.publish(report)

    async def connect(self) -> None:
        if self.unreachable:
            raise TwinUnreachableError("device channel unreachable", endpoint="memory")
        self.connected = True

    def subscribe(self) -> AsyncIterator[ReportedState]:
        return self._reports.stream()

    async def publish(self, identity: TwinIdentity, command: DeviceCommand) -> None:
        if self.latency > 0:
            await asyncio.sleep(self.latency)
        if self.unreachable:
            raise TwinUnreachableError(f"device {identity} unreachable", endpoint="memory")
        self.published.append((identity, command))
        _logger.debug("Published %s command to %s", command.kind, identity)
        if self.on_publish is not None:
            self.on_publish(identity, command)

    async def close(self) -> None:
        self.connected = False
        self._reports.close()
