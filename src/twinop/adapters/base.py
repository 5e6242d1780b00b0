"""Structural adapter interfaces consumed by the operator.

Having protocols here makes it easy to pass the in-memory adapters (or any
other test double) while keeping production implementations concrete.

Error contract:

* ``get``/``update_status`` raise :class:`~twinop.exceptions.TwinNotFoundError`
  for a missing twin and ``update_status`` raises
  :class:`~twinop.exceptions.TwinConflictError` on a resource-version mismatch.
* Any adapter call may raise a :class:`~twinop.exceptions.TwinTransientError`
  subclass when its backend is unreachable.
* ``watch``/``subscribe`` return lazy async iterators; they may end or raise,
  and the operator restarts them.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from typing import Protocol

from twinop.models.reported import DeviceCommand, ReportedState
from twinop.models.twin import Twin, TwinIdentity, TwinStatus
from twinop.state.events import TwinEvent


class StateStoreAdapter(Protocol):
    """Twin resource storage with resource-version guarded status writes."""

    async def list(self) -> list[Twin]: ...

    def watch(self) -> AsyncIterator[TwinEvent]: ...

    async def get(self, identity: TwinIdentity) -> Twin: ...

    async def update_status(self, identity: TwinIdentity, resource_version: int, status: TwinStatus) -> Twin: ...


class ReportedStateAdapter(Protocol):
    """Device channel: reported-state subscription plus a command publish path."""

    async def connect(self) -> None: ...

    def subscribe(self) -> AsyncIterator[ReportedState]: ...

    async def publish(self, identity: TwinIdentity, command: DeviceCommand) -> None: ...

    async def close(self) -> None: ...
