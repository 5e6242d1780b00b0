"""HTTP state store adapter.

Talks to a JSON twin API shaped like a cluster resource API::

    GET /api/v1/twins                                   list
    GET /api/v1/twins?watch=true                        NDJSON watch stream
    GET /api/v1/namespaces/{ns}/twins/{name}            get
    PUT /api/v1/namespaces/{ns}/twins/{name}/status     guarded status write

Watch lines look like ``{"type": "ADDED", "object": {...twin...}}``. A
status write sends ``{"resourceVersion": n, "status": {...}}`` and the
server answers 409 when ``n`` is not the current version.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator
from typing import Any
from urllib.parse import quote

import aiohttp
from pydantic import ValidationError

from twinop._redact import redact_for_log
from twinop.exceptions import TwinConflictError, TwinNotFoundError, TwinUnreachableError
from twinop.models.twin import Twin, TwinIdentity, TwinStatus
from twinop.state.events import TwinEvent, TwinEventType

_logger = logging.getLogger(__name__)

_WATCH_TIMEOUT = aiohttp.ClientTimeout(total=None, sock_connect=30, sock_read=None)


def _twin_path(identity: TwinIdentity) -> str:
    return f"/api/v1/namespaces/{quote(identity.namespace, safe='')}/twins/{quote(identity.name, safe='')}"


def parse_watch_line(line: bytes | str) -> TwinEvent | None:
    """Parse one NDJSON watch line; returns ``None`` for blank or unusable lines."""
    text = line.decode("utf-8") if isinstance(line, bytes) else line
    text = text.strip()
    if not text:
        return None
    try:
        body = json.loads(text)
        event_type = TwinEventType(str(body.get("type", "")).upper())
        twin = Twin.model_validate(body.get("object") or {})
    except (json.JSONDecodeError, AttributeError, ValueError, ValidationError):
        _logger.warning("Ignoring malformed watch line: %s", text[:200])
        return None
    return TwinEvent(type=event_type, twin=twin)


class _WatchStream:
    """Lazy NDJSON watch; the request is opened as soon as the stream exists."""

    def __init__(self, store: HttpStateStore) -> None:
        self._store = store
        self._opening: asyncio.Future[aiohttp.ClientResponse] = asyncio.ensure_future(store._open_watch())
        self._response: aiohttp.ClientResponse | None = None

    def __aiter__(self) -> _WatchStream:
        return self

    async def __anext__(self) -> TwinEvent:
        if self._response is None:
            self._response = await self._opening
        while True:
            try:
                line = await self._response.content.readline()
            except (aiohttp.ClientError, ValueError) as exc:
                raise TwinUnreachableError(f"Watch stream broke: {exc}", endpoint="/api/v1/twins") from exc
            if not line:
                raise StopAsyncIteration
            event = parse_watch_line(line)
            if event is not None:
                return event

    async def aclose(self) -> None:
        if not self._opening.done():
            self._opening.cancel()
            return
        if self._opening.cancelled() or self._opening.exception() is not None:
            return
        self._opening.result().release()


class HttpStateStore:
    """State store adapter backed by an HTTP twin API."""

    def __init__(
        self,
        base_url: str,
        http_session: aiohttp.ClientSession,
        *,
        token: str | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._http = http_session
        self._token = token

    def _headers(self) -> dict[str, str]:
        headers = {"accept": "application/json"}
        if self._token:
            headers["authorization"] = f"Bearer {self._token}"
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        *,
        identity: TwinIdentity | None = None,
        body: dict[str, Any] | None = None,
        expected_version: int | None = None,
    ) -> Any:
        url = f"{self._base_url}{path}"
        _logger.debug("%s %s", method, redact_for_log(url))

        try:
            async with self._http.request(method, url, json=body, headers=self._headers()) as resp:
                status = resp.status
                text = await resp.text()
        except aiohttp.ClientError as exc:
            raise TwinUnreachableError(f"Request to {path} failed: {exc}", endpoint=path) from exc

        if status == 404:
            raise TwinNotFoundError(f"twin {identity} not found", identity=str(identity or ""))
        if status == 409:
            raise TwinConflictError(
                f"twin {identity} changed since version {expected_version}",
                identity=str(identity or ""),
                expected_version=expected_version,
            )
        if status >= 300:
            raise TwinUnreachableError(
                f"HTTP {status} from {path}: {text[:200]}",
                endpoint=path,
                status_code=status,
            )

        if not text:
            return None
        try:
            return json.loads(text)
        except json.JSONDecodeError as exc:
            raise TwinUnreachableError(f"Invalid JSON from {path}: {text[:200]}", endpoint=path) from exc

    async def _open_watch(self) -> aiohttp.ClientResponse:
        path = "/api/v1/twins"
        url = f"{self._base_url}{path}"
        _logger.debug("GET %s (watch)", redact_for_log(url))
        try:
            resp = await self._http.get(
                url,
                params={"watch": "true"},
                headers=self._headers(),
                timeout=_WATCH_TIMEOUT,
            )
        except aiohttp.ClientError as exc:
            raise TwinUnreachableError(f"Watch request failed: {exc}", endpoint=path) from exc
        if resp.status != 200:
            resp.release()
            raise TwinUnreachableError(f"HTTP {resp.status} opening watch", endpoint=path, status_code=resp.status)
        return resp

    async def list(self) -> list[Twin]:
        body = await self._request("GET", "/api/v1/twins")
        items = body.get("items", []) if isinstance(body, dict) else body or []
        twins: list[Twin] = []
        for item in items:
            try:
                twins.append(Twin.model_validate(item))
            except ValidationError as exc:
                _logger.warning("Skipping unparseable twin in listing: %s", exc)
        return twins

    def watch(self) -> AsyncIterator[TwinEvent]:
        return _WatchStream(self)

    async def get(self, identity: TwinIdentity) -> Twin:
        body = await self._request("GET", _twin_path(identity), identity=identity)
        try:
            return Twin.model_validate(body)
        except ValidationError as exc:
            raise TwinUnreachableError(f"Unparseable twin {identity}: {exc}", endpoint=_twin_path(identity)) from exc

    async def update_status(self, identity: TwinIdentity, resource_version: int, status: TwinStatus) -> Twin:
        path = f"{_twin_path(identity)}/status"
        body = await self._request(
            "PUT",
            path,
            identity=identity,
            body={"resourceVersion": resource_version, "status": status.to_wire()},
            expected_version=resource_version,
        )
        try:
            return Twin.model_validate(body)
        except ValidationError as exc:
            raise TwinUnreachableError(f"Unparseable status response for {identity}: {exc}", endpoint=path) from exc
