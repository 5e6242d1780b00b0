"""Liveness and readiness probe served with aiohttp.web."""

from __future__ import annotations

import logging
from collections.abc import Callable

from aiohttp import web

_logger = logging.getLogger(__name__)


class HealthServer:
    """Serves ``/healthz`` (liveness) and ``/readyz`` (readiness).

    Each endpoint answers 200 while its callback returns True and 503
    otherwise.
    """

    def __init__(
        self,
        *,
        ready: Callable[[], bool],
        alive: Callable[[], bool],
        host: str = "0.0.0.0",
        port: int = 8080,
    ) -> None:
        self._ready = ready
        self._alive = alive
        self._host = host
        self._port = port
        self._runner: web.AppRunner | None = None
        self.app = web.Application()
        self.app.router.add_get("/healthz", self._healthz)
        self.app.router.add_get("/readyz", self._readyz)

    @staticmethod
    def _probe(ok: bool) -> web.Response:
        if ok:
            return web.Response(text="ok")
        return web.Response(status=503, text="unavailable")

    async def _healthz(self, _request: web.Request) -> web.Response:
        return self._probe(self._alive())

    async def _readyz(self, _request: web.Request) -> web.Response:
        return self._probe(self._ready())

    async def start(self) -> None:
        runner = web.AppRunner(self.app)
        await runner.setup()
        site = web.TCPSite(runner, self._host, self._port)
        await site.start()
        self._runner = runner
        _logger.info("Health probe listening on %s:%d", self._host, self._port)

    async def stop(self) -> None:
        runner = self._runner
        self._runner = None
        if runner is not None:
            await runner.cleanup()
