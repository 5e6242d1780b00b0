"""Command-line entry point: ``python -m twinop`` / ``twinop``."""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import signal
import sys
from typing import Any

import aiohttp

from twinop._redact import redact_for_log
from twinop.adapters.base import ReportedStateAdapter, StateStoreAdapter
from twinop.adapters.http import HttpStateStore
from twinop.adapters.memory import InMemoryReportedState, InMemoryStateStore
from twinop.adapters.mqtt import MqttReportedState, MqttSettings
from twinop.config import OperatorConfig
from twinop.exceptions import TwinConfigError
from twinop.health import HealthServer
from twinop.operator import Operator, OperatorContext

_logger = logging.getLogger("twinop")


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="twinop",
        description="Keep digital-twin resources in sync with their devices.",
    )
    parser.add_argument("--store-url", help="Twin state store base URL (default: in-memory store).")
    parser.add_argument("--mqtt-host", help="MQTT broker host (default: in-memory device channel).")
    parser.add_argument("--workers", type=int, help="Number of concurrent reconciliation workers.")
    parser.add_argument("--resync-interval", type=float, help="Seconds between full resyncs (0 disables).")
    parser.add_argument("--label-selector", help="Only reconcile twins with these labels, e.g. 'app=hvac,tier=edge'.")
    parser.add_argument("--health-port", type=int, help="Port of the health/readiness probe (0 disables).")
    parser.add_argument(
        "--log-level",
        choices=("DEBUG", "INFO", "WARNING", "ERROR"),
        help="Log level (default: INFO, or DEBUG with --verbose).",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable debug logs.",
    )
    return parser.parse_args(argv)


def _config_from_args(args: argparse.Namespace) -> OperatorConfig:
    overrides: dict[str, Any] = {}
    for option, field_name in (
        ("store_url", "store_url"),
        ("mqtt_host", "mqtt_host"),
        ("workers", "workers"),
        ("resync_interval", "resync_interval"),
        ("label_selector", "label_selector"),
        ("health_port", "health_port"),
    ):
        value = getattr(args, option)
        if value is not None:
            overrides[field_name] = value
    return OperatorConfig.from_env(**overrides)


def _reported_adapter(config: OperatorConfig) -> ReportedStateAdapter:
    if config.mqtt_host:
        return MqttReportedState(MqttSettings.from_config(config), connect_timeout=config.call_timeout)
    _logger.warning("No MQTT host configured, using the in-memory device channel")
    return InMemoryReportedState()


async def _run(config: OperatorConfig) -> None:
    loop = asyncio.get_running_loop()
    stop = asyncio.Event()
    for signum in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(signum, stop.set)

    async with contextlib.AsyncExitStack() as stack:
        store: StateStoreAdapter
        if config.store_url:
            http_session = await stack.enter_async_context(aiohttp.ClientSession())
            store = HttpStateStore(config.store_url, http_session, token=config.store_token)
        else:
            _logger.warning("No state store URL configured, using the in-memory store")
            store = InMemoryStateStore()

        operator = Operator(OperatorContext.build(config, store, _reported_adapter(config)))
        if config.health_port:
            health = HealthServer(
                ready=operator.is_ready,
                alive=operator.is_alive,
                host=config.health_host,
                port=config.health_port,
            )
            await health.start()
            stack.push_async_callback(health.stop)

        await operator.run_until(stop)


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    logging.basicConfig(
        level=args.log_level or (logging.DEBUG if args.verbose else logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        config = _config_from_args(args)
    except TwinConfigError as exc:
        print(f"twinop: {exc}", file=sys.stderr)
        return 2

    _logger.debug("Configuration: %s", redact_for_log(config))
    asyncio.run(_run(config))
    return 0


if __name__ == "__main__":
    sys.exit(main())
