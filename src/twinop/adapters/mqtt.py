"""MQTT device channel: reported-state subscription and command publishing.

Devices publish JSON reports to ``{prefix}/{namespace}/{name}/reported``
and receive commands on ``{prefix}/{namespace}/{name}/commands``. A report
is either a bare state document or an envelope::

    {"state": {...}, "observedAt": "2024-01-01T00:00:00Z", "sequence": 42}

paho-mqtt runs its own network thread; parsed reports are handed to the
event loop with ``call_soon_threadsafe``.
"""

from __future__ import annotations

import asyncio
import functools
import json
import logging
import ssl
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Any, cast

import paho.mqtt.client as mqtt

from twinop._redact import redact_for_log
from twinop.adapters._streams import Fanout
from twinop.config import OperatorConfig
from twinop.exceptions import TwinError, TwinTimeoutError, TwinUnreachableError
from twinop.models.reported import DeviceCommand, ReportedState
from twinop.models.twin import TwinIdentity

_logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MqttSettings:
    """Broker connection details for the device channel."""

    host: str
    port: int = 8883
    username: str | None = None
    password: str | None = None
    client_id: str = ""
    group_id: str | None = None
    keepalive: int = 60
    disable_tls: bool = False
    insecure_tls: bool = False
    ca_path: str | None = None
    topic_prefix: str = "twins"

    @classmethod
    def from_config(cls, config: OperatorConfig) -> MqttSettings:
        return cls(
            host=config.mqtt_host,
            port=config.mqtt_port,
            username=config.mqtt_username,
            password=config.mqtt_password,
            client_id=config.mqtt_client_id,
            group_id=config.mqtt_group_id,
            keepalive=config.mqtt_keepalive,
            disable_tls=config.mqtt_disable_tls,
            insecure_tls=config.mqtt_insecure_tls,
            ca_path=config.mqtt_ca_path,
            topic_prefix=config.mqtt_topic_prefix,
        )


def reported_topic_filter(prefix: str, group_id: str | None = None) -> str:
    """Subscription filter for every twin's reports, shared when *group_id* is set."""
    topic = f"{prefix}/+/+/reported"
    if group_id:
        return f"$share/{group_id}/{topic}"
    return topic


def command_topic(prefix: str, identity: TwinIdentity) -> str:
    return f"{prefix}/{identity.namespace}/{identity.name}/commands"


def identity_from_topic(prefix: str, topic: str) -> TwinIdentity | None:
    """Extract the twin identity from a reported-state topic."""
    parts = topic.split("/")
    prefix_parts = prefix.split("/")
    if len(parts) != len(prefix_parts) + 3 or parts[: len(prefix_parts)] != prefix_parts:
        return None
    namespace, name, leaf = parts[len(prefix_parts) :]
    if leaf != "reported" or not namespace or not name:
        return None
    return TwinIdentity(namespace, name)


def parse_reported_message(prefix: str, topic: str, payload: bytes) -> ReportedState:
    """Turn one MQTT message into a :class:`ReportedState`.

    Raises
    ------
    ValueError
        The topic is not a reported-state topic or the payload is not a
        JSON object.
    """
    identity = identity_from_topic(prefix, topic)
    if identity is None:
        raise ValueError(f"not a reported-state topic: {topic}")
    body = json.loads(payload.decode("utf-8"))
    if not isinstance(body, dict):
        raise ValueError("reported payload is not a JSON object")

    if isinstance(body.get("state"), dict):
        return ReportedState.for_identity(
            identity,
            body["state"],
            sequence=body.get("sequence"),
            observed_at=body.get("observedAt", body.get("observed_at")),
        )
    return ReportedState.for_identity(identity, body)


def encode_command(command: DeviceCommand) -> bytes:
    return json.dumps(command.to_wire(), separators=(",", ":")).encode("utf-8")


def _resolve(future: asyncio.Future[None], error: BaseException | None = None) -> None:
    if future.done():
        return
    if error is None:
        future.set_result(None)
    else:
        future.set_exception(error)


class MqttReportedState:
    """Threaded paho-mqtt device channel that feeds reports onto an asyncio loop."""

    def __init__(self, settings: MqttSettings, *, connect_timeout: float = 10.0) -> None:
        self._settings = settings
        self._connect_timeout = connect_timeout
        self._client: mqtt.Client | None = None
        self._reports: Fanout[ReportedState] = Fanout()
        self._running = False

    @property
    def is_running(self) -> bool:
        """Whether the MQTT network loop is active."""
        return self._running

    def subscribe(self) -> AsyncIterator[ReportedState]:
        return self._reports.stream()

    def _build_client(self) -> mqtt.Client:
        settings = self._settings
        client = mqtt.Client(
            callback_api_version=cast(Any, mqtt).CallbackAPIVersion.VERSION2,
            client_id=settings.client_id,
            protocol=mqtt.MQTTv5,
        )
        client.enable_logger(_logger)
        if settings.username:
            client.username_pw_set(settings.username, settings.password or "")
        if not settings.disable_tls:
            if settings.ca_path:
                client.tls_set(ca_certs=settings.ca_path, cert_reqs=ssl.CERT_REQUIRED)
            else:
                client.tls_set(cert_reqs=ssl.CERT_REQUIRED)
            if settings.insecure_tls:
                client.tls_insecure_set(True)
        return client

    def _deliver(self, report: ReportedState) -> None:
        self._reports.publish(report)

    async def connect(self) -> None:
        """Connect and subscribe; returns once the broker granted the subscription."""
        await self._stop_client()
        settings = self._settings
        loop = asyncio.get_running_loop()
        ready: asyncio.Future[None] = loop.create_future()
        topic = reported_topic_filter(settings.topic_prefix, settings.group_id)
        client = self._build_client()

        def on_connect(
            c: mqtt.Client,
            _userdata: Any,
            _flags: Any,
            reason_code: Any,
            _properties: Any,
        ) -> None:
            if reason_code.value != 0:
                _logger.warning("MQTT connect failed: %s", reason_code)
                error = TwinUnreachableError(f"MQTT connect refused: {reason_code}", endpoint=settings.host)
                loop.call_soon_threadsafe(_resolve, ready, error)
                return
            _logger.debug("MQTT connected, subscribing topic=%s", topic)
            c.subscribe(topic, qos=1)

        def on_subscribe(
            _c: mqtt.Client,
            _userdata: Any,
            _mid: int,
            reason_codes: list[Any],
            _properties: Any,
        ) -> None:
            failed = [code for code in reason_codes if code.value >= 0x80]
            if failed:
                error = TwinUnreachableError(
                    f"MQTT subscription to {topic} refused: {failed[0]}", endpoint=settings.host
                )
                loop.call_soon_threadsafe(_resolve, ready, error)
            else:
                loop.call_soon_threadsafe(_resolve, ready, None)

        def on_message(_c: mqtt.Client, _userdata: Any, msg: mqtt.MQTTMessage) -> None:
            try:
                report = parse_reported_message(settings.topic_prefix, msg.topic, msg.payload)
                loop.call_soon_threadsafe(self._deliver, report)
            except Exception:
                _logger.debug("Dropping unparseable report on %s", msg.topic, exc_info=True)

        def on_disconnect(
            _client: mqtt.Client,
            _userdata: Any,
            _disconnect_flags: Any,
            reason_code: Any,
            _properties: Any,
        ) -> None:
            if self._running:
                _logger.warning("MQTT disconnected: %s", reason_code)

        client.on_connect = on_connect
        client.on_subscribe = on_subscribe
        client.on_message = on_message
        client.on_disconnect = on_disconnect

        _logger.debug(
            "MQTT connecting host=%s port=%s tls=%s group=%s",
            settings.host,
            settings.port,
            not settings.disable_tls,
            settings.group_id,
        )
        # DNS, TCP and TLS handshakes block, so they run off the event loop.
        # The client is owned from here on so an abandoned connect is still stopped.
        self._client = client
        try:
            await loop.run_in_executor(
                None, functools.partial(client.connect, settings.host, settings.port, keepalive=settings.keepalive)
            )
        except (OSError, ValueError) as exc:
            await self._stop_client()
            raise TwinUnreachableError(
                f"MQTT connect to {settings.host} failed: {exc}", endpoint=settings.host
            ) from exc
        client.loop_start()
        self._running = True

        try:
            await asyncio.wait_for(ready, timeout=self._connect_timeout)
        except TimeoutError as exc:
            await self._stop_client()
            raise TwinTimeoutError(
                f"MQTT connect to {settings.host} exceeded {self._connect_timeout:.1f}s",
                operation="connect",
                timeout=self._connect_timeout,
            ) from exc
        except TwinError:
            await self._stop_client()
            raise
        _logger.info("MQTT subscribed to %s on %s:%s", topic, settings.host, settings.port)

    async def publish(self, identity: TwinIdentity, command: DeviceCommand) -> None:
        client = self._client
        topic = command_topic(self._settings.topic_prefix, identity)
        if client is None or not self._running or not client.is_connected():
            raise TwinUnreachableError(f"MQTT not connected, cannot publish to {topic}", endpoint=self._settings.host)
        info = client.publish(topic, encode_command(command), qos=1)
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            raise TwinUnreachableError(
                f"MQTT publish to {topic} failed: {mqtt.error_string(info.rc)}",
                endpoint=self._settings.host,
            )
        _logger.debug("Published to %s: %s", topic, redact_for_log(command))

    @staticmethod
    def _shutdown_client(client: mqtt.Client) -> None:
        try:
            _logger.debug("MQTT disconnect requested")
            client.disconnect()
        finally:
            # Joins the network thread.
            client.loop_stop()
            _logger.debug("MQTT network loop stopped")

    async def _stop_client(self) -> None:
        client = self._client
        self._client = None
        self._running = False
        if client is None:
            return
        await asyncio.get_running_loop().run_in_executor(None, self._shutdown_client, client)

    async def close(self) -> None:
        await self._stop_client()
        self._reports.close()
