"""Operator configuration for twinop."""

from __future__ import annotations

import dataclasses
import os
from typing import Any

from twinop.exceptions import TwinConfigError


def _env_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "y", "on"}:
        return True
    if normalized in {"0", "false", "no", "n", "off"}:
        return False
    return default


def parse_label_selector(raw: str | None) -> dict[str, str]:
    """Parse a ``key=value,key2=value2`` selector into a dict.

    An empty or missing selector matches every twin.
    """
    selector: dict[str, str] = {}
    if not raw:
        return selector
    for part in raw.split(","):
        part = part.strip()
        if not part:
            continue
        key, sep, value = part.partition("=")
        key = key.strip()
        if not sep or not key:
            raise TwinConfigError(f"Invalid label selector term {part!r}, expected key=value")
        selector[key] = value.strip()
    return selector


@dataclasses.dataclass(frozen=True)
class OperatorConfig:
    """Operator configuration.

    Parameters
    ----------
    store_url : str
        Base URL of the twin state store API. Empty selects the in-memory store.
    store_token : str or None
        Bearer token sent to the state store.
    mqtt_host : str
        MQTT broker host. Empty selects the in-memory device channel.
    mqtt_port : int
        MQTT broker port.
    mqtt_username, mqtt_password : str or None
        MQTT credentials.
    mqtt_client_id : str
        MQTT client id; generated by the broker client when empty.
    mqtt_group_id : str or None
        Shared subscription group, lets several replicas split reports.
    mqtt_keepalive : int
        MQTT keepalive in seconds.
    mqtt_disable_tls : bool
        Connect without TLS.
    mqtt_insecure_tls : bool
        Skip broker certificate verification.
    mqtt_ca_path : str or None
        CA bundle used to verify the broker.
    mqtt_topic_prefix : str
        First topic level of the per-twin reported and command topics.
    workers : int
        Number of concurrent reconciliation workers.
    resync_interval : float
        Seconds between full resyncs. ``0`` disables periodic resync.
    backoff_base, backoff_ceiling : float
        Per-identity retry backoff bounds in seconds.
    call_timeout : float
        Deadline for every adapter call in seconds.
    command_ttl : float
        Seconds an issued command suppresses an identical one against the
        same observation.
    snapshot_skew : float
        Clock skew allowance when ordering reports without sequence numbers.
    shutdown_timeout : float
        Seconds to wait for in-flight passes to finish on shutdown.
    health_host, health_port : str, int
        Bind address of the health/readiness probe. Port ``0`` disables it.
    label_selector : dict[str, str]
        Only twins carrying every one of these labels are reconciled.
    """

    store_url: str = ""
    store_token: str | None = None
    mqtt_host: str = ""
    mqtt_port: int = 8883
    mqtt_username: str | None = None
    mqtt_password: str | None = None
    mqtt_client_id: str = ""
    mqtt_group_id: str | None = None
    mqtt_keepalive: int = 60
    mqtt_disable_tls: bool = False
    mqtt_insecure_tls: bool = False
    mqtt_ca_path: str | None = None
    mqtt_topic_prefix: str = "twins"
    workers: int = 4
    resync_interval: float = 60.0
    backoff_base: float = 0.5
    backoff_ceiling: float = 60.0
    call_timeout: float = 10.0
    command_ttl: float = 30.0
    snapshot_skew: float = 0.0
    shutdown_timeout: float = 30.0
    health_host: str = "0.0.0.0"
    health_port: int = 8080
    label_selector: dict[str, str] = dataclasses.field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.workers < 1:
            raise TwinConfigError("workers must be at least 1")
        if self.backoff_base <= 0:
            raise TwinConfigError("backoff_base must be positive")
        if self.backoff_ceiling < self.backoff_base:
            raise TwinConfigError("backoff_ceiling must be >= backoff_base")
        if self.call_timeout <= 0:
            raise TwinConfigError("call_timeout must be positive")
        if self.resync_interval < 0:
            raise TwinConfigError("resync_interval must not be negative")
        if not 0 <= self.health_port <= 65535:
            raise TwinConfigError(f"health_port out of range: {self.health_port}")
        if not 0 < self.mqtt_port <= 65535:
            raise TwinConfigError(f"mqtt_port out of range: {self.mqtt_port}")

    @classmethod
    def from_env(cls, **overrides: Any) -> OperatorConfig:
        """Create configuration from ``TWINOP_*`` environment variables.

        Explicit keyword arguments override environment values.

        Raises
        ------
        TwinConfigError
            A variable holds a value that cannot be converted.
        """
        env = os.environ

        _ENV_STR_MAP = {
            "TWINOP_STORE_URL": "store_url",
            "TWINOP_STORE_TOKEN": "store_token",
            "TWINOP_MQTT_HOST": "mqtt_host",
            "TWINOP_MQTT_USERNAME": "mqtt_username",
            "TWINOP_MQTT_PASSWORD": "mqtt_password",
            "TWINOP_MQTT_CLIENT_ID": "mqtt_client_id",
            "TWINOP_MQTT_GROUP_ID": "mqtt_group_id",
            "TWINOP_MQTT_CA_PATH": "mqtt_ca_path",
            "TWINOP_MQTT_TOPIC_PREFIX": "mqtt_topic_prefix",
            "TWINOP_HEALTH_HOST": "health_host",
        }
        _ENV_INT_MAP = {
            "TWINOP_MQTT_PORT": "mqtt_port",
            "TWINOP_MQTT_KEEPALIVE": "mqtt_keepalive",
            "TWINOP_WORKERS": "workers",
            "TWINOP_HEALTH_PORT": "health_port",
        }
        _ENV_FLOAT_MAP = {
            "TWINOP_RESYNC_INTERVAL": "resync_interval",
            "TWINOP_BACKOFF_BASE": "backoff_base",
            "TWINOP_BACKOFF_CEILING": "backoff_ceiling",
            "TWINOP_CALL_TIMEOUT": "call_timeout",
            "TWINOP_COMMAND_TTL": "command_ttl",
            "TWINOP_SNAPSHOT_SKEW": "snapshot_skew",
            "TWINOP_SHUTDOWN_TIMEOUT": "shutdown_timeout",
        }
        _ENV_BOOL_MAP = {
            "TWINOP_MQTT_DISABLE_TLS": "mqtt_disable_tls",
            "TWINOP_MQTT_INSECURE_TLS": "mqtt_insecure_tls",
        }

        config_kwargs: dict[str, Any] = {}
        for env_key, field_name in _ENV_STR_MAP.items():
            val = env.get(env_key)
            if val is not None:
                config_kwargs[field_name] = val

        for converter, mapping in ((int, _ENV_INT_MAP), (float, _ENV_FLOAT_MAP)):
            for env_key, field_name in mapping.items():
                val = env.get(env_key)
                if val is None or field_name in overrides:
                    continue
                try:
                    config_kwargs[field_name] = converter(val)
                except ValueError as exc:
                    raise TwinConfigError(f"{env_key} must be a number, got {val!r}") from exc

        for env_key, field_name in _ENV_BOOL_MAP.items():
            if field_name not in overrides:
                config_kwargs[field_name] = _env_bool(env.get(env_key), False)

        selector_env = env.get("TWINOP_LABEL_SELECTOR")
        if selector_env is not None and "label_selector" not in overrides:
            config_kwargs["label_selector"] = parse_label_selector(selector_env)

        selector_override = overrides.get("label_selector")
        if isinstance(selector_override, str):
            overrides["label_selector"] = parse_label_selector(selector_override)

        config_kwargs.update(overrides)

        return cls(**config_kwargs)
