from __future__ import annotations

import pytest

from twinop.config import OperatorConfig, parse_label_selector
from twinop.exceptions import TwinConfigError


def test_defaults() -> None:
    config = OperatorConfig()

    assert config.workers == 4
    assert config.resync_interval == 60.0
    assert config.mqtt_topic_prefix == "twins"
    assert config.label_selector == {}


def test_from_env_reads_twinop_variables(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TWINOP_STORE_URL", "https://twins.example.com")
    monkeypatch.setenv("TWINOP_STORE_TOKEN", "secret-token")
    monkeypatch.setenv("TWINOP_MQTT_HOST", "broker.example.com")
    monkeypatch.setenv("TWINOP_MQTT_PORT", "1883")
    monkeypatch.setenv("TWINOP_MQTT_GROUP_ID", "twinop")
    monkeypatch.setenv("TWINOP_MQTT_DISABLE_TLS", "yes")
    monkeypatch.setenv("TWINOP_WORKERS", "8")
    monkeypatch.setenv("TWINOP_RESYNC_INTERVAL", "15.5")
    monkeypatch.setenv("TWINOP_LABEL_SELECTOR", "app=hvac, tier=edge")

    config = OperatorConfig.from_env()

    assert config.store_url == "https://twins.example.com"
    assert config.store_token == "secret-token"
    assert config.mqtt_host == "broker.example.com"
    assert config.mqtt_port == 1883
    assert config.mqtt_group_id == "twinop"
    assert config.mqtt_disable_tls is True
    assert config.mqtt_insecure_tls is False
    assert config.workers == 8
    assert config.resync_interval == 15.5
    assert config.label_selector == {"app": "hvac", "tier": "edge"}


def test_explicit_overrides_win_over_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TWINOP_WORKERS", "8")
    monkeypatch.setenv("TWINOP_LABEL_SELECTOR", "app=hvac")

    config = OperatorConfig.from_env(workers=2, label_selector="app=lighting")

    assert config.workers == 2
    assert config.label_selector == {"app": "lighting"}


def test_non_numeric_env_value_is_a_config_error(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TWINOP_WORKERS", "many")

    with pytest.raises(TwinConfigError, match="TWINOP_WORKERS"):
        OperatorConfig.from_env()


@pytest.mark.parametrize(
    "overrides",
    [
        {"workers": 0},
        {"backoff_base": 0},
        {"backoff_base": 2.0, "backoff_ceiling": 1.0},
        {"call_timeout": 0},
        {"resync_interval": -1},
        {"health_port": 70000},
    ],
)
def test_invalid_values_are_rejected(overrides: dict) -> None:
    with pytest.raises(TwinConfigError):
        OperatorConfig(**overrides)


def test_parse_label_selector() -> None:
    assert parse_label_selector(None) == {}
    assert parse_label_selector("") == {}
    assert parse_label_selector("app=hvac,,zone=") == {"app": "hvac", "zone": ""}
    with pytest.raises(TwinConfigError):
        parse_label_selector("app")
    with pytest.raises(TwinConfigError):
        parse_label_selector("=hvac")
