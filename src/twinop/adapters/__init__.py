"""Adapters for the twin state store and the device channel."""

from twinop.adapters.base import ReportedStateAdapter, StateStoreAdapter
from twinop.adapters.http import HttpStateStore
from twinop.adapters.memory import InMemoryReportedState, InMemoryStateStore
from twinop.adapters.mqtt import MqttReportedState, MqttSettings

__all__ = [
    "HttpStateStore",
    "InMemoryReportedState",
    "InMemoryStateStore",
    "MqttReportedState",
    "MqttSettings",
    "ReportedStateAdapter",
    "StateStoreAdapter",
]
