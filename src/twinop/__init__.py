"""twinop - Async digital-twin reconciliation operator."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("twinop")
except PackageNotFoundError:
    __version__ = "0+local"
from twinop.adapters import (
    HttpStateStore,
    InMemoryReportedState,
    InMemoryStateStore,
    MqttReportedState,
    MqttSettings,
    ReportedStateAdapter,
    StateStoreAdapter,
)
from twinop.config import OperatorConfig
from twinop.diff import CommandLedger, Discrepancy, compute_delta, plan_actions
from twinop.exceptions import (
    MalformedSpecError,
    QueueShutDown,
    TwinConfigError,
    TwinConflictError,
    TwinError,
    TwinNotFoundError,
    TwinTimeoutError,
    TwinTransientError,
    TwinUnreachableError,
)
from twinop.models import (
    DesiredSpec,
    DeviceCommand,
    ReportedState,
    SyncPhase,
    Twin,
    TwinIdentity,
    TwinStatus,
    parse_desired_spec,
    register_schema,
)
from twinop.operator import Operator, OperatorContext
from twinop.queue import WorkQueue
from twinop.reconciler import Disposition, ReconcileResult, Reconciler
from twinop.state.events import ReconcileReason
from twinop.state.snapshots import SnapshotCache
from twinop.status import OutcomeKind, ReconcileOutcome, project_status

__all__ = [
    "CommandLedger",
    "DesiredSpec",
    "DeviceCommand",
    "Discrepancy",
    "Disposition",
    "HttpStateStore",
    "InMemoryReportedState",
    "InMemoryStateStore",
    "MalformedSpecError",
    "MqttReportedState",
    "MqttSettings",
    "Operator",
    "OperatorConfig",
    "OperatorContext",
    "OutcomeKind",
    "QueueShutDown",
    "ReconcileOutcome",
    "ReconcileReason",
    "ReconcileResult",
    "Reconciler",
    "ReportedState",
    "ReportedStateAdapter",
    "SnapshotCache",
    "StateStoreAdapter",
    "SyncPhase",
    "Twin",
    "TwinConfigError",
    "TwinConflictError",
    "TwinError",
    "TwinIdentity",
    "TwinNotFoundError",
    "TwinStatus",
    "TwinTimeoutError",
    "TwinTransientError",
    "TwinUnreachableError",
    "WorkQueue",
    "__version__",
    "compute_delta",
    "parse_desired_spec",
    "plan_actions",
    "project_status",
    "register_schema",
]
