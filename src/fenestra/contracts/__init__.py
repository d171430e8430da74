"""Shared contracts for cross-boundary data types.

This package is a LEAF MODULE with no outbound dependencies to core/engine.
Settings classes are NOT re-exported here - import them from
fenestra.core.config.

Import patterns:
    from fenestra.contracts import Window, WindowState, WorkResult
    from fenestra.core.config import FenestraSettings, TriggerSettings
"""

from fenestra.contracts.enums import (
    DISPATCHABLE_STATES,
    PURGEABLE_STATES,
    AttemptOutcome,
    BackpressureMode,
    CircuitState,
    DependencyStatus,
    ErrorClass,
    FanOutStatus,
    MergeAction,
    TransitionReason,
    WindowState,
)
from fenestra.contracts.errors import (
    CircuitOpenError,
    ConfigReloadError,
    DependencyFailedError,
    ErrorDetail,
    MaxAttemptsExhausted,
    PermanentError,
    RerunRejectedError,
    TransientError,
    UnitOfWorkError,
    UnknownTriggerError,
    WindowAlignmentError,
    WindowConflictError,
)
from fenestra.contracts.events import CircuitOpened, NotificationEvent, WindowExhausted
from fenestra.contracts.protocols import NotificationSink, NullNotificationSink, WindowStateQuery
from fenestra.contracts.windows import (
    Attempt,
    AttemptContext,
    CircuitBreakerRecord,
    ConfigSnapshotRecord,
    RunVariableBag,
    VariableValue,
    WatermarkRecord,
    Window,
    WindowBounds,
    WindowEvent,
    WorkResult,
)

__all__ = [
    "DISPATCHABLE_STATES",
    "PURGEABLE_STATES",
    "Attempt",
    "AttemptContext",
    "AttemptOutcome",
    "BackpressureMode",
    "CircuitBreakerRecord",
    "CircuitOpenError",
    "CircuitOpened",
    "CircuitState",
    "ConfigReloadError",
    "ConfigSnapshotRecord",
    "DependencyFailedError",
    "DependencyStatus",
    "ErrorClass",
    "ErrorDetail",
    "FanOutStatus",
    "MaxAttemptsExhausted",
    "MergeAction",
    "NotificationEvent",
    "NotificationSink",
    "NullNotificationSink",
    "PermanentError",
    "RerunRejectedError",
    "RunVariableBag",
    "TransientError",
    "TransitionReason",
    "UnitOfWorkError",
    "UnknownTriggerError",
    "VariableValue",
    "WatermarkRecord",
    "Window",
    "WindowAlignmentError",
    "WindowBounds",
    "WindowConflictError",
    "WindowEvent",
    "WindowExhausted",
    "WindowState",
    "WindowStateQuery",
    "WorkResult",
]
