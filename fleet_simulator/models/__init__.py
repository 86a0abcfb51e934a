"""
Data models
"""

from .api import (
    ActionResponse,
    CreateDeviceRequest,
    CreateDeviceResponse,
    DeviceActionRequest,
    DeviceDetail,
    DeviceListResponse,
    DeviceSummary,
    RegistryStatistics,
    StoredDevice,
)
from .device import (
    ButtonTuning,
    CrewAssignment,
    CrewStatus,
    DeviceConfig,
    DeviceStatus,
    DeviceType,
    GenericTuning,
    Location,
    RepeaterTuning,
    WatchTuning,
    parse_device_type,
)
from .events import DeviceEvent, EventPriority, PressType, RequestAction
from .fleet import (
    FleetStatistics,
    LifecycleTestConfig,
    LifecycleTestResult,
    LoadTestConfig,
    LoadTestResult,
    SimulatorInstance,
    SimulatorSpec,
    SimulatorState,
)
from .metrics import (
    AlertSeverity,
    AlertThresholds,
    MetricsConfig,
    MetricsSnapshot,
    PerformanceAlert,
    Threshold,
)

__all__ = [
    "ActionResponse",
    "CreateDeviceRequest",
    "CreateDeviceResponse",
    "DeviceActionRequest",
    "DeviceDetail",
    "DeviceListResponse",
    "DeviceSummary",
    "RegistryStatistics",
    "StoredDevice",
    "ButtonTuning",
    "CrewAssignment",
    "CrewStatus",
    "DeviceConfig",
    "DeviceStatus",
    "DeviceType",
    "GenericTuning",
    "Location",
    "RepeaterTuning",
    "WatchTuning",
    "parse_device_type",
    "DeviceEvent",
    "EventPriority",
    "PressType",
    "RequestAction",
    "FleetStatistics",
    "LifecycleTestConfig",
    "LifecycleTestResult",
    "LoadTestConfig",
    "LoadTestResult",
    "SimulatorInstance",
    "SimulatorSpec",
    "SimulatorState",
    "AlertSeverity",
    "AlertThresholds",
    "MetricsConfig",
    "MetricsSnapshot",
    "PerformanceAlert",
    "Threshold",
]
