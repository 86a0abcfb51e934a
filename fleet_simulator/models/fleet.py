"""
Fleet orchestration models
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from .device import DeviceType


class SimulatorState(str, Enum):
    """Simulator instance lifecycle state"""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    ERROR = "error"


# Legal lifecycle moves; ERROR can be entered from any active state
STATE_TRANSITIONS = {
    SimulatorState.STOPPED: {SimulatorState.STARTING},
    SimulatorState.STARTING: {SimulatorState.RUNNING, SimulatorState.STOPPING, SimulatorState.ERROR},
    SimulatorState.RUNNING: {SimulatorState.STOPPING, SimulatorState.ERROR},
    SimulatorState.STOPPING: {SimulatorState.STOPPED, SimulatorState.ERROR},
    SimulatorState.ERROR: {SimulatorState.STOPPED},
}


class SimulatorInstance(BaseModel):
    """Orchestrator bookkeeping for one simulated device"""

    id: str
    type: DeviceType
    status: SimulatorState = SimulatorState.STOPPED
    start_time: Optional[datetime] = None
    uptime: Optional[float] = None  # seconds since start_time
    error: Optional[str] = None


class SimulatorSpec(BaseModel):
    """One group of devices to create in a start_simulators call"""

    type: DeviceType
    count: int = Field(1, ge=0)
    config: Dict[str, Any] = {}
    template: Optional[str] = None


class FleetStatistics(BaseModel):
    """Aggregated fleet counters"""

    total: int = 0
    by_status: Dict[str, int] = {}
    by_type: Dict[str, int] = {}


class LoadTestConfig(BaseModel):
    """Sustained-load scenario parameters (seconds)"""

    duration: float = Field(300.0, gt=0)
    ramp_up_time: float = Field(30.0, ge=0)
    max_devices: int = Field(50, gt=0)
    device_types: List[DeviceType] = [
        DeviceType.BUTTON,
        DeviceType.WATCH,
        DeviceType.REPEATER,
    ]
    template: Optional[str] = None


class LifecycleTestConfig(BaseModel):
    """Connect/disconnect churn scenario parameters (seconds)"""

    cycles: int = Field(5, gt=0)
    connect_duration: float = Field(60.0, ge=0)
    disconnect_duration: float = Field(10.0, ge=0)
    device_count: int = Field(10, gt=0)


class LoadTestResult(BaseModel):
    """Outcome of a load test run"""

    config: LoadTestConfig
    started_at: datetime
    finished_at: datetime
    devices_started: int
    statistics: FleetStatistics


class LifecycleCycleResult(BaseModel):
    cycle: int
    devices_started: int
    statistics: FleetStatistics


class LifecycleTestResult(BaseModel):
    """Outcome of a lifecycle test run"""

    config: LifecycleTestConfig
    started_at: datetime
    finished_at: datetime
    cycles: List[LifecycleCycleResult] = []
