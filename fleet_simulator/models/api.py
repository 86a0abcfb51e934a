"""
Control-surface request/response models
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from .device import DeviceActivity, DeviceConfig, DeviceStatus
from .events import DeviceEvent
from .fleet import SimulatorState


class CreateDeviceRequest(BaseModel):
    """Create a virtual device

    Accepts the camelCase field names used by the dashboard as well as
    snake_case.
    """

    model_config = ConfigDict(populate_by_name=True)

    type: str
    name: str = Field(..., min_length=1)
    room: str = Field(..., min_length=1)
    site: Optional[str] = None
    uid: Optional[str] = None
    initial_battery: Optional[float] = Field(None, ge=0, le=100, alias="initialBattery")
    initial_signal: Optional[float] = Field(None, ge=0, le=100, alias="initialSignal")
    additional_config: Dict[str, Any] = Field(default_factory=dict, alias="additionalConfig")
    save_to_database: bool = Field(True, alias="saveToDatabase")


class DeviceActionRequest(BaseModel):
    """Perform an action on a virtual device"""

    action: str = Field(..., min_length=1)
    data: Dict[str, Any] = {}


class DeviceSummary(BaseModel):
    """Device identity, lifecycle state and current status"""

    uid: str
    name: str
    type: str
    site: str
    room: str
    state: SimulatorState
    status: DeviceStatus
    details: Dict[str, Any] = {}
    activity: DeviceActivity = Field(default_factory=DeviceActivity)
    is_virtual: bool = True


class CreateDeviceResponse(BaseModel):
    device: DeviceSummary
    warnings: List[str] = []


class DeviceDetail(BaseModel):
    device: DeviceSummary
    config: DeviceConfig
    events: List[DeviceEvent] = []


class ActionResponse(BaseModel):
    success: bool
    action: str
    device: DeviceSummary
    result: Any = None


class RegistryStatistics(BaseModel):
    """Fleet-wide figures for the control surface"""

    total_devices: int = 0
    online_devices: int = 0
    devices_by_type: Dict[str, int] = {}
    devices_by_room: Dict[str, int] = {}
    active_failures: int = 0
    average_battery: float = 0.0
    average_signal: float = 0.0


class DeviceListResponse(BaseModel):
    devices: List[DeviceSummary] = []
    statistics: RegistryStatistics
    active_failures: List[str] = []


class StoredDevice(BaseModel):
    """Durable record written when a device is created with persistence"""

    uid: str
    name: str
    type: str
    site: str
    room: str
    battery: float
    signal: float
    config: Dict[str, Any] = {}
    is_virtual: bool = True
    updated_at: datetime = Field(default_factory=datetime.utcnow)
