"""
Virtual device configuration and runtime status models
"""

from datetime import datetime
from enum import Enum
from typing import Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class DeviceType(str, Enum):
    """Simulated device archetypes"""

    BUTTON = "button"
    WATCH = "watch"
    REPEATER = "repeater"
    GENERIC = "generic"


# Names accepted from the control surface and the CLI
DEVICE_TYPE_ALIASES = {
    "button": DeviceType.BUTTON,
    "smart_button": DeviceType.BUTTON,
    "watch": DeviceType.WATCH,
    "smart_watch": DeviceType.WATCH,
    "smartwatch": DeviceType.WATCH,
    "repeater": DeviceType.REPEATER,
    "generic": DeviceType.GENERIC,
}

# Short codes used in generated device ids
DEVICE_TYPE_CODES = {
    DeviceType.BUTTON: "BTN",
    DeviceType.WATCH: "WCH",
    DeviceType.REPEATER: "RPT",
    DeviceType.GENERIC: "GEN",
}


def parse_device_type(value) -> Optional[DeviceType]:
    """Resolve a device type name or alias, case-insensitive.

    Returns None for unknown names so callers can raise the error
    that fits their layer.
    """
    if isinstance(value, DeviceType):
        return value
    if not isinstance(value, str):
        return None
    return DEVICE_TYPE_ALIASES.get(value.strip().lower().replace("-", "_"))


class CrewStatus(str, Enum):
    """Availability of the crew member wearing a watch"""

    AVAILABLE = "available"
    BUSY = "busy"
    BREAK = "break"
    OFFLINE = "offline"


class Location(BaseModel):
    """Position on board"""

    latitude: float
    longitude: float
    deck: Optional[str] = None
    zone: Optional[str] = None
    accuracy: float = 5.0


class CrewAssignment(BaseModel):
    """Watch to crew member binding"""

    crew_id: str
    crew_name: Optional[str] = None
    status: CrewStatus = CrewStatus.AVAILABLE
    assigned_at: datetime = Field(default_factory=datetime.utcnow)


# ---------------------------------------------------------------------------
# Type-specific tuning
# ---------------------------------------------------------------------------


class ButtonTuning(BaseModel):
    """Call button behavior bounds (seconds)"""

    model_config = ConfigDict(frozen=True)

    kind: Literal["button"] = "button"
    press_interval_min: float = 5.0
    press_interval_max: float = 300.0
    double_press_threshold: float = 0.5
    long_press_threshold: float = 2.0
    voice_interval_min: float = 60.0
    voice_interval_max: float = 180.0
    voice_enabled: bool = False
    auto_press: bool = True

    @model_validator(mode="after")
    def _check_window(self):
        if self.press_interval_min > self.press_interval_max:
            raise ValueError("press_interval_min must not exceed press_interval_max")
        if self.voice_interval_min > self.voice_interval_max:
            raise ValueError("voice_interval_min must not exceed voice_interval_max")
        return self


class WatchTuning(BaseModel):
    """Crew watch behavior bounds (seconds)"""

    model_config = ConfigDict(frozen=True)

    kind: Literal["watch"] = "watch"
    heart_rate_min: int = 60
    heart_rate_max: int = 120
    step_interval: float = 5.0
    location_interval: float = 30.0
    auto_accept_delay: float = 3.0
    fall_sos_delay: float = 2.0
    assigned_crew_id: Optional[str] = None
    crew_name: Optional[str] = None
    initial_location: Optional[Location] = None


class RepeaterTuning(BaseModel):
    """Mesh repeater behavior bounds"""

    model_config = ConfigDict(frozen=True)

    kind: Literal["repeater"] = "repeater"
    mesh_update_interval: float = 120.0
    max_connected_devices: int = 10
    signal_range: float = 50.0  # meters
    initial_signal_strength: int = -50  # dBm
    firmware_version: str = "1.0.0"
    power_source: str = "AC"  # AC | UPS | battery


class GenericTuning(BaseModel):
    """Template selection for template-driven devices"""

    model_config = ConfigDict(frozen=True)

    kind: Literal["generic"] = "generic"
    template: str = "temperature_sensor"


DeviceTuning = Union[ButtonTuning, WatchTuning, RepeaterTuning, GenericTuning]


class DeviceConfig(BaseModel):
    """Immutable identity and placement of one simulated device"""

    model_config = ConfigDict(frozen=True)

    device_id: str
    device_type: DeviceType
    name: str
    site: str = "yacht-1"
    room: str = "simulation"
    initial_battery: float = Field(100.0, ge=0, le=100)
    initial_signal: float = Field(100.0, ge=0, le=100)
    heartbeat_interval: float = 30.0
    status_update_interval: float = 60.0
    battery_drain_rate: float = 0.1
    signal_fluctuation_range: float = 10.0
    tuning: DeviceTuning = Field(discriminator="kind")

    @model_validator(mode="before")
    @classmethod
    def _default_tuning(cls, data):
        """Fill in (or tag) the tuning block from device_type"""
        if not isinstance(data, dict):
            return data
        device_type = parse_device_type(data.get("device_type"))
        if device_type is None:
            return data
        data = dict(data)
        data["device_type"] = device_type
        tuning = data.get("tuning")
        if tuning is None:
            data["tuning"] = {"kind": device_type.value}
        elif isinstance(tuning, dict) and "kind" not in tuning:
            data["tuning"] = {**tuning, "kind": device_type.value}
        return data

    @model_validator(mode="after")
    def _tuning_matches_type(self):
        if self.tuning.kind != self.device_type.value:
            raise ValueError(
                f"tuning for '{self.tuning.kind}' does not match device type "
                f"'{self.device_type.value}'"
            )
        return self


class DeviceStatus(BaseModel):
    """Mutable runtime snapshot owned by one simulator"""

    model_config = ConfigDict(validate_assignment=True)

    online: bool = False
    active: bool = True
    battery: float = 100.0
    signal: float = 100.0
    last_seen: Optional[datetime] = None
    firmware_version: str = "1.0.0"
    location: Optional[Location] = None
    assignment: Optional[CrewAssignment] = None

    @field_validator("battery", "signal")
    @classmethod
    def _clamp_percentage(cls, value: float) -> float:
        return round(max(0.0, min(100.0, float(value))), 2)


class DeviceActivity(BaseModel):
    """Per-device traffic counters"""

    messages_sent: int = 0
    messages_received: int = 0
    errors: int = 0
    reconnections: int = 0
    uptime: float = 0.0  # seconds
