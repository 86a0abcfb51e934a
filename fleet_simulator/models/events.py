"""
Device event models

Every simulator emits events from a closed set of kinds. Each kind carries
its own payload model; anything outside the typed fields goes into the
event's ``metadata`` map.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from .device import CrewStatus, Location


class EventPriority(str, Enum):
    """Event urgency"""

    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    CRITICAL = "critical"


class PressType(str, Enum):
    """Call button press patterns"""

    SINGLE = "single"
    DOUBLE = "double"
    LONG = "long"
    EMERGENCY = "emergency"


class RequestAction(str, Enum):
    """Watch service-request workflow steps"""

    RECEIVED = "received"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    COMPLETED = "completed"


class _Payload(BaseModel):
    model_config = ConfigDict(frozen=True)


class PressPayload(_Payload):
    kind: Literal["press"] = "press"
    press_type: PressType
    duration: float
    sequence: int
    voice_message: Optional[str] = None


class EmergencyPayload(_Payload):
    kind: Literal["emergency"] = "emergency"
    alert_type: str = "button_emergency"
    urgency: EventPriority = EventPriority.CRITICAL
    message: Optional[str] = None


class VoiceReadyPayload(_Payload):
    kind: Literal["voice_ready"] = "voice_ready"
    status: str = "listening"
    duration: float = 30.0
    quality: int


class AssignmentPayload(_Payload):
    kind: Literal["assignment"] = "assignment"
    crew_id: Optional[str] = None
    crew_name: Optional[str] = None
    crew_status: CrewStatus = CrewStatus.AVAILABLE


class RequestPayload(_Payload):
    kind: Literal["request"] = "request"
    request_id: str
    action: RequestAction
    location: Optional[str] = None
    reason: Optional[str] = None
    notes: Optional[str] = None


class LocationPayload(_Payload):
    kind: Literal["location"] = "location"
    location: Location
    speed: float = 0.0  # m/s
    heading: float = 0.0  # degrees


class HealthPayload(_Payload):
    kind: Literal["health"] = "health"
    heart_rate: int
    steps: int
    distance: float
    calories: float
    stress_level: int


class SosPayload(_Payload):
    kind: Literal["sos"] = "sos"
    message: Optional[str] = None
    location: Optional[Location] = None
    reason: str = "manual"


class FallPayload(_Payload):
    kind: Literal["fall"] = "fall"
    impact: float
    location: Optional[Location] = None


class RelayPayload(_Payload):
    kind: Literal["relay"] = "relay"
    from_device: str
    to_device: Optional[str] = None
    rssi: int
    hop_count: int
    delay: float
    message: Dict[str, Any] = {}


class CongestionPayload(_Payload):
    kind: Literal["congestion"] = "congestion"
    phase: Literal["start", "end"]
    message_count: int
    duration: float
    sent: int = 0


class FirmwareUpdatePayload(_Payload):
    kind: Literal["firmware_update"] = "firmware_update"
    phase: Literal["downloading", "installing", "rebooting", "completed"]
    progress: int
    from_version: str
    to_version: str


class MeshPayload(_Payload):
    kind: Literal["mesh"] = "mesh"
    mesh_id: str
    role: str
    hop_count: int
    peers: List[str] = []


class SignalPayload(_Payload):
    kind: Literal["signal"] = "signal"
    signal: float
    signal_strength: Optional[int] = None  # dBm, repeaters only
    quality: Optional[str] = None
    reason: str = "update"


class ConnectivityPayload(_Payload):
    kind: Literal["connectivity"] = "connectivity"
    online: bool
    reason: str
    duration: Optional[float] = None


class BatteryPayload(_Payload):
    kind: Literal["battery"] = "battery"
    level: float
    charging: bool = False
    reason: str = "drain"


class FailurePayload(_Payload):
    kind: Literal["failure"] = "failure"
    failure_type: str
    phase: str
    detail: Dict[str, Any] = {}


class CustomPayload(_Payload):
    kind: Literal["custom"] = "custom"
    name: str
    sequence: int = 0
    data: Dict[str, Any] = {}


class CommandPayload(_Payload):
    kind: Literal["command"] = "command"
    command: str
    params: Dict[str, Any] = {}


EventPayload = Union[
    PressPayload,
    EmergencyPayload,
    VoiceReadyPayload,
    AssignmentPayload,
    RequestPayload,
    LocationPayload,
    HealthPayload,
    SosPayload,
    FallPayload,
    RelayPayload,
    CongestionPayload,
    FirmwareUpdatePayload,
    MeshPayload,
    SignalPayload,
    ConnectivityPayload,
    BatteryPayload,
    FailurePayload,
    CustomPayload,
    CommandPayload,
]


class DeviceEvent(BaseModel):
    """Immutable record of something a simulator did"""

    model_config = ConfigDict(frozen=True)

    device_id: str
    priority: EventPriority = EventPriority.NORMAL
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    payload: EventPayload = Field(discriminator="kind")
    metadata: Dict[str, Any] = {}

    @property
    def kind(self) -> str:
        return self.payload.kind

    def to_message(self) -> Dict[str, Any]:
        """Flatten into the JSON body published on the transport"""
        message = self.payload.model_dump(mode="json")
        message.update(
            {
                "device_id": self.device_id,
                "event": self.payload.kind,
                "priority": self.priority.value,
                "timestamp": self.timestamp.isoformat(),
            }
        )
        if self.metadata:
            message["metadata"] = self.metadata
        return message
