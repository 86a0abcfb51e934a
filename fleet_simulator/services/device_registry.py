"""
Virtual device registry

The authoritative map from device uid to live simulator for the control
surface. Mutations are serialized by an asyncio lock; reads take a snapshot
of the map and never block.
"""

import asyncio
import logging
import random
import re
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from ..config import Settings, settings as default_settings
from ..exceptions import ConfigurationError, DeviceNotFoundError, UnknownDeviceTypeError
from ..models.api import (
    CreateDeviceRequest,
    CreateDeviceResponse,
    DeviceDetail,
    RegistryStatistics,
    StoredDevice,
)
from ..models.device import (
    DEVICE_TYPE_CODES,
    ButtonTuning,
    DeviceType,
    GenericTuning,
    RepeaterTuning,
    WatchTuning,
    parse_device_type,
)
from ..models.events import DeviceEvent
from ..simulators import BaseDeviceSimulator, build_device_config, create_simulator
from ..simulators.templates import TemplateRegistry
from .device_store import DeviceStore
from .failure_simulator import FailureScenario, FailureSimulator
from .metrics_collector import MetricsCollector
from .transport import Topics, Transport

logger = logging.getLogger(__name__)

TUNING_MODELS = {
    DeviceType.BUTTON: ButtonTuning,
    DeviceType.WATCH: WatchTuning,
    DeviceType.REPEATER: RepeaterTuning,
    DeviceType.GENERIC: GenericTuning,
}

# DeviceConfig fields that may also be given through additional_config
CONFIG_FIELDS = {
    "heartbeat_interval",
    "status_update_interval",
    "battery_drain_rate",
    "signal_fluctuation_range",
}

_CAMEL = re.compile(r"(?<!^)(?=[A-Z])")

YACHT_ROOMS = [
    "Master Cabin", "VIP Cabin", "Guest Cabin 1", "Guest Cabin 2",
    "Main Salon", "Upper Salon", "Bridge", "Galley",
    "Crew Mess", "Engine Room", "Beach Club", "Sun Deck",
]

YACHT_CREW = [
    "Captain", "Chief Steward", "Steward 1", "Steward 2", "Engineer", "Deckhand",
]

YACHT_REPEATERS = ["Main Deck", "Upper Deck", "Sun Deck", "Engine Room"]

HOME_PORT = {"latitude": 43.7, "longitude": 7.3}

TEST_SCENARIOS = ("basic_setup", "full_yacht", "stress_test")


def _snake(name: str) -> str:
    return _CAMEL.sub("_", name).lower()


def tuning_overrides(device_type: DeviceType, additional_config: Dict[str, Any]) -> Dict[str, Any]:
    """Map control-surface extras (camelCase allowed) onto DeviceConfig overrides"""
    tuning_fields = set(TUNING_MODELS[device_type].model_fields) - {"kind"}
    overrides: Dict[str, Any] = {}
    tuning: Dict[str, Any] = {}
    for key, value in (additional_config or {}).items():
        name = _snake(key)
        if name == "initial_location" and isinstance(value, dict):
            value = {
                "latitude": value.get("latitude", value.get("lat")),
                "longitude": value.get("longitude", value.get("lng")),
                **{k: v for k, v in value.items() if k in ("deck", "zone", "accuracy")},
            }
        elif name == "assigned_crew_id" and value is not None:
            value = str(value)

        if name in tuning_fields:
            tuning[name] = value
        elif name in CONFIG_FIELDS:
            overrides[name] = value
        else:
            logger.debug(f"Ignoring unknown {device_type.value} option '{key}'")
    if tuning:
        overrides["tuning"] = tuning
    return overrides


class DeviceRegistry:
    """Creates, tracks and removes control-surface virtual devices"""

    def __init__(
        self,
        transport: Transport,
        templates: Optional[TemplateRegistry] = None,
        failure_simulator: Optional[FailureSimulator] = None,
        store: Optional[DeviceStore] = None,
        settings: Settings = default_settings,
        topics: Optional[Topics] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.transport = transport
        self.templates = templates
        self.failures = failure_simulator or FailureSimulator()
        self.store = store
        self.metrics = metrics
        self.settings = settings
        self.topics = topics or Topics(settings.topic_base)
        self._devices: Dict[str, BaseDeviceSimulator] = {}
        self._lock = asyncio.Lock()
        self._sequence = 0

        if metrics is not None:
            metrics.add_source(self.refresh_metrics)
            metrics.watch_transport(transport)

    def __len__(self) -> int:
        return len(self._devices)

    def __contains__(self, uid: str) -> bool:
        return uid in self._devices

    def generate_uid(self, device_type: DeviceType) -> str:
        """``OB-2026-BTN-4821001-V`` style uid"""
        self._sequence += 1
        year = datetime.utcnow().year
        return (
            f"OB-{year}-{DEVICE_TYPE_CODES[device_type]}-"
            f"{random.randint(1000, 9999)}{self._sequence:03d}-V"
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def create_device(self, request: CreateDeviceRequest) -> CreateDeviceResponse:
        """Build, start and track a device.

        A device whose start fails is still tracked, in the ERROR state,
        and the failure is reported in ``warnings``.

        Raises:
            ConfigurationError: Unknown type/template, invalid options or
                a uid that is already in use. Nothing is created.
        """
        device_type = parse_device_type(request.type)
        if device_type is None:
            raise UnknownDeviceTypeError(request.type)

        overrides = tuning_overrides(device_type, request.additional_config)
        overrides["room"] = request.room
        if request.site:
            overrides["site"] = request.site
        if request.initial_battery is not None:
            overrides["initial_battery"] = request.initial_battery
        if request.initial_signal is not None:
            overrides["initial_signal"] = request.initial_signal

        warnings: List[str] = []
        async with self._lock:
            uid = request.uid or self.generate_uid(device_type)
            if uid in self._devices:
                raise ConfigurationError(f"Device {uid} already exists")

            config = build_device_config(
                device_type,
                uid,
                name=request.name,
                overrides=overrides,
                settings=self.settings,
                templates=self.templates,
            )
            device = create_simulator(
                config,
                self.transport,
                templates=self.templates,
                topics=self.topics,
                event_log_size=self.settings.event_log_size,
            )
            try:
                await device.start()
            except Exception as e:
                logger.error(f"Virtual device {uid} failed to start: {e}")
                warnings.append(f"Device {uid} was created but failed to start: {e}")
                if self.metrics is not None:
                    self.metrics.increment_errors("devices")
            self._devices[uid] = device
            self.failures.register_device(device)

        if request.save_to_database:
            saved = await self._persist(device)
            if not saved:
                warnings.append(f"Device {uid} is active but could not be saved to the device store")

        logger.info(f"Created virtual {device_type.value} {uid} in {config.room}")
        return CreateDeviceResponse(device=device.summary(), warnings=warnings)

    async def _persist(self, device: BaseDeviceSimulator) -> bool:
        if self.store is None:
            logger.warning(f"No device store configured, {device.device_id} not saved")
            return False
        try:
            return await self.store.upsert(
                StoredDevice(
                    uid=device.device_id,
                    name=device.config.name,
                    type=device.config.device_type.value,
                    site=device.config.site,
                    room=device.config.room,
                    battery=device.status.battery,
                    signal=device.status.signal,
                    config=device.config.model_dump(mode="json"),
                )
            )
        except Exception as e:
            logger.error(f"Failed to persist {device.device_id}: {e}")
            return False

    def get_device(self, uid: str) -> BaseDeviceSimulator:
        """
        Raises:
            DeviceNotFoundError: If no device has that uid
        """
        device = self._devices.get(uid)
        if device is None:
            raise DeviceNotFoundError(uid)
        return device

    def list_devices(self) -> List[BaseDeviceSimulator]:
        return list(self._devices.values())

    def devices_by_type(self, device_type: Union[DeviceType, str]) -> List[BaseDeviceSimulator]:
        resolved = parse_device_type(device_type)
        return [d for d in self.list_devices() if d.config.device_type == resolved]

    def devices_by_room(self, room: str) -> List[BaseDeviceSimulator]:
        return [d for d in self.list_devices() if d.config.room == room]

    async def remove_device(self, uid: str) -> bool:
        async with self._lock:
            device = self._devices.pop(uid, None)
            if device is None:
                return False
            await self.failures.unregister_device(uid)
            try:
                await device.stop()
            except Exception as e:
                logger.error(f"Error stopping {uid} during removal: {e}")
        if self.store is not None:
            await self.store.remove(uid)
        logger.info(f"Removed virtual device {uid}")
        return True

    async def remove_all(self) -> int:
        removed = 0
        for uid in list(self._devices):
            if await self.remove_device(uid):
                removed += 1
        return removed

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    def device_detail(self, uid: str, limit: int = 50) -> DeviceDetail:
        device = self.get_device(uid)
        return DeviceDetail(
            device=device.summary(),
            config=device.config,
            events=device.recent_events(limit),
        )

    def export_events(self, uid: str, limit: int = 50) -> List[DeviceEvent]:
        return self.get_device(uid).recent_events(limit)

    def export_all_events(self, limit: int = 50) -> Dict[str, List[DeviceEvent]]:
        return {d.device_id: d.recent_events(limit) for d in self.list_devices()}

    def get_statistics(self) -> RegistryStatistics:
        devices = self.list_devices()
        by_type: Dict[str, int] = {}
        by_room: Dict[str, int] = {}
        for device in devices:
            by_type[device.config.device_type.value] = by_type.get(device.config.device_type.value, 0) + 1
            by_room[device.config.room] = by_room.get(device.config.room, 0) + 1
        count = len(devices)
        return RegistryStatistics(
            total_devices=count,
            online_devices=sum(1 for d in devices if d.status.online),
            devices_by_type=by_type,
            devices_by_room=by_room,
            active_failures=len(self.failures.active_failures()),
            average_battery=sum(d.status.battery for d in devices) / count if count else 0.0,
            average_signal=sum(d.status.signal for d in devices) / count if count else 0.0,
        )

    def get_active_failures(self) -> List[str]:
        return self.failures.active_failures()

    def refresh_metrics(self):
        """Push control-surface device counts into the metrics collector"""
        if self.metrics is None:
            return
        devices = self.list_devices()
        connected = sum(1 for d in devices if d.is_running and d.status.online)
        self.metrics.update_device_stats(
            source="registry",
            active=sum(1 for d in devices if d.is_running),
            connected=connected,
            disconnected=len(devices) - connected,
        )

    # ------------------------------------------------------------------
    # Actions
    # ------------------------------------------------------------------

    async def perform_action(self, uid: str, action: str, data: Optional[Dict[str, Any]] = None) -> Any:
        """Run a device command.

        Raises:
            DeviceNotFoundError: Unknown uid
            CommandError: Unsupported action or missing/invalid parameters
        """
        device = self.get_device(uid)
        result = await device.execute(action, data or {})
        logger.info(f"Action '{action}' performed on {uid}")
        return result

    def execute_failure_scenario(self, scenario: Union[FailureScenario, str]) -> List[str]:
        return self.failures.execute_scenario(scenario)

    async def stop_all_failures(self) -> int:
        return await self.failures.stop_all_failures()

    async def stop_device_failures(self, uid: str) -> int:
        self.get_device(uid)
        return await self.failures.stop_device_failures(uid)

    # ------------------------------------------------------------------
    # Test scenarios
    # ------------------------------------------------------------------

    async def create_test_scenario(self, name: str) -> List[str]:
        """Populate the registry with a canned device set; returns the new uids"""
        builders = {
            "basic_setup": self._basic_setup,
            "full_yacht": self._full_yacht,
            "stress_test": self._stress_test,
        }
        builder = builders.get(name)
        if builder is None:
            raise ConfigurationError(
                f"Unknown test scenario: {name} (available: {', '.join(TEST_SCENARIOS)})"
            )
        requests = builder()
        uids = []
        for request in requests:
            response = await self.create_device(request)
            uids.append(response.device.uid)
        logger.info(f"Test scenario '{name}' created {len(uids)} devices")
        return uids

    @staticmethod
    def _basic_setup() -> List[CreateDeviceRequest]:
        return [
            CreateDeviceRequest(type="BUTTON", name="Master Cabin Button", room="Master Cabin", save_to_database=True),
            CreateDeviceRequest(type="BUTTON", name="Guest Cabin Button", room="Guest Cabin", save_to_database=True),
            CreateDeviceRequest(
                type="SMART_WATCH",
                name="Captain Watch",
                room="Bridge",
                additional_config={"assignedCrewId": 1, "initialLocation": HOME_PORT},
                save_to_database=True,
            ),
            CreateDeviceRequest(
                type="SMART_WATCH",
                name="Steward Watch",
                room="Crew Quarters",
                additional_config={"assignedCrewId": 2, "initialLocation": HOME_PORT},
                save_to_database=True,
            ),
            CreateDeviceRequest(
                type="REPEATER",
                name="Main Deck Repeater",
                room="Main Deck",
                additional_config={"signalRange": 150},
                save_to_database=True,
            ),
        ]

    @staticmethod
    def _full_yacht() -> List[CreateDeviceRequest]:
        requests = [
            CreateDeviceRequest(type="BUTTON", name=f"{room} Button", room=room, save_to_database=True)
            for room in YACHT_ROOMS
        ]
        requests += [
            CreateDeviceRequest(
                type="SMART_WATCH",
                name=f"{position} Watch",
                room="Crew Quarters",
                additional_config={"assignedCrewId": i, "crewName": position, "initialLocation": HOME_PORT},
                save_to_database=True,
            )
            for i, position in enumerate(YACHT_CREW, start=1)
        ]
        requests += [
            CreateDeviceRequest(
                type="REPEATER",
                name=f"{location} Repeater",
                room=location,
                additional_config={"signalRange": 200},
                save_to_database=True,
            )
            for location in YACHT_REPEATERS
        ]
        return requests

    @staticmethod
    def _stress_test() -> List[CreateDeviceRequest]:
        requests = [
            CreateDeviceRequest(
                type="BUTTON",
                name=f"Test Button {i + 1}",
                room=f"Test Room {i // 5 + 1}",
                initial_battery=random.uniform(0, 100),
                initial_signal=random.uniform(0, 100),
                save_to_database=False,
            )
            for i in range(50)
        ]
        requests += [
            CreateDeviceRequest(
                type="SMART_WATCH",
                name=f"Test Watch {i + 1}",
                room="Test Area",
                additional_config={
                    "assignedCrewId": i + 1,
                    "initialLocation": {
                        "latitude": HOME_PORT["latitude"] + random.uniform(-0.005, 0.005),
                        "longitude": HOME_PORT["longitude"] + random.uniform(-0.005, 0.005),
                    },
                },
                save_to_database=False,
            )
            for i in range(20)
        ]
        requests += [
            CreateDeviceRequest(
                type="REPEATER",
                name=f"Test Repeater {i + 1}",
                room=f"Zone {i + 1}",
                additional_config={"signalRange": random.uniform(100, 300)},
                save_to_database=False,
            )
            for i in range(10)
        ]
        return requests
