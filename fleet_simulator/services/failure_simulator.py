"""
Failure injection for virtual devices

Runs fault scenarios (battery drain, signal loss, outages, crashes, ...)
against registered simulators. Every running failure is one named task on
the simulator's own scheduler, keyed ``{device_id}-{failure_type}``, so it
can be listed and cancelled individually or per device.
"""

import asyncio
import logging
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field

from ..exceptions import ConfigurationError
from ..models.device import DeviceType
from ..models.events import BatteryPayload, EventPriority, FailurePayload
from .scheduler import DeviceScheduler

logger = logging.getLogger(__name__)


class FailureType(str, Enum):
    BATTERY_DRAIN = "battery_drain"
    SIGNAL_LOSS = "signal_loss"
    DEVICE_OFFLINE = "device_offline"
    INTERMITTENT_CONNECTION = "intermittent_connection"
    BUTTON_MALFUNCTION = "button_malfunction"
    NETWORK_CONGESTION = "network_congestion"
    FIRMWARE_CRASH = "firmware_crash"
    MEMORY_LEAK = "memory_leak"


class FailureSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class FailureScenario(BaseModel):
    """A fault to inject into one or more devices (durations in seconds)"""

    id: str
    name: str
    description: str = ""
    failure_type: FailureType
    duration: Optional[float] = Field(None, gt=0)
    severity: Optional[FailureSeverity] = None
    # None or ["all"] targets every registered device
    target_devices: Optional[List[str]] = None
    parameters: Dict[str, Any] = {}


class ActiveFailure(BaseModel):
    key: str
    device_id: str
    failure_type: FailureType
    scenario_id: str
    started_at: datetime = Field(default_factory=datetime.utcnow)


# Failures that only make sense for one device type
FAILURE_DEVICE_TYPES = {
    FailureType.BUTTON_MALFUNCTION: DeviceType.BUTTON,
    FailureType.NETWORK_CONGESTION: DeviceType.REPEATER,
}

SIGNAL_LOSS_LEVELS = {
    FailureSeverity.LOW: 30.0,
    FailureSeverity.MEDIUM: 15.0,
    FailureSeverity.HIGH: 5.0,
}

SIGNAL_LOSS_STEP = 5.0
SIGNAL_LOSS_TICK = 0.5
REPEATER_DEFAULT_DBM = -50

PREDEFINED_SCENARIOS: Dict[str, FailureScenario] = {
    s.id: s
    for s in [
        FailureScenario(
            id="low_battery_warning",
            name="Low Battery Warning",
            description="Simulates devices reaching low battery levels",
            failure_type=FailureType.BATTERY_DRAIN,
            parameters={"target_level": 15, "drain_rate": 2},
        ),
        FailureScenario(
            id="poor_signal_area",
            name="Poor Signal Area",
            description="Simulates devices in areas with poor signal coverage",
            failure_type=FailureType.SIGNAL_LOSS,
            severity=FailureSeverity.MEDIUM,
            duration=60,
        ),
        FailureScenario(
            id="network_outage",
            name="Network Outage",
            description="Simulates complete network failure",
            failure_type=FailureType.DEVICE_OFFLINE,
            duration=120,
            target_devices=["all"],
        ),
        FailureScenario(
            id="unstable_connection",
            name="Unstable Connection",
            description="Simulates intermittent connectivity issues",
            failure_type=FailureType.INTERMITTENT_CONNECTION,
            duration=300,
            parameters={"interval": 10, "offline_duration": 3},
        ),
        FailureScenario(
            id="button_stuck",
            name="Stuck Button",
            description="Simulates a button that is physically stuck",
            failure_type=FailureType.BUTTON_MALFUNCTION,
            duration=10,
            parameters={"type": "stuck"},
        ),
        FailureScenario(
            id="repeater_congestion",
            name="Repeater Congestion",
            description="Simulates high traffic through repeater",
            failure_type=FailureType.NETWORK_CONGESTION,
            duration=60,
            parameters={"message_count": 500},
        ),
        FailureScenario(
            id="device_crash",
            name="Device Firmware Crash",
            description="Simulates a device firmware crash and reboot",
            failure_type=FailureType.FIRMWARE_CRASH,
            severity=FailureSeverity.HIGH,
            parameters={"reboot_time": 45},
        ),
        FailureScenario(
            id="memory_leak_critical",
            name="Critical Memory Leak",
            description="Simulates a memory leak leading to device crash",
            failure_type=FailureType.MEMORY_LEAK,
            parameters={"leak_rate": 2},
        ),
    ]
}


def get_scenario(scenario_id: str) -> FailureScenario:
    """Look up a predefined scenario

    Raises:
        ConfigurationError: If no scenario has that id
    """
    scenario = PREDEFINED_SCENARIOS.get(scenario_id)
    if scenario is None:
        raise ConfigurationError(
            f"Unknown failure scenario: {scenario_id} "
            f"(available: {', '.join(sorted(PREDEFINED_SCENARIOS))})"
        )
    return scenario


class FailureSimulator:
    """Injects failure scenarios into registered simulators"""

    def __init__(self):
        self._devices: Dict[str, Any] = {}
        self._active: Dict[str, ActiveFailure] = {}
        self.scheduler = DeviceScheduler("failures")

    # ------------------------------------------------------------------
    # Device registration
    # ------------------------------------------------------------------

    def register_device(self, device):
        self._devices[device.device_id] = device

    async def unregister_device(self, device_id: str):
        """Forget a device and cancel its running failures"""
        await self.stop_device_failures(device_id)
        self._devices.pop(device_id, None)

    @property
    def device_ids(self) -> List[str]:
        return list(self._devices)

    # ------------------------------------------------------------------
    # Scenario execution
    # ------------------------------------------------------------------

    def _targets(self, target_devices: Optional[List[str]]) -> list:
        if not target_devices or "all" in target_devices:
            return list(self._devices.values())
        return [self._devices[uid] for uid in target_devices if uid in self._devices]

    def execute_scenario(self, scenario: Union[FailureScenario, str]) -> List[str]:
        """Start a scenario on its target devices.

        Returns the failure keys that were started. Type-specific failures
        are skipped for devices of other types.
        """
        if isinstance(scenario, str):
            scenario = get_scenario(scenario)

        started = []
        for device in self._targets(scenario.target_devices):
            key = self.simulate_failure(device, scenario)
            if key:
                started.append(key)
        logger.info(
            f"Failure scenario '{scenario.id}' started on {len(started)} device(s)"
        )
        return started

    def simulate_failure(self, device, scenario: FailureScenario) -> Optional[str]:
        """Run one failure on one device, replacing a running one of the same type"""
        required = FAILURE_DEVICE_TYPES.get(scenario.failure_type)
        if required is not None and device.config.device_type != required:
            logger.debug(
                f"Skipping {scenario.failure_type.value} for {device.device_id}: "
                f"{device.config.device_type.value} device"
            )
            return None

        key = f"{device.device_id}-{scenario.failure_type.value}"
        runner = getattr(self, f"_run_{scenario.failure_type.value}")
        entry = ActiveFailure(
            key=key,
            device_id=device.device_id,
            failure_type=scenario.failure_type,
            scenario_id=scenario.id,
        )
        self._active[key] = entry
        self.scheduler.spawn(key, self._supervise(entry, runner(device, scenario)))
        logger.info(f"Injected {scenario.failure_type.value} into {device.device_id}")
        return key

    async def _supervise(self, entry: ActiveFailure, coro):
        try:
            await coro
        finally:
            if self._active.get(entry.key) is entry:
                del self._active[entry.key]

    # ------------------------------------------------------------------
    # Stopping
    # ------------------------------------------------------------------

    async def stop_failure(self, key: str) -> bool:
        cancelled = self.scheduler.cancel(key)
        self._active.pop(key, None)
        await self.scheduler.wait_cancelled()
        return cancelled

    async def stop_device_failures(self, device_id: str) -> int:
        keys = [k for k, f in self._active.items() if f.device_id == device_id]
        for key in keys:
            self.scheduler.cancel(key)
            self._active.pop(key, None)
        await self.scheduler.wait_cancelled()
        return len(keys)

    async def stop_all_failures(self) -> int:
        count = len(self._active)
        self.scheduler.cancel_all()
        self._active.clear()
        await self.scheduler.wait_cancelled()
        if count:
            logger.info(f"Stopped {count} active failure(s)")
        return count

    def active_failures(self) -> List[str]:
        return sorted(self._active)

    def active_failure_details(self) -> List[ActiveFailure]:
        return [self._active[k] for k in sorted(self._active)]

    def device_failures(self, device_id: str) -> List[str]:
        return sorted(k for k, f in self._active.items() if f.device_id == device_id)

    # ------------------------------------------------------------------
    # Failure behaviors
    # ------------------------------------------------------------------

    async def _run_battery_drain(self, device, scenario: FailureScenario):
        params = scenario.parameters
        target = float(params.get("target_level", 0))
        rate = float(params.get("drain_rate", 1))

        if params.get("instant"):
            device.status.battery = target
            await device.emit(BatteryPayload(level=device.status.battery, reason="failure_simulation"))
            return

        while device.status.battery > target:
            await asyncio.sleep(1.0)
            device.status.battery = max(target, device.status.battery - rate)
            await device.emit(BatteryPayload(level=device.status.battery, reason="failure_simulation"))

    async def _run_signal_loss(self, device, scenario: FailureScenario):
        target = SIGNAL_LOSS_LEVELS[scenario.severity or FailureSeverity.MEDIUM]
        await device.emit(
            FailurePayload(
                failure_type=FailureType.SIGNAL_LOSS.value,
                phase="start",
                detail={"target_signal": target},
            ),
            priority=EventPriority.HIGH,
        )
        # step the requested level; repeaters round the reported one to whole dBm
        level = device.status.signal
        while level > target:
            await asyncio.sleep(SIGNAL_LOSS_TICK)
            level = max(target, level - SIGNAL_LOSS_STEP)
            await device.set_signal(level, reason="signal_loss")
        if not scenario.duration:
            return
        await asyncio.sleep(scenario.duration)
        # restored only when the failure runs its course, not on cancel
        if device.config.device_type == DeviceType.REPEATER:
            await device.update_signal_strength(REPEATER_DEFAULT_DBM, reason="signal_restored")
        else:
            await device.set_signal(100.0, reason="signal_restored")

    async def _run_device_offline(self, device, scenario: FailureScenario):
        await device.go_offline(scenario.duration, reason="failure_simulation")
        if scenario.duration:
            await asyncio.sleep(scenario.duration)

    async def _run_intermittent_connection(self, device, scenario: FailureScenario):
        interval = float(scenario.parameters.get("interval", 5))
        offline_duration = float(scenario.parameters.get("offline_duration", 2))
        loop = asyncio.get_running_loop()
        deadline = loop.time() + scenario.duration if scenario.duration else None

        while deadline is None or loop.time() + interval <= deadline:
            await asyncio.sleep(interval)
            await device.go_offline(offline_duration, reason="intermittent_connection")

    async def _run_button_malfunction(self, device, scenario: FailureScenario):
        malfunction_type = scenario.parameters.get("type", "stuck")
        await device.malfunction(malfunction_type, scenario.duration)
        await asyncio.sleep(scenario.duration or (5.0 if malfunction_type == "stuck" else 30.0))

    async def _run_network_congestion(self, device, scenario: FailureScenario):
        duration = scenario.duration or 30.0
        await device.simulate_congestion(
            int(scenario.parameters.get("message_count", 100)), duration
        )
        await asyncio.sleep(duration)

    async def _run_firmware_crash(self, device, scenario: FailureScenario):
        await self._crash(device, scenario, reason=scenario.parameters.get("crash_reason"))

    async def _crash(self, device, scenario: FailureScenario, reason: Optional[str] = None):
        reboot_time = float(scenario.parameters.get("reboot_time", 30))
        severity = (scenario.severity or FailureSeverity.HIGH).value
        await device.emit(
            FailurePayload(
                failure_type=FailureType.FIRMWARE_CRASH.value,
                phase="crash",
                detail={"severity": severity, "reason": reason},
            ),
            priority=EventPriority.CRITICAL,
        )
        await device.go_offline(reason="firmware_crash")
        await asyncio.sleep(reboot_time)
        await device.go_online()
        await device.emit(
            FailurePayload(
                failure_type=FailureType.FIRMWARE_CRASH.value,
                phase="recovered",
                detail={"downtime": reboot_time},
            )
        )

    async def _run_memory_leak(self, device, scenario: FailureScenario):
        usage = float(scenario.parameters.get("initial_usage", 50))
        leak_rate = float(scenario.parameters.get("leak_rate", 1))
        while usage < 100:
            await asyncio.sleep(1.0)
            usage = min(100.0, usage + leak_rate)
            await device.emit(
                FailurePayload(
                    failure_type=FailureType.MEMORY_LEAK.value,
                    phase="memory_usage",
                    detail={"usage": usage},
                ),
                priority=EventPriority.HIGH if usage >= 90 else EventPriority.NORMAL,
            )
        await self._crash(device, scenario, reason="out_of_memory")
