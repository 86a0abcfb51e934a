"""
Mesh repeater simulator
"""

import asyncio
import logging
import math
import random
import zlib
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from ..exceptions import CommandError
from ..models.device import RepeaterTuning
from ..models.events import (
    CongestionPayload,
    EventPriority,
    FirmwareUpdatePayload,
    MeshPayload,
    RelayPayload,
    SignalPayload,
)
from .base import BaseDeviceSimulator, require_number

logger = logging.getLogger(__name__)

MIN_DBM = -100
MAX_DBM = -30
INTERFERENCE_DROP = {"low": 10, "medium": 25, "high": 40}
POWER_SOURCES = ("AC", "UPS", "battery")
CONGESTION_TICK = 0.1
FIRMWARE_REBOOT_TIME = 5.0


def signal_quality(dbm: int) -> str:
    """Human label for a signal strength"""
    if dbm >= -50:
        return "excellent"
    if dbm >= -60:
        return "good"
    if dbm >= -70:
        return "fair"
    if dbm >= -80:
        return "poor"
    return "very_poor"


def dbm_to_percent(dbm: int) -> float:
    return (dbm - MIN_DBM) / (MAX_DBM - MIN_DBM) * 100


def rssi_for(device_id: str) -> int:
    """Stable pseudo RSSI for a source device"""
    return -40 - zlib.crc32(device_id.encode("utf-8")) % 50


class RepeaterSimulator(BaseDeviceSimulator):
    """Relays traffic for child devices and takes part in a mesh"""

    device_type = "repeater"

    COMMANDS = {
        "relay": "relay_message",
        "relay_message": "relay_message",
        "register_device": "register_device",
        "unregister_device": "unregister_device",
        "update_signal": "update_signal_strength",
        "update_signal_strength": "update_signal_strength",
        "interference": "simulate_interference",
        "simulate_interference": "simulate_interference",
        "congestion": "simulate_congestion",
        "simulate_congestion": "simulate_congestion",
        "firmware_update": "simulate_firmware_update",
        "simulate_firmware_update": "simulate_firmware_update",
        "form_mesh": "form_mesh",
        "mesh": "form_mesh",
        "cleanup": "cleanup_stale_connections",
        "cleanup_stale_connections": "cleanup_stale_connections",
        "set_power_source": "set_power_source",
        "maintenance": "set_maintenance_mode",
        "scan": "scan_devices",
    }

    def __init__(self, config, transport, topics=None, event_log_size: int = 100):
        super().__init__(config, transport, topics, event_log_size)
        self.tuning: RepeaterTuning = config.tuning
        self.connected_devices: Dict[str, datetime] = {}
        self.signal_strength = self.tuning.initial_signal_strength
        self.status.signal = dbm_to_percent(self._clamp_dbm(self.signal_strength))
        self.status.firmware_version = self.tuning.firmware_version
        self.power_source = self.tuning.power_source
        self.maintenance_mode = False
        self.updating_firmware = False
        self.mesh_id: Optional[str] = None
        self.mesh_role = "standalone"
        self.hop_count = 0
        self.mesh_peers: List[str] = []
        self.relayed_count = 0

    def schedule_behaviors(self):
        self.scheduler.call_every(
            "mesh_announce", self.tuning.mesh_update_interval, self._announce
        )

    def extra_status(self):
        return {
            "signal_strength": self.signal_strength,
            "signal_quality": signal_quality(self.signal_strength),
            "connected_devices": sorted(self.connected_devices),
            "mesh_id": self.mesh_id,
            "mesh_role": self.mesh_role,
            "hop_count": self.hop_count,
            "power_source": self.power_source,
            "maintenance_mode": self.maintenance_mode,
            "updating_firmware": self.updating_firmware,
            "relayed_count": self.relayed_count,
        }

    async def _announce(self):
        await self._publish(
            self.device_topic("mesh/announce"),
            {
                "device_id": self.device_id,
                "mesh_id": self.mesh_id,
                "role": self.mesh_role,
                "hop_count": self.hop_count,
                "connected_devices": len(self.connected_devices),
                "signal_strength": self.signal_strength,
                "timestamp": datetime.utcnow().isoformat(),
            },
            qos=0,
        )

    # ------------------------------------------------------------------
    # Relaying
    # ------------------------------------------------------------------

    async def relay_message(
        self,
        from_device: str,
        message: Optional[Dict[str, Any]] = None,
        to_device: Optional[str] = None,
    ):
        """Forward a payload on the relay topic after a 50-150 ms hop delay"""
        if self.updating_firmware or self.maintenance_mode:
            logger.warning(f"{self.device_id} not relaying for {from_device}: repeater busy")
            return None
        delay = random.uniform(0.05, 0.15)
        await asyncio.sleep(delay)
        if from_device in self.connected_devices:
            self.connected_devices[from_device] = datetime.utcnow()
        self.relayed_count += 1
        message = dict(message or {})
        hop_count = int(message.pop("hop_count", 0)) + 1
        return await self.emit(
            RelayPayload(
                from_device=from_device,
                to_device=to_device,
                rssi=rssi_for(from_device),
                hop_count=hop_count,
                delay=round(delay, 3),
                message=message,
            ),
            topics=(self.topics.relay(self.device_id),),
        )

    async def register_device(self, device_id: str) -> bool:
        if device_id in self.connected_devices:
            self.connected_devices[device_id] = datetime.utcnow()
            return True
        if len(self.connected_devices) >= self.tuning.max_connected_devices:
            logger.warning(f"{self.device_id} at capacity, rejecting {device_id}")
            return False
        self.connected_devices[device_id] = datetime.utcnow()
        await self._publish(
            self.device_topic("device/registered"),
            {"device_id": device_id, "repeater_id": self.device_id,
             "connected": len(self.connected_devices)},
        )
        return True

    async def unregister_device(self, device_id: str) -> bool:
        if self.connected_devices.pop(device_id, None) is None:
            return False
        await self._publish(
            self.device_topic("device/unregistered"),
            {"device_id": device_id, "repeater_id": self.device_id,
             "connected": len(self.connected_devices)},
        )
        return True

    async def cleanup_stale_connections(self, max_age: float = 300.0) -> List[str]:
        """Drop children not seen within ``max_age`` seconds"""
        cutoff = datetime.utcnow() - timedelta(seconds=max_age)
        stale = [d for d, seen in self.connected_devices.items() if seen < cutoff]
        for device_id in stale:
            await self.unregister_device(device_id)
        if stale:
            logger.info(f"{self.device_id} removed {len(stale)} stale connections")
        return stale

    def scan_devices(self) -> List[Dict[str, Any]]:
        return [
            {"device_id": d, "rssi": rssi_for(d), "last_seen": seen.isoformat()}
            for d, seen in sorted(self.connected_devices.items())
        ]

    # ------------------------------------------------------------------
    # Radio
    # ------------------------------------------------------------------

    @staticmethod
    def _clamp_dbm(dbm: float) -> int:
        return int(max(MIN_DBM, min(MAX_DBM, round(dbm))))

    async def update_signal_strength(self, dbm: float, reason: str = "update") -> int:
        self.signal_strength = self._clamp_dbm(dbm)
        self.status.signal = dbm_to_percent(self.signal_strength)
        await self.emit(
            SignalPayload(
                signal=self.status.signal,
                signal_strength=self.signal_strength,
                quality=signal_quality(self.signal_strength),
                reason=reason,
            ),
            actions=("signal",),
        )
        return self.signal_strength

    async def set_signal(self, level: float, reason: str = "update") -> float:
        dbm = MIN_DBM + (max(0.0, min(100.0, level)) / 100) * (MAX_DBM - MIN_DBM)
        await self.update_signal_strength(dbm, reason=reason)
        return self.status.signal

    async def simulate_interference(self, level: str = "medium", duration: Optional[float] = None):
        if level not in INTERFERENCE_DROP:
            raise CommandError(f"Unknown interference level '{level}'")
        baseline = self.signal_strength
        await self.update_signal_strength(
            self.signal_strength - INTERFERENCE_DROP[level], reason=f"interference_{level}"
        )
        if duration:
            self.scheduler.call_later(
                "interference_end",
                duration,
                lambda: self.update_signal_strength(baseline, reason="interference_cleared"),
            )

    async def simulate_congestion(self, message_count: int = 100, duration: float = 10.0):
        """Relay ``message_count`` synthetic messages spread over ``duration`` seconds"""
        message_count = int(message_count)
        duration = require_number("duration", duration, allow_zero=False)
        if message_count < 1:
            raise CommandError("message_count must be at least 1")
        ticks = max(1, int(duration / CONGESTION_TICK))
        per_tick = max(1, math.ceil(message_count / ticks))
        sent = 0

        await self.emit(
            CongestionPayload(phase="start", message_count=message_count, duration=duration),
            priority=EventPriority.HIGH,
        )

        async def burst():
            nonlocal sent
            batch = min(per_tick, message_count - sent)
            for _ in range(batch):
                sent += 1
                await self._publish(
                    self.topics.relay(self.device_id),
                    {
                        "from_device": f"congestion-{sent}",
                        "repeater_id": self.device_id,
                        "sequence": sent,
                        "timestamp": datetime.utcnow().isoformat(),
                    },
                    qos=0,
                )
            if sent >= message_count:
                self.scheduler.cancel("congestion")
                await self.emit(
                    CongestionPayload(
                        phase="end", message_count=message_count, duration=duration, sent=sent
                    )
                )

        self.scheduler.call_every("congestion", CONGESTION_TICK, burst, initial_delay=0)

    async def simulate_firmware_update(self, version: Optional[str] = None, duration: float = 30.0):
        """Download in 10 % steps, install, reboot for 5 s, then report completion"""
        if self.updating_firmware:
            raise CommandError("Firmware update already in progress")
        from_version = self.status.firmware_version
        to_version = version or _bump_patch(from_version)
        self.updating_firmware = True

        async def run():
            try:
                for progress in range(0, 101, 10):
                    await self.emit(
                        FirmwareUpdatePayload(
                            phase="downloading", progress=progress,
                            from_version=from_version, to_version=to_version,
                        ),
                        actions=("firmware",),
                    )
                    if progress < 100:
                        await asyncio.sleep(duration / 10)
                await self.emit(
                    FirmwareUpdatePayload(
                        phase="installing", progress=100,
                        from_version=from_version, to_version=to_version,
                    ),
                    actions=("firmware",),
                )
                await self.emit(
                    FirmwareUpdatePayload(
                        phase="rebooting", progress=100,
                        from_version=from_version, to_version=to_version,
                    ),
                    actions=("firmware",),
                )
                self.status.online = False
                await asyncio.sleep(FIRMWARE_REBOOT_TIME)
                self.status.online = True
                self.status.firmware_version = to_version
                await self.emit(
                    FirmwareUpdatePayload(
                        phase="completed", progress=100,
                        from_version=from_version, to_version=to_version,
                    ),
                    actions=("firmware",),
                )
                await self.publish_status()
                logger.info(f"{self.device_id} firmware {from_version} -> {to_version}")
            finally:
                self.updating_firmware = False

        self.scheduler.spawn("firmware_update", run())
        return to_version

    # ------------------------------------------------------------------
    # Mesh
    # ------------------------------------------------------------------

    async def form_mesh(self, peers: Optional[List[str]] = None, mesh_id: Optional[str] = None):
        """Join a mesh; the lowest id is coordinator, hop count follows sorted order"""
        members = sorted(set(peers or []) | {self.device_id})
        self.mesh_id = mesh_id or f"mesh-{zlib.crc32('|'.join(members).encode()) & 0xFFFF:04x}"
        position = members.index(self.device_id)
        if position == 0:
            self.mesh_role = "coordinator"
        elif position == len(members) - 1 and len(members) > 2:
            self.mesh_role = "end_device"
        else:
            self.mesh_role = "router"
        self.hop_count = position
        self.mesh_peers = [m for m in members if m != self.device_id]
        await self.emit(
            MeshPayload(
                mesh_id=self.mesh_id,
                role=self.mesh_role,
                hop_count=self.hop_count,
                peers=self.mesh_peers,
            ),
            actions=("mesh",),
            metadata={"topology": {m: i for i, m in enumerate(members)}},
        )
        return self.mesh_role

    async def set_power_source(self, source: str):
        if source not in POWER_SOURCES:
            raise CommandError(f"Unknown power source '{source}'")
        self.power_source = source
        await self.publish_status()

    async def set_maintenance_mode(self, enabled: bool = True):
        self.maintenance_mode = bool(enabled)
        await self.publish_status()
        logger.info(f"{self.device_id} maintenance mode {'on' if enabled else 'off'}")


def _bump_patch(version: str) -> str:
    parts = version.split(".")
    if parts and parts[-1].isdigit():
        parts[-1] = str(int(parts[-1]) + 1)
        return ".".join(parts)
    return f"{version}.1"
