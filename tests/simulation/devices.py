"""
Device construction helpers shared by the simulator tests.
"""

from typing import Any, Dict, List, Optional

from fleet_simulator.config import Settings
from fleet_simulator.models.device import DeviceType
from fleet_simulator.services.transport import LoopbackTransport
from fleet_simulator.simulators import (
    BaseDeviceSimulator,
    TemplateRegistry,
    build_device_config,
    create_simulator,
)

DEFAULT_IDS = {
    DeviceType.BUTTON: "BTN-1",
    DeviceType.WATCH: "WCH-1",
    DeviceType.REPEATER: "RPT-1",
    DeviceType.GENERIC: "GEN-1",
}


async def make_device(
    device_type: DeviceType,
    transport: LoopbackTransport,
    settings: Settings,
    device_id: Optional[str] = None,
    tuning: Optional[Dict[str, Any]] = None,
    templates: Optional[TemplateRegistry] = None,
    start: bool = True,
    **overrides,
) -> BaseDeviceSimulator:
    """Build a simulator from settings defaults plus overrides"""
    if tuning:
        overrides["tuning"] = tuning
    config = build_device_config(
        device_type,
        device_id or DEFAULT_IDS[device_type],
        overrides=overrides,
        settings=settings,
        templates=templates,
    )
    device = create_simulator(config, transport, templates=templates)
    if start:
        await device.start()
    return device


def event_kinds(device: BaseDeviceSimulator) -> List[str]:
    return [e.kind for e in device.events]


def payloads(transport: LoopbackTransport, topic_filter: str) -> List[Any]:
    return [p for _, p in transport.messages(topic_filter)]
