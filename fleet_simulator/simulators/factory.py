"""
Device config merging and simulator construction
"""

import logging
from typing import Any, Dict, Optional

from pydantic import ValidationError

from ..config import Settings, settings as default_settings
from ..exceptions import ConfigurationError, UnknownDeviceTypeError
from ..models.device import DeviceConfig, DeviceType, parse_device_type
from ..services.transport import Topics, Transport
from .base import BaseDeviceSimulator
from .templates import TemplateRegistry

logger = logging.getLogger(__name__)


def type_defaults(device_type: DeviceType, settings: Settings = default_settings) -> Dict[str, Any]:
    """Baseline DeviceConfig fields for a type, taken from settings"""
    defaults: Dict[str, Any] = {
        "site": settings.default_site,
        "room": settings.default_room,
        "heartbeat_interval": settings.heartbeat_interval,
        "status_update_interval": settings.status_update_interval,
        "battery_drain_rate": settings.battery_drain_rate,
        "signal_fluctuation_range": settings.signal_fluctuation_range,
    }
    if device_type == DeviceType.BUTTON:
        tuning = {
            "press_interval_min": settings.button_press_min_interval,
            "press_interval_max": settings.button_press_max_interval,
            "double_press_threshold": settings.button_double_press_threshold,
            "long_press_threshold": settings.button_long_press_threshold,
        }
    elif device_type == DeviceType.WATCH:
        tuning = {
            "heart_rate_min": settings.watch_heart_rate_min,
            "heart_rate_max": settings.watch_heart_rate_max,
            "step_interval": settings.watch_step_interval,
            "location_interval": settings.watch_location_interval,
        }
    elif device_type == DeviceType.REPEATER:
        tuning = {
            "mesh_update_interval": settings.repeater_mesh_update_interval,
            "max_connected_devices": settings.repeater_max_connected_devices,
        }
    else:
        tuning = {}
    defaults["tuning"] = {"kind": device_type.value, **tuning}
    return defaults


def merge_overrides(base: Dict[str, Any], overrides: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Overrides win; nested dicts (``tuning``) are merged key by key"""
    merged = dict(base)
    for key, value in (overrides or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = merge_overrides(merged[key], value)
        else:
            merged[key] = value
    return merged


def build_device_config(
    device_type,
    device_id: str,
    name: Optional[str] = None,
    overrides: Optional[Dict[str, Any]] = None,
    settings: Settings = default_settings,
    templates: Optional[TemplateRegistry] = None,
) -> DeviceConfig:
    """Merge overrides over type defaults into a validated DeviceConfig

    Raises:
        UnknownDeviceTypeError: If the type is not simulated
        ConfigurationError: If the merged config is invalid or the template unknown
    """
    resolved = parse_device_type(device_type)
    if resolved is None:
        raise UnknownDeviceTypeError(str(device_type))

    base = type_defaults(resolved, settings)
    overrides = dict(overrides or {})

    if resolved == DeviceType.GENERIC and templates is not None:
        template_name = (overrides.get("tuning") or {}).get("template") or "temperature_sensor"
        template = templates.get(template_name)
        behavior = template.behavior
        if behavior.heartbeat_interval:
            base["heartbeat_interval"] = behavior.heartbeat_interval
        if behavior.status_update_interval:
            base["status_update_interval"] = behavior.status_update_interval
        if not behavior.battery_drain_enabled:
            base["battery_drain_rate"] = 0.0

    merged = merge_overrides(base, overrides)
    merged["device_id"] = device_id
    merged["device_type"] = resolved
    merged.setdefault("name", name or device_id)
    if name:
        merged["name"] = name

    try:
        return DeviceConfig(**merged)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid configuration for {device_id}: {e}")


def create_simulator(
    config: DeviceConfig,
    transport: Transport,
    templates: Optional[TemplateRegistry] = None,
    topics: Optional[Topics] = None,
    event_log_size: int = 100,
) -> BaseDeviceSimulator:
    """Instantiate the simulator registered for ``config.device_type``"""
    from . import SIMULATOR_REGISTRY

    cls = SIMULATOR_REGISTRY.get(config.device_type.value)
    if cls is None:
        raise UnknownDeviceTypeError(config.device_type.value)

    if config.device_type == DeviceType.GENERIC:
        if templates is None:
            raise ConfigurationError("Generic devices need a template registry")
        template = templates.get(config.tuning.template)
        return cls(config, transport, template, topics=topics, event_log_size=event_log_size)
    return cls(config, transport, topics=topics, event_log_size=event_log_size)
