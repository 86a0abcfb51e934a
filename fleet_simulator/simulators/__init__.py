"""
Device simulators

Auto-discovers all simulator classes with a non-empty ``device_type`` and
registers them in ``SIMULATOR_REGISTRY``.
"""

import importlib
import pkgutil

from .base import BaseDeviceSimulator

# ---------------------------------------------------------------------------
# Auto-discovery: scan all modules in this package and collect simulators
# ---------------------------------------------------------------------------

SIMULATOR_REGISTRY: dict[str, type] = {}

for _, module_name, _ in pkgutil.iter_modules(__path__):
    if module_name in ("base", "factory", "templates"):
        continue
    module = importlib.import_module(f".{module_name}", __package__)
    for attr_name in dir(module):
        cls = getattr(module, attr_name)
        if (
            isinstance(cls, type)
            and issubclass(cls, BaseDeviceSimulator)
            and cls is not BaseDeviceSimulator
            and getattr(cls, "device_type", "")
        ):
            SIMULATOR_REGISTRY[cls.device_type] = cls

from .button import ButtonSimulator
from .factory import build_device_config, create_simulator, type_defaults
from .generic import GenericDeviceSimulator
from .repeater import RepeaterSimulator
from .templates import DeviceTemplate, TemplateRegistry, default_template_registry
from .watch import WatchSimulator

__all__ = [
    # Registry
    "SIMULATOR_REGISTRY",
    "BaseDeviceSimulator",
    # Concrete simulators
    "ButtonSimulator",
    "WatchSimulator",
    "RepeaterSimulator",
    "GenericDeviceSimulator",
    # Construction
    "build_device_config",
    "create_simulator",
    "type_defaults",
    "DeviceTemplate",
    "TemplateRegistry",
    "default_template_registry",
]
