"""
Declarative templates for generic devices

Templates are YAML files describing sensors (value generators), events
(triggers + payload templates) and custom commands. Built-in templates
ship in ``fleet_simulator/templates``; more can be loaded from a directory.
"""

import logging
import operator
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError

from ..exceptions import ConfigurationError, UnknownTemplateError
from ..models.events import EventPriority

logger = logging.getLogger(__name__)

BUILTIN_TEMPLATES_DIR = Path(__file__).parent.parent / "templates"

OPERATORS = {
    ">": operator.gt,
    ">=": operator.ge,
    "<": operator.lt,
    "<=": operator.le,
    "==": operator.eq,
    "!=": operator.ne,
}


class GeneratorSpec(BaseModel):
    """How a sensor produces its next value"""

    type: Literal["random", "sequence", "walk", "static"] = "random"
    min: float = 0
    max: float = 100
    step: float = 1
    values: Optional[List[Any]] = None
    value: Any = None  # static


class SensorSpec(BaseModel):
    name: str
    data_type: Literal["number", "string", "boolean"] = "number"
    generator: GeneratorSpec = GeneratorSpec()
    unit: Optional[str] = None
    precision: Optional[int] = None


class ConditionSpec(BaseModel):
    """``sensor <operator> value`` check for conditional events"""

    sensor: str
    operator: Literal[">", ">=", "<", "<=", "==", "!="] = ">"
    value: Any

    def evaluate(self, sensors: Dict[str, Any]) -> bool:
        current = sensors.get(self.sensor)
        if current is None:
            return False
        try:
            return bool(OPERATORS[self.operator](current, self.value))
        except TypeError:
            return False


class TriggerSpec(BaseModel):
    type: Literal["interval", "random", "conditional", "manual"] = "manual"
    interval: Optional[float] = None
    min_interval: float = 30.0
    max_interval: float = 300.0
    probability: float = 0.5
    condition: Optional[ConditionSpec] = None
    check_interval: float = 10.0
    enabled: bool = True


class EventSpec(BaseModel):
    name: str
    topic: str
    payload: Dict[str, Any] = {}
    trigger: TriggerSpec = TriggerSpec()
    priority: EventPriority = EventPriority.NORMAL
    qos: int = Field(1, ge=0, le=2)


class BehaviorSpec(BaseModel):
    status_update_interval: Optional[float] = None
    heartbeat_interval: Optional[float] = None
    sensor_update_interval: Optional[float] = None
    battery_drain_enabled: bool = True


class DeviceTemplate(BaseModel):
    """A generic device archetype"""

    device_type: str
    name: str
    description: Optional[str] = None
    version: str = "1.0.0"
    sensors: List[SensorSpec] = []
    events: List[EventSpec] = []
    custom_commands: List[str] = []
    behavior: BehaviorSpec = BehaviorSpec()

    def event(self, name: str) -> Optional[EventSpec]:
        for event in self.events:
            if event.name == name:
                return event
        return None


def load_template_file(path: Path) -> DeviceTemplate:
    """Parse one YAML template file

    Raises:
        ConfigurationError: If the file is unreadable or invalid
    """
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
        return DeviceTemplate(**(data or {}))
    except (OSError, yaml.YAMLError, ValidationError, TypeError) as e:
        raise ConfigurationError(f"Invalid device template {path}: {e}")


class TemplateRegistry:
    """Named generic-device templates"""

    def __init__(self):
        self._templates: Dict[str, DeviceTemplate] = {}

    def register(self, template: DeviceTemplate):
        if template.device_type in self._templates:
            logger.info(f"Template '{template.device_type}' replaced")
        self._templates[template.device_type] = template

    def load_directory(self, directory: Path) -> int:
        """Load every ``*.yaml``/``*.yml`` file; invalid files are skipped"""
        directory = Path(directory)
        if not directory.is_dir():
            logger.warning(f"Templates directory not found: {directory}")
            return 0
        loaded = 0
        for path in sorted(list(directory.glob("*.yaml")) + list(directory.glob("*.yml"))):
            try:
                self.register(load_template_file(path))
                loaded += 1
            except ConfigurationError as e:
                logger.error(str(e))
        logger.debug(f"Loaded {loaded} templates from {directory}")
        return loaded

    def get(self, name: str) -> DeviceTemplate:
        template = self._templates.get(name)
        if template is None:
            raise UnknownTemplateError(name, self._templates.keys())
        return template

    def names(self) -> List[str]:
        return sorted(self._templates)

    def __contains__(self, name: str) -> bool:
        return name in self._templates


def default_template_registry(extra_dir: Optional[Path] = None) -> TemplateRegistry:
    """Registry with the built-in templates plus an optional extra directory"""
    registry = TemplateRegistry()
    registry.load_directory(BUILTIN_TEMPLATES_DIR)
    if extra_dir:
        registry.load_directory(extra_dir)
    return registry
