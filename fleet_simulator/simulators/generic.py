"""
Template-driven generic device simulator
"""

import logging
import random
import re
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from ..exceptions import CommandError
from ..models.events import CommandPayload, CustomPayload
from ..models.fleet import SimulatorState
from .base import BaseDeviceSimulator
from .templates import DeviceTemplate, EventSpec, SensorSpec

logger = logging.getLogger(__name__)

_PLACEHOLDER = re.compile(r"\$\{([^}]+)\}")


class GenericDeviceSimulator(BaseDeviceSimulator):
    """Device whose sensors, events and commands come from a DeviceTemplate"""

    device_type = "generic"

    COMMANDS = {
        "get_sensor_data": "send_sensor_data",
        "trigger_event": "trigger_event",
        "update_sensor": "update_sensor",
        "enable_event": "enable_event",
        "get_template": "send_template",
    }

    def __init__(
        self,
        config,
        transport,
        template: DeviceTemplate,
        topics=None,
        event_log_size: int = 100,
    ):
        super().__init__(config, transport, topics, event_log_size)
        self.template = template
        self.sensor_data: Dict[str, Any] = {}
        self.event_counters: Dict[str, int] = {e.name: 0 for e in template.events}
        self.event_enabled: Dict[str, bool] = {e.name: e.trigger.enabled for e in template.events}
        for sensor in template.sensors:
            self.sensor_data[sensor.name] = self.generate_value(sensor)

    def extra_status(self):
        return {
            "template": self.template.device_type,
            "template_version": self.template.version,
            "sensors": dict(self.sensor_data),
            "event_counters": dict(self.event_counters),
        }

    def supported_commands(self) -> List[str]:
        return sorted(set(super().supported_commands()) | set(self.template.custom_commands))

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def schedule_behaviors(self):
        interval = (
            self.template.behavior.sensor_update_interval
            or self.config.status_update_interval
        )
        self.scheduler.call_every("sensors", interval, self._sensor_tick)
        for event in self.template.events:
            if self.event_enabled[event.name]:
                self._schedule_event(event)

    def _schedule_event(self, event: EventSpec):
        trigger = event.trigger
        name = f"event:{event.name}"
        if trigger.type == "interval" and trigger.interval:
            self.scheduler.call_every(name, trigger.interval, lambda: self.execute_event(event))
        elif trigger.type == "random":
            self._schedule_random_event(event)
        elif trigger.type == "conditional" and trigger.condition:
            self.scheduler.call_every(
                name, trigger.check_interval, lambda: self._check_condition(event)
            )

    def _schedule_random_event(self, event: EventSpec):
        trigger = event.trigger
        delay = random.uniform(trigger.min_interval, trigger.max_interval)

        async def fire():
            try:
                if random.random() < trigger.probability:
                    await self.execute_event(event)
            finally:
                if self._accepting_events and self.event_enabled.get(event.name):
                    self._schedule_random_event(event)

        self.scheduler.call_later(f"event:{event.name}", delay, fire)

    async def _check_condition(self, event: EventSpec):
        if event.trigger.condition.evaluate(self.sensor_data):
            await self.execute_event(event)

    async def _sensor_tick(self):
        for sensor in self.template.sensors:
            self.sensor_data[sensor.name] = self.generate_value(sensor)
        await self.publish_sensor_data()

    # ------------------------------------------------------------------
    # Sensor values
    # ------------------------------------------------------------------

    def generate_value(self, sensor: SensorSpec) -> Any:
        generator = sensor.generator
        current = self.sensor_data.get(sensor.name)

        if generator.type == "static":
            return generator.value

        if sensor.data_type == "boolean":
            return random.random() > 0.5
        if sensor.data_type == "string":
            if generator.values:
                return random.choice(generator.values)
            return f"value-{uuid.uuid4().hex[:8]}"

        if generator.type == "sequence":
            value = generator.min if current is None else current + generator.step
            if value > generator.max:
                value = generator.min
        elif generator.type == "walk":
            if current is None:
                value = random.uniform(generator.min, generator.max)
            else:
                value = current + random.uniform(-generator.step, generator.step)
            value = max(generator.min, min(generator.max, value))
        else:
            value = random.uniform(generator.min, generator.max)

        if sensor.precision is not None:
            return round(value, sensor.precision)
        return round(value)

    async def publish_sensor_data(self):
        timestamp = datetime.utcnow().isoformat()
        await self._publish(
            self.device_topic("sensors"),
            {
                "device_id": self.device_id,
                "device_type": self.template.device_type,
                "sensors": dict(self.sensor_data),
                "battery": self.status.battery,
                "signal": self.status.signal,
                "timestamp": timestamp,
            },
        )
        units = {s.name: s.unit for s in self.template.sensors}
        for name, value in self.sensor_data.items():
            await self._publish(
                self.device_topic(f"sensor/{name}"),
                {
                    "device_id": self.device_id,
                    "sensor": name,
                    "value": value,
                    "unit": units.get(name),
                    "timestamp": timestamp,
                },
                qos=0,
            )

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def context(self) -> Dict[str, Any]:
        """Values available to ``${...}`` placeholders"""
        return {
            "device_id": self.device_id,
            "deviceId": self.device_id,
            "name": self.config.name,
            "site": self.config.site,
            "room": self.config.room,
            "device_type": self.template.device_type,
            "battery": self.status.battery,
            "signal": self.status.signal,
            "uptime": round(self.uptime, 1),
            "timestamp": datetime.utcnow().isoformat(),
            "sensors": dict(self.sensor_data),
        }

    def render(self, value: Any, context: Optional[Dict[str, Any]] = None) -> Any:
        """Fill ``${path}`` placeholders in a payload template"""
        context = context if context is not None else self.context()
        if isinstance(value, dict):
            return {k: self.render(v, context) for k, v in value.items()}
        if isinstance(value, list):
            return [self.render(v, context) for v in value]
        if not isinstance(value, str):
            return value
        whole = _PLACEHOLDER.fullmatch(value)
        if whole:
            return _lookup(context, whole.group(1).strip())
        return _PLACEHOLDER.sub(lambda m: str(_lookup(context, m.group(1).strip())), value)

    def resolve_topic(self, pattern: str) -> str:
        resolved = (
            pattern.replace("{deviceId}", self.device_id)
            .replace("{site}", self.config.site)
            .replace("{room}", self.config.room)
            .replace("{deviceType}", self.template.device_type)
        )
        if resolved.startswith(f"{self.topics.base}/"):
            return resolved
        return self.device_topic(resolved)

    async def execute_event(self, event: EventSpec, overrides: Optional[Dict[str, Any]] = None):
        self.event_counters[event.name] = self.event_counters.get(event.name, 0) + 1
        sequence = self.event_counters[event.name]
        data = self.render({**event.payload, **(overrides or {})})
        return await self.emit(
            CustomPayload(name=event.name, sequence=sequence, data=data),
            priority=event.priority,
            topics=(self.resolve_topic(event.topic),),
            qos=event.qos,
        )

    async def trigger_event(self, event_name: str, data: Optional[Dict[str, Any]] = None):
        event = self.template.event(event_name)
        if event is None:
            raise CommandError(f"Unknown event '{event_name}' for template {self.template.device_type}")
        return await self.execute_event(event, data)

    def enable_event(self, event_name: str, enabled: bool = True):
        event = self.template.event(event_name)
        if event is None:
            raise CommandError(f"Unknown event '{event_name}' for template {self.template.device_type}")
        self.event_enabled[event_name] = bool(enabled)
        self.scheduler.cancel(f"event:{event_name}")
        if enabled:
            self._schedule_event(event)
        logger.info(f"{self.device_id} event {event_name} {'enabled' if enabled else 'disabled'}")

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def update_sensor(self, sensor: str, value: Any):
        if sensor not in self.sensor_data:
            raise CommandError(f"Unknown sensor '{sensor}'")
        self.sensor_data[sensor] = value
        logger.info(f"{self.device_id} sensor {sensor} set to {value}")

    async def send_sensor_data(self, sensor: Optional[str] = None):
        if sensor is None:
            await self.publish_sensor_data()
            return dict(self.sensor_data)
        if sensor not in self.sensor_data:
            raise CommandError(f"Unknown sensor '{sensor}'")
        await self._publish(
            self.device_topic(f"sensor/{sensor}/response"),
            {
                "device_id": self.device_id,
                "sensor": sensor,
                "value": self.sensor_data[sensor],
                "timestamp": datetime.utcnow().isoformat(),
            },
        )
        return self.sensor_data[sensor]

    async def send_template(self) -> Dict[str, Any]:
        info = {
            "device_type": self.template.device_type,
            "name": self.template.name,
            "version": self.template.version,
            "sensors": [
                {"name": s.name, "data_type": s.data_type, "unit": s.unit}
                for s in self.template.sensors
            ],
            "events": [
                {"name": e.name, "topic": e.topic, "enabled": self.event_enabled[e.name]}
                for e in self.template.events
            ],
            "custom_commands": list(self.template.custom_commands),
        }
        await self._publish(
            self.device_topic("template"),
            {"device_id": self.device_id, "template": info,
             "timestamp": datetime.utcnow().isoformat()},
        )
        return info

    async def execute(self, command: str, params: Optional[Dict[str, Any]] = None) -> Any:
        if command in self.template.custom_commands and command not in self.COMMANDS:
            if self.state != SimulatorState.RUNNING:
                raise CommandError(f"Device {self.device_id} is {self.state.value}")
            await self.emit(
                CommandPayload(command=command, params=params or {}),
                actions=(f"cmd/{command}/ack",),
            )
            logger.info(f"{self.device_id} handled custom command {command}")
            return True
        return await super().execute(command, params)


def _lookup(context: Dict[str, Any], path: str) -> Any:
    """Dotted lookup, e.g. ``sensors.temperature``; None when missing"""
    current: Any = context
    for part in path.split("."):
        if isinstance(current, dict) and part in current:
            current = current[part]
        else:
            return None
    return current
