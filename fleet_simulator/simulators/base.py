"""
Base device simulator

Owns the lifecycle state machine, status snapshot, event log, command
dispatch and the timers shared by every device type. Concrete simulators
add their behavior through ``schedule_behaviors``/``on_start``/``on_stop``
and a ``COMMANDS`` table.
"""

import asyncio
import inspect
import logging
import random
import re
import time
import uuid
from abc import ABC
from collections import deque
from datetime import datetime
from functools import lru_cache
from typing import Any, Callable, Deque, Dict, Iterable, List, Optional

from pydantic import BaseModel, ConfigDict, TypeAdapter, ValidationError

from ..exceptions import CommandError
from ..models.api import DeviceSummary
from ..models.device import DeviceActivity, DeviceConfig, DeviceStatus
from ..models.events import (
    BatteryPayload,
    ConnectivityPayload,
    DeviceEvent,
    EventPriority,
    FailurePayload,
    SignalPayload,
)
from ..models.fleet import STATE_TRANSITIONS, SimulatorState
from ..services.scheduler import DeviceScheduler
from ..services.transport import Topics, Transport

logger = logging.getLogger(__name__)

NETWORK_FAILURES = ("disconnect", "packet_loss", "high_latency")

_CAMEL = re.compile(r"(?<!^)(?=[A-Z])")


def _snake(name: str) -> str:
    return _CAMEL.sub("_", name).lower()


# Command parameters arrive as JSON; numbers are accepted where text is expected
_PARAM_CONFIG = ConfigDict(coerce_numbers_to_str=True)


@lru_cache(maxsize=None)
def _adapter(annotation) -> TypeAdapter:
    if isinstance(annotation, type) and issubclass(annotation, BaseModel):
        return TypeAdapter(annotation)
    return TypeAdapter(annotation, config=_PARAM_CONFIG)


def coerce_params(method: Callable, params: Dict[str, Any]) -> Dict[str, Any]:
    """Bind ``params`` to ``method`` and convert each value to its annotated type.

    Raises:
        TypeError: Unknown or missing parameter
        ValidationError: A value that cannot be converted
    """
    signature = inspect.signature(method)
    bound = signature.bind(**params)
    coerced: Dict[str, Any] = {}
    for name, value in bound.arguments.items():
        parameter = signature.parameters[name]
        if parameter.kind == inspect.Parameter.VAR_KEYWORD:
            coerced.update(value)
            continue
        annotation = parameter.annotation
        if annotation is inspect.Parameter.empty or annotation is Any:
            coerced[name] = value
        else:
            coerced[name] = _adapter(annotation).validate_python(value)
    return coerced


def require_number(name: str, value: Any, allow_zero: bool = True) -> Optional[float]:
    """None passes through; anything else must be a non-negative number.

    Raises:
        CommandError: If ``value`` is not a number, is negative, or is zero
            when ``allow_zero`` is False
    """
    if value is None:
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise CommandError(f"{name} must be a number, got {value!r}")
    if number < 0 or (number == 0 and not allow_zero):
        raise CommandError(f"{name} must be {'at least 0' if allow_zero else 'positive'}")
    return number


class BaseDeviceSimulator(ABC):
    """Abstract base class for simulated devices"""

    device_type: str = ""

    # command name -> method name, extended by subclasses
    COMMANDS: Dict[str, str] = {}

    COMMON_COMMANDS: Dict[str, str] = {
        "battery_drain": "drain_battery",
        "go_offline": "go_offline",
        "go_online": "go_online",
        "network_failure": "network_failure",
        "set_signal": "set_signal",
        "get_status": "get_status",
        "get_metrics": "get_metrics",
        "ping": "ping",
        "reset": "reset",
        "config": "update_config",
        "update_config": "update_config",
    }

    def __init__(
        self,
        config: DeviceConfig,
        transport: Transport,
        topics: Optional[Topics] = None,
        event_log_size: int = 100,
    ):
        self.config = config
        self.transport = transport
        self.topics = topics or Topics()
        self.state = SimulatorState.STOPPED
        self.error: Optional[str] = None
        self.started_at: Optional[datetime] = None
        self.status = DeviceStatus(
            battery=config.initial_battery,
            signal=config.initial_signal,
        )
        self.events: Deque[DeviceEvent] = deque(maxlen=event_log_size)
        self.scheduler = DeviceScheduler(config.device_id)
        self._subscription_id: Optional[str] = None
        self._accepting_events = False
        self._listeners: List[Callable[[DeviceEvent], None]] = []
        self._started_monotonic: Optional[float] = None
        self._packet_loss = 0.0
        self._latency_max = 0.0
        self.activity = DeviceActivity()

    # ------------------------------------------------------------------
    # Identity helpers
    # ------------------------------------------------------------------

    @property
    def device_id(self) -> str:
        return self.config.device_id

    @property
    def is_running(self) -> bool:
        return self.state == SimulatorState.RUNNING

    @property
    def is_subscribed(self) -> bool:
        return self._subscription_id is not None

    @property
    def uptime(self) -> float:
        if self._started_monotonic is None:
            return 0.0
        return time.monotonic() - self._started_monotonic

    def device_topic(self, action: str) -> str:
        return self.topics.device(
            self.config.site,
            self.config.room,
            self.config.device_type.value,
            self.device_id,
            action,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _set_state(self, new_state: SimulatorState):
        if new_state not in STATE_TRANSITIONS[self.state]:
            raise RuntimeError(
                f"Illegal state transition for {self.device_id}: "
                f"{self.state.value} -> {new_state.value}"
            )
        logger.debug(f"{self.device_id}: {self.state.value} -> {new_state.value}")
        self.state = new_state

    async def start(self):
        """Subscribe to the command topic and start autonomous behavior.

        A no-op (with a warning) unless the simulator is stopped.

        Raises:
            Exception: Whatever the transport raised; the state is left at ERROR
        """
        if self.state != SimulatorState.STOPPED:
            logger.warning(
                f"Start ignored for {self.device_id}: simulator is {self.state.value}"
            )
            return

        self._set_state(SimulatorState.STARTING)
        self.error = None
        self._accepting_events = True
        try:
            subscription_id = await self.transport.subscribe(
                self.topics.command(self.device_id), self._on_command_message
            )
            if self.state != SimulatorState.STARTING:
                # stop() ran while we were subscribing
                await self.transport.unsubscribe(subscription_id)
                return
            self._subscription_id = subscription_id

            self.started_at = datetime.utcnow()
            self._started_monotonic = time.monotonic()
            self.status.online = True
            self.status.last_seen = self.started_at

            self.scheduler.call_every(
                "heartbeat", self.config.heartbeat_interval, self._heartbeat
            )
            self.scheduler.call_every(
                "status", self.config.status_update_interval, self._status_tick
            )
            self.schedule_behaviors()

            await self._publish(
                self.device_topic("birth"),
                {
                    "device_id": self.device_id,
                    "device_type": self.config.device_type.value,
                    "name": self.config.name,
                    "timestamp": self.started_at.isoformat(),
                },
            )
            await self.publish_status()
            await self.on_start()

            if self.state == SimulatorState.STARTING:
                self._set_state(SimulatorState.RUNNING)
                logger.info(f"Simulator {self.device_id} running")
        except Exception as e:
            self._accepting_events = False
            self.scheduler.cancel_all()
            self.error = str(e)
            if self.state in (SimulatorState.STARTING, SimulatorState.RUNNING):
                self._set_state(SimulatorState.ERROR)
            logger.error(f"Simulator {self.device_id} failed to start: {e}")
            raise

    async def stop(self):
        """Cancel every timer, publish the offline status and unsubscribe.

        No event is recorded after this returns.
        """
        if self.state == SimulatorState.ERROR:
            self._accepting_events = False
            self.scheduler.cancel_all()
            await self.scheduler.wait_cancelled()
            await self._release_subscription()
            self._set_state(SimulatorState.STOPPED)
            return

        if self.state == SimulatorState.STOPPED and self.scheduler.cancel("restart"):
            await self.scheduler.wait_cancelled()
            logger.info(f"Pending restart of {self.device_id} cancelled")
            return

        if self.state not in (SimulatorState.RUNNING, SimulatorState.STARTING):
            logger.warning(
                f"Stop ignored for {self.device_id}: simulator is {self.state.value}"
            )
            return

        self._set_state(SimulatorState.STOPPING)
        self._accepting_events = False
        self.scheduler.cancel_all()
        try:
            await self.scheduler.wait_cancelled()
            await self.on_stop()
            await self.publish_last_will()
            self.status.online = False
            await self.publish_status(force=True)
            await self._release_subscription()
            self._set_state(SimulatorState.STOPPED)
            logger.info(f"Simulator {self.device_id} stopped")
        except Exception as e:
            self.error = str(e)
            self._set_state(SimulatorState.ERROR)
            logger.error(f"Simulator {self.device_id} failed to stop cleanly: {e}")
            raise

    async def _release_subscription(self):
        if self._subscription_id is not None:
            subscription_id, self._subscription_id = self._subscription_id, None
            await self.transport.unsubscribe(subscription_id)

    # Hooks for subclasses

    def schedule_behaviors(self):
        """Register autonomous timers on ``self.scheduler``"""

    async def on_start(self):
        pass

    async def on_stop(self):
        pass

    def on_status_tick(self):
        pass

    def extra_status(self) -> Dict[str, Any]:
        """Type-specific fields added to status messages"""
        return {}

    # ------------------------------------------------------------------
    # Periodic behavior
    # ------------------------------------------------------------------

    async def _heartbeat(self):
        if not self.status.online:
            return
        self.status.battery = self.status.battery - self.config.battery_drain_rate
        spread = self.config.signal_fluctuation_range
        self.status.signal = self.status.signal + random.uniform(-spread / 2, spread / 2)
        self.status.last_seen = datetime.utcnow()
        await self._publish(
            self.device_topic("heartbeat"),
            {
                "device_id": self.device_id,
                "battery": self.status.battery,
                "signal": self.status.signal,
                "uptime": round(self.uptime, 1),
                "timestamp": self.status.last_seen.isoformat(),
            },
            qos=0,
        )

    async def _status_tick(self):
        self.on_status_tick()
        await self.publish_status()

    def status_message(self) -> Dict[str, Any]:
        message = {
            "device_id": self.device_id,
            "name": self.config.name,
            "type": self.config.device_type.value,
            "site": self.config.site,
            "room": self.config.room,
            "state": self.state.value,
            "is_virtual": True,
            "timestamp": datetime.utcnow().isoformat(),
        }
        message.update(self.status.model_dump(mode="json"))
        message.update(self.extra_status())
        return message

    async def publish_status(self, force: bool = False) -> bool:
        return await self._publish(
            self.topics.status(self.device_id),
            self.status_message(),
            retain=True,
            force=force,
        )

    async def publish_last_will(self) -> bool:
        """Announce a clean disconnect on the device's ``lwt`` topic"""
        return await self._publish(
            self.device_topic("lwt"),
            {
                "device_id": self.device_id,
                "status": "offline",
                "timestamp": datetime.utcnow().isoformat(),
            },
            force=True,
        )

    # ------------------------------------------------------------------
    # Events and publishing
    # ------------------------------------------------------------------

    def add_listener(self, callback: Callable[[DeviceEvent], None]):
        """Call ``callback(event)`` for every recorded event"""
        self._listeners.append(callback)

    def record(
        self,
        payload,
        priority: EventPriority = EventPriority.NORMAL,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Optional[DeviceEvent]:
        """Append an event to the log without publishing it"""
        if not self._accepting_events:
            logger.debug(f"{self.device_id}: dropped {payload.kind} event, simulator not active")
            return None
        event = DeviceEvent(
            device_id=self.device_id,
            priority=priority,
            payload=payload,
            metadata=metadata or {},
        )
        self.events.append(event)
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                logger.error(f"Event listener failed for {self.device_id}: {e}")
        return event

    async def emit(
        self,
        payload,
        priority: EventPriority = EventPriority.NORMAL,
        actions: Iterable[str] = (),
        topics: Iterable[str] = (),
        metadata: Optional[Dict[str, Any]] = None,
        force: bool = False,
        qos: Optional[int] = None,
    ) -> Optional[DeviceEvent]:
        """Record an event, then publish it to device sub-topics in order.

        Critical events go out at QoS 2 and everything else at QoS 1
        unless ``qos`` is given.
        """
        event = self.record(payload, priority, metadata)
        if event is None:
            return None
        message = event.to_message()
        if qos is None:
            qos = 2 if priority == EventPriority.CRITICAL else 1
        for action in actions:
            await self._publish(self.device_topic(action), message, qos=qos, force=force)
        for topic in topics:
            await self._publish(topic, message, qos=qos, force=force)
        return event

    async def _publish(
        self,
        topic: str,
        payload: Any,
        qos: int = 1,
        retain: bool = False,
        force: bool = False,
    ) -> bool:
        """Publish through the transport, honoring offline/fault state.

        Failures are logged; device state is never touched here.
        """
        if not force:
            if not self.status.online:
                logger.debug(f"{self.device_id} offline, not publishing {topic}")
                return False
            if self._packet_loss and random.random() < self._packet_loss:
                logger.debug(f"{self.device_id} dropped {topic} (packet loss)")
                return False
            if self._latency_max:
                await asyncio.sleep(random.uniform(0, self._latency_max))
        try:
            published = await self.transport.publish(topic, payload, qos=qos, retain=retain)
        except Exception as e:
            logger.error(f"{self.device_id} failed to publish {topic}: {e}")
            published = False
        if published:
            self.activity.messages_sent += 1
        else:
            self.activity.errors += 1
        return published

    def recent_events(self, limit: int = 50) -> List[DeviceEvent]:
        """Most recent events, newest last"""
        if limit <= 0:
            return []
        return list(self.events)[-limit:]

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def supported_commands(self) -> List[str]:
        return sorted({**self.COMMON_COMMANDS, **self.COMMANDS})

    async def execute(self, command: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """Run a command and return its result.

        Parameters are converted to the handler's annotated types before it
        runs, so a malformed command changes nothing.

        Raises:
            CommandError: Unknown command, bad parameters, or device not running
        """
        name = _snake(command or "")
        method_name = self.COMMANDS.get(name) or self.COMMON_COMMANDS.get(name)
        if method_name is None:
            raise CommandError(
                f"Unsupported action '{command}' for {self.config.device_type.value} device"
            )
        if self.state != SimulatorState.RUNNING:
            raise CommandError(f"Device {self.device_id} is {self.state.value}")

        method = getattr(self, method_name)
        kwargs = {_snake(k): v for k, v in (params or {}).items()}
        try:
            kwargs = coerce_params(method, kwargs)
        except (TypeError, ValidationError) as e:
            raise CommandError(f"Invalid parameters for '{command}': {e}")

        try:
            result = method(**kwargs)
            if inspect.isawaitable(result):
                result = await result
        except CommandError:
            raise
        except (TypeError, ValueError) as e:
            raise CommandError(f"Invalid parameters for '{command}': {e}") from e
        return result

    async def handle_command(self, command: str, params: Optional[Dict[str, Any]] = None) -> bool:
        """Run a command; failures are logged, never raised"""
        try:
            await self.execute(command, params)
            return True
        except CommandError as e:
            logger.warning(f"{self.device_id} rejected command '{command}': {e}")
        except Exception as e:
            logger.error(f"{self.device_id} command '{command}' failed: {e}")
        self.activity.errors += 1
        return False

    async def _on_command_message(self, message: Dict[str, Any]):
        self.activity.messages_received += 1
        payload = message.get("payload")
        if not isinstance(payload, dict) or not isinstance(payload.get("command"), str):
            self.activity.errors += 1
            logger.warning(f"{self.device_id} ignored malformed command message: {payload}")
            return
        params = payload.get("params") or {}
        if not isinstance(params, dict):
            self.activity.errors += 1
            logger.warning(f"{self.device_id} ignored command with non-object params")
            return
        self.scheduler.spawn(None, self._respond(payload["command"], params))

    async def _respond(self, command: str, params: Dict[str, Any]):
        success = await self.handle_command(command, params)
        await self._publish(
            self.topics.response(self.device_id),
            {
                "device_id": self.device_id,
                "command": command,
                "success": success,
                "status": self.status.model_dump(mode="json"),
                "timestamp": datetime.utcnow().isoformat(),
            },
        )

    # Common commands

    def get_status(self) -> DeviceSummary:
        return self.summary()

    def get_metrics(self) -> DeviceActivity:
        """Message and error counters plus uptime"""
        return self.activity.model_copy(update={"uptime": round(self.uptime, 3)})

    async def ping(self, ping_id: Optional[str] = None) -> Dict[str, Any]:
        """Answer on the device's ``pong`` topic"""
        pong = {
            "device_id": self.device_id,
            "ping_id": ping_id or str(uuid.uuid4()),
            "response": "pong",
            "timestamp": datetime.utcnow().isoformat(),
        }
        await self._publish(self.device_topic("pong"), pong)
        return pong

    async def reset(self, delay: float = 2.0):
        """Stop now and start again after ``delay`` seconds"""
        delay = require_number("delay", delay)
        logger.info(f"{self.device_id} resetting, restart in {delay}s")
        await self.stop()
        self.scheduler.call_later("restart", delay, self.start)

    def update_config(
        self,
        name: Optional[str] = None,
        heartbeat_interval: Optional[float] = None,
        status_update_interval: Optional[float] = None,
        battery_drain_rate: Optional[float] = None,
        signal_fluctuation_range: Optional[float] = None,
    ) -> DeviceConfig:
        """Change timing or the display name; running timers pick up new intervals"""
        changes: Dict[str, Any] = {}
        if name is not None:
            if not name.strip():
                raise CommandError("name must not be empty")
            changes["name"] = name
        for field, value in (
            ("heartbeat_interval", heartbeat_interval),
            ("status_update_interval", status_update_interval),
        ):
            if value is not None:
                changes[field] = require_number(field, value, allow_zero=False)
        for field, value in (
            ("battery_drain_rate", battery_drain_rate),
            ("signal_fluctuation_range", signal_fluctuation_range),
        ):
            if value is not None:
                changes[field] = require_number(field, value)
        if not changes:
            raise CommandError("No configuration changes given")

        self.config = DeviceConfig.model_validate({**self.config.model_dump(), **changes})
        if "heartbeat_interval" in changes:
            self.scheduler.call_every("heartbeat", self.config.heartbeat_interval, self._heartbeat)
        if "status_update_interval" in changes:
            self.scheduler.call_every("status", self.config.status_update_interval, self._status_tick)
        logger.info(f"{self.device_id} configuration updated: {changes}")
        return self.config

    async def drain_battery(
        self,
        target: float = 0.0,
        continuous: bool = False,
        rate: float = 1.0,
        interval: float = 1.0,
    ) -> float:
        """Set the battery to ``target`` or drain towards it by ``rate`` per ``interval``"""
        target = max(0.0, min(100.0, float(target)))
        if not continuous:
            self.status.battery = target
            await self.emit(BatteryPayload(level=self.status.battery, reason="drain"))
            return self.status.battery

        rate = require_number("rate", rate, allow_zero=False)
        interval = require_number("interval", interval, allow_zero=False)

        async def step():
            if self.status.battery <= target:
                self.scheduler.cancel("battery_drain")
                return
            self.status.battery = max(target, self.status.battery - rate)
            await self.emit(BatteryPayload(level=self.status.battery, reason="drain"))

        self.scheduler.call_every("battery_drain", interval, step, initial_delay=0)
        return self.status.battery

    async def set_signal(self, level: float, reason: str = "update") -> float:
        self.status.signal = level
        await self.emit(SignalPayload(signal=self.status.signal, reason=reason))
        return self.status.signal

    async def go_offline(self, duration: Optional[float] = None, reason: str = "manual"):
        """Take the device offline, optionally returning after ``duration`` seconds"""
        duration = require_number("duration", duration)
        self.scheduler.cancel("auto_online")
        await self.emit(
            ConnectivityPayload(online=False, reason=reason, duration=duration),
            priority=EventPriority.HIGH,
            actions=("connectivity",),
        )
        self.status.online = False
        await self.publish_status(force=True)
        if duration:
            self.scheduler.call_later("auto_online", duration, self.go_online)
        logger.info(f"{self.device_id} offline ({reason})")

    async def go_online(self):
        self.scheduler.cancel("auto_online")
        if self.status.online:
            return
        self.status.online = True
        self.status.last_seen = datetime.utcnow()
        self.activity.reconnections += 1
        await self.emit(
            ConnectivityPayload(online=True, reason="restored"),
            actions=("connectivity",),
        )
        await self.publish_status()
        logger.info(f"{self.device_id} back online")

    async def network_failure(self, failure_type: str = "disconnect", duration: Optional[float] = None):
        """Inject a network fault.

        disconnect: offline for 5 s; packet_loss: 30 % of publishes dropped
        for 10 s; high_latency: up to 2 s added per publish for 10 s.
        """
        if failure_type not in NETWORK_FAILURES:
            raise CommandError(
                f"Unknown network failure '{failure_type}' "
                f"(expected one of {', '.join(NETWORK_FAILURES)})"
            )
        duration = require_number("duration", duration)
        await self.emit(
            FailurePayload(failure_type=f"network_{failure_type}", phase="start"),
            priority=EventPriority.HIGH,
        )
        if failure_type == "disconnect":
            await self.go_offline(duration or 5.0, reason="network_failure")
            return
        if failure_type == "packet_loss":
            self._packet_loss = 0.3
        else:
            self._latency_max = 2.0
        self.scheduler.call_later("network_recovery", duration or 10.0, self._clear_network_faults)

    async def _clear_network_faults(self):
        self._packet_loss = 0.0
        self._latency_max = 0.0
        await self.emit(FailurePayload(failure_type="network", phase="recovered"))

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    def summary(self) -> DeviceSummary:
        return DeviceSummary(
            uid=self.device_id,
            name=self.config.name,
            type=self.config.device_type.value,
            site=self.config.site,
            room=self.config.room,
            state=self.state,
            status=self.status.model_copy(deep=True),
            details=self.extra_status(),
            activity=self.get_metrics(),
        )
