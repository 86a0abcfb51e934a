"""
Fleet orchestrator

Creates, starts and stops batches of simulators with staggered timing and
drives the load and lifecycle test scenarios. Fleet-wide start/stop
operations are serialized by ``self.lock``.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from ..config import Settings, settings as default_settings
from ..models.device import DEVICE_TYPE_CODES, DeviceType
from ..models.fleet import (
    FleetStatistics,
    LifecycleCycleResult,
    LifecycleTestConfig,
    LifecycleTestResult,
    LoadTestConfig,
    LoadTestResult,
    SimulatorInstance,
    SimulatorSpec,
    SimulatorState,
)
from ..simulators import BaseDeviceSimulator, build_device_config, create_simulator
from ..simulators.templates import TemplateRegistry
from .metrics_collector import MetricsCollector
from .transport import Topics, Transport

logger = logging.getLogger(__name__)


def _base36(value: int) -> str:
    digits = "0123456789abcdefghijklmnopqrstuvwxyz"
    out = ""
    while True:
        value, rem = divmod(value, 36)
        out = digits[rem] + out
        if value == 0:
            return out


def generate_device_id(device_type: DeviceType, counter: int) -> str:
    """``BTN-<base36 ms>-001`` style id"""
    return f"{DEVICE_TYPE_CODES[device_type]}-{_base36(int(time.time() * 1000))}-{counter:03d}"


@dataclass
class _Tracked:
    id: str
    type: DeviceType
    simulator: Optional[BaseDeviceSimulator] = None
    status: SimulatorState = SimulatorState.STOPPED
    start_time: Optional[datetime] = None
    error: Optional[str] = None
    start_task: Optional[asyncio.Task] = None
    launched: bool = False


class FleetOrchestrator:
    """Bulk lifecycle management for simulator instances"""

    def __init__(
        self,
        transport: Transport,
        templates: Optional[TemplateRegistry] = None,
        settings: Settings = default_settings,
        metrics: Optional[MetricsCollector] = None,
        topics: Optional[Topics] = None,
    ):
        self.transport = transport
        self.templates = templates
        self.settings = settings
        self.metrics = metrics
        self.topics = topics or Topics(settings.topic_base)
        self.max_concurrent_devices = settings.max_concurrent_devices
        self.startup_delay = settings.device_startup_delay
        self.shutdown_delay = settings.device_shutdown_delay
        self.lock = asyncio.Lock()
        self._instances: Dict[str, _Tracked] = {}
        self._counter = 0

        if metrics is not None:
            metrics.add_source(self.refresh_metrics)
            metrics.watch_transport(transport)

    def __len__(self) -> int:
        return len(self._instances)

    # ------------------------------------------------------------------
    # Start
    # ------------------------------------------------------------------

    async def start_simulators(
        self,
        specs: Iterable[SimulatorSpec],
        startup_delay: Optional[float] = None,
    ) -> List[str]:
        """Create the requested simulators and schedule their staggered starts.

        The i-th device of each spec starts ``i * startup_delay`` seconds
        after this call. Returns the ids of the tracked instances created.
        Creation stops with a warning once the concurrency ceiling is reached.
        """
        specs = list(specs)
        delay = self.startup_delay if startup_delay is None else startup_delay
        created = []
        async with self.lock:
            logger.info(
                f"Starting multi-device simulation ({len(specs)} groups, "
                f"max {self.max_concurrent_devices} devices)"
            )
            for spec in specs:
                for i in range(spec.count):
                    if len(self._instances) >= self.max_concurrent_devices:
                        logger.warning(
                            f"Maximum concurrent devices reached ({self.max_concurrent_devices}), "
                            f"skipping remaining {spec.type.value} devices"
                        )
                        break
                    entry = self._create(spec)
                    self._instances[entry.id] = entry
                    created.append(entry.id)
                    if entry.simulator is not None:
                        entry.start_task = asyncio.create_task(self._start_later(entry, i * delay))
        logger.info(f"Created {len(created)} device simulators")
        self.refresh_metrics()
        return created

    def _create(self, spec: SimulatorSpec) -> _Tracked:
        self._counter += 1
        device_id = generate_device_id(spec.type, self._counter)
        entry = _Tracked(id=device_id, type=spec.type)
        overrides = dict(spec.config)
        if spec.type == DeviceType.GENERIC:
            tuning = dict(overrides.get("tuning") or {})
            tuning.setdefault("template", spec.template or "temperature_sensor")
            overrides["tuning"] = tuning
        try:
            config = build_device_config(
                spec.type,
                device_id,
                name=overrides.pop("name", None) or f"{spec.type.value.capitalize()} Device {device_id}",
                overrides=overrides,
                settings=self.settings,
                templates=self.templates,
            )
            entry.simulator = create_simulator(
                config,
                self.transport,
                templates=self.templates,
                topics=self.topics,
                event_log_size=self.settings.event_log_size,
            )
        except Exception as e:
            entry.status = SimulatorState.ERROR
            entry.error = str(e)
            logger.error(f"Failed to create simulator {device_id}: {e}")
        return entry

    async def _start_later(self, entry: _Tracked, delay: float):
        if delay > 0:
            await asyncio.sleep(delay)
        entry.launched = True
        await self._start_one(entry)

    async def _start_one(self, entry: _Tracked):
        entry.status = SimulatorState.STARTING
        entry.start_time = datetime.utcnow()
        try:
            await entry.simulator.start()
            entry.status = entry.simulator.state
            logger.info(f"Simulator {entry.id} started successfully")
        except Exception as e:
            entry.status = SimulatorState.ERROR
            entry.error = str(e)
            logger.error(f"Failed to start simulator {entry.id}: {e}")
            if self.metrics is not None:
                self.metrics.increment_errors("devices")

    async def wait_started(self):
        """Wait for every scheduled start to run"""
        tasks = [e.start_task for e in self._instances.values() if e.start_task]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # ------------------------------------------------------------------
    # Stop
    # ------------------------------------------------------------------

    async def stop_all_simulators(self, shutdown_delay: Optional[float] = None):
        """Stop every tracked instance with staggered delays, then forget them"""
        delay = self.shutdown_delay if shutdown_delay is None else shutdown_delay
        async with self.lock:
            entries = list(self._instances.values())
            if not entries:
                return
            logger.info(f"Stopping all simulators ({len(entries)})")

            in_flight = []
            for entry in entries:
                task = entry.start_task
                if task is None or task.done():
                    continue
                if entry.launched:
                    in_flight.append(task)
                else:
                    task.cancel()
            if in_flight:
                await asyncio.gather(*in_flight, return_exceptions=True)

            await asyncio.gather(
                *(self._stop_later(entry, i * delay) for i, entry in enumerate(entries))
            )
            self._instances.clear()
        logger.info("All simulators stopped")
        self.refresh_metrics()

    async def _stop_later(self, entry: _Tracked, delay: float):
        if delay > 0:
            await asyncio.sleep(delay)
        await self._stop_one(entry)

    async def _stop_one(self, entry: _Tracked):
        simulator = entry.simulator
        if simulator is None or simulator.state == SimulatorState.STOPPED:
            return
        entry.status = SimulatorState.STOPPING
        try:
            await simulator.stop()
            entry.status = simulator.state
            logger.info(f"Simulator {entry.id} stopped successfully")
        except Exception as e:
            entry.status = SimulatorState.ERROR
            entry.error = str(e)
            logger.error(f"Failed to stop simulator {entry.id}: {e}")

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    def get_simulator(self, device_id: str) -> Optional[BaseDeviceSimulator]:
        entry = self._instances.get(device_id)
        return entry.simulator if entry else None

    def get_status(self) -> List[SimulatorInstance]:
        now = datetime.utcnow()
        return [
            SimulatorInstance(
                id=e.id,
                type=e.type,
                status=e.status,
                start_time=e.start_time,
                uptime=(now - e.start_time).total_seconds() if e.start_time else None,
                error=e.error,
            )
            for e in list(self._instances.values())
        ]

    def get_statistics(self) -> FleetStatistics:
        by_status = {state.value: 0 for state in SimulatorState}
        by_type: Dict[str, int] = {}
        entries = list(self._instances.values())
        for entry in entries:
            by_status[entry.status.value] += 1
            by_type[entry.type.value] = by_type.get(entry.type.value, 0) + 1
        return FleetStatistics(total=len(entries), by_status=by_status, by_type=by_type)

    def refresh_metrics(self):
        """Push fleet device counts into the metrics collector"""
        if self.metrics is None:
            return
        simulators = [e.simulator for e in list(self._instances.values()) if e.simulator]
        connected = sum(1 for s in simulators if s.is_running and s.status.online)
        self.metrics.update_device_stats(
            source="fleet",
            active=sum(1 for s in simulators if s.is_running),
            connected=connected,
            disconnected=len(simulators) - connected,
        )

    # ------------------------------------------------------------------
    # Scenarios
    # ------------------------------------------------------------------

    async def run_load_test(self, config: LoadTestConfig) -> LoadTestResult:
        """Split max_devices across the types, hold for ``duration``, stop all"""
        logger.info(f"Starting load test: {config.model_dump(mode='json')}")
        started_at = datetime.utcnow()
        device_types = config.device_types or [DeviceType.BUTTON, DeviceType.WATCH, DeviceType.REPEATER]
        per_type = config.max_devices // len(device_types)
        specs = [
            SimulatorSpec(
                type=device_type,
                count=per_type,
                config={"site": "load-test", "room": f"test-{device_type.value}"},
                template=config.template,
            )
            for device_type in device_types
        ]
        ramp_delay = config.ramp_up_time / config.max_devices
        created = await self.start_simulators(specs, startup_delay=ramp_delay)

        await asyncio.sleep(config.duration)

        statistics = self.get_statistics()
        logger.info(f"Load test completed after {config.duration}s: {statistics.model_dump()}")
        await self.stop_all_simulators()
        return LoadTestResult(
            config=config,
            started_at=started_at,
            finished_at=datetime.utcnow(),
            devices_started=len(created),
            statistics=statistics,
        )

    async def run_lifecycle_test(self, config: LifecycleTestConfig) -> LifecycleTestResult:
        """Repeated start / hold / stop / pause cycles"""
        logger.info(f"Starting lifecycle test: {config.model_dump(mode='json')}")
        started_at = datetime.utcnow()
        third = config.device_count // 3
        counts = {
            DeviceType.BUTTON: third,
            DeviceType.WATCH: third,
            DeviceType.REPEATER: config.device_count - 2 * third,
        }
        cycles = []
        for cycle in range(1, config.cycles + 1):
            logger.info(f"Starting cycle {cycle}/{config.cycles}")
            placement = {"site": "lifecycle-test", "room": f"cycle-{cycle}"}
            created = await self.start_simulators(
                [SimulatorSpec(type=t, count=n, config=placement) for t, n in counts.items()]
            )

            await asyncio.sleep(config.connect_duration)

            cycles.append(
                LifecycleCycleResult(
                    cycle=cycle,
                    devices_started=len(created),
                    statistics=self.get_statistics(),
                )
            )
            await self.stop_all_simulators()

            if cycle < config.cycles:
                await asyncio.sleep(config.disconnect_duration)

        logger.info("Lifecycle test completed")
        return LifecycleTestResult(
            config=config,
            started_at=started_at,
            finished_at=datetime.utcnow(),
            cycles=cycles,
        )
