"""
Performance scenarios

A catalogue of named load, stress, endurance and lifecycle runs built on
the fleet orchestrator, measured with the metrics collector and written
up as a markdown report.
"""

import logging
from datetime import datetime
from functools import partial
from pathlib import Path
from typing import Awaitable, Callable, Dict, List, Literal, Optional, Sequence

from pydantic import BaseModel, Field

from ..exceptions import ConfigurationError
from ..models.device import DeviceType
from ..models.fleet import LifecycleTestConfig, LoadTestConfig
from ..models.metrics import MetricsSummary
from .fleet_orchestrator import FleetOrchestrator
from .metrics_collector import MetricsCollector

logger = logging.getLogger(__name__)

MB = 1024 * 1024


class PerformanceScenario(BaseModel):
    """One named run; exactly one of ``load`` or ``lifecycle`` is set"""

    name: str
    description: str
    type: Literal["load", "stress", "endurance", "lifecycle"]
    load: Optional[LoadTestConfig] = None
    lifecycle: Optional[LifecycleTestConfig] = None

    @property
    def device_count(self) -> int:
        if self.load is not None:
            return self.load.max_devices
        return self.lifecycle.device_count

    def scaled(self, time_scale: float) -> "PerformanceScenario":
        """Copy with every duration multiplied by ``time_scale``"""
        if time_scale <= 0:
            raise ConfigurationError(f"time_scale must be positive, got {time_scale}")
        if self.load is not None:
            load = self.load.model_copy(
                update={
                    "duration": self.load.duration * time_scale,
                    "ramp_up_time": self.load.ramp_up_time * time_scale,
                }
            )
            return self.model_copy(update={"load": load})
        lifecycle = self.lifecycle.model_copy(
            update={
                "connect_duration": self.lifecycle.connect_duration * time_scale,
                "disconnect_duration": self.lifecycle.disconnect_duration * time_scale,
            }
        )
        return self.model_copy(update={"lifecycle": lifecycle})


_ALL_TYPES = [DeviceType.BUTTON, DeviceType.WATCH, DeviceType.REPEATER]

PERFORMANCE_SCENARIOS: Dict[str, PerformanceScenario] = {
    s.name: s
    for s in [
        PerformanceScenario(
            name="basic_load",
            description="Basic load test with a moderate number of devices",
            type="load",
            load=LoadTestConfig(duration=300, ramp_up_time=30, max_devices=20, device_types=_ALL_TYPES),
        ),
        PerformanceScenario(
            name="high_load",
            description="High load test with many devices",
            type="load",
            load=LoadTestConfig(duration=600, ramp_up_time=60, max_devices=100, device_types=_ALL_TYPES),
        ),
        PerformanceScenario(
            name="stress_test",
            description="Stress test to find system limits",
            type="stress",
            load=LoadTestConfig(duration=900, ramp_up_time=120, max_devices=200, device_types=_ALL_TYPES),
        ),
        PerformanceScenario(
            name="endurance_test",
            description="Long running endurance test",
            type="endurance",
            load=LoadTestConfig(duration=7200, ramp_up_time=300, max_devices=50, device_types=_ALL_TYPES),
        ),
        PerformanceScenario(
            name="lifecycle_basic",
            description="Basic device lifecycle test",
            type="lifecycle",
            lifecycle=LifecycleTestConfig(
                cycles=10, connect_duration=60, disconnect_duration=10, device_count=20
            ),
        ),
        PerformanceScenario(
            name="lifecycle_stress",
            description="Stress test for device lifecycle",
            type="lifecycle",
            lifecycle=LifecycleTestConfig(
                cycles=50, connect_duration=30, disconnect_duration=5, device_count=100
            ),
        ),
    ]
}


def get_scenario(name: str) -> PerformanceScenario:
    scenario = PERFORMANCE_SCENARIOS.get(name)
    if scenario is None:
        raise ConfigurationError(
            f"Unknown performance scenario: {name} "
            f"(available: {', '.join(PERFORMANCE_SCENARIOS)})"
        )
    return scenario


class MemoryUsage(BaseModel):
    """Resident set size in bytes"""

    initial: int = 0
    peak: int = 0
    final: int = 0


class CpuUsage(BaseModel):
    """Process CPU seconds spent during the run"""

    user: float = 0.0
    system: float = 0.0


class PerformanceReport(BaseModel):
    """Measured outcome of one scenario run"""

    test_type: str
    description: str = ""
    start_time: datetime
    end_time: datetime
    duration: float  # seconds
    device_count: int
    total_messages: int = 0
    messages_per_second: float = 0.0
    errors: int = 0
    success_rate: float = 100.0
    memory: MemoryUsage = Field(default_factory=MemoryUsage)
    cpu: CpuUsage = Field(default_factory=CpuUsage)
    summary: Optional[MetricsSummary] = None


def success_rate(total_messages: int, errors: int) -> float:
    if errors == 0:
        return 100.0
    if total_messages == 0:
        return 0.0
    return max(0.0, (total_messages - errors) / total_messages * 100)


class PerformanceTester:
    """Runs catalogue scenarios and measures them"""

    def __init__(self, orchestrator: FleetOrchestrator, metrics: MetricsCollector):
        self.orchestrator = orchestrator
        self.metrics = metrics
        self.reports: List[PerformanceReport] = []

    async def run_scenario(self, name: str, time_scale: float = 1.0) -> PerformanceReport:
        scenario = get_scenario(name).scaled(time_scale)
        logger.info(f"Running performance scenario {scenario.name}: {scenario.description}")
        if scenario.load is not None:
            runner = partial(self.orchestrator.run_load_test, scenario.load)
        else:
            runner = partial(self.orchestrator.run_lifecycle_test, scenario.lifecycle)
        return await self._measure(scenario.name, scenario.description, scenario.device_count, runner)

    async def run_all(self, names: Optional[Sequence[str]] = None, time_scale: float = 1.0) -> List[PerformanceReport]:
        """Run scenarios one after another; a failed scenario is logged and skipped"""
        reports = []
        for name in names or list(PERFORMANCE_SCENARIOS):
            try:
                reports.append(await self.run_scenario(name, time_scale))
            except ConfigurationError:
                raise
            except Exception as e:
                logger.error(f"Performance scenario {name} failed: {e}")
        return reports

    async def run_load(self, config: LoadTestConfig, name: str = "custom_load") -> PerformanceReport:
        return await self._measure(
            name, "Custom load test", config.max_devices, partial(self.orchestrator.run_load_test, config)
        )

    async def run_lifecycle(self, config: LifecycleTestConfig, name: str = "custom_lifecycle") -> PerformanceReport:
        return await self._measure(
            name,
            "Custom lifecycle test",
            config.device_count,
            partial(self.orchestrator.run_lifecycle_test, config),
        )

    async def _measure(
        self,
        name: str,
        description: str,
        device_count: int,
        runner: Callable[[], Awaitable[object]],
    ) -> PerformanceReport:
        transport = self.orchestrator.transport
        before = transport.stats()
        started_collection = not self.metrics.collecting
        self.metrics.reset()
        if started_collection:
            self.metrics.start()
        else:
            self.metrics.collect()

        start = datetime.utcnow()
        try:
            await runner()
        finally:
            end = datetime.utcnow()
            self.metrics.collect()
            if started_collection:
                await self.metrics.stop()

        after = transport.stats()
        total = (after["messages_sent"] - before["messages_sent"]) + (
            after["messages_received"] - before["messages_received"]
        )
        errors = after["errors"] - before["errors"]
        samples = self.metrics.get_metrics()
        duration = (end - start).total_seconds()

        memory = MemoryUsage()
        cpu = CpuUsage()
        if samples:
            first, last = samples[0], samples[-1]
            memory = MemoryUsage(
                initial=first.memory.rss,
                peak=max(s.memory.rss for s in samples),
                final=last.memory.rss,
            )
            cpu = CpuUsage(
                user=max(0.0, last.cpu.user_time - first.cpu.user_time),
                system=max(0.0, last.cpu.system_time - first.cpu.system_time),
            )

        report = PerformanceReport(
            test_type=name,
            description=description,
            start_time=start,
            end_time=end,
            duration=duration,
            device_count=device_count,
            total_messages=total,
            messages_per_second=total / duration if duration > 0 else 0.0,
            errors=errors,
            success_rate=success_rate(total, errors),
            memory=memory,
            cpu=cpu,
            summary=self.metrics.get_summary(),
        )
        self.reports.append(report)
        logger.info(
            f"Scenario {name} finished: {total} messages, {report.messages_per_second:.2f} msg/s, "
            f"{errors} errors, success {report.success_rate:.2f}%"
        )
        return report


def render_report(reports: Sequence[PerformanceReport], generated: Optional[datetime] = None) -> str:
    """Markdown summary table followed by one section per run"""
    generated = generated or datetime.utcnow()
    lines = [
        "# Performance Test Report",
        "",
        f"Generated: {generated.isoformat()}",
        "",
        "## Summary",
        "",
        "| Test | Duration | Devices | Messages | Msg/sec | Success Rate | Memory Peak |",
        "|------|----------|---------|----------|---------|--------------|-------------|",
    ]
    for r in reports:
        lines.append(
            f"| {r.test_type} | {r.duration:.0f}s | {r.device_count} | {r.total_messages} | "
            f"{r.messages_per_second:.2f} | {r.success_rate:.2f}% | {r.memory.peak / MB:.2f}MB |"
        )
    lines += ["", "## Detailed Results", ""]
    for r in reports:
        lines += [
            f"### {r.test_type}",
            "",
            f"- **Start Time**: {r.start_time.isoformat()}",
            f"- **End Time**: {r.end_time.isoformat()}",
            f"- **Duration**: {r.duration:.0f} seconds",
            f"- **Device Count**: {r.device_count}",
            f"- **Total Messages**: {r.total_messages}",
            f"- **Messages/Second**: {r.messages_per_second:.2f}",
            f"- **Errors**: {r.errors}",
            f"- **Success Rate**: {r.success_rate:.2f}%",
            "",
            "**Memory Usage:**",
            f"- Initial: {r.memory.initial / MB:.2f}MB",
            f"- Peak: {r.memory.peak / MB:.2f}MB",
            f"- Final: {r.memory.final / MB:.2f}MB",
            "",
            "**CPU Usage:**",
            f"- User: {r.cpu.user:.2f}s",
            f"- System: {r.cpu.system:.2f}s",
            "",
        ]
    return "\n".join(lines)


def save_report(
    reports: Sequence[PerformanceReport], directory: Path, filename: Optional[str] = None
) -> Path:
    """Write the markdown report; the default name carries a timestamp"""
    now = datetime.utcnow()
    directory = Path(directory)
    directory.mkdir(parents=True, exist_ok=True)
    if filename is None:
        filename = f"performance-report-{now.isoformat().replace(':', '-').replace('.', '-')}.md"
    path = directory / filename
    path.write_text(render_report(reports, generated=now))
    logger.info(f"Performance report saved to {path}")
    return path
