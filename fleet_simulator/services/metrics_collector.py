"""
Metrics & alert collector

Samples process CPU/memory on a fixed interval, merges the transport and
device counters fed in by other components, raises threshold alerts and
periodically exports everything to a JSON file.
"""

import json
import logging
import threading
import time
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Dict, List, Optional

import psutil

from ..models.metrics import (
    AlertSeverity,
    CpuMetrics,
    DeviceMetrics,
    MemoryMetrics,
    MetricsConfig,
    MetricsExport,
    MetricsSnapshot,
    MetricsSummary,
    MqttMetrics,
    NetworkMetrics,
    PerformanceAlert,
    SummaryPeriod,
    Threshold,
)
from .scheduler import DeviceScheduler

logger = logging.getLogger(__name__)

# category -> (human label, snapshot accessor)
ALERT_CATEGORIES = {
    "cpu": ("CPU usage", lambda m: m.cpu.usage),
    "memory": ("memory usage", lambda m: m.memory.percentage),
    "network_connections": ("number of network connections", lambda m: m.network.connections),
    "mqtt_errors": ("number of MQTT errors", lambda m: m.mqtt.errors),
    "device_errors": ("number of device errors", lambda m: m.devices.errors),
}


def evaluate_threshold(category: str, value: float, threshold: Threshold) -> Optional[PerformanceAlert]:
    """Critical wins over warning; both comparisons are strict"""
    label = ALERT_CATEGORIES[category][0]
    if value > threshold.critical:
        return PerformanceAlert(
            type=AlertSeverity.CRITICAL,
            category=category,
            message=f"Critical {label} detected",
            value=value,
            threshold=threshold.critical,
        )
    if value > threshold.warning:
        return PerformanceAlert(
            type=AlertSeverity.WARNING,
            category=category,
            message=f"High {label} detected",
            value=value,
            threshold=threshold.warning,
        )
    return None


def export_filename(moment: datetime) -> str:
    return f"metrics-{moment.isoformat().replace(':', '-').replace('.', '-')}.json"


class MetricsCollector:
    """Thread-safe metrics buffer with threshold alerting"""

    def __init__(self, config: Optional[MetricsConfig] = None, process: Optional[psutil.Process] = None):
        self.config = config or MetricsConfig()
        self._process = process or psutil.Process()
        self._lock = threading.Lock()
        self._metrics: List[MetricsSnapshot] = []
        self._alerts: List[PerformanceAlert] = []
        self._listeners: List[Callable[[PerformanceAlert], None]] = []
        self._sources: List[Callable[[], None]] = []
        self._mqtt = MqttMetrics()
        self._device_sources: Dict[str, DeviceMetrics] = {}
        self._device_errors = 0
        self._network = NetworkMetrics()
        self._transports: List = []
        self._scheduler = DeviceScheduler("metrics")
        self._collecting = False
        self._previous_cpu = self._cpu_seconds()
        self._previous_time = time.monotonic()

    @property
    def collecting(self) -> bool:
        return self._collecting

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self):
        """Collect immediately, then every collection interval; export on its own interval"""
        if self._collecting:
            logger.warning("Metrics collection already started")
            return
        self._collecting = True
        logger.info(
            f"Starting metrics collection (interval {self.config.collection_interval}s, "
            f"retention {self.config.retention}s)"
        )
        self._scheduler.call_every(
            "collect", self.config.collection_interval, self.collect, initial_delay=0
        )
        self._scheduler.call_every("export", self.config.export_interval, self.export_metrics)

    async def stop(self):
        if not self._collecting:
            return
        self._collecting = False
        self._scheduler.cancel_all()
        await self._scheduler.wait_cancelled()
        logger.info("Stopped metrics collection")

    def add_listener(self, callback: Callable[[PerformanceAlert], None]):
        """Call ``callback(alert)`` for every alert raised"""
        self._listeners.append(callback)

    def add_source(self, refresh: Callable[[], None]):
        """Call ``refresh()`` before every sample so it can push fresh counters"""
        self._sources.append(refresh)

    # ------------------------------------------------------------------
    # Sampling
    # ------------------------------------------------------------------

    def _cpu_seconds(self) -> float:
        times = self._process.cpu_times()
        return times.user + times.system

    def _sample_cpu(self) -> CpuMetrics:
        now = time.monotonic()
        cpu_now = self._cpu_seconds()
        elapsed = now - self._previous_time
        usage = 0.0
        if elapsed > 0:
            usage = (cpu_now - self._previous_cpu) / elapsed * 100
        self._previous_cpu = cpu_now
        self._previous_time = now
        times = self._process.cpu_times()
        return CpuMetrics(
            usage=max(0.0, min(100.0, usage)),
            user_time=times.user,
            system_time=times.system,
        )

    def _sample_memory(self) -> MemoryMetrics:
        info = self._process.memory_info()
        vm = psutil.virtual_memory()
        free = vm.available
        percentage = (vm.total - free) / vm.total * 100 if vm.total else 0.0
        return MemoryMetrics(
            rss=info.rss,
            vms=info.vms,
            total=vm.total,
            free=free,
            percentage=percentage,
        )

    def collect(self) -> Optional[MetricsSnapshot]:
        """Take one sample, prune the window and check thresholds"""
        for refresh in list(self._sources):
            try:
                refresh()
            except Exception as e:
                logger.error(f"Metrics source failed: {e}")
        try:
            self._refresh_transports()
        except Exception as e:
            logger.error(f"Transport stats unavailable: {e}")
        try:
            cpu = self._sample_cpu()
            memory = self._sample_memory()
        except psutil.Error as e:
            logger.error(f"Error collecting metrics: {e}")
            return None
        with self._lock:
            snapshot = MetricsSnapshot(
                cpu=cpu,
                memory=memory,
                network=self._network.model_copy(),
                mqtt=self._mqtt.model_copy(),
                devices=self._devices_locked(),
            )
        self.record(snapshot)
        return snapshot

    def record(self, snapshot: MetricsSnapshot) -> List[PerformanceAlert]:
        """Append a sample, prune by retention and raise its alerts"""
        with self._lock:
            self._metrics.append(snapshot)
            self._prune_locked()
        return self.check_thresholds(snapshot)

    def _prune_locked(self):
        cutoff = datetime.utcnow() - timedelta(seconds=self.config.retention)
        self._metrics = [m for m in self._metrics if m.timestamp > cutoff]
        self._alerts = [a for a in self._alerts if a.timestamp > cutoff]

    def check_thresholds(self, snapshot: MetricsSnapshot) -> List[PerformanceAlert]:
        thresholds = self.config.thresholds
        alerts = []
        for category, (_, accessor) in ALERT_CATEGORIES.items():
            alert = evaluate_threshold(category, accessor(snapshot), getattr(thresholds, category))
            if alert is not None:
                alerts.append(alert)

        with self._lock:
            self._alerts.extend(alerts)
        for alert in alerts:
            logger.warning(
                f"Performance alert: {alert.message} "
                f"({alert.category} {alert.value:.1f} > {alert.threshold})"
            )
            for listener in list(self._listeners):
                try:
                    listener(alert)
                except Exception as e:
                    logger.error(f"Alert listener failed: {e}")
        return alerts

    # ------------------------------------------------------------------
    # Counters fed by other components
    # ------------------------------------------------------------------

    def watch_transport(self, transport):
        """Copy ``transport.stats()`` into the MQTT and network counters before every sample"""
        if any(t is transport for t in self._transports):
            return
        self._transports.append(transport)

    def _refresh_transports(self):
        if not self._transports:
            return
        totals: Dict[str, int] = {}
        for transport in list(self._transports):
            for key, value in transport.stats().items():
                totals[key] = totals.get(key, 0) + value
        self.update_mqtt_stats(
            messages_sent=totals["messages_sent"],
            messages_received=totals["messages_received"],
            connections=totals["connections"],
            errors=totals["errors"],
        )
        self.update_network_stats(
            connections=totals["connections"],
            bytes_sent=totals["bytes_sent"],
            bytes_received=totals["bytes_received"],
        )

    def update_mqtt_stats(self, **stats):
        with self._lock:
            self._mqtt = self._mqtt.model_copy(update=stats)

    def update_device_stats(self, source: str = "default", **stats):
        """Replace the device counts reported by one ``source``; samples sum all sources"""
        with self._lock:
            current = self._device_sources.get(source, DeviceMetrics())
            self._device_sources[source] = current.model_copy(update=stats)

    def update_network_stats(self, **stats):
        with self._lock:
            self._network = self._network.model_copy(update=stats)

    def increment_errors(self, category: str = "mqtt", count: int = 1):
        """Bump the ``mqtt`` or ``devices`` error counter"""
        with self._lock:
            if category == "mqtt":
                self._mqtt.errors += count
            elif category in ("device", "devices"):
                self._device_errors += count
            else:
                raise ValueError(f"Unknown error category: {category}")

    def _devices_locked(self) -> DeviceMetrics:
        totals = DeviceMetrics(errors=self._device_errors)
        for stats in self._device_sources.values():
            totals.active += stats.active
            totals.connected += stats.connected
            totals.disconnected += stats.disconnected
            totals.errors += stats.errors
        return totals

    def reset(self):
        with self._lock:
            self._metrics = []
            self._alerts = []
            self._mqtt = MqttMetrics()
            self._device_sources = {}
            self._device_errors = 0
            self._network = NetworkMetrics()
        logger.info("Metrics reset")

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_metrics(self) -> List[MetricsSnapshot]:
        with self._lock:
            return list(self._metrics)

    def get_alerts(self) -> List[PerformanceAlert]:
        with self._lock:
            return list(self._alerts)

    def get_summary(self) -> Optional[MetricsSummary]:
        with self._lock:
            metrics = list(self._metrics)
            alerts = list(self._alerts)
        if not metrics:
            return None

        oldest, latest = metrics[0], metrics[-1]
        cpu = [m.cpu.usage for m in metrics]
        memory = [m.memory.percentage for m in metrics]
        return MetricsSummary(
            period=SummaryPeriod(
                start=oldest.timestamp,
                end=latest.timestamp,
                duration=(latest.timestamp - oldest.timestamp).total_seconds(),
            ),
            current=latest,
            averages={"cpu": sum(cpu) / len(cpu), "memory": sum(memory) / len(memory)},
            peaks={"cpu": max(cpu), "memory": max(memory)},
            totals={
                "mqtt_messages": latest.mqtt.messages_sent + latest.mqtt.messages_received,
                "network_bytes": latest.network.bytes_sent + latest.network.bytes_received,
                "alerts": len(alerts),
            },
            alert_counts={
                AlertSeverity.CRITICAL.value: sum(1 for a in alerts if a.type == AlertSeverity.CRITICAL),
                AlertSeverity.WARNING.value: sum(1 for a in alerts if a.type == AlertSeverity.WARNING),
            },
        )

    # ------------------------------------------------------------------
    # Export
    # ------------------------------------------------------------------

    def export_metrics(self) -> Optional[Path]:
        """Write metrics, alerts and summary to a timestamped file.

        Returns the file path, or None if the export failed (logged).
        """
        now = datetime.utcnow()
        try:
            export_dir = Path(self.config.export_path)
            export_dir.mkdir(parents=True, exist_ok=True)
            path = export_dir / export_filename(now)
            data = MetricsExport(
                timestamp=now,
                config=self.config,
                metrics=self.get_metrics(),
                alerts=self.get_alerts(),
                summary=self.get_summary() or MetricsSummary(),
            )
            tmp_path = path.with_suffix(path.suffix + ".tmp")
            tmp_path.write_text(json.dumps(data.model_dump(mode="json"), indent=2))
            tmp_path.replace(path)
            logger.debug(f"Metrics exported to {path}")
            return path
        except Exception as e:
            logger.error(f"Error exporting metrics: {e}")
            return None
