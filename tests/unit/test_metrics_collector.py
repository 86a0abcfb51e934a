"""
Unit tests for MetricsCollector
"""

import asyncio
import json
from collections import namedtuple
from datetime import datetime, timedelta
from unittest.mock import MagicMock

import psutil
import pytest

from fleet_simulator.models.metrics import (
    AlertSeverity,
    CpuMetrics,
    DeviceMetrics,
    MetricsConfig,
    MetricsSnapshot,
    MqttMetrics,
    Threshold,
)
from fleet_simulator.services.metrics_collector import (
    MetricsCollector,
    evaluate_threshold,
    export_filename,
)

CpuTimes = namedtuple("CpuTimes", "user system")
MemInfo = namedtuple("MemInfo", "rss vms")


@pytest.fixture
def process():
    proc = MagicMock()
    proc.cpu_times.return_value = CpuTimes(user=1.0, system=0.5)
    proc.memory_info.return_value = MemInfo(rss=50_000_000, vms=200_000_000)
    return proc


@pytest.fixture
def collector(tmp_path, process):
    return MetricsCollector(MetricsConfig(export_path=tmp_path / "metrics"), process)


def _snapshot(cpu=0.0, **kwargs) -> MetricsSnapshot:
    return MetricsSnapshot(cpu=CpuMetrics(usage=cpu), **kwargs)


class TestThresholds:
    """Tests for alert evaluation"""

    def test_critical_wins_over_warning(self):
        alert = evaluate_threshold("cpu", 95, Threshold(warning=70, critical=90))
        assert alert.type == AlertSeverity.CRITICAL
        assert alert.threshold == 90
        assert alert.message == "Critical CPU usage detected"

    def test_warning(self):
        alert = evaluate_threshold("cpu", 75, Threshold(warning=70, critical=90))
        assert alert.type == AlertSeverity.WARNING
        assert alert.message == "High CPU usage detected"

    def test_comparisons_are_strict(self):
        assert evaluate_threshold("memory", 80, Threshold(warning=80, critical=95)) is None

    def test_one_alert_per_category(self, collector):
        alerts = collector.record(
            _snapshot(cpu=95, mqtt=MqttMetrics(errors=12), devices=DeviceMetrics(errors=25))
        )
        by_category = {a.category: a.type for a in alerts}
        assert by_category == {
            "cpu": AlertSeverity.CRITICAL,
            "mqtt_errors": AlertSeverity.WARNING,
            "device_errors": AlertSeverity.CRITICAL,
        }

    def test_listener_receives_alerts(self, collector):
        received = []
        collector.add_listener(received.append)
        collector.record(_snapshot(cpu=75))
        assert [a.category for a in received] == ["cpu"]

    def test_failing_listener_does_not_block_others(self, collector):
        received = []
        collector.add_listener(MagicMock(side_effect=RuntimeError("boom")))
        collector.add_listener(received.append)
        collector.record(_snapshot(cpu=75))
        assert len(received) == 1


class TestCollection:
    def test_collect_samples_process(self, collector):
        snapshot = collector.collect()

        assert snapshot.memory.rss == 50_000_000
        assert snapshot.cpu.user_time == 1.0
        assert 0 <= snapshot.cpu.usage <= 100
        assert 0 <= snapshot.memory.percentage <= 100
        assert len(collector.get_metrics()) == 1

    def test_collect_survives_process_errors(self, collector, process):
        process.cpu_times.side_effect = psutil.NoSuchProcess(pid=1)
        assert collector.collect() is None
        assert collector.get_metrics() == []

    def test_sources_refresh_counters(self, collector):
        collector.add_source(lambda: collector.update_device_stats(active=4, connected=3))
        snapshot = collector.collect()
        assert snapshot.devices.active == 4
        assert snapshot.devices.connected == 3

    def test_device_sources_are_summed(self, collector):
        collector.update_device_stats(source="fleet", active=3, connected=2, disconnected=1)
        collector.update_device_stats(source="registry", active=1, connected=1)
        collector.increment_errors("devices")

        snapshot = collector.collect()
        assert snapshot.devices.active == 4
        assert snapshot.devices.connected == 3
        assert snapshot.devices.disconnected == 1
        assert snapshot.devices.errors == 1

        collector.update_device_stats(source="fleet", active=0, connected=0, disconnected=0)
        assert collector.collect().devices.active == 1

    def test_watched_transport_counted_once(self, collector):
        transport = MagicMock()
        transport.stats.return_value = {
            "messages_sent": 5,
            "messages_received": 3,
            "bytes_sent": 500,
            "bytes_received": 300,
            "errors": 1,
            "connections": 1,
            "subscriptions": 2,
        }
        collector.watch_transport(transport)
        collector.watch_transport(transport)

        snapshot = collector.collect()
        assert snapshot.mqtt.messages_sent == 5
        assert snapshot.mqtt.errors == 1
        assert snapshot.network.bytes_received == 300
        assert snapshot.network.connections == 1
        assert transport.stats.call_count == 1

    def test_failing_transport_stats_logged(self, collector, caplog):
        transport = MagicMock()
        transport.stats.side_effect = RuntimeError("gone")
        collector.watch_transport(transport)

        assert collector.collect() is not None
        assert "Transport stats unavailable" in caplog.text

    def test_retention_prunes_old_samples(self, tmp_path, process):
        collector = MetricsCollector(MetricsConfig(retention=60, export_path=tmp_path), process)
        collector.record(MetricsSnapshot(timestamp=datetime.utcnow() - timedelta(seconds=120)))
        collector.record(MetricsSnapshot())
        assert len(collector.get_metrics()) == 1

    def test_increment_errors(self, collector):
        collector.increment_errors("mqtt", 2)
        collector.increment_errors("devices")
        snapshot = collector.collect()
        assert snapshot.mqtt.errors == 2
        assert snapshot.devices.errors == 1

        with pytest.raises(ValueError):
            collector.increment_errors("disk")

    def test_reset(self, collector):
        collector.record(_snapshot(cpu=95))
        collector.reset()
        assert collector.get_metrics() == []
        assert collector.get_alerts() == []

    @pytest.mark.asyncio
    async def test_start_and_stop(self, tmp_path, process):
        collector = MetricsCollector(
            MetricsConfig(collection_interval=0.01, export_interval=3600, export_path=tmp_path),
            process,
        )
        collector.start()
        assert collector.collecting is True
        await asyncio.sleep(0.05)
        await collector.stop()

        count = len(collector.get_metrics())
        assert count >= 2
        assert collector.collecting is False
        await asyncio.sleep(0.03)
        assert len(collector.get_metrics()) == count


class TestSummaryAndExport:
    """Tests for summaries and the JSON export"""

    def test_summary_empty(self, collector):
        assert collector.get_summary() is None

    def test_summary_aggregates(self, collector):
        collector.record(_snapshot(cpu=20))
        collector.record(_snapshot(cpu=60, mqtt=MqttMetrics(messages_sent=7, messages_received=3)))
        collector.record(_snapshot(cpu=95))

        summary = collector.get_summary()
        assert summary.averages["cpu"] == pytest.approx(58.333, rel=1e-3)
        assert summary.peaks["cpu"] == 95
        assert summary.totals["alerts"] == 1
        assert summary.alert_counts == {"critical": 1, "warning": 0}
        assert summary.current.cpu.usage == 95

    def test_export_writes_file(self, collector, tmp_path):
        collector.record(_snapshot(cpu=75))
        path = collector.export_metrics()

        assert path.parent == tmp_path / "metrics"
        assert path.name.startswith("metrics-") and path.suffix == ".json"
        data = json.loads(path.read_text())
        assert set(data) == {"timestamp", "config", "metrics", "alerts", "summary"}
        assert len(data["metrics"]) == 1
        assert data["alerts"][0]["category"] == "cpu"

    def test_export_failure_returns_none(self, tmp_path, process):
        blocker = tmp_path / "not-a-dir"
        blocker.write_text("")
        collector = MetricsCollector(MetricsConfig(export_path=blocker / "metrics"), process)
        assert collector.export_metrics() is None

    def test_export_filename_has_no_colons(self):
        name = export_filename(datetime(2024, 5, 1, 12, 30, 15, 250000))
        assert name == "metrics-2024-05-01T12-30-15-250000.json"
