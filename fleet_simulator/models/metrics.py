"""
Metrics and alert models
"""

from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional

from pydantic import BaseModel, Field


class CpuMetrics(BaseModel):
    usage: float = 0.0  # percent, 0..100
    user_time: float = 0.0  # seconds
    system_time: float = 0.0


class MemoryMetrics(BaseModel):
    rss: int = 0
    vms: int = 0
    total: int = 0
    free: int = 0
    percentage: float = 0.0


class NetworkMetrics(BaseModel):
    connections: int = 0
    bytes_sent: int = 0
    bytes_received: int = 0


class MqttMetrics(BaseModel):
    messages_sent: int = 0
    messages_received: int = 0
    connections: int = 0
    errors: int = 0


class DeviceMetrics(BaseModel):
    active: int = 0
    connected: int = 0
    disconnected: int = 0
    errors: int = 0


class MetricsSnapshot(BaseModel):
    """One collection sample"""

    timestamp: datetime = Field(default_factory=datetime.utcnow)
    cpu: CpuMetrics = Field(default_factory=CpuMetrics)
    memory: MemoryMetrics = Field(default_factory=MemoryMetrics)
    network: NetworkMetrics = Field(default_factory=NetworkMetrics)
    mqtt: MqttMetrics = Field(default_factory=MqttMetrics)
    devices: DeviceMetrics = Field(default_factory=DeviceMetrics)


class AlertSeverity(str, Enum):
    WARNING = "warning"
    CRITICAL = "critical"


class PerformanceAlert(BaseModel):
    """Threshold breach record"""

    type: AlertSeverity
    category: str  # cpu | memory | network_connections | mqtt_errors | device_errors
    message: str
    value: float
    threshold: float
    timestamp: datetime = Field(default_factory=datetime.utcnow)


class Threshold(BaseModel):
    warning: float
    critical: float


class AlertThresholds(BaseModel):
    """Per-category warning/critical limits"""

    cpu: Threshold = Threshold(warning=70, critical=90)
    memory: Threshold = Threshold(warning=80, critical=95)
    network_connections: Threshold = Threshold(warning=1000, critical=2000)
    mqtt_errors: Threshold = Threshold(warning=10, critical=50)
    device_errors: Threshold = Threshold(warning=5, critical=20)


class MetricsConfig(BaseModel):
    """Collector timing (seconds) and export location"""

    collection_interval: float = Field(5.0, gt=0)
    retention: float = Field(3600.0, gt=0)
    export_interval: float = Field(60.0, gt=0)
    export_path: Path = Path("logs/metrics")
    thresholds: AlertThresholds = Field(default_factory=AlertThresholds)


class SummaryPeriod(BaseModel):
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    duration: float = 0.0


class MetricsSummary(BaseModel):
    """Window summary written alongside the raw samples"""

    period: SummaryPeriod = Field(default_factory=SummaryPeriod)
    current: Optional[MetricsSnapshot] = None
    averages: Dict[str, float] = {}
    peaks: Dict[str, float] = {}
    totals: Dict[str, int] = {}
    alert_counts: Dict[str, int] = {}


class MetricsExport(BaseModel):
    """Layout of the exported metrics artifact"""

    timestamp: datetime
    config: MetricsConfig
    metrics: List[MetricsSnapshot] = []
    alerts: List[PerformanceAlert] = []
    summary: MetricsSummary
