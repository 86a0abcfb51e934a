"""
Request-scoped access to the services built in the app lifespan
"""

from fastapi import Request

from ..services.device_registry import DeviceRegistry
from ..services.fleet_orchestrator import FleetOrchestrator
from ..services.metrics_collector import MetricsCollector


def get_registry(request: Request) -> DeviceRegistry:
    return request.app.state.registry


def get_orchestrator(request: Request) -> FleetOrchestrator:
    return request.app.state.orchestrator


def get_metrics(request: Request) -> MetricsCollector:
    return request.app.state.metrics
