"""
Fleet and metrics API routes
"""

from typing import List

from fastapi import APIRouter, Depends, HTTPException

from ..models.fleet import FleetStatistics, SimulatorInstance, SimulatorSpec
from ..models.metrics import PerformanceAlert
from ..services.fleet_orchestrator import FleetOrchestrator
from ..services.metrics_collector import MetricsCollector
from .dependencies import get_metrics, get_orchestrator

router = APIRouter(prefix="/api/fleet", tags=["fleet"])


@router.get("/status", response_model=List[SimulatorInstance])
async def fleet_status(orchestrator: FleetOrchestrator = Depends(get_orchestrator)):
    return orchestrator.get_status()


@router.get("/statistics", response_model=FleetStatistics)
async def fleet_statistics(orchestrator: FleetOrchestrator = Depends(get_orchestrator)):
    return orchestrator.get_statistics()


@router.post("/start")
async def start_fleet(
    specs: List[SimulatorSpec],
    orchestrator: FleetOrchestrator = Depends(get_orchestrator),
):
    """Create simulator groups; starts are staggered in the background"""
    created = await orchestrator.start_simulators(specs)
    return {"success": True, "created": created}


@router.post("/stop")
async def stop_fleet(orchestrator: FleetOrchestrator = Depends(get_orchestrator)):
    count = len(orchestrator)
    await orchestrator.stop_all_simulators()
    return {"success": True, "stopped": count}


@router.get("/metrics")
async def metrics_summary(metrics: MetricsCollector = Depends(get_metrics)):
    """Summary of the current metrics window (null before the first sample)"""
    summary = metrics.get_summary()
    return {
        "collecting": metrics.collecting,
        "summary": summary.model_dump(mode="json") if summary else None,
    }


@router.get("/metrics/alerts", response_model=List[PerformanceAlert])
async def metrics_alerts(metrics: MetricsCollector = Depends(get_metrics)):
    return metrics.get_alerts()


@router.post("/metrics/export")
async def export_metrics(metrics: MetricsCollector = Depends(get_metrics)):
    path = metrics.export_metrics()
    if path is None:
        raise HTTPException(status_code=500, detail="Metrics export failed")
    return {"success": True, "path": str(path)}
