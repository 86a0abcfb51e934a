"""
Virtual device control-surface API routes
"""

import logging
from typing import List

from fastapi import APIRouter, Depends, HTTPException, Query

from ..exceptions import CommandError, ConfigurationError, DeviceNotFoundError
from ..models.api import (
    ActionResponse,
    CreateDeviceRequest,
    CreateDeviceResponse,
    DeviceActionRequest,
    DeviceDetail,
    DeviceListResponse,
)
from ..services.device_registry import TEST_SCENARIOS, DeviceRegistry
from ..services.failure_simulator import PREDEFINED_SCENARIOS, FailureScenario
from .dependencies import get_registry

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/virtual-devices", tags=["virtual-devices"])


@router.get("", response_model=DeviceListResponse)
async def list_devices(registry: DeviceRegistry = Depends(get_registry)):
    """List active virtual devices with fleet statistics"""
    return DeviceListResponse(
        devices=[d.summary() for d in registry.list_devices()],
        statistics=registry.get_statistics(),
        active_failures=registry.get_active_failures(),
    )


@router.post("", response_model=CreateDeviceResponse, status_code=201)
async def create_device(
    request: CreateDeviceRequest,
    registry: DeviceRegistry = Depends(get_registry),
):
    """Create and start a virtual device.

    Persistence failures do not fail the request; they come back as warnings.
    """
    try:
        return await registry.create_device(request)
    except ConfigurationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error(f"Failed to create virtual device: {e}")
        raise HTTPException(status_code=500, detail=f"Failed to create device: {e}")


@router.delete("")
async def remove_all_devices(registry: DeviceRegistry = Depends(get_registry)):
    """Stop and remove every virtual device"""
    removed = await registry.remove_all()
    return {"success": True, "removed": removed}


@router.get("/scenarios")
async def list_test_scenarios():
    return {"scenarios": list(TEST_SCENARIOS)}


@router.post("/scenarios/{name}")
async def create_test_scenario(name: str, registry: DeviceRegistry = Depends(get_registry)):
    """Create a canned set of devices (basic_setup, full_yacht, stress_test)"""
    try:
        uids = await registry.create_test_scenario(name)
    except ConfigurationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"success": True, "scenario": name, "devices": uids}


@router.get("/failures", response_model=List[FailureScenario])
async def list_failure_scenarios():
    return list(PREDEFINED_SCENARIOS.values())


@router.post("/failures/{scenario_id}")
async def execute_failure_scenario(
    scenario_id: str,
    targets: List[str] = Query(None, description="Device uids; all devices when omitted"),
    registry: DeviceRegistry = Depends(get_registry),
):
    """Inject a predefined failure scenario"""
    scenario = PREDEFINED_SCENARIOS.get(scenario_id)
    if scenario is None:
        raise HTTPException(status_code=404, detail=f"Unknown failure scenario: {scenario_id}")
    if targets:
        scenario = scenario.model_copy(update={"target_devices": targets})
    keys = registry.execute_failure_scenario(scenario)
    return {"success": True, "scenario": scenario_id, "failures": keys}


@router.delete("/failures")
async def stop_all_failures(registry: DeviceRegistry = Depends(get_registry)):
    stopped = await registry.stop_all_failures()
    return {"success": True, "stopped": stopped}


@router.get("/{uid}", response_model=DeviceDetail)
async def get_device(
    uid: str,
    limit: int = Query(50, ge=0, le=1000, description="Number of recent events"),
    registry: DeviceRegistry = Depends(get_registry),
):
    """Device status plus its most recent events"""
    try:
        return registry.device_detail(uid, limit)
    except DeviceNotFoundError:
        raise HTTPException(status_code=404, detail="Device not found")


@router.delete("/{uid}")
async def remove_device(uid: str, registry: DeviceRegistry = Depends(get_registry)):
    if not await registry.remove_device(uid):
        raise HTTPException(status_code=404, detail="Device not found")
    return {"success": True, "uid": uid}


@router.post("/{uid}/action", response_model=ActionResponse)
async def perform_action(
    uid: str,
    request: DeviceActionRequest,
    registry: DeviceRegistry = Depends(get_registry),
):
    """Run a device command; action names follow the device's command table"""
    try:
        result = await registry.perform_action(uid, request.action, request.data)
        device = registry.get_device(uid)
    except DeviceNotFoundError:
        raise HTTPException(status_code=404, detail="Device not found")
    except CommandError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return ActionResponse(success=True, action=request.action, device=device.summary(), result=result)


@router.delete("/{uid}/failures")
async def stop_device_failures(uid: str, registry: DeviceRegistry = Depends(get_registry)):
    try:
        stopped = await registry.stop_device_failures(uid)
    except DeviceNotFoundError:
        raise HTTPException(status_code=404, detail="Device not found")
    return {"success": True, "uid": uid, "stopped": stopped}
