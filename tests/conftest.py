"""
Shared pytest fixtures for fleet simulator tests
"""

import sys
from pathlib import Path
from typing import AsyncGenerator

import pytest
from httpx import ASGITransport, AsyncClient

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from fleet_simulator.config import Settings
from fleet_simulator.services.device_registry import DeviceRegistry
from fleet_simulator.services.device_store import DeviceStore
from fleet_simulator.services.failure_simulator import FailureSimulator
from fleet_simulator.services.fleet_orchestrator import FleetOrchestrator
from fleet_simulator.services.transport import LoopbackTransport
from fleet_simulator.simulators import default_template_registry

# Long enough that no autonomous timer fires during a test unless asked to
QUIET = 3600.0


@pytest.fixture
def fast_settings(tmp_path) -> Settings:
    """Settings with quiet timers, short fleet delays and a temporary data dir"""
    return Settings(
        transport="loopback",
        data_dir=tmp_path,
        logs_dir=tmp_path / "logs",
        metrics_export_dir=tmp_path / "metrics",
        device_store_path=tmp_path / "virtual_devices.json",
        heartbeat_interval=QUIET,
        status_update_interval=QUIET,
        signal_fluctuation_range=0.0,
        button_press_min_interval=QUIET,
        button_press_max_interval=QUIET,
        watch_step_interval=QUIET,
        watch_location_interval=QUIET,
        repeater_mesh_update_interval=QUIET,
        device_startup_delay=0.01,
        device_shutdown_delay=0.0,
        metrics_enabled=False,
    )


@pytest.fixture
async def transport() -> AsyncGenerator[LoopbackTransport, None]:
    """Connected in-process transport"""
    loopback = LoopbackTransport()
    await loopback.connect()
    yield loopback
    await loopback.disconnect()


@pytest.fixture
def templates():
    return default_template_registry()


@pytest.fixture
def store(fast_settings) -> DeviceStore:
    return DeviceStore(str(fast_settings.device_store_path))


@pytest.fixture
async def registry(transport, templates, store, fast_settings):
    """Device registry wired to the loopback transport"""
    reg = DeviceRegistry(
        transport,
        templates=templates,
        failure_simulator=FailureSimulator(),
        store=store,
        settings=fast_settings,
    )
    yield reg
    await reg.failures.stop_all_failures()
    await reg.remove_all()


@pytest.fixture
async def orchestrator(transport, templates, fast_settings):
    orch = FleetOrchestrator(transport, templates=templates, settings=fast_settings)
    yield orch
    await orch.stop_all_simulators()


# FastAPI test client fixtures
@pytest.fixture
async def app(fast_settings):
    """Create FastAPI app with its services started on a loopback transport"""
    from fleet_simulator.main import create_app

    application = create_app(fast_settings, transport=LoopbackTransport())
    async with application.router.lifespan_context(application):
        yield application


@pytest.fixture
async def async_client(app) -> AsyncGenerator[AsyncClient, None]:
    """Create async test client"""
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test"
    ) as client:
        yield client
