"""
FastAPI application and CLI entry point
"""

import asyncio
import logging
import signal
import sys
from contextlib import asynccontextmanager
from pathlib import Path
from typing import List, Optional

# Configure application logging (uvicorn only sets up its own loggers)
logging.basicConfig(
    level=logging.INFO, format="%(levelname)s:\t %(name)s - %(message)s"
)
logger = logging.getLogger(__name__)

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .config import Settings, settings
from .exceptions import FleetSimulatorError
from .models.device import DeviceType, parse_device_type
from .models.fleet import LifecycleTestConfig, LoadTestConfig, SimulatorSpec
from .models.metrics import MetricsConfig
from .routers import fleet, virtual_devices
from .services.device_registry import DeviceRegistry
from .services.device_store import DeviceStore
from .services.failure_simulator import FailureSimulator
from .services.fleet_orchestrator import FleetOrchestrator
from .services.metrics_collector import MetricsCollector
from .services.performance import PERFORMANCE_SCENARIOS, PerformanceTester, save_report
from .services.transport import Topics, Transport, create_transport
from .simulators import default_template_registry


def metrics_config(config: Settings) -> MetricsConfig:
    return MetricsConfig(
        collection_interval=config.metrics_collection_interval,
        retention=config.metrics_retention,
        export_interval=config.metrics_export_interval,
        export_path=config.metrics_export_dir,
    )


async def start_services(app: FastAPI, config: Settings, transport: Optional[Transport] = None):
    """Connect the shared transport and put every service on ``app.state``"""
    transport = transport or create_transport(config)
    await transport.connect()

    topics = Topics(config.topic_base)
    templates = default_template_registry(config.templates_dir)
    metrics = MetricsCollector(metrics_config(config))
    failures = FailureSimulator()

    app.state.settings = config
    app.state.transport = transport
    app.state.templates = templates
    app.state.metrics = metrics
    app.state.failures = failures
    app.state.registry = DeviceRegistry(
        transport,
        templates=templates,
        failure_simulator=failures,
        store=DeviceStore(str(config.device_store_path)),
        settings=config,
        topics=topics,
        metrics=metrics,
    )
    app.state.orchestrator = FleetOrchestrator(
        transport,
        templates=templates,
        settings=config,
        metrics=metrics,
        topics=topics,
    )
    if config.metrics_enabled:
        metrics.start()
    logger.info(f"Loaded {len(templates.names())} device templates: {', '.join(templates.names())}")


async def stop_services(app: FastAPI):
    """Stop devices, failures and metrics, then disconnect the transport"""
    state = app.state
    try:
        await state.registry.remove_all()
    except Exception as e:
        logger.error(f"Error removing virtual devices: {e}")
    try:
        await state.orchestrator.stop_all_simulators(shutdown_delay=0)
    except Exception as e:
        logger.error(f"Error stopping fleet: {e}")
    await state.failures.stop_all_failures()
    await state.metrics.stop()
    await state.transport.disconnect()
    logger.debug("Services stopped")


def create_app(config: Settings = settings, transport: Optional[Transport] = None) -> FastAPI:
    """Build the control-surface application.

    ``transport`` overrides the one selected in settings (tests pass a
    loopback transport here).
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan events"""
        print(f"Starting {config.app_name} v{config.app_version}")
        print(f"Transport: {config.transport}")

        config.data_dir.mkdir(parents=True, exist_ok=True)
        config.logs_dir.mkdir(parents=True, exist_ok=True)

        await start_services(app, config, transport)

        yield

        # Shutdown - this runs when uvicorn receives SIGTERM/SIGINT
        logger.debug("Shutting down (lifespan)...")
        await stop_services(app)

    app = FastAPI(
        title=config.app_name,
        version=config.app_version,
        description="Virtual IoT device fleet simulator for yacht and villa deployments",
        lifespan=lifespan,
    )

    # CORS middleware (for local development)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(virtual_devices.router)
    app.include_router(fleet.router)

    @app.get("/api/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "app": config.app_name,
            "version": config.app_version,
        }

    return app


app = create_app()


# ---------------------------------------------------------------------------
# CLI runners
# ---------------------------------------------------------------------------


def _parse_types(value: str) -> List[DeviceType]:
    types = []
    for name in value.split(","):
        device_type = parse_device_type(name.strip())
        if device_type is None:
            raise SystemExit(f"Unknown device type: {name}")
        types.append(device_type)
    return types


def _install_signal_handlers(stop_event: asyncio.Event):
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Windows event loops have no signal handler support
            signal.signal(sig, lambda *_: loop.call_soon_threadsafe(stop_event.set))


async def _run_cli(args, config: Settings):
    transport = create_transport(config)
    await transport.connect()
    templates = default_template_registry(config.templates_dir)
    metrics = MetricsCollector(metrics_config(config)) if args.metrics else None
    orchestrator = FleetOrchestrator(transport, templates=templates, settings=config, metrics=metrics)
    if metrics is not None:
        metrics.start()

    stop_event = asyncio.Event()
    _install_signal_handlers(stop_event)

    try:
        if args.command == "start":
            placement = {"site": args.site} if args.site else {}
            if args.room:
                placement["room"] = args.room
            specs = [
                SimulatorSpec(type=DeviceType.BUTTON, count=args.buttons, config=placement),
                SimulatorSpec(type=DeviceType.WATCH, count=args.watches, config=placement),
                SimulatorSpec(type=DeviceType.REPEATER, count=args.repeaters, config=placement),
                SimulatorSpec(
                    type=DeviceType.GENERIC, count=args.generic, config=placement, template=args.template
                ),
            ]
            await orchestrator.start_simulators([s for s in specs if s.count > 0])
            print("Simulation running, press Ctrl+C to stop")
            await stop_event.wait()
        else:
            if args.command == "load-test":
                runner = orchestrator.run_load_test(
                    LoadTestConfig(
                        duration=args.duration,
                        ramp_up_time=args.ramp_up,
                        max_devices=args.max_devices,
                        device_types=_parse_types(args.types),
                        template=args.template,
                    )
                )
            else:
                runner = orchestrator.run_lifecycle_test(
                    LifecycleTestConfig(
                        cycles=args.cycles,
                        connect_duration=args.connect_duration,
                        disconnect_duration=args.disconnect_duration,
                        device_count=args.device_count,
                    )
                )
            task = asyncio.create_task(runner)
            waiter = asyncio.create_task(stop_event.wait())
            done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
            if task in done:
                waiter.cancel()
                print(task.result().model_dump_json(indent=2))
            else:
                logger.info("Interrupted, cancelling test")
                task.cancel()
                await asyncio.gather(task, return_exceptions=True)
    finally:
        await orchestrator.stop_all_simulators()
        if metrics is not None:
            await metrics.stop()
            path = metrics.export_metrics()
            if path:
                print(f"Metrics exported to {path}")
        await transport.disconnect()


async def _run_perf(args, config: Settings):
    transport = create_transport(config)
    await transport.connect()
    templates = default_template_registry(config.templates_dir)
    metrics = MetricsCollector(metrics_config(config))
    orchestrator = FleetOrchestrator(transport, templates=templates, settings=config, metrics=metrics)
    tester = PerformanceTester(orchestrator, metrics)

    stop_event = asyncio.Event()
    _install_signal_handlers(stop_event)

    try:
        names = list(PERFORMANCE_SCENARIOS) if args.all else [args.scenario]
        task = asyncio.create_task(tester.run_all(names, time_scale=args.time_scale))
        waiter = asyncio.create_task(stop_event.wait())
        done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        if task in done:
            waiter.cancel()
            reports = task.result()
        else:
            logger.info("Interrupted, cancelling performance run")
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
            reports = tester.reports
        for report in reports:
            print(
                f"{report.test_type}: {report.total_messages} messages, "
                f"{report.messages_per_second:.2f} msg/s, success {report.success_rate:.2f}%"
            )
        if reports:
            path = save_report(reports, args.report or config.logs_dir)
            print(f"Report saved to {path}")
    finally:
        await orchestrator.stop_all_simulators()
        await metrics.stop()
        await transport.disconnect()


def main():
    """CLI entry point"""
    import argparse

    import uvicorn

    parser = argparse.ArgumentParser(description="Virtual IoT device fleet simulator")

    # Global options
    parser.add_argument(
        "--transport",
        choices=["mqtt", "loopback"],
        default=settings.transport,
        help=f"Message transport (default: {settings.transport})",
    )
    parser.add_argument("--broker", type=str, default=None, help="MQTT broker URL")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    parser.add_argument("--metrics", action="store_true", help="Collect and export performance metrics")

    subparsers = parser.add_subparsers(dest="command")

    # Subcommand: serve
    serve_parser = subparsers.add_parser("serve", help="Run the control-surface HTTP server")
    serve_parser.add_argument(
        "--port",
        type=int,
        default=settings.port,
        help=f"Port to listen on (default: {settings.port})",
    )
    serve_parser.add_argument(
        "--host",
        type=str,
        default=settings.host,
        help=f"Host to bind to (default: {settings.host})",
    )

    # Subcommand: start
    start_parser = subparsers.add_parser("start", help="Start a device fleet until interrupted")
    start_parser.add_argument("-b", "--buttons", type=int, default=5, help="Number of buttons")
    start_parser.add_argument("-w", "--watches", type=int, default=3, help="Number of watches")
    start_parser.add_argument("-r", "--repeaters", type=int, default=2, help="Number of repeaters")
    start_parser.add_argument("-g", "--generic", type=int, default=0, help="Number of generic devices")
    start_parser.add_argument(
        "-t", "--template", type=str, default="temperature_sensor", help="Generic device template"
    )
    start_parser.add_argument("-s", "--site", type=str, default=None, help="Site for all devices")
    start_parser.add_argument("--room", type=str, default=None, help="Room for all devices")

    # Subcommand: load-test
    load_parser = subparsers.add_parser("load-test", help="Run a sustained load test")
    load_parser.add_argument("--duration", type=float, default=300, help="Test duration (seconds)")
    load_parser.add_argument("--ramp-up", type=float, default=30, help="Ramp-up time (seconds)")
    load_parser.add_argument("--max-devices", type=int, default=50, help="Total devices")
    load_parser.add_argument(
        "--types", type=str, default="button,watch,repeater", help="Comma-separated device types"
    )
    load_parser.add_argument("-t", "--template", type=str, default=None, help="Template for generic devices")

    # Subcommand: lifecycle-test
    lifecycle_parser = subparsers.add_parser("lifecycle-test", help="Run connect/disconnect cycles")
    lifecycle_parser.add_argument("--cycles", type=int, default=5, help="Number of cycles")
    lifecycle_parser.add_argument(
        "--connect-duration", type=float, default=60, help="Time connected per cycle (seconds)"
    )
    lifecycle_parser.add_argument(
        "--disconnect-duration", type=float, default=10, help="Pause between cycles (seconds)"
    )
    lifecycle_parser.add_argument("--device-count", type=int, default=10, help="Devices per cycle")

    # Subcommand: perf-test
    perf_parser = subparsers.add_parser("perf-test", help="Run catalogued performance scenarios")
    perf_parser.add_argument(
        "scenario",
        nargs="?",
        choices=list(PERFORMANCE_SCENARIOS),
        help="Scenario to run",
    )
    perf_parser.add_argument("--all", action="store_true", help="Run every scenario in turn")
    perf_parser.add_argument("--list", action="store_true", help="List scenarios and exit")
    perf_parser.add_argument(
        "--time-scale",
        type=float,
        default=1.0,
        help="Multiply every scenario duration (e.g. 0.1 for a quick run)",
    )
    perf_parser.add_argument(
        "--report", type=Path, default=None, help="Report directory (default: the logs directory)"
    )

    # Subcommand: templates
    subparsers.add_parser("templates", help="List available generic device templates")

    args = parser.parse_args()

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    settings.transport = args.transport
    if args.broker:
        settings.mqtt_broker_url = args.broker

    if args.command == "templates":
        registry = default_template_registry(settings.templates_dir)
        for name in registry.names():
            template = registry.get(name)
            print(f"  {name}  {template.name}  sensors={len(template.sensors)} events={len(template.events)}")
        return

    if args.command == "perf-test":
        if args.list:
            for name, scenario in PERFORMANCE_SCENARIOS.items():
                print(f"  {name}  [{scenario.type}] {scenario.description} ({scenario.device_count} devices)")
            return
        if not args.all and args.scenario is None:
            perf_parser.error("choose a scenario, --all or --list")
        try:
            asyncio.run(_run_perf(args, settings))
        except FleetSimulatorError as e:
            logger.error(str(e))
            sys.exit(1)
        return

    if args.command in ("start", "load-test", "lifecycle-test"):
        try:
            asyncio.run(_run_cli(args, settings))
        except FleetSimulatorError as e:
            logger.error(str(e))
            sys.exit(1)
        return

    # Default: serve
    uvicorn.run(
        create_app(settings),
        host=getattr(args, "host", settings.host),
        port=getattr(args, "port", settings.port),
    )


if __name__ == "__main__":
    main()
