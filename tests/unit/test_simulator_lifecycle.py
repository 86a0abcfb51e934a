"""
Lifecycle tests shared by every simulator type: start/stop state machine,
subscriptions, status publishing and inbound command handling.
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from fleet_simulator.exceptions import CommandError
from fleet_simulator.models.device import DeviceType
from fleet_simulator.models.events import BatteryPayload
from fleet_simulator.models.fleet import SimulatorState

from tests.simulation.devices import make_device, payloads


class TestStartStop:
    """Tests for start() and stop()"""

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "device_type", [DeviceType.BUTTON, DeviceType.WATCH, DeviceType.REPEATER, DeviceType.GENERIC]
    )
    async def test_start_publishes_birth_and_status(self, device_type, transport, fast_settings, templates):
        """Test every type subscribes, goes online and publishes a retained status"""
        device = await make_device(device_type, transport, fast_settings, templates=templates)

        assert device.state == SimulatorState.RUNNING
        assert device.status.online is True
        assert device.is_subscribed
        assert transport.subscription_count() == 1
        assert len(transport.messages(f"obedio/+/+/+/{device.device_id}/birth")) == 1
        status = payloads(transport, f"obedio/status/{device.device_id}")
        assert status[-1]["online"] is True
        assert status[-1]["type"] == device_type.value

        await device.stop()

    @pytest.mark.asyncio
    async def test_double_start_keeps_one_subscription(self, transport, fast_settings):
        """Test a second start is ignored"""
        device = await make_device(DeviceType.BUTTON, transport, fast_settings)
        await device.start()

        assert transport.subscription_count() == 1
        assert len(transport.messages("obedio/+/+/+/BTN-1/birth")) == 1
        await device.stop()

    @pytest.mark.asyncio
    async def test_stop_publishes_offline_and_unsubscribes(self, transport, fast_settings):
        device = await make_device(DeviceType.BUTTON, transport, fast_settings)
        await device.stop()

        assert device.state == SimulatorState.STOPPED
        assert transport.subscription_count() == 0
        assert device.scheduler.pending() == []
        assert payloads(transport, "obedio/status/BTN-1")[-1]["online"] is False

    @pytest.mark.asyncio
    async def test_stop_when_stopped_is_noop(self, transport, fast_settings):
        device = await make_device(DeviceType.BUTTON, transport, fast_settings, start=False)
        await device.stop()
        assert device.state == SimulatorState.STOPPED

    @pytest.mark.asyncio
    async def test_restart_after_stop(self, transport, fast_settings):
        """Test a stopped simulator can be started again"""
        device = await make_device(DeviceType.REPEATER, transport, fast_settings)
        await device.stop()
        await device.start()

        assert device.state == SimulatorState.RUNNING
        assert transport.subscription_count() == 1
        await device.stop()

    @pytest.mark.asyncio
    async def test_no_events_after_stop(self, transport, fast_settings):
        """Test timers die with the device and late records are dropped"""
        device = await make_device(
            DeviceType.BUTTON,
            transport,
            fast_settings,
            tuning={"press_interval_min": 0.01, "press_interval_max": 0.02},
        )
        await asyncio.sleep(0.1)
        await device.stop()
        count = len(device.events)
        published = len(transport.history)

        assert device.record(BatteryPayload(level=10)) is None
        await asyncio.sleep(0.1)
        assert len(device.events) == count
        assert len(transport.history) == published

    @pytest.mark.asyncio
    async def test_subscribe_failure_sets_error(self, transport, fast_settings):
        """Test a transport failure during start leaves the device in ERROR"""
        device = await make_device(DeviceType.BUTTON, transport, fast_settings, start=False)
        transport.subscribe = AsyncMock(side_effect=ConnectionError("broker down"))

        with pytest.raises(ConnectionError):
            await device.start()
        assert device.state == SimulatorState.ERROR
        assert device.error == "broker down"

        await device.stop()
        assert device.state == SimulatorState.STOPPED


class TestPeriodicBehavior:
    """Tests for heartbeat and status timers"""

    @pytest.mark.asyncio
    async def test_heartbeat_drains_battery(self, transport, fast_settings):
        device = await make_device(
            DeviceType.BUTTON,
            transport,
            fast_settings,
            heartbeat_interval=0.01,
            battery_drain_rate=1.0,
        )
        await asyncio.sleep(0.06)
        await device.stop()

        heartbeats = payloads(transport, "obedio/+/+/button/BTN-1/heartbeat")
        assert len(heartbeats) >= 2
        assert device.status.battery <= 98
        assert device.status.signal == 100

    @pytest.mark.asyncio
    async def test_offline_device_skips_heartbeat(self, transport, fast_settings):
        device = await make_device(DeviceType.BUTTON, transport, fast_settings, heartbeat_interval=0.01)
        await device.go_offline()
        transport.clear()
        await asyncio.sleep(0.05)

        assert transport.messages("obedio/+/+/button/BTN-1/heartbeat") == []
        await device.stop()


class TestCommands:
    """Tests for command dispatch through execute() and the command topic"""

    @pytest.mark.asyncio
    async def test_unsupported_action(self, transport, fast_settings):
        device = await make_device(DeviceType.BUTTON, transport, fast_settings)
        with pytest.raises(CommandError) as exc_info:
            await device.execute("fly")
        assert "Unsupported action" in str(exc_info.value)
        await device.stop()

    @pytest.mark.asyncio
    async def test_bad_parameters(self, transport, fast_settings):
        device = await make_device(DeviceType.BUTTON, transport, fast_settings)
        with pytest.raises(CommandError):
            await device.execute("set_signal", {"volume": 3})
        await device.stop()

    @pytest.mark.asyncio
    async def test_not_running(self, transport, fast_settings):
        device = await make_device(DeviceType.BUTTON, transport, fast_settings, start=False)
        with pytest.raises(CommandError):
            await device.execute("get_status")

    @pytest.mark.asyncio
    async def test_camel_case_names_accepted(self, transport, fast_settings):
        """Test camelCase command and parameter names map to methods"""
        device = await make_device(DeviceType.BUTTON, transport, fast_settings)
        level = await device.execute("batteryDrain", {"target": 20})
        assert level == 20
        assert device.status.battery == 20
        await device.stop()

    @pytest.mark.asyncio
    async def test_command_topic_round_trip(self, transport, fast_settings):
        """Test a command message runs and a response is published"""
        device = await make_device(DeviceType.BUTTON, transport, fast_settings)
        await transport.inject("obedio/command/BTN-1", {"command": "press", "params": {"press_type": "long"}})
        await asyncio.sleep(0.02)

        responses = payloads(transport, "obedio/response/BTN-1")
        assert len(responses) == 1
        assert responses[0]["success"] is True
        assert device.press_count == 1
        await device.stop()

    @pytest.mark.asyncio
    async def test_rejected_command_reports_failure(self, transport, fast_settings):
        device = await make_device(DeviceType.BUTTON, transport, fast_settings)
        await transport.inject("obedio/command/BTN-1", {"command": "fly"})
        await asyncio.sleep(0.02)

        responses = payloads(transport, "obedio/response/BTN-1")
        assert responses[0]["success"] is False
        await device.stop()

    @pytest.mark.asyncio
    async def test_wrong_parameter_type_changes_nothing(self, transport, fast_settings):
        device = await make_device(DeviceType.BUTTON, transport, fast_settings)
        events = len(device.events)

        with pytest.raises(CommandError) as exc_info:
            await device.execute("set_signal", {"level": "loud"})
        assert "Invalid parameters" in str(exc_info.value)
        assert device.status.signal == 100
        assert len(device.events) == events
        await device.stop()

    @pytest.mark.asyncio
    async def test_numeric_strings_are_converted(self, transport, fast_settings):
        device = await make_device(DeviceType.BUTTON, transport, fast_settings)
        assert await device.execute("set_signal", {"level": "42.5"}) == 42.5
        await device.stop()

    @pytest.mark.asyncio
    async def test_wrong_parameter_type_on_topic_reports_failure(self, transport, fast_settings):
        """Test a badly typed command message gets a failed response, not silence"""
        device = await make_device(DeviceType.BUTTON, transport, fast_settings)
        await transport.inject("obedio/command/BTN-1", {"command": "set_signal", "params": {"level": "loud"}})
        await transport.inject("obedio/command/BTN-1", {"command": "go_offline", "params": {"duration": [1]}})
        await asyncio.sleep(0.02)

        responses = payloads(transport, "obedio/response/BTN-1")
        assert [r["success"] for r in responses] == [False, False]
        assert device.status.online is True
        assert device.activity.errors == 2
        assert device.activity.messages_received == 2
        await device.stop()

    @pytest.mark.asyncio
    async def test_malformed_command_ignored(self, transport, fast_settings):
        device = await make_device(DeviceType.BUTTON, transport, fast_settings)
        await transport.inject("obedio/command/BTN-1", {"params": {}})
        await transport.inject("obedio/command/BTN-1", "not json")
        await asyncio.sleep(0.02)

        assert payloads(transport, "obedio/response/BTN-1") == []
        await device.stop()


class TestConnectivity:
    """Tests for offline/online and network faults"""

    @pytest.mark.asyncio
    async def test_offline_suppresses_publishing(self, transport, fast_settings):
        device = await make_device(DeviceType.WATCH, transport, fast_settings)
        await device.go_offline()
        transport.clear()

        assert await device.publish_status() is False
        assert len(transport.history) == 0
        await device.stop()

    @pytest.mark.asyncio
    async def test_offline_with_duration_comes_back(self, transport, fast_settings):
        device = await make_device(DeviceType.WATCH, transport, fast_settings)
        await device.go_offline(0.02)
        assert device.status.online is False

        await asyncio.sleep(0.05)
        assert device.status.online is True
        connectivity = [e.payload for e in device.events if e.kind == "connectivity"]
        assert [p.online for p in connectivity] == [False, True]
        await device.stop()

    @pytest.mark.asyncio
    async def test_offline_duration_string_is_converted(self, transport, fast_settings):
        device = await make_device(DeviceType.WATCH, transport, fast_settings)
        await device.execute("go_offline", {"duration": "0.02"})
        assert device.status.online is False

        await asyncio.sleep(0.05)
        assert device.status.online is True
        assert device.activity.reconnections == 1
        await device.stop()

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "command, params",
        [
            ("go_offline", {"duration": "soon"}),
            ("go_offline", {"duration": -1}),
            ("network_failure", {"failure_type": "packet_loss", "duration": "later"}),
            ("drain_battery", {"target": 10, "continuous": True, "interval": 0}),
            ("drain_battery", {"target": 10, "continuous": True, "rate": -2}),
        ],
    )
    async def test_bad_duration_leaves_device_untouched(self, command, params, transport, fast_settings):
        """Test invalid timing is rejected before any state changes"""
        device = await make_device(DeviceType.WATCH, transport, fast_settings)
        events = len(device.events)
        timers = device.scheduler.pending()

        with pytest.raises(CommandError):
            await device.execute(command, params)
        assert device.status.online is True
        assert device.status.battery == 100
        assert device._packet_loss == 0.0
        assert len(device.events) == events
        assert device.scheduler.pending() == timers
        await device.stop()

    @pytest.mark.asyncio
    async def test_unknown_network_failure(self, transport, fast_settings):
        device = await make_device(DeviceType.BUTTON, transport, fast_settings)
        with pytest.raises(CommandError):
            await device.network_failure("solar_flare")
        await device.stop()

    @pytest.mark.asyncio
    async def test_packet_loss_recovers(self, transport, fast_settings):
        device = await make_device(DeviceType.BUTTON, transport, fast_settings)
        await device.network_failure("packet_loss", duration=0.02)
        assert device._packet_loss == 0.3

        await asyncio.sleep(0.05)
        assert device._packet_loss == 0.0
        assert device.events[-1].payload.phase == "recovered"
        await device.stop()

    @pytest.mark.asyncio
    async def test_recent_events_limit(self, transport, fast_settings):
        device = await make_device(DeviceType.BUTTON, transport, fast_settings)
        for level in (90, 80, 70):
            await device.drain_battery(level)

        recent = device.recent_events(2)
        assert [e.payload.level for e in recent] == [80, 70]
        assert device.recent_events(0) == []
        await device.stop()


class TestMaintenanceCommands:
    """Tests for ping, reset, config and activity counters"""

    @pytest.mark.asyncio
    async def test_ping_publishes_pong(self, transport, fast_settings):
        device = await make_device(DeviceType.BUTTON, transport, fast_settings)
        await transport.inject("obedio/command/BTN-1", {"command": "ping", "params": {"pingId": "p-1"}})
        await asyncio.sleep(0.02)

        pongs = payloads(transport, "obedio/+/+/button/BTN-1/pong")
        assert pongs[0]["ping_id"] == "p-1"
        assert pongs[0]["response"] == "pong"
        assert payloads(transport, "obedio/response/BTN-1")[0]["success"] is True

        generated = await device.execute("ping")
        assert generated["ping_id"]
        await device.stop()

    @pytest.mark.asyncio
    async def test_reset_restarts_after_delay(self, transport, fast_settings):
        device = await make_device(DeviceType.BUTTON, transport, fast_settings)
        await device.execute("reset", {"delay": 0.02})

        assert device.state == SimulatorState.STOPPED
        assert device.scheduler.is_scheduled("restart")
        await asyncio.sleep(0.06)
        assert device.state == SimulatorState.RUNNING
        assert device.status.online is True
        assert len(transport.messages("obedio/+/+/button/BTN-1/birth")) == 2
        await device.stop()

    @pytest.mark.asyncio
    async def test_reset_over_command_topic(self, transport, fast_settings):
        device = await make_device(DeviceType.BUTTON, transport, fast_settings)
        await transport.inject("obedio/command/BTN-1", {"command": "reset", "params": {"delay": 0.02}})
        await asyncio.sleep(0.08)

        assert device.state == SimulatorState.RUNNING
        assert transport.subscription_count() == 1
        await device.stop()

    @pytest.mark.asyncio
    async def test_stop_cancels_pending_restart(self, transport, fast_settings):
        device = await make_device(DeviceType.BUTTON, transport, fast_settings)
        await device.reset(delay=0.02)
        await device.stop()

        await asyncio.sleep(0.05)
        assert device.state == SimulatorState.STOPPED
        assert device.scheduler.pending() == []

    @pytest.mark.asyncio
    async def test_config_update(self, transport, fast_settings):
        device = await make_device(DeviceType.BUTTON, transport, fast_settings)
        config = await device.execute("config", {"heartbeatInterval": 0.01, "name": "Bridge Button"})

        assert config.heartbeat_interval == 0.01
        assert device.config.name == "Bridge Button"
        await asyncio.sleep(0.05)
        assert len(transport.messages("obedio/+/+/button/BTN-1/heartbeat")) >= 2
        await device.stop()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("params", [{}, {"heartbeat_interval": 0}, {"name": "  "}])
    async def test_config_update_rejected(self, params, transport, fast_settings):
        device = await make_device(DeviceType.BUTTON, transport, fast_settings)
        with pytest.raises(CommandError):
            await device.execute("update_config", params)
        assert device.config.heartbeat_interval == fast_settings.heartbeat_interval
        await device.stop()

    @pytest.mark.asyncio
    async def test_activity_counters_in_summary(self, transport, fast_settings):
        device = await make_device(DeviceType.BUTTON, transport, fast_settings)
        sent = device.activity.messages_sent
        assert sent >= 2  # birth and status

        await transport.inject("obedio/command/BTN-1", {"command": "press"})
        await transport.inject("obedio/command/BTN-1", {"command": "fly"})
        await asyncio.sleep(0.02)

        summary = device.summary()
        assert summary.activity.messages_received == 2
        assert summary.activity.errors == 1
        assert summary.activity.messages_sent > sent
        assert summary.activity.uptime > 0
        metrics = await device.execute("get_metrics")
        assert metrics.messages_received == 2
        await device.stop()

    @pytest.mark.asyncio
    async def test_failed_publish_counted(self, transport, fast_settings):
        device = await make_device(DeviceType.BUTTON, transport, fast_settings)
        transport.publish = AsyncMock(return_value=False)

        assert await device.publish_status() is False
        assert device.activity.errors == 1
        await device.stop()

    @pytest.mark.asyncio
    async def test_stop_publishes_last_will(self, transport, fast_settings):
        device = await make_device(DeviceType.WATCH, transport, fast_settings)
        await device.go_offline()
        await device.stop()

        lwt = payloads(transport, "obedio/+/+/watch/WCH-1/lwt")
        assert len(lwt) == 1
        assert lwt[0]["device_id"] == "WCH-1"
        assert lwt[0]["status"] == "offline"
