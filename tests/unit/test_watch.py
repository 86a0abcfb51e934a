"""
Unit tests for WatchSimulator
"""

import asyncio

import pytest

from fleet_simulator.exceptions import CommandError
from fleet_simulator.models.device import CrewStatus, DeviceType, Location
from fleet_simulator.models.events import EventPriority, RequestAction
from fleet_simulator.simulators.watch import haversine_distance, initial_bearing

from tests.simulation.devices import event_kinds, make_device, payloads


@pytest.fixture
async def watch(transport, fast_settings):
    device = await make_device(
        DeviceType.WATCH,
        transport,
        fast_settings,
        tuning={"auto_accept_delay": 0.01, "fall_sos_delay": 0.01},
    )
    yield device
    await device.stop()


class TestGeo:
    def test_one_degree_of_latitude(self):
        a = Location(latitude=43.0, longitude=7.0)
        b = Location(latitude=44.0, longitude=7.0)
        assert abs(haversine_distance(a, b) - 111195) < 100

    def test_bearing_east(self):
        a = Location(latitude=0.0, longitude=0.0)
        b = Location(latitude=0.0, longitude=1.0)
        assert abs(initial_bearing(a, b) - 90) < 0.01


class TestCrewAssignment:
    """Tests for crew binding"""

    @pytest.mark.asyncio
    async def test_assign_crew_publishes(self, watch, transport):
        await watch.execute("assign_crew", {"crewId": "42", "crewName": "Anna"})

        assert watch.crew_status == CrewStatus.AVAILABLE
        assert watch.extra_status()["assigned_crew_id"] == "42"
        assign = payloads(transport, "obedio/+/+/watch/WCH-1/assign")
        assert assign[-1]["crew_name"] == "Anna"

    @pytest.mark.asyncio
    async def test_unassigned_watch_is_offline(self, watch):
        assert watch.crew_status == CrewStatus.OFFLINE
        with pytest.raises(CommandError):
            await watch.set_crew_status("busy")

    @pytest.mark.asyncio
    async def test_assignment_from_tuning(self, transport, fast_settings):
        """Test a pre-assigned watch announces its crew on start"""
        device = await make_device(
            DeviceType.WATCH, transport, fast_settings, tuning={"assigned_crew_id": "7"}
        )
        assert event_kinds(device) == ["assignment"]
        await device.stop()

    @pytest.mark.asyncio
    async def test_unknown_crew_status(self, watch):
        await watch.assign_crew("1")
        with pytest.raises(CommandError):
            await watch.set_crew_status("asleep")


class TestServiceRequests:
    """Tests for the request workflow"""

    @pytest.mark.asyncio
    async def test_available_crew_auto_accepts(self, watch):
        await watch.assign_crew("1")
        await watch.execute("receive_request", {"requestId": "REQ-1", "location": "Salon", "priority": "high"})
        assert watch.active_requests["REQ-1"]["status"] == "pending"

        await asyncio.sleep(0.05)
        assert watch.active_requests["REQ-1"]["status"] == "accepted"
        assert watch.crew_status == CrewStatus.BUSY

        assert await watch.complete_request("REQ-1", notes="Done") is True
        assert watch.active_requests == {}
        assert watch.crew_status == CrewStatus.AVAILABLE

        actions = [e.payload.action for e in watch.events if e.kind == "request"]
        assert actions == [RequestAction.RECEIVED, RequestAction.ACCEPTED, RequestAction.COMPLETED]

    @pytest.mark.asyncio
    async def test_unassigned_watch_leaves_request_pending(self, watch):
        await watch.receive_service_request("REQ-2")
        await asyncio.sleep(0.05)
        assert watch.active_requests["REQ-2"]["status"] == "pending"

    @pytest.mark.asyncio
    async def test_decline_cancels_auto_accept(self, watch):
        await watch.assign_crew("1")
        await watch.receive_service_request("REQ-3")
        assert await watch.decline_request("REQ-3", reason="busy") is True

        await asyncio.sleep(0.05)
        assert "REQ-3" not in watch.active_requests
        assert watch.crew_status == CrewStatus.AVAILABLE

    @pytest.mark.asyncio
    async def test_unknown_request_ids(self, watch):
        assert await watch.accept_request("nope") is False
        assert await watch.decline_request("nope") is False
        assert await watch.complete_request("nope") is False

    @pytest.mark.asyncio
    async def test_unknown_priority(self, watch):
        with pytest.raises(CommandError):
            await watch.receive_service_request("REQ-4", priority="whenever")


class TestLocation:
    @pytest.mark.asyncio
    async def test_speed_and_heading(self, watch, transport):
        """Test the second fix reports movement north"""
        await watch.update_location(43.7000, 7.3000)
        await asyncio.sleep(0.01)
        await watch.update_location(43.7010, 7.3000)

        fixes = payloads(transport, "obedio/+/+/watch/WCH-1/location")
        assert fixes[0]["speed"] == 0
        assert fixes[1]["speed"] > 0
        assert fixes[1]["heading"] < 1 or fixes[1]["heading"] > 359

    @pytest.mark.asyncio
    async def test_update_keeps_deck(self, watch):
        await watch.update_location(43.7, 7.3, deck="upper")
        location = await watch.update_location(43.71, 7.3)
        assert location.deck == "upper"

    @pytest.mark.asyncio
    async def test_unknown_movement_pattern(self, watch):
        with pytest.raises(CommandError):
            watch.simulate_movement("moonwalk")
        with pytest.raises(CommandError):
            watch.simulate_movement("patrol", duration=-5)
        assert watch.movement_pattern is None
        assert not watch.scheduler.is_scheduled("movement")


class TestSafety:
    """Tests for SOS, fall detection and charging"""

    @pytest.mark.asyncio
    async def test_sos(self, watch, transport):
        event = await watch.execute("sos", {"message": "Man overboard"})

        assert event.priority == EventPriority.CRITICAL
        assert watch.status.battery == 95
        sos = payloads(transport, "obedio/+/+/watch/WCH-1/sos")
        assert sos[0]["message"] == "Man overboard"

    @pytest.mark.asyncio
    async def test_fall_triggers_sos(self, watch):
        await watch.simulate_fall(impact=4.2)
        assert event_kinds(watch) == ["fall"]

        await asyncio.sleep(0.05)
        assert event_kinds(watch) == ["fall", "sos"]
        assert watch.events[-1].payload.reason == "fall_detected"

    @pytest.mark.asyncio
    async def test_charging_raises_battery_on_status_tick(self, watch):
        watch.status.battery = 50
        await watch.start_charging()
        watch.on_status_tick()
        assert watch.status.battery == 52

        await watch.stop_charging()
        watch.on_status_tick()
        assert watch.status.battery == 52

    @pytest.mark.asyncio
    async def test_health_ticks(self, transport, fast_settings):
        device = await make_device(DeviceType.WATCH, transport, fast_settings, tuning={"step_interval": 0.01})
        await asyncio.sleep(0.05)
        await device.stop()

        health = payloads(transport, "obedio/+/+/watch/WCH-1/health")
        assert len(health) >= 2
        assert health[-1]["steps"] > health[0]["steps"]
        assert 50 <= health[-1]["heart_rate"] <= 200
