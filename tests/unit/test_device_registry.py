"""
Unit tests for DeviceRegistry and DeviceStore
"""

import re
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from fleet_simulator.exceptions import (
    CommandError,
    ConfigurationError,
    DeviceNotFoundError,
    UnknownDeviceTypeError,
)
from fleet_simulator.models.api import CreateDeviceRequest, StoredDevice
from fleet_simulator.models.device import DeviceType
from fleet_simulator.models.metrics import MetricsConfig
from fleet_simulator.services.device_registry import DeviceRegistry, tuning_overrides
from fleet_simulator.services.device_store import DeviceStore
from fleet_simulator.services.metrics_collector import MetricsCollector


def _request(**kwargs) -> CreateDeviceRequest:
    data = {"type": "BUTTON", "name": "Salon Button", "room": "Main Salon"}
    data.update(kwargs)
    return CreateDeviceRequest(**data)


class TestTuningOverrides:
    def test_camel_case_and_location_aliases(self):
        overrides = tuning_overrides(
            DeviceType.WATCH,
            {"assignedCrewId": 3, "initialLocation": {"lat": 43.7, "lng": 7.3, "deck": "main"}},
        )
        assert overrides["tuning"]["assigned_crew_id"] == "3"
        assert overrides["tuning"]["initial_location"] == {"latitude": 43.7, "longitude": 7.3, "deck": "main"}

    def test_config_fields_and_unknown_keys(self):
        overrides = tuning_overrides(DeviceType.REPEATER, {"heartbeatInterval": 5, "colour": "red"})
        assert overrides == {"heartbeat_interval": 5}


class TestCreateDevice:
    """Tests for create_device()"""

    @pytest.mark.asyncio
    async def test_generated_uid(self, registry):
        response = await registry.create_device(_request())

        assert re.match(r"^OB-\d{4}-BTN-\d{7}-V$", response.device.uid)
        assert response.device.room == "Main Salon"
        assert response.device.is_virtual is True
        assert response.warnings == []
        assert response.device.uid in registry

    @pytest.mark.asyncio
    async def test_watch_alias_with_camel_case_config(self, registry):
        response = await registry.create_device(
            _request(
                type="SMART_WATCH",
                name="Captain Watch",
                uid="WATCH-1",
                additional_config={"assignedCrewId": 1, "initialLocation": {"lat": 43.7, "lng": 7.3}},
            )
        )
        device = registry.get_device("WATCH-1")

        assert response.device.type == "watch"
        assert device.extra_status()["assigned_crew_id"] == "1"
        assert device.status.location.latitude == 43.7

    @pytest.mark.asyncio
    async def test_initial_battery(self, registry):
        response = await registry.create_device(_request(initial_battery=42))
        assert response.device.status.battery == 42

    @pytest.mark.asyncio
    async def test_unknown_type(self, registry):
        with pytest.raises(UnknownDeviceTypeError):
            await registry.create_device(_request(type="TOASTER"))
        assert len(registry) == 0

    @pytest.mark.asyncio
    async def test_duplicate_uid(self, registry, transport):
        await registry.create_device(_request(uid="BTN-A"))
        with pytest.raises(ConfigurationError):
            await registry.create_device(_request(uid="BTN-A"))
        assert len(registry) == 1
        assert transport.subscription_count() == 1

    @pytest.mark.asyncio
    async def test_persisted_when_requested(self, registry, store):
        await registry.create_device(_request(uid="BTN-A", save_to_database=True))
        stored = await store.get("BTN-A")
        assert stored.room == "Main Salon"
        assert stored.type == "button"

    @pytest.mark.asyncio
    async def test_persist_failure_is_a_warning(self, registry):
        registry.store = AsyncMock()
        registry.store.upsert.return_value = False

        response = await registry.create_device(_request(uid="BTN-A", save_to_database=True))
        assert "BTN-A" in registry
        assert "could not be saved" in response.warnings[0]

    @pytest.mark.asyncio
    async def test_start_failure_is_tracked_in_error(self, registry, transport):
        """Test a device whose start fails stays registered in ERROR with a warning"""
        with patch.object(transport, "subscribe", AsyncMock(side_effect=ConnectionError("broker down"))):
            response = await registry.create_device(_request(uid="BTN-A", save_to_database=False))

        assert response.device.state == "error"
        assert "failed to start" in response.warnings[0]
        assert "broker down" in response.warnings[0]
        assert "BTN-A" in registry
        assert registry.get_device("BTN-A").error == "broker down"
        assert "BTN-A" in registry.failures.device_ids()

        assert await registry.remove_device("BTN-A") is True
        assert len(registry) == 0

    @pytest.mark.asyncio
    async def test_start_failure_counted_in_metrics(self, transport, templates, store, fast_settings):
        metrics = MagicMock()
        registry = DeviceRegistry(transport, templates=templates, store=store, settings=fast_settings, metrics=metrics)
        metrics.add_source.assert_called_once_with(registry.refresh_metrics)

        with patch.object(transport, "subscribe", AsyncMock(side_effect=ConnectionError("broker down"))):
            await registry.create_device(_request(uid="BTN-A", save_to_database=False))

        metrics.increment_errors.assert_called_once_with("devices")
        await registry.remove_all()

    @pytest.mark.asyncio
    async def test_saved_by_default(self, registry, store):
        await registry.create_device(CreateDeviceRequest(type="BUTTON", name="Bridge Button", room="Bridge", uid="BTN-D"))
        assert (await store.get("BTN-D")).room == "Bridge"

    def test_camel_case_request(self):
        request = CreateDeviceRequest.model_validate(
            {
                "type": "BUTTON",
                "name": "Bridge Button",
                "room": "Bridge",
                "initialBattery": 42,
                "initialSignal": 70,
                "additionalConfig": {"heartbeatInterval": 5},
                "saveToDatabase": False,
            }
        )
        assert request.initial_battery == 42
        assert request.initial_signal == 70
        assert request.additional_config == {"heartbeatInterval": 5}
        assert request.save_to_database is False



class TestRemoveAndActions:
    @pytest.mark.asyncio
    async def test_remove_device(self, registry, transport, store):
        await registry.create_device(_request(uid="BTN-A", save_to_database=True))
        device = registry.get_device("BTN-A")

        assert await registry.remove_device("BTN-A") is True
        assert await registry.remove_device("BTN-A") is False
        assert transport.subscription_count() == 0
        assert device.scheduler.pending() == []
        assert await store.get("BTN-A") is None

    @pytest.mark.asyncio
    async def test_remove_cancels_failures(self, registry):
        await registry.create_device(_request(uid="BTN-A"))
        registry.execute_failure_scenario("unstable_connection")
        assert registry.get_active_failures() == ["BTN-A-intermittent_connection"]

        await registry.remove_device("BTN-A")
        assert registry.get_active_failures() == []

    @pytest.mark.asyncio
    async def test_perform_action(self, registry):
        await registry.create_device(_request(uid="BTN-A"))
        await registry.perform_action("BTN-A", "press", {"pressType": "long"})
        assert registry.get_device("BTN-A").press_count == 1

    @pytest.mark.asyncio
    async def test_action_errors(self, registry):
        await registry.create_device(_request(uid="BTN-A"))
        with pytest.raises(DeviceNotFoundError):
            await registry.perform_action("BTN-Z", "press")
        with pytest.raises(CommandError):
            await registry.perform_action("BTN-A", "assign_crew", {"crew_id": "1"})

    @pytest.mark.asyncio
    async def test_device_detail(self, registry):
        await registry.create_device(_request(uid="BTN-A"))
        for _ in range(3):
            await registry.perform_action("BTN-A", "press")

        detail = registry.device_detail("BTN-A", limit=2)
        assert len(detail.events) == 2
        assert detail.config.device_id == "BTN-A"


class TestScenariosAndStatistics:
    """Tests for canned scenarios and fleet figures"""

    @pytest.mark.asyncio
    async def test_basic_setup(self, registry, store):
        uids = await registry.create_test_scenario("basic_setup")

        assert len(uids) == 5
        stats = registry.get_statistics()
        assert stats.devices_by_type == {"button": 2, "watch": 2, "repeater": 1}
        assert stats.online_devices == 5
        assert len(await store.list()) == 5

    @pytest.mark.asyncio
    async def test_unknown_scenario(self, registry):
        with pytest.raises(ConfigurationError):
            await registry.create_test_scenario("armada")

    @pytest.mark.asyncio
    async def test_statistics(self, registry):
        await registry.create_device(_request(uid="BTN-A", initial_battery=40))
        await registry.create_device(_request(uid="BTN-B", initial_battery=80, room="Bridge"))

        stats = registry.get_statistics()
        assert stats.total_devices == 2
        assert stats.average_battery == 60
        assert stats.devices_by_room == {"Main Salon": 1, "Bridge": 1}
        assert registry.devices_by_room("Bridge")[0].device_id == "BTN-B"
        assert len(registry.devices_by_type("button")) == 2

    def test_empty_statistics(self):
        registry = DeviceRegistry(MagicMock())
        assert registry.get_statistics().average_signal == 0.0


class TestMetricsFeed:
    @pytest.mark.asyncio
    async def test_registry_devices_counted(self, transport, templates, store, fast_settings, tmp_path):
        metrics = MetricsCollector(MetricsConfig(export_path=tmp_path))
        registry = DeviceRegistry(transport, templates=templates, store=store, settings=fast_settings, metrics=metrics)
        await registry.create_device(_request(uid="BTN-A", save_to_database=False))
        await registry.create_device(_request(uid="BTN-B", save_to_database=False))
        await registry.get_device("BTN-B").go_offline()

        snapshot = metrics.collect()
        assert snapshot.devices.active == 2
        assert snapshot.devices.connected == 1
        assert snapshot.devices.disconnected == 1
        assert snapshot.mqtt.messages_sent > 0

        await registry.remove_all()
        assert metrics.collect().devices.active == 0


class TestDeviceStore:
    """Tests for the JSON device store"""

    def _record(self, uid="BTN-A", battery=90.0) -> StoredDevice:
        return StoredDevice(
            uid=uid, name="Button", type="button", site="yacht-1", room="Bridge",
            battery=battery, signal=80.0,
        )

    @pytest.mark.asyncio
    async def test_upsert_replaces(self, store):
        await store.upsert(self._record())
        await store.upsert(self._record(battery=50.0))

        records = await store.list()
        assert len(records) == 1
        assert records[0].battery == 50.0

    @pytest.mark.asyncio
    async def test_remove(self, store):
        await store.upsert(self._record())
        assert await store.remove("BTN-A") is True
        assert await store.remove("BTN-A") is False

    @pytest.mark.asyncio
    async def test_corrupt_file_reads_empty(self, store):
        store.storage_path.write_text("{not json")
        assert await store.list() == []
        assert await store.get("BTN-A") is None

    @pytest.mark.asyncio
    async def test_invalid_records_skipped(self, store):
        store.storage_path.write_text('[{"uid": "X"}]')
        await store.upsert(self._record())
        assert [r.uid for r in await store.list()] == ["BTN-A"]

    def test_creates_missing_file(self, tmp_path):
        store = DeviceStore(str(tmp_path / "nested" / "devices.json"))
        assert store.storage_path.read_text() == "[]"
