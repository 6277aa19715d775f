"""Tests for the SQLite device record store."""

import asyncio

import pytest

from apfleet.errors import DeviceNotFoundError, InvalidRequestError
from apfleet.models import DeployedConfig, DescriptorStatus, Device, DeviceStatus
from apfleet.resources import ResourceType


def make_descriptor(name="pool1", object_id="*1", **kwargs) -> DeployedConfig:
    return DeployedConfig(
        device_id="ap-01",
        resource_type=kwargs.pop("resource_type", ResourceType.IP_POOL),
        name=name,
        object_id=object_id,
        **kwargs,
    )


class TestDevices:
    """Device documents."""

    @pytest.mark.asyncio
    async def test_round_trip(self, store, device):
        stored = await store.get_device(device.id)
        assert stored == device

    @pytest.mark.asyncio
    async def test_unknown_device(self, store):
        with pytest.raises(DeviceNotFoundError):
            await store.get_device("nope")
        with pytest.raises(DeviceNotFoundError):
            await store.update_device_fields("nope", {"status": DeviceStatus.ONLINE})

    @pytest.mark.asyncio
    async def test_list_devices(self, store, device):
        await store.save_device(Device(id="ap-02"))
        assert [d.id for d in await store.list_devices()] == ["ap-01", "ap-02"]

    @pytest.mark.asyncio
    async def test_field_update_keeps_other_fields(self, store, device):
        await store.update_device_fields(device.id, {"health": {"cpu_load": 5}})
        await store.update_device_fields(device.id, {
            "status": DeviceStatus.WARNING,
            "configuration_status.configured": False,
        })

        stored = await store.get_device(device.id)
        assert stored.status == DeviceStatus.WARNING
        assert stored.health == {"cpu_load": 5}
        assert stored.configuration_status == {"configured": False}
        assert stored.connection == device.connection

    @pytest.mark.asyncio
    async def test_concurrent_field_updates_do_not_clobber(self, store, device):
        await asyncio.gather(
            store.update_device_fields(device.id, {"health.cpu_load": 9}),
            store.update_device_fields(device.id, {"configuration_status.configured": True}),
            store.update_device_fields(device.id, {"status": DeviceStatus.ONLINE}),
        )

        stored = await store.get_device(device.id)
        assert stored.health == {"cpu_load": 9}
        assert stored.configuration_status == {"configured": True}
        assert stored.status == DeviceStatus.ONLINE

    @pytest.mark.asyncio
    async def test_invalid_field_path(self, store, device):
        with pytest.raises(InvalidRequestError):
            await store.update_device_fields(device.id, {"health') --": 1})


class TestDescriptors:
    """At most one descriptor per (device, type, name)."""

    @pytest.mark.asyncio
    async def test_replace_updates_identifier(self, store):
        assert await store.record_descriptor(make_descriptor(object_id="*1"))
        assert await store.record_descriptor(make_descriptor(object_id="*2"))

        descriptors = await store.list_descriptors("ap-01")
        assert [(d.name, d.object_id) for d in descriptors] == [("pool1", "*2")]

    @pytest.mark.asyncio
    async def test_insert_if_absent_keeps_existing(self, store):
        await store.record_descriptor(make_descriptor(object_id="*1"))
        written = await store.record_descriptor(make_descriptor(object_id="*9"), replace=False)

        assert written is False
        assert (await store.list_descriptors("ap-01"))[0].object_id == "*1"

    @pytest.mark.asyncio
    async def test_same_name_different_type(self, store):
        await store.record_descriptor(make_descriptor(name="hotspot1"))
        await store.record_descriptor(make_descriptor(name="hotspot1", resource_type=ResourceType.HOTSPOT_SERVER))

        assert len(await store.list_descriptors("ap-01")) == 2
        servers = await store.list_descriptors("ap-01", ResourceType.HOTSPOT_SERVER)
        assert [d.resource_type for d in servers] == [ResourceType.HOTSPOT_SERVER]

    @pytest.mark.asyncio
    async def test_update_descriptor(self, store):
        await store.record_descriptor(make_descriptor(attributes={"ranges": "a"}))
        await store.update_descriptor(
            "ap-01", ResourceType.IP_POOL, "pool1",
            object_id="*5", status=DescriptorStatus.DRIFT,
        )

        updated = (await store.list_descriptors("ap-01"))[0]
        assert updated.object_id == "*5"
        assert updated.status == DescriptorStatus.DRIFT
        assert updated.attributes == {"ranges": "a"}

    @pytest.mark.asyncio
    async def test_update_descriptor_rejects_unknown_columns(self, store):
        with pytest.raises(InvalidRequestError):
            await store.update_descriptor("ap-01", ResourceType.IP_POOL, "pool1", name="renamed")


class TestAuditLog:

    @pytest.mark.asyncio
    async def test_entries_newest_first(self, store, device):
        await store.add_audit_entry(device.id, "provision", {"failed_steps": []})
        await store.add_audit_entry(device.id, "drift", {"drifts": [{"name": "pool1"}]})

        entries = await store.list_audit_entries(device.id)
        assert [e["action"] for e in entries] == ["drift", "provision"]
        assert entries[0]["detail"]["drifts"][0]["name"] == "pool1"
