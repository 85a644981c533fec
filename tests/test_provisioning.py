"""Tests for ProvisioningCoordinator."""

import asyncio

import pytest

from agentfleet.core.provisioning import HOST_CREATION_LEASE, ProvisioningCoordinator
from agentfleet.errors import CapacityExhausted, HostInUse, ProvisioningTimeout
from agentfleet.models.host import HostStatus
from agentfleet.models.tenant import TenantStatus
from agentfleet.services.cloud import CloudProviderError


async def _waiting_tenant(fleet, clock, tenant_id="tenant-wait"):
    await fleet.tenants.create(tenant_id=tenant_id, created_at=clock())
    await fleet.tenants.mark_provision_requested(tenant_id, clock())


def _register_after(fleet, delay=0.05, address="10.0.1.1", ram_total=16384):
    async def register(cloud_id):
        await asyncio.sleep(delay)
        await fleet.coordinator.register_host(address, ram_total, hostname=f"worker-{cloud_id}")

    return register


class TestRequestCapacity:
    async def test_uses_existing_room_without_creating(self, fleet, cloud):
        await fleet.registry.register_host("10.0.0.1", 8192)

        host = await fleet.coordinator.request_capacity(2048, allow_create=True)

        assert host.address == "10.0.0.1"
        assert cloud.created == []

    async def test_refuses_when_creation_not_allowed(self, fleet, cloud, clock):
        await _waiting_tenant(fleet, clock)

        with pytest.raises(CapacityExhausted):
            await fleet.coordinator.request_capacity(2048)
        assert cloud.created == []

    async def test_concurrent_requests_create_a_single_host(self, fleet, cloud, clock):
        await _waiting_tenant(fleet, clock)
        cloud.on_create = _register_after(fleet)

        hosts = await asyncio.gather(*[
            fleet.coordinator.request_capacity(2048, allow_create=True) for _ in range(3)
        ])

        assert len(cloud.created) == 1
        assert {h.address for h in hosts} == {"10.0.1.1"}
        registered = await fleet.registry.get_host_by_address("10.0.1.1")
        assert registered.ram_used == 6144

    async def test_places_a_pending_tenant_with_its_booking(self, fleet, clock):
        host, _ = await fleet.registry.register_host("10.0.0.1", 8192)
        await fleet.tenants.create(tenant_id="tenant-new", created_at=clock())

        booked = await fleet.coordinator.request_capacity(
            2048, tenant_id="tenant-new", container_name="agent-tenant-new"
        )

        assert booked.host_id == host.host_id
        tenant = await fleet.tenants.get("tenant-new")
        assert tenant.status == TenantStatus.PROVISIONING
        assert tenant.host_id == host.host_id
        assert (await fleet.registry.recompute_ram(host.host_id)).ram_used == 2048

        assert await fleet.coordinator.request_capacity(2048, tenant_id="tenant-new") is None
        assert (await fleet.registry.get_host(host.host_id)).ram_used == 2048

    async def test_new_host_receives_the_waiting_tenant(self, fleet, cloud, clock):
        await _waiting_tenant(fleet, clock)
        cloud.on_create = _register_after(fleet)

        booked = await fleet.coordinator.request_capacity(2048, allow_create=True, tenant_id="tenant-wait")

        assert booked.address == "10.0.1.1"
        tenant = await fleet.tenants.get("tenant-wait")
        assert tenant.status == TenantStatus.PROVISIONING
        assert tenant.host_id == booked.host_id
        assert (await fleet.registry.recompute_ram(booked.host_id)).ram_used == 2048

    async def test_new_host_gets_cloud_id_attached(self, fleet, cloud, clock):
        await _waiting_tenant(fleet, clock)
        cloud.on_create = _register_after(fleet)

        await fleet.coordinator.request_capacity(2048, allow_create=True)

        host = await fleet.registry.get_host_by_address("10.0.1.1")
        assert host.cloud_id == cloud.created[0]

    async def test_no_waiting_tenants_means_no_new_host(self, fleet, cloud):
        with pytest.raises(CapacityExhausted):
            await fleet.coordinator.request_capacity(2048, allow_create=True)
        assert cloud.created == []

    async def test_cloud_failure_surfaces_as_capacity_exhausted(self, fleet, cloud, clock):
        await _waiting_tenant(fleet, clock)
        cloud.error = CloudProviderError("quota exceeded")

        with pytest.raises(CapacityExhausted) as exc:
            await fleet.coordinator.request_capacity(2048, allow_create=True)
        assert "quota exceeded" in exc.value.message

    async def test_registration_timeout_releases_the_lease(self, fleet, cloud, clock):
        await _waiting_tenant(fleet, clock)
        fleet.coordinator.timeout = 0.05

        with pytest.raises(ProvisioningTimeout):
            await fleet.coordinator.request_capacity(2048, allow_create=True)

        lease = fleet.cache.lease(HOST_CREATION_LEASE, 60)
        assert await lease.acquire() is True
        await lease.release()

    async def test_waits_for_a_peer_holding_the_lease(self, fleet, cloud, clock):
        await _waiting_tenant(fleet, clock)
        peer_lease = fleet.cache.lease(HOST_CREATION_LEASE, 60)
        assert await peer_lease.acquire()

        request = asyncio.create_task(fleet.coordinator.request_capacity(2048, allow_create=True))
        await asyncio.sleep(0.05)
        assert not request.done()
        await fleet.registry.register_host("10.0.2.1", 8192)
        host = await asyncio.wait_for(request, timeout=1)

        assert host.address == "10.0.2.1"
        assert cloud.created == []
        await peer_lease.release()

    async def test_second_instance_does_not_create_while_first_is(self, fleet, cloud, clock):
        await _waiting_tenant(fleet, clock)
        cloud.on_create = _register_after(fleet, delay=0.1)
        other = ProvisioningCoordinator(
            fleet.registry, fleet.tenants, cloud, fleet.cache, timeout=1.0, poll_interval=0.01, clock=clock
        )

        hosts = await asyncio.gather(
            fleet.coordinator.request_capacity(2048, allow_create=True),
            other.request_capacity(2048, allow_create=True),
        )

        assert len(cloud.created) == 1
        assert hosts[0].host_id == hosts[1].host_id


class TestRegistration:
    async def test_new_host_is_prewarmed(self, fleet, remote):
        remote.image_present = False

        await fleet.coordinator.register_host("10.0.0.9", 8192)
        await fleet.coordinator.wait_for_prewarm()

        assert remote.ran("docker image inspect")
        assert remote.ran("docker pull")

    async def test_reregistration_skips_prewarm(self, fleet, remote):
        await fleet.registry.register_host("10.0.0.9", 8192)

        await fleet.coordinator.register_host("10.0.0.9", 8192)
        await fleet.coordinator.wait_for_prewarm()

        assert remote.ran("docker image inspect") == []

    async def test_prewarm_failure_does_not_fail_registration(self, fleet, remote):
        remote.image_present = False
        remote.fail_on("docker pull")

        host = await fleet.coordinator.register_host("10.0.0.9", 8192)
        await fleet.coordinator.wait_for_prewarm()

        assert (await fleet.registry.get_host(host.host_id)).status == HostStatus.ACTIVE


class TestDecommission:
    async def test_decommission_deletes_at_cloud_and_registry(self, fleet, cloud):
        host, _ = await fleet.registry.register_host("10.0.0.1", 8192, cloud_id="4242")

        await fleet.coordinator.decommission_host(host.host_id)

        assert cloud.deleted == ["4242"]
        assert await fleet.registry.get_host(host.host_id) is None

    async def test_decommission_refuses_busy_host(self, fleet, cloud, place_tenant):
        host, _ = await fleet.registry.register_host("10.0.0.1", 8192, cloud_id="4242")
        await place_tenant("tenant-a", host, status=TenantStatus.SLEEPING)

        with pytest.raises(HostInUse):
            await fleet.coordinator.decommission_host(host.host_id)

        assert cloud.deleted == []
        assert (await fleet.registry.get_host(host.host_id)).status == HostStatus.ACTIVE
