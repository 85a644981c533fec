"""Tests for CapacityRegistry."""

import asyncio
import logging

import pytest

from agentfleet.errors import CapacityExhausted, HostInUse, HostNotFound
from agentfleet.models.host import HostStatus
from agentfleet.models.tenant import TenantStatus


class TestReserve:
    async def test_concurrent_reservations_never_overbook(self, fleet):
        host, _ = await fleet.registry.register_host("10.0.0.1", 8192)

        results = await asyncio.gather(
            *[fleet.registry.reserve(2048) for _ in range(10)],
            return_exceptions=True,
        )

        booked = [r for r in results if not isinstance(r, Exception)]
        refused = [r for r in results if isinstance(r, CapacityExhausted)]
        assert len(booked) == 4
        assert len(refused) == 6
        assert (await fleet.registry.get_host(host.host_id)).ram_used == 8192

    async def test_prefers_the_fullest_host(self, fleet, place_tenant):
        empty, _ = await fleet.registry.register_host("10.0.0.1", 16384)
        busy, _ = await fleet.registry.register_host("10.0.0.2", 16384)
        await place_tenant("tenant-busy", busy)

        chosen = await fleet.registry.reserve(2048)

        assert chosen.host_id == busy.host_id
        assert chosen.ram_used == 4096
        assert (await fleet.registry.get_host(empty.host_id)).ram_used == 0

    async def test_admission_is_against_booked_ram(self, fleet, place_tenant):
        host, _ = await fleet.registry.register_host("10.0.0.1", 8192)
        for i in range(3):
            await place_tenant(f"tenant-{i}", host)
        assert (await fleet.registry.get_host(host.host_id)).ram_used == 6144

        with pytest.raises(CapacityExhausted):
            await fleet.registry.reserve(4096)

        reserved = await fleet.registry.reserve(2048)
        assert reserved.ram_used == 8192

    async def test_control_plane_is_never_selected(self, fleet):
        fleet.registry.control_plane_address = "10.0.0.1"
        await fleet.registry.register_host("10.0.0.1", 65536)

        with pytest.raises(CapacityExhausted):
            await fleet.registry.reserve(2048)

    async def test_draining_host_is_not_selected(self, fleet):
        host, _ = await fleet.registry.register_host("10.0.0.1", 8192)
        await fleet.registry.update_host(host.host_id, status=HostStatus.DRAINING)

        with pytest.raises(CapacityExhausted):
            await fleet.registry.reserve(2048)


class TestBookAndTransition:
    async def test_books_and_flips_in_one_step(self, fleet, place_tenant, clock):
        host, _ = await fleet.registry.register_host("10.0.0.1", 4096)
        await place_tenant("tenant-a", host)
        await fleet.tenants.create(tenant_id="tenant-b", created_at=clock())

        placed = await fleet.registry.book_and_transition(
            "tenant-b", host.host_id, 2048, [TenantStatus.PENDING], TenantStatus.PROVISIONING
        )

        assert placed.status == TenantStatus.PROVISIONING
        assert placed.host_id == host.host_id
        assert (await fleet.registry.get_host(host.host_id)).ram_used == 4096
        assert (await fleet.registry.recompute_ram(host.host_id)).ram_used == 4096

    async def test_picks_the_fullest_host_when_none_given(self, fleet, place_tenant, clock):
        empty, _ = await fleet.registry.register_host("10.0.0.1", 16384)
        busy, _ = await fleet.registry.register_host("10.0.0.2", 16384)
        await place_tenant("tenant-busy", busy)
        await fleet.tenants.create(tenant_id="tenant-new", plan="pro", created_at=clock())

        placed = await fleet.registry.book_and_transition(
            "tenant-new", None, 4096, [TenantStatus.PENDING], TenantStatus.PROVISIONING, container_name="agent-new"
        )

        assert placed.host_id == busy.host_id
        assert placed.container_name == "agent-new"
        assert (await fleet.registry.get_host(busy.host_id)).ram_used == 6144
        assert (await fleet.registry.get_host(empty.host_id)).ram_used == 0

    async def test_no_booking_when_tenant_moved_on(self, fleet, place_tenant):
        host, _ = await fleet.registry.register_host("10.0.0.1", 4096)
        await place_tenant("tenant-a", host, status=TenantStatus.ACTIVE)

        result = await fleet.registry.book_and_transition(
            "tenant-a", host.host_id, 2048, [TenantStatus.PENDING], TenantStatus.PROVISIONING
        )

        assert result is None
        assert (await fleet.registry.get_host(host.host_id)).ram_used == 2048

    async def test_full_host_refuses_and_leaves_tenant_alone(self, fleet, place_tenant, clock):
        host, _ = await fleet.registry.register_host("10.0.0.1", 4096)
        await place_tenant("tenant-a", host, status=TenantStatus.ACTIVE)
        await place_tenant("tenant-b", host, status=TenantStatus.SLEEPING)
        await fleet.tenants.create(tenant_id="tenant-c", created_at=clock())

        for host_id in (host.host_id, None):
            with pytest.raises(CapacityExhausted):
                await fleet.registry.book_and_transition(
                    "tenant-c", host_id, 2048, [TenantStatus.PENDING], TenantStatus.PROVISIONING
                )

        tenant = await fleet.tenants.get("tenant-c")
        assert tenant.status == TenantStatus.PENDING
        assert tenant.host_id is None
        assert (await fleet.registry.get_host(host.host_id)).ram_used == 4096

    async def test_concurrent_placements_never_overbook(self, fleet, clock):
        host, _ = await fleet.registry.register_host("10.0.0.1", 8192)
        for i in range(6):
            await fleet.tenants.create(tenant_id=f"tenant-{i}", created_at=clock())

        results = await asyncio.gather(
            *[
                fleet.registry.book_and_transition(
                    f"tenant-{i}", None, 2048, [TenantStatus.PENDING], TenantStatus.PROVISIONING
                )
                for i in range(6)
            ],
            return_exceptions=True,
        )

        assert sum(isinstance(r, CapacityExhausted) for r in results) == 2
        refreshed = await fleet.registry.recompute_ram(host.host_id)
        assert refreshed.ram_used == 8192


class TestRecompute:
    async def test_recompute_counts_only_booked_statuses(self, fleet, place_tenant):
        host, _ = await fleet.registry.register_host("10.0.0.1", 16384)
        await place_tenant("tenant-a", host, status=TenantStatus.ACTIVE)
        await place_tenant("tenant-b", host, status=TenantStatus.GRACE_PERIOD, plan="pro")
        await place_tenant("tenant-c", host, status=TenantStatus.SLEEPING)
        await place_tenant("tenant-d", host, status=TenantStatus.PAUSED, plan="business")

        refreshed = await fleet.registry.recompute_ram(host.host_id)

        assert refreshed.ram_used == 2048 + 4096 + 2048

    async def test_recompute_repairs_drift(self, fleet, place_tenant):
        host, _ = await fleet.registry.register_host("10.0.0.1", 16384)
        await place_tenant("tenant-a", host)
        await fleet.registry.reserve(4096)  # booking that never got a tenant
        assert (await fleet.registry.get_host(host.host_id)).ram_used == 6144

        refreshed = await fleet.registry.recompute_ram(host.host_id)

        assert refreshed.ram_used == 2048

    async def test_recompute_flags_an_overcommitted_host(self, fleet, place_tenant, set_tenant, caplog):
        host, _ = await fleet.registry.register_host("10.0.0.1", 4096)
        await place_tenant("tenant-a", host)
        await place_tenant("tenant-b", host)
        await set_tenant("tenant-b", plan="pro")

        with caplog.at_level(logging.ERROR, logger="agentfleet.core.capacity"):
            refreshed = await fleet.registry.recompute_ram(host.host_id)

        assert refreshed.ram_used == 6144
        assert "overcommitted" in caplog.text
        with pytest.raises(CapacityExhausted):
            await fleet.registry.reserve(1)

    async def test_recompute_without_host_is_a_noop(self, fleet):
        assert await fleet.registry.recompute_ram(None) is None

    async def test_check_capacity_reports_hot_hosts(self, fleet, place_tenant):
        hot, _ = await fleet.registry.register_host("10.0.0.1", 4096)
        await fleet.registry.register_host("10.0.0.2", 16384)
        await place_tenant("tenant-a", hot, plan="pro")

        flagged = await fleet.registry.check_capacity()

        assert [h.host_id for h in flagged] == [hot.host_id]


class TestHostRegistry:
    async def test_register_then_reregister_reactivates(self, fleet):
        host, created = await fleet.registry.register_host("10.0.0.1", 8192, hostname="worker-1")
        assert created is True
        await fleet.registry.update_host(host.host_id, status=HostStatus.OFFLINE)

        again, created = await fleet.registry.register_host("10.0.0.1", 16384)

        assert created is False
        assert again.host_id == host.host_id
        assert again.status == HostStatus.ACTIVE
        assert again.ram_total == 16384
        assert again.hostname == "worker-1"

    async def test_reregister_recomputes_booked_ram(self, fleet, place_tenant):
        host, _ = await fleet.registry.register_host("10.0.0.1", 8192)
        await place_tenant("tenant-a", host)
        await fleet.registry.reserve(4096)

        again, _ = await fleet.registry.register_host("10.0.0.1", 8192)

        assert again.ram_used == 2048
        assert again.status == HostStatus.ACTIVE

    async def test_shrunk_host_is_left_draining(self, fleet, place_tenant):
        host, _ = await fleet.registry.register_host("10.0.0.1", 8192)
        await place_tenant("tenant-a", host)
        await place_tenant("tenant-b", host, plan="pro")

        shrunk, _ = await fleet.registry.register_host("10.0.0.1", 4096)

        assert shrunk.ram_total == 4096
        assert shrunk.ram_used == 6144
        assert shrunk.status == HostStatus.DRAINING
        with pytest.raises(CapacityExhausted):
            await fleet.registry.reserve(2048)

        restored, _ = await fleet.registry.register_host("10.0.0.1", 8192)
        assert restored.status == HostStatus.ACTIVE
        assert restored.ram_used == 6144

    async def test_remove_host_refuses_while_tenants_assigned(self, fleet, place_tenant, set_tenant):
        host, _ = await fleet.registry.register_host("10.0.0.1", 8192)
        await place_tenant("tenant-a", host, status=TenantStatus.SLEEPING)

        with pytest.raises(HostInUse):
            await fleet.registry.remove_host(host.host_id)

        await set_tenant("tenant-a", status=TenantStatus.PURGED)
        await fleet.registry.remove_host(host.host_id)
        assert await fleet.registry.get_host(host.host_id) is None

    async def test_remove_unknown_host(self, fleet):
        with pytest.raises(HostNotFound):
            await fleet.registry.remove_host("missing")

    async def test_host_load_counts_assigned_tenants(self, fleet, place_tenant):
        host, _ = await fleet.registry.register_host("10.0.0.1", 8192)
        await fleet.registry.register_host("10.0.0.2", 8192)
        await place_tenant("tenant-a", host)
        await place_tenant("tenant-b", host, status=TenantStatus.SLEEPING)

        loads = {load.host.address: load.tenant_count for load in await fleet.registry.host_load()}

        assert loads == {"10.0.0.1": 2, "10.0.0.2": 0}

    async def test_memory_diagnostics_reports_remote_errors(self, fleet, remote):
        host, _ = await fleet.registry.register_host("10.0.0.1", 8192)
        remote.fail_on("docker stats")

        diagnostics = await fleet.registry.memory_diagnostics(host.host_id)

        assert diagnostics.ram_booked == 0
        assert diagnostics.containers == []
        assert diagnostics.error
