"""
Provisioning coordinator
Creates worker hosts on demand, at most one at a time across the whole fleet
"""
import asyncio
import logging
import time
from datetime import datetime
from typing import Any, Dict, Optional, Set

from agentfleet.config import settings
from agentfleet.core.capacity import CapacityRegistry
from agentfleet.errors import CapacityExhausted, FleetError, HostInUse, HostNotFound, ProvisioningTimeout
from agentfleet.models.host import HostStatus, WorkerHost
from agentfleet.models.tenant import TenantStatus
from agentfleet.persistence.tenants import TenantRepository
from agentfleet.services.cache import FleetCache
from agentfleet.services.cloud import CloudProvider
from agentfleet.services.container_commands import ContainerCommands
from agentfleet.utils.clock import Clock, utcnow
from agentfleet.utils.metrics import record_host_created

logger = logging.getLogger(__name__)

HOST_CREATION_LEASE = "host-creation"


class ProvisioningCoordinator:
    """
    Decides when a new host must be created and guarantees single-flight creation.

    Inside one process, racing callers share a single in-flight future. Across
    processes, a Redis lease marks the in-flight creation; instances that do
    not hold it poll for the new host instead of ordering their own. Once the
    in-flight operation finishes, every caller books on its own so the new
    host is admitted atomically like any other.
    """

    def __init__(
        self,
        registry: CapacityRegistry,
        tenants: TenantRepository,
        cloud: CloudProvider,
        cache: FleetCache,
        containers: Optional[ContainerCommands] = None,
        timeout: float = settings.PROVISION_TIMEOUT_SECONDS,
        poll_interval: float = settings.PROVISION_POLL_SECONDS,
        lease_ttl: int = settings.PROVISION_LEASE_SECONDS,
        clock: Clock = utcnow,
    ):
        self.registry = registry
        self.tenants = tenants
        self.cloud = cloud
        self.cache = cache
        self.containers = containers
        self.timeout = timeout
        self.poll_interval = poll_interval
        self.lease_ttl = lease_ttl
        self.clock = clock

        self._inflight: Optional[asyncio.Future] = None
        self._prewarm_tasks: Set[asyncio.Task] = set()

    async def request_capacity(
        self,
        ram_mb: int,
        allow_create: bool = False,
        tenant_id: Optional[str] = None,
        **fields: Any,
    ) -> Optional[WorkerHost]:
        """
        Book ram_mb on some host. Falls back to creating a host only when
        allow_create is set; raises CapacityExhausted otherwise.

        With tenant_id the same transaction moves that pending tenant to
        provisioning on the booked host, so no recompute can drop the
        booking. Returns None if the tenant was no longer pending.
        """
        try:
            return await self._book(ram_mb, tenant_id, fields)
        except CapacityExhausted:
            if not allow_create:
                raise

        await self._ensure_new_host(ram_mb)
        return await self._book(ram_mb, tenant_id, fields)

    async def _book(self, ram_mb: int, tenant_id: Optional[str], fields: Dict[str, Any]) -> Optional[WorkerHost]:
        if tenant_id is None:
            return await self.registry.reserve(ram_mb)
        tenant = await self.registry.book_and_transition(
            tenant_id, None, ram_mb, [TenantStatus.PENDING], TenantStatus.PROVISIONING, **fields
        )
        if tenant is None:
            return None
        return await self.registry.get_host(tenant.host_id)

    async def _ensure_new_host(self, ram_mb: int) -> None:
        """Join or start the in-flight creation"""
        if self._inflight is not None:
            logger.info(f"[provisioning] host creation already in flight, waiting ({ram_mb}MB)")
            await asyncio.shield(self._inflight)
            return

        future = asyncio.get_running_loop().create_future()
        self._inflight = future
        try:
            await self._create_or_wait(ram_mb)
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as e:
            future.set_exception(e)
            future.exception()  # waiters re-raise it; mark it retrieved
            raise
        else:
            future.set_result(None)
        finally:
            self._inflight = None

    async def _create_or_wait(self, ram_mb: int) -> None:
        lease = self.cache.lease(HOST_CREATION_LEASE, self.lease_ttl)
        if not await lease.acquire():
            logger.info("[provisioning] another instance is creating a host, waiting for it")
            await self._wait_for_peer(lease, ram_mb)
            return

        try:
            if await self.tenants.count_waiting_for_host() == 0:
                raise CapacityExhausted(ram_mb, "No tenants are waiting for a host; not creating one")

            # Capacity may have appeared while we queued for the lease
            if await self.registry.has_room(ram_mb):
                return

            started = self.clock()
            try:
                cloud_id = await self.cloud.create_host()
            except FleetError as e:
                record_host_created("failed")
                raise CapacityExhausted(ram_mb, f"No host has room and creating one failed: {e.message}") from e
            record_host_created("ordered")

            host = await self._wait_for_registration(started, ram_mb, cloud_id)
            if host.cloud_id is None:
                await self.registry.update_host(host.host_id, cloud_id=cloud_id)
        finally:
            await lease.release()

    async def _wait_for_registration(self, since: datetime, ram_mb: int, cloud_id: str) -> WorkerHost:
        deadline = time.monotonic() + self.timeout
        while True:
            host = await self.registry.find_host_registered_since(since, ram_mb)
            if host is not None:
                logger.info(f"[provisioning] new host {host.address} registered")
                record_host_created("registered")
                return host
            if time.monotonic() >= deadline:
                record_host_created("timeout")
                raise ProvisioningTimeout(
                    f"Cloud server {cloud_id} did not register within {self.timeout:.0f}s. "
                    "Check /var/log/agentfleet-setup.log on the server, or register it by hand "
                    "with POST /internal/hosts/register."
                )
            await asyncio.sleep(self.poll_interval)

    async def _wait_for_peer(self, lease, ram_mb: int) -> None:
        """Poll until a host with room shows up or the peer gives up"""
        deadline = time.monotonic() + self.timeout
        while time.monotonic() < deadline:
            if await self.registry.find_host_registered_since(datetime.min, ram_mb) is not None:
                return
            if not await lease.is_held():
                return
            await asyncio.sleep(self.poll_interval)
        raise ProvisioningTimeout(
            f"Waited {self.timeout:.0f}s for another instance to bring up a host"
        )

    async def register_host(
        self,
        address: str,
        ram_total: int,
        hostname: Optional[str] = None,
        cloud_id: Optional[str] = None,
    ) -> WorkerHost:
        """Self-registration entry point for workers"""
        host, created = await self.registry.register_host(address, ram_total, hostname, cloud_id)
        if created and self.containers is not None:
            task = asyncio.create_task(self._prewarm(host))
            self._prewarm_tasks.add(task)
            task.add_done_callback(self._prewarm_tasks.discard)
        return host

    async def _prewarm(self, host: WorkerHost) -> None:
        try:
            await self.containers.ensure_base_image(host.address)
            logger.info(f"[provisioning] base image ready on {host.address}")
        except Exception as e:
            logger.warning(f"[provisioning] image pre-warm failed on {host.address}: {e}")

    async def wait_for_prewarm(self) -> None:
        if self._prewarm_tasks:
            await asyncio.gather(*list(self._prewarm_tasks), return_exceptions=True)

    async def decommission_host(self, host_id: str) -> None:
        """Delete a host with no tenants, at the cloud provider and in the registry"""
        host = await self.registry.get_host(host_id)
        if host is None:
            raise HostNotFound(f"Host {host_id} not found")
        # Draining hosts receive no new reservations while we check
        await self.registry.update_host(host_id, status=HostStatus.DRAINING)
        if await self.registry.count_assigned(host_id) > 0:
            await self.registry.update_host(host_id, status=host.status)
            raise HostInUse(f"Host {host.address} still has tenants assigned")

        if host.cloud_id:
            await self.cloud.delete_host(host.cloud_id)
        await self.registry.remove_host(host_id)
        logger.info(f"[provisioning] host {host.address} decommissioned")

    async def close(self) -> None:
        for task in list(self._prewarm_tasks):
            task.cancel()
        await self.wait_for_prewarm()
