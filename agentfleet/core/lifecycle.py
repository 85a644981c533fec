"""
Container lifecycle manager
Tenant state machine: provision, idle sleep, wake, cancel and purge
"""
import logging
import secrets
import time
from datetime import datetime, timedelta
from typing import Optional

from agentfleet.config import settings
from agentfleet.core.capacity import CapacityRegistry
from agentfleet.core.provisioning import ProvisioningCoordinator
from agentfleet.errors import (
    HealthCheckTimeout,
    HostNotFound,
    ProvisioningHalted,
    RemoteExecFailure,
    TenantNotFound,
)
from agentfleet.models.tenant import (
    SweepCandidate,
    Tenant,
    TenantStatus,
    TERMINAL_STATUSES,
    WakeOutcome,
)
from agentfleet.persistence.tenants import TenantRepository
from agentfleet.services.cache import FleetCache
from agentfleet.services.container_commands import ContainerCommands, container_name_for, validate_tenant_id
from agentfleet.services.credentials import CredentialRevoker
from agentfleet.utils.clock import Clock, utcnow
from agentfleet.utils.metrics import record_sleep, record_wake

logger = logging.getLogger(__name__)

# States whose container is, or is about to be, running on its host
_CONTAINER_UP = {
    TenantStatus.PROVISIONING,
    TenantStatus.STARTING,
    TenantStatus.ACTIVE,
    TenantStatus.GRACE_PERIOD,
}

_NON_TERMINAL = [s for s in TenantStatus if s not in TERMINAL_STATUSES]


class ContainerLifecycleManager:
    """
    Drives tenant containers through their lifecycle.

    Every status change is a conditional transition; a caller whose
    transition matches no row lost a race and backs off. Remote commands run
    outside database transactions, and a failed remote step is undone with a
    compensating transition rather than a rollback.
    """

    def __init__(
        self,
        tenants: TenantRepository,
        registry: CapacityRegistry,
        coordinator: ProvisioningCoordinator,
        containers: ContainerCommands,
        cache: FleetCache,
        credentials: CredentialRevoker,
        clock: Clock = utcnow,
        sleep_after: timedelta = timedelta(minutes=settings.SLEEP_AFTER_MINUTES),
        min_age: timedelta = timedelta(minutes=settings.SLEEP_MIN_AGE_MINUTES),
        touch_debounce_seconds: int = settings.TOUCH_DEBOUNCE_SECONDS,
        wake_health_timeout: float = settings.WAKE_HEALTH_TIMEOUT_SECONDS,
        provision_health_timeout: float = settings.PROVISION_HEALTH_TIMEOUT_SECONDS,
        status_ttl: int = settings.STATUS_CACHE_TTL_SECONDS,
        max_provision_retries: int = settings.MAX_PROVISION_RETRIES,
    ):
        self.tenants = tenants
        self.registry = registry
        self.coordinator = coordinator
        self.containers = containers
        self.cache = cache
        self.credentials = credentials
        self.clock = clock
        self.sleep_after = sleep_after
        self.min_age = min_age
        self.touch_debounce_seconds = touch_debounce_seconds
        self.wake_health_timeout = wake_health_timeout
        self.provision_health_timeout = provision_health_timeout
        self.status_ttl = status_ttl
        self.max_provision_retries = max_provision_retries

    async def _require(self, tenant_id: str) -> Tenant:
        tenant = await self.tenants.get(tenant_id)
        if tenant is None:
            raise TenantNotFound(f"Tenant {tenant_id} not found")
        return tenant

    async def _host_address(self, host_id: Optional[str]) -> str:
        host = await self.registry.get_host(host_id) if host_id else None
        if host is None:
            raise HostNotFound(f"Host {host_id} not found")
        return host.address

    async def _wait_healthy(self, address: str, container_name: str, timeout: float) -> bool:
        try:
            elapsed = await self.containers.wait_for_ready(address, container_name, timeout)
            logger.info(f"[lifecycle] {container_name} healthy after {elapsed:.1f}s")
            return True
        except HealthCheckTimeout as e:
            logger.warning(f"[lifecycle] {e}; continuing")
            return False

    async def _reapply_gateway(self, address: str, tenant: Tenant) -> None:
        try:
            await self.containers.reapply_gateway_config(address, tenant)
        except RemoteExecFailure as e:
            logger.error(f"[lifecycle] gateway config reapply failed for {tenant.tenant_id}: {e}")

    # Provisioning

    async def provision(self, tenant_id: str) -> Tenant:
        """Place a pending tenant on a host and start its container"""
        validate_tenant_id(tenant_id)
        tenant = await self._require(tenant_id)
        if tenant.status != TenantStatus.PENDING:
            logger.info(f"[lifecycle] {tenant_id} is {tenant.status.value}, nothing to provision")
            return tenant
        if tenant.provision_retries >= self.max_provision_retries:
            raise ProvisioningHalted(
                f"Provisioning failed {tenant.provision_retries} times for {tenant_id}; manual intervention needed"
            )

        await self.tenants.mark_provision_requested(tenant_id, self.clock())
        try:
            # Booking and placement commit together
            host = await self.coordinator.request_capacity(
                tenant.ram_mb,
                allow_create=True,
                tenant_id=tenant_id,
                container_name=f"agent-{tenant_id[:12]}",
                gateway_token=secrets.token_hex(32),
                provision_requested_at=None,
            )
        except Exception:
            await self.tenants.record_provision_failure(tenant_id)
            raise
        if host is None:
            # Someone else placed or cancelled the tenant
            return await self._require(tenant_id)
        claimed = await self._require(tenant_id)

        logger.info(f"[lifecycle] provisioning {tenant_id} on {host.address} (plan={claimed.plan})")
        started = time.monotonic()
        name = container_name_for(claimed)
        try:
            await self.containers.run(host.address, claimed)
            starting = await self.tenants.transition(tenant_id, [TenantStatus.PROVISIONING], TenantStatus.STARTING)
            if starting is None:
                return await self._require(tenant_id)
            healthy = await self._wait_healthy(host.address, name, self.provision_health_timeout)
        except Exception:
            logger.exception(f"[lifecycle] provisioning failed for {tenant_id}")
            await self._undo_provision(tenant_id, host.address, claimed)
            raise

        await self._reapply_gateway(host.address, starting)
        result = starting
        if healthy:
            result = await self.tenants.transition(
                tenant_id, [TenantStatus.STARTING], TenantStatus.ACTIVE, last_active_at=self.clock()
            ) or await self._require(tenant_id)
            await self.cache.set_status(tenant_id, result.status.value, self.status_ttl)
        logger.info(
            f"[lifecycle] {tenant_id} provisioned in {time.monotonic() - started:.1f}s ({result.status.value})"
        )
        return result

    async def _undo_provision(self, tenant_id: str, address: str, tenant: Tenant) -> None:
        try:
            await self.containers.remove(address, tenant)
        except RemoteExecFailure as e:
            logger.warning(f"[lifecycle] cleanup after failed provision of {tenant_id} failed: {e}")
        await self.tenants.transition(
            tenant_id,
            [TenantStatus.PROVISIONING, TenantStatus.STARTING],
            TenantStatus.PENDING,
            host_id=None,
            gateway_token=None,
        )
        await self.tenants.record_provision_failure(tenant_id)
        await self.registry.recompute_ram(tenant.host_id)

    async def reconcile_starting(self) -> int:
        """Promote tenants stuck in starting whose container now passes its health check"""
        promoted = 0
        for tenant in await self.tenants.list_by_status(TenantStatus.STARTING):
            try:
                address = await self._host_address(tenant.host_id)
                name = container_name_for(tenant)
                if not await self.containers.is_healthy(address, name):
                    continue
                await self._reapply_gateway(address, tenant)
                active = await self.tenants.transition(
                    tenant.tenant_id, [TenantStatus.STARTING], TenantStatus.ACTIVE, last_active_at=self.clock()
                )
                if active is not None:
                    promoted += 1
                    await self.cache.set_status(tenant.tenant_id, active.status.value, self.status_ttl)
                    logger.info(f"[lifecycle] {tenant.tenant_id} promoted to active")
            except Exception:
                logger.exception(f"[lifecycle] reconcile failed for {tenant.tenant_id}")
        return promoted

    # Sleep

    async def run_sleep_sweep(self) -> int:
        """Stop containers idle past the threshold; returns the number slept"""
        now = self.clock()
        idle_cutoff = now - self.sleep_after
        age_cutoff = now - self.min_age
        slept = 0

        for candidate in await self.tenants.list_sleep_candidates():
            tenant = candidate.tenant
            if candidate.has_channels:
                continue
            if tenant.created_at > age_cutoff or tenant.last_active_at > idle_cutoff:
                continue
            try:
                if await self.sleep_tenant(candidate, idle_cutoff):
                    slept += 1
            except Exception:
                logger.exception(f"[lifecycle] failed to sleep {tenant.tenant_id}; retrying next sweep")

        if slept:
            logger.info(f"[lifecycle] sleep sweep put {slept} container(s) to sleep")
        return slept

    async def sleep_tenant(self, candidate: SweepCandidate, idle_cutoff: datetime) -> bool:
        tenant = candidate.tenant
        name = container_name_for(tenant)
        current = await self.tenants.get(tenant.tenant_id)
        if current is None or current.status != TenantStatus.ACTIVE or current.last_active_at > idle_cutoff:
            return False

        await self.containers.stop(candidate.host_address, name)
        slept = await self.tenants.transition(
            tenant.tenant_id, [TenantStatus.ACTIVE], TenantStatus.SLEEPING, idle_before=idle_cutoff
        )
        if slept is None:
            current = await self.tenants.get(tenant.tenant_id)
            if current is not None and current.status == TenantStatus.ACTIVE:
                # Touched while its container was being stopped
                logger.info(f"[lifecycle] {tenant.tenant_id} became active during sleep; restarting it")
                await self.containers.start(candidate.host_address, name)
            return False
        await self.cache.drop_status(tenant.tenant_id)
        record_sleep()
        logger.info(f"[lifecycle] {tenant.tenant_id} is now sleeping")
        return True

    # Wake

    async def wake(self, tenant_id: str) -> WakeOutcome:
        """
        Bring a sleeping tenant back. Exactly one concurrent caller does the
        work; the others see ALREADY_ACTIVE. A sleeping tenant keeps its
        booking, so waking never waits for room.
        """
        tenant = await self._require(tenant_id)
        if tenant.status in _CONTAINER_UP:
            record_wake(WakeOutcome.ALREADY_ACTIVE.value)
            return WakeOutcome.ALREADY_ACTIVE
        if tenant.status != TenantStatus.SLEEPING:
            record_wake(WakeOutcome.CANNOT_WAKE.value)
            return WakeOutcome.CANNOT_WAKE

        address = await self._host_address(tenant.host_id)
        woken = await self.tenants.transition(
            tenant_id, [TenantStatus.SLEEPING], TenantStatus.ACTIVE, last_active_at=self.clock()
        )
        if woken is None:
            record_wake(WakeOutcome.ALREADY_ACTIVE.value)
            return WakeOutcome.ALREADY_ACTIVE

        name = container_name_for(woken)
        await self.containers.clear_session_locks(address, tenant_id)
        try:
            await self.containers.start(address, name)
        except RemoteExecFailure as e:
            await self.tenants.transition(tenant_id, [TenantStatus.ACTIVE], TenantStatus.SLEEPING)
            record_wake("failed")
            raise RemoteExecFailure(
                address,
                f"docker start {name}",
                exit_code=e.exit_code,
                stderr=e.stderr,
                message=f"Could not start the agent for {tenant_id}. It is still asleep; retry the wake.",
            ) from e

        await self._wait_healthy(address, name, self.wake_health_timeout)
        await self._reapply_gateway(address, woken)
        await self.tenants.touch(tenant_id, self.clock())
        await self.registry.recompute_ram(tenant.host_id)
        await self.cache.set_status(tenant_id, TenantStatus.ACTIVE.value, self.status_ttl)
        record_wake(WakeOutcome.WOKEN.value)
        logger.info(f"[lifecycle] {tenant_id} woken on {address}")
        return WakeOutcome.WOKEN

    async def touch_activity(self, tenant_id: str) -> bool:
        """Record activity; writes at most once per debounce window per tenant"""
        if not await self.cache.claim_window(f"touch:{tenant_id}", self.touch_debounce_seconds):
            return False
        return await self.tenants.touch(tenant_id, self.clock())

    async def container_status(self, tenant_id: str) -> str:
        cached = await self.cache.get_status(tenant_id)
        if cached:
            return cached
        tenant = await self._require(tenant_id)
        return tenant.status.value

    # Cancel / purge

    async def cancel(self, tenant_id: str) -> Tenant:
        """Move any non-terminal tenant to cancelled; its data is kept until purge"""
        tenant = await self._require(tenant_id)
        if tenant.status in TERMINAL_STATUSES:
            return tenant

        cancelled = await self.tenants.transition(
            tenant_id, _NON_TERMINAL, TenantStatus.CANCELLED, cancelled_at=self.clock()
        )
        if cancelled is None:
            return await self._require(tenant_id)

        if tenant.status in _CONTAINER_UP and tenant.host_id:
            await self.stop_quietly(tenant)
        await self.registry.recompute_ram(tenant.host_id)
        await self.cache.drop_status(tenant_id)
        logger.info(f"[lifecycle] {tenant_id} cancelled (was {tenant.status.value})")
        return cancelled

    async def stop_quietly(self, tenant: Tenant) -> None:
        """Best-effort container stop; the next sweep or purge retries"""
        try:
            address = await self._host_address(tenant.host_id)
            await self.containers.stop(address, container_name_for(tenant))
        except (RemoteExecFailure, HostNotFound) as e:
            logger.warning(f"[lifecycle] could not stop container for {tenant.tenant_id}: {e}")

    async def deprovision(self, tenant_id: str) -> Optional[Tenant]:
        """Delete a cancelled tenant's container, storage and credentials"""
        tenant = await self._require(tenant_id)
        if tenant.status == TenantStatus.PURGED:
            return tenant
        if tenant.status != TenantStatus.CANCELLED:
            logger.warning(f"[lifecycle] refusing to purge {tenant_id} in status {tenant.status.value}")
            return None

        if tenant.host_id:
            address = await self._host_address(tenant.host_id)
            await self.containers.remove(address, tenant)
        await self.credentials.revoke(tenant_id)

        purged = await self.tenants.transition(
            tenant_id, [TenantStatus.CANCELLED], TenantStatus.PURGED, host_id=None
        )
        await self.registry.recompute_ram(tenant.host_id)
        await self.cache.drop_status(tenant_id)
        if purged is not None:
            logger.info(f"[lifecycle] {tenant_id} purged")
        return purged
