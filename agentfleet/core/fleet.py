"""
Fleet wiring
Builds the control-plane components and owns their start/stop
"""
import logging
from typing import Optional

import redis.asyncio as redis
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from agentfleet.config import settings
from agentfleet.core.capacity import CapacityRegistry
from agentfleet.core.grace_period import GracePeriodScheduler
from agentfleet.core.lifecycle import ContainerLifecycleManager
from agentfleet.core.provisioning import ProvisioningCoordinator
from agentfleet.core.runaway import RunawayTaskMonitor
from agentfleet.core.scheduler import PeriodicScheduler
from agentfleet.persistence.database import create_engine, create_session_factory, init_models
from agentfleet.persistence.tenants import TenantRepository
from agentfleet.services.cache import FleetCache, create_redis
from agentfleet.services.cloud import CloudProvider, HetznerCloudProvider
from agentfleet.services.container_commands import ContainerCommands
from agentfleet.services.credentials import ApiKeyRevoker, CredentialRevoker
from agentfleet.services.notifications import Notifier, create_notifier
from agentfleet.services.remote_exec import RemoteExecGateway, SSHRemoteExec
from agentfleet.utils.clock import Clock, utcnow

logger = logging.getLogger(__name__)


class Fleet:
    """All control-plane components sharing one store, cache and remote gateway"""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        redis_client: redis.Redis,
        remote: RemoteExecGateway,
        cloud: CloudProvider,
        notifier: Notifier,
        credentials: CredentialRevoker,
        clock: Clock = utcnow,
        engine: Optional[AsyncEngine] = None,
    ):
        self.engine = engine
        self.redis = redis_client
        self.cache = FleetCache(redis_client)
        self.tenants = TenantRepository(session_factory)
        self.containers = ContainerCommands(remote)
        self.registry = CapacityRegistry(session_factory, self.tenants, self.containers, clock=clock)
        self.coordinator = ProvisioningCoordinator(
            self.registry, self.tenants, cloud, self.cache, self.containers, clock=clock
        )
        self.lifecycle = ContainerLifecycleManager(
            self.tenants,
            self.registry,
            self.coordinator,
            self.containers,
            self.cache,
            credentials,
            clock=clock,
        )
        self.grace = GracePeriodScheduler(self.tenants, self.registry, self.lifecycle, notifier, clock=clock)
        self.runaway = RunawayTaskMonitor(self.cache, self.tenants, clock=clock)

        self.scheduler = PeriodicScheduler(self.cache)
        self.scheduler.add_job("sleep_sweep", settings.SLEEP_SWEEP_INTERVAL, self.lifecycle.run_sleep_sweep)
        self.scheduler.add_job("grace_sweep", settings.GRACE_SWEEP_INTERVAL, self.grace.run_sweep)
        self.scheduler.add_job("capacity_check", settings.CAPACITY_CHECK_INTERVAL, self.registry.check_capacity)
        self.scheduler.add_job(
            "reconcile_starting",
            settings.STARTUP_RECONCILE_INTERVAL,
            self.lifecycle.reconcile_starting,
            run_at_start=True,
        )

    @classmethod
    async def from_settings(cls) -> "Fleet":
        engine = create_engine()
        await init_models(engine)
        if not settings.INTERNAL_SECRET:
            logger.warning("[fleet] INTERNAL_SECRET is not set; internal routes accept unauthenticated calls")
        return cls(
            session_factory=create_session_factory(engine),
            redis_client=create_redis(),
            remote=SSHRemoteExec(),
            cloud=HetznerCloudProvider(),
            notifier=create_notifier(),
            credentials=ApiKeyRevoker(),
            engine=engine,
        )

    async def start(self) -> None:
        await self.scheduler.start()

    async def stop(self) -> None:
        await self.scheduler.stop()
        await self.runaway.stop_all()
        await self.coordinator.close()
        await self.redis.aclose()
        if self.engine is not None:
            await self.engine.dispose()
