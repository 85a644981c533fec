"""
Grace period scheduler
Staged suspension, cancellation and purge for tenants whose payment failed

    day 0   payment fails   -> grace_period, agent keeps running
    day 3   still unpaid    -> paused (container stopped)
    day 7   still unpaid    -> cancelled, data kept
    day 37  no renewal      -> purged
"""
import logging
from datetime import datetime, timedelta
from typing import Dict, Optional

from agentfleet.config import settings
from agentfleet.core.capacity import CapacityRegistry
from agentfleet.core.lifecycle import ContainerLifecycleManager
from agentfleet.errors import TenantNotFound
from agentfleet.models.tenant import Tenant, TenantStatus
from agentfleet.persistence.tenants import TenantRepository
from agentfleet.services.notifications import Notifier
from agentfleet.utils.clock import Clock, utcnow
from agentfleet.utils.metrics import record_grace_transition

logger = logging.getLogger(__name__)


class GracePeriodScheduler:
    def __init__(
        self,
        tenants: TenantRepository,
        registry: CapacityRegistry,
        lifecycle: ContainerLifecycleManager,
        notifier: Notifier,
        clock: Clock = utcnow,
        grace_period: timedelta = timedelta(days=settings.GRACE_PERIOD_DAYS),
        pause_window: timedelta = timedelta(days=settings.GRACE_PAUSE_WINDOW_DAYS),
        purge_after: timedelta = timedelta(days=settings.PURGE_AFTER_DAYS),
    ):
        self.tenants = tenants
        self.registry = registry
        self.lifecycle = lifecycle
        self.notifier = notifier
        self.clock = clock
        self.grace_period = grace_period
        self.pause_window = pause_window
        self.purge_after = purge_after

    async def _notify(self, tenant: Tenant, kind: str) -> None:
        if not tenant.contact:
            return
        try:
            await self.notifier.send(tenant.contact, kind, {"tenant_id": tenant.tenant_id})
        except Exception as e:
            logger.warning(f"[grace] could not notify {tenant.tenant_id} ({kind}): {e}")

    async def _audit(self, tenant: Tenant, kind: str, summary: str) -> None:
        await self.tenants.record_activity(
            tenant.tenant_id,
            kind,
            summary,
            {"grace_period_end": tenant.grace_period_end.isoformat() if tenant.grace_period_end else None},
        )

    async def handle_payment_failure(self, tenant_id: str) -> Optional[Tenant]:
        """
        Start the grace period. Running tenants keep running; a sleeping
        tenant goes straight to paused. Repeated events change nothing.
        """
        tenant = await self.tenants.get(tenant_id)
        if tenant is None:
            raise TenantNotFound(f"Tenant {tenant_id} not found")

        end = self.clock() + self.grace_period
        moved = await self.tenants.transition(
            tenant_id,
            [TenantStatus.ACTIVE, TenantStatus.STARTING],
            TenantStatus.GRACE_PERIOD,
            grace_period_end=end,
        )
        if moved is None:
            moved = await self.tenants.transition(
                tenant_id, [TenantStatus.SLEEPING], TenantStatus.PAUSED, grace_period_end=end
            )
        if moved is None:
            logger.info(f"[grace] payment failure for {tenant_id} ignored in status {tenant.status.value}")
            return None
        if moved.status == TenantStatus.PAUSED:
            await self.registry.recompute_ram(moved.host_id)

        record_grace_transition(moved.status.value)
        await self._audit(moved, "payment_failed", f"Payment failed; tenant moved to {moved.status.value}")
        await self._notify(moved, "payment_failed")
        logger.info(f"[grace] {tenant_id} entered {moved.status.value} until {end.isoformat()}")
        return moved

    async def handle_subscription_cancelled(self, tenant_id: str) -> Tenant:
        return await self.lifecycle.cancel(tenant_id)

    async def run_sweep(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """Advance every tenant whose stage deadline has passed"""
        now = now or self.clock()
        counts = {"paused": 0, "cancelled": 0, "purged": 0}

        for tenant in await self.tenants.list_due_for_pause(now, self.pause_window):
            try:
                if await self._pause(tenant):
                    counts["paused"] += 1
            except Exception:
                logger.exception(f"[grace] failed to pause {tenant.tenant_id}")

        for tenant in await self.tenants.list_due_for_cancel(now):
            try:
                if await self._cancel(tenant, now):
                    counts["cancelled"] += 1
            except Exception:
                logger.exception(f"[grace] failed to cancel {tenant.tenant_id}")

        for tenant in await self.tenants.list_due_for_purge(now, self.purge_after):
            try:
                if await self.lifecycle.deprovision(tenant.tenant_id) is not None:
                    counts["purged"] += 1
                    record_grace_transition("purged")
            except Exception:
                logger.exception(f"[grace] failed to purge {tenant.tenant_id}")

        if any(counts.values()):
            logger.info(f"[grace] sweep: {counts}")
        return counts

    async def _pause(self, tenant: Tenant) -> bool:
        # Stopping is idempotent, so a lost race below costs nothing
        await self.lifecycle.stop_quietly(tenant)
        paused = await self.tenants.transition(tenant.tenant_id, [TenantStatus.GRACE_PERIOD], TenantStatus.PAUSED)
        if paused is None:
            return False
        await self.registry.recompute_ram(paused.host_id)
        await self.lifecycle.cache.drop_status(tenant.tenant_id)
        record_grace_transition("paused")
        await self._audit(paused, "grace_paused", "Agent paused for unpaid balance")
        await self._notify(paused, "paused")
        return True

    async def _cancel(self, tenant: Tenant, now: datetime) -> bool:
        cancelled = await self.tenants.transition(
            tenant.tenant_id,
            [TenantStatus.GRACE_PERIOD, TenantStatus.PAUSED],
            TenantStatus.CANCELLED,
            cancelled_at=now,
        )
        if cancelled is None:
            return False
        if tenant.status == TenantStatus.GRACE_PERIOD:
            await self.lifecycle.stop_quietly(tenant)
        await self.registry.recompute_ram(cancelled.host_id)
        await self.lifecycle.cache.drop_status(tenant.tenant_id)
        record_grace_transition("cancelled")
        await self._audit(cancelled, "grace_cancelled", "Subscription cancelled after grace period")
        await self._notify(cancelled, "cancelled")
        return True
