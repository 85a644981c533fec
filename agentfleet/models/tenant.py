"""
Tenant lifecycle models
"""
from enum import Enum
from typing import Dict, FrozenSet, Optional
from datetime import datetime
from pydantic import BaseModel


class TenantStatus(str, Enum):
    """Tenant container lifecycle status"""
    PENDING = "pending"
    PROVISIONING = "provisioning"
    STARTING = "starting"
    ACTIVE = "active"
    SLEEPING = "sleeping"
    PAUSED = "paused"
    GRACE_PERIOD = "grace_period"
    CANCELLED = "cancelled"
    PURGED = "purged"


class PlanTier(str, Enum):
    STARTER = "starter"
    PRO = "pro"
    BUSINESS = "business"


class PlanLimits(BaseModel):
    ram_mb: int
    cpus: str


PLAN_LIMITS: Dict[str, PlanLimits] = {
    PlanTier.STARTER.value: PlanLimits(ram_mb=2048, cpus="1.0"),
    PlanTier.PRO.value: PlanLimits(ram_mb=4096, cpus="2.0"),
    PlanTier.BUSINESS.value: PlanLimits(ram_mb=8192, cpus="4.0"),
}
DEFAULT_PLAN_RAM_MB = 2048

# Tenants holding a slot on their host. A sleeping container keeps its slot so
# waking never needs new room. Booked RAM is derived from this set and the
# static plan table, never from measured usage.
BOOKED_STATUSES: FrozenSet[TenantStatus] = frozenset({
    TenantStatus.PROVISIONING,
    TenantStatus.STARTING,
    TenantStatus.ACTIVE,
    TenantStatus.SLEEPING,
    TenantStatus.GRACE_PERIOD,
})

TERMINAL_STATUSES: FrozenSet[TenantStatus] = frozenset({
    TenantStatus.CANCELLED,
    TenantStatus.PURGED,
})


def plan_ram_mb(plan: Optional[str]) -> int:
    """Booked RAM for a plan tier"""
    limits = PLAN_LIMITS.get(plan or "")
    return limits.ram_mb if limits else DEFAULT_PLAN_RAM_MB


def plan_cpus(plan: Optional[str]) -> str:
    limits = PLAN_LIMITS.get(plan or "")
    return limits.cpus if limits else PLAN_LIMITS[PlanTier.STARTER.value].cpus


class Tenant(BaseModel):
    """Tenant (customer agent instance)"""
    tenant_id: str
    plan: str = PlanTier.STARTER.value
    status: TenantStatus = TenantStatus.PENDING
    host_id: Optional[str] = None
    container_name: Optional[str] = None
    contact: Optional[str] = None
    gateway_token: Optional[str] = None
    provision_retries: int = 0

    # Timestamps
    created_at: datetime
    last_active_at: datetime
    grace_period_end: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    provision_requested_at: Optional[datetime] = None

    @property
    def ram_mb(self) -> int:
        return plan_ram_mb(self.plan)


class SweepCandidate(BaseModel):
    """Active tenant joined with its host address and channel flags"""
    tenant: Tenant
    host_address: str
    has_channels: bool = False


class WakeOutcome(str, Enum):
    """Result of a wake request; only CANNOT_WAKE is a refusal"""
    WOKEN = "woken"
    ALREADY_ACTIVE = "already_active"
    CANNOT_WAKE = "cannot_wake"


class TenantCreate(BaseModel):
    """Request to register a new tenant"""
    plan: PlanTier = PlanTier.STARTER
    contact: Optional[str] = None
    tenant_id: Optional[str] = None


class ChannelUpdate(BaseModel):
    telegram: Optional[bool] = None
    discord: Optional[bool] = None
    slack: Optional[bool] = None
    whatsapp: Optional[bool] = None


class WakeResponse(BaseModel):
    tenant_id: str
    outcome: WakeOutcome


class TenantStatusResponse(BaseModel):
    tenant_id: str
    status: str


class TouchResponse(BaseModel):
    tenant_id: str
    updated: bool
