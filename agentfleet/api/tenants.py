"""
Tenant lifecycle API endpoints
"""
from fastapi import APIRouter, Depends, HTTPException

from agentfleet.api.deps import get_fleet
from agentfleet.core.fleet import Fleet
from agentfleet.errors import TenantNotFound
from agentfleet.models.tenant import (
    ChannelUpdate,
    Tenant,
    TenantCreate,
    TenantStatusResponse,
    TouchResponse,
    WakeResponse,
)
from agentfleet.services.container_commands import validate_tenant_id


router = APIRouter()


@router.post("", response_model=Tenant, status_code=201)
async def create_tenant(body: TenantCreate, fleet: Fleet = Depends(get_fleet)):
    """Register a tenant in pending state"""
    if body.tenant_id:
        validate_tenant_id(body.tenant_id)
    return await fleet.tenants.create(plan=body.plan.value, contact=body.contact, tenant_id=body.tenant_id)


@router.get("/{tenant_id}", response_model=Tenant)
async def get_tenant(tenant_id: str, fleet: Fleet = Depends(get_fleet)):
    tenant = await fleet.tenants.get(tenant_id)
    if tenant is None:
        raise TenantNotFound(f"Tenant {tenant_id} not found")
    return tenant


@router.get("/{tenant_id}/status", response_model=TenantStatusResponse)
async def tenant_status(tenant_id: str, fleet: Fleet = Depends(get_fleet)):
    """Container status, served from the short-TTL cache when possible"""
    status = await fleet.lifecycle.container_status(tenant_id)
    return TenantStatusResponse(tenant_id=tenant_id, status=status)


@router.post("/{tenant_id}/provision", response_model=Tenant)
async def provision_tenant(tenant_id: str, fleet: Fleet = Depends(get_fleet)):
    return await fleet.lifecycle.provision(tenant_id)


@router.post("/{tenant_id}/wake", response_model=WakeResponse)
async def wake_tenant(tenant_id: str, fleet: Fleet = Depends(get_fleet)):
    """Wake a sleeping tenant; concurrent calls start the container once"""
    outcome = await fleet.lifecycle.wake(tenant_id)
    return WakeResponse(tenant_id=tenant_id, outcome=outcome)


@router.post("/{tenant_id}/touch", response_model=TouchResponse)
async def touch_tenant(tenant_id: str, fleet: Fleet = Depends(get_fleet)):
    updated = await fleet.lifecycle.touch_activity(tenant_id)
    return TouchResponse(tenant_id=tenant_id, updated=updated)


@router.post("/{tenant_id}/cancel", response_model=Tenant)
async def cancel_tenant(tenant_id: str, fleet: Fleet = Depends(get_fleet)):
    return await fleet.grace.handle_subscription_cancelled(tenant_id)


@router.post("/{tenant_id}/payment-failed", response_model=Tenant)
async def payment_failed(tenant_id: str, fleet: Fleet = Depends(get_fleet)):
    """Billing event: start (or keep) the grace period"""
    moved = await fleet.grace.handle_payment_failure(tenant_id)
    return moved or await fleet.tenants.get(tenant_id)


@router.post("/{tenant_id}/purge", response_model=Tenant)
async def purge_tenant(tenant_id: str, fleet: Fleet = Depends(get_fleet)):
    purged = await fleet.lifecycle.deprovision(tenant_id)
    if purged is None:
        raise HTTPException(status_code=409, detail="Only cancelled tenants can be purged")
    return purged


@router.put("/{tenant_id}/channels", status_code=204)
async def update_channels(tenant_id: str, body: ChannelUpdate, fleet: Fleet = Depends(get_fleet)):
    """Always-on channel flags; tenants with any channel are never slept"""
    if await fleet.tenants.get(tenant_id) is None:
        raise TenantNotFound(f"Tenant {tenant_id} not found")
    flags = {name: value for name, value in body.model_dump().items() if value is not None}
    await fleet.tenants.set_channels(tenant_id, **flags)
