"""
Worker host API endpoints
"""
from fastapi import APIRouter, Depends, Response
from typing import List

from agentfleet.api.deps import get_fleet
from agentfleet.core.fleet import Fleet
from agentfleet.models.host import HostLoad, HostMemoryDiagnostics, HostRegistration, WorkerHost


router = APIRouter()


@router.post("/register", response_model=WorkerHost)
async def register_host(registration: HostRegistration, fleet: Fleet = Depends(get_fleet)):
    """Self-registration callback from a worker's startup script"""
    return await fleet.coordinator.register_host(
        registration.address,
        registration.ram_total,
        registration.hostname,
        registration.cloud_id,
    )


@router.get("", response_model=List[HostLoad])
async def list_hosts(fleet: Fleet = Depends(get_fleet)):
    return await fleet.registry.host_load()


@router.get("/{host_id}/memory", response_model=HostMemoryDiagnostics)
async def host_memory(host_id: str, fleet: Fleet = Depends(get_fleet)):
    """Measured container memory, for dashboards"""
    return await fleet.registry.memory_diagnostics(host_id)


@router.delete("/{host_id}", status_code=204)
async def decommission_host(host_id: str, fleet: Fleet = Depends(get_fleet)):
    await fleet.coordinator.decommission_host(host_id)
    return Response(status_code=204)
