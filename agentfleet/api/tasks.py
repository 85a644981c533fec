"""
Runaway task monitor API endpoints
"""
from fastapi import APIRouter, Depends, HTTPException

from agentfleet.api.deps import get_fleet
from agentfleet.core.fleet import Fleet
from agentfleet.models.task import ActionRecord, TaskStats, TokenRecord


router = APIRouter()


@router.post("/{tenant_id}/{task_id}/start", status_code=202)
async def start_task(tenant_id: str, task_id: str, fleet: Fleet = Depends(get_fleet)):
    await fleet.runaway.start_task_monitor(tenant_id, task_id)
    return {"tenant_id": tenant_id, "task_id": task_id, "monitoring": True}


@router.post("/{tenant_id}/{task_id}/stop")
async def stop_task(tenant_id: str, task_id: str, fleet: Fleet = Depends(get_fleet)):
    await fleet.runaway.stop_task_monitor(tenant_id, task_id)
    return {"tenant_id": tenant_id, "task_id": task_id, "monitoring": False}


@router.post("/{tenant_id}/{task_id}/actions", status_code=204)
async def record_action(tenant_id: str, task_id: str, body: ActionRecord, fleet: Fleet = Depends(get_fleet)):
    await fleet.runaway.record_action(tenant_id, task_id, body.action_type)


@router.post("/{tenant_id}/{task_id}/tokens")
async def add_tokens(tenant_id: str, task_id: str, body: TokenRecord, fleet: Fleet = Depends(get_fleet)):
    total = await fleet.runaway.add_tokens(tenant_id, task_id, body.tokens)
    return {"tenant_id": tenant_id, "task_id": task_id, "tokens_used": total}


@router.get("/{tenant_id}/{task_id}", response_model=TaskStats)
async def task_stats(tenant_id: str, task_id: str, fleet: Fleet = Depends(get_fleet)):
    stats = await fleet.runaway.get_stats(tenant_id, task_id)
    if stats is None:
        raise HTTPException(status_code=404, detail="Task is not monitored")
    return stats
