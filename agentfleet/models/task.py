"""
Runaway task watchdog models
"""
from enum import Enum
from typing import List
from datetime import datetime
from pydantic import BaseModel, Field


class WatchdogAction(str, Enum):
    KILL = "kill"
    PAUSE = "pause"


class RecordedAction(BaseModel):
    type: str
    timestamp: float


class TaskStats(BaseModel):
    """Snapshot of a monitored task"""
    tenant_id: str
    task_id: str
    start_time: float
    tokens_used: int = 0
    actions: List[RecordedAction] = Field(default_factory=list)


class WatchdogDecision(BaseModel):
    """Kill/pause signal; the executor is responsible for acting on it"""
    tenant_id: str
    task_id: str
    action: WatchdogAction
    reason: str
    decided_at: datetime


class ActionRecord(BaseModel):
    action_type: str


class TokenRecord(BaseModel):
    tokens: int = Field(ge=0)
