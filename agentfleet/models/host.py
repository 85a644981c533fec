"""
Worker host models
"""
from enum import Enum
from typing import List, Optional
from datetime import datetime
from pydantic import BaseModel, Field


class HostStatus(str, Enum):
    """Worker host status"""
    ACTIVE = "active"
    PROVISIONING = "provisioning"
    DRAINING = "draining"
    OFFLINE = "offline"


class WorkerHost(BaseModel):
    """Worker host with declared and booked memory"""
    host_id: str
    address: str
    hostname: Optional[str] = None
    cloud_id: Optional[str] = None
    ram_total: int
    ram_used: int = 0  # booked, not measured
    status: HostStatus = HostStatus.ACTIVE
    registered_at: datetime

    @property
    def ram_free(self) -> int:
        return self.ram_total - self.ram_used


class HostLoad(BaseModel):
    """Host with the number of tenants assigned to it"""
    host: WorkerHost
    tenant_count: int = 0


class HostRegistration(BaseModel):
    """Self-registration payload sent by a worker's startup callback"""
    address: str
    ram_total: int = Field(gt=0)
    hostname: Optional[str] = None
    cloud_id: Optional[str] = None


class ContainerMemStat(BaseModel):
    name: str
    mem_usage: str
    mem_percent: str


class HostMemoryDiagnostics(BaseModel):
    """Measured container memory on a host; for dashboards only"""
    host_id: str
    address: str
    ram_total: int
    ram_booked: int
    containers: List[ContainerMemStat] = Field(default_factory=list)
    error: Optional[str] = None
