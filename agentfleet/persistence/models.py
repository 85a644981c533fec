"""
SQLAlchemy ORM models for hosts, tenants, channels and the audit log
"""
from datetime import datetime
from typing import Any, Optional
from uuid import uuid4

from sqlalchemy import JSON, Boolean, CheckConstraint, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from agentfleet.models.host import HostStatus, WorkerHost
from agentfleet.models.tenant import Tenant, TenantStatus
from agentfleet.persistence.database import Base
from agentfleet.utils.clock import utcnow


def _new_id() -> str:
    return str(uuid4())


def _in(column: str, values) -> str:
    return f"{column} IN ({', '.join(repr(v.value) for v in values)})"


class WorkerHostRecord(Base):
    __tablename__ = "worker_hosts"
    __table_args__ = (
        CheckConstraint(_in("status", HostStatus), name="ck_worker_hosts_status"),
        CheckConstraint("ram_used >= 0", name="ck_worker_hosts_ram_used"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    address: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    hostname: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    cloud_id: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    ram_total: Mapped[int] = mapped_column(Integer, nullable=False)
    ram_used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=HostStatus.ACTIVE.value)
    registered_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    def to_domain(self) -> WorkerHost:
        return WorkerHost(
            host_id=self.id,
            address=self.address,
            hostname=self.hostname,
            cloud_id=self.cloud_id,
            ram_total=self.ram_total,
            ram_used=self.ram_used,
            status=HostStatus(self.status),
            registered_at=self.registered_at,
        )


class TenantRecord(Base):
    __tablename__ = "tenants"
    __table_args__ = (
        CheckConstraint(_in("status", TenantStatus), name="ck_tenants_status"),
        Index("ix_tenants_status", "status"),
        Index("ix_tenants_host", "host_id"),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    plan: Mapped[str] = mapped_column(String(50), nullable=False, default="starter")
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=TenantStatus.PENDING.value)
    host_id: Mapped[Optional[str]] = mapped_column(ForeignKey("worker_hosts.id"), nullable=True)
    container_name: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    contact: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    gateway_token: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    provision_retries: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    last_active_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    grace_period_end: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    # Set while a tenant waits for a host; host creation requires one
    provision_requested_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    def to_domain(self) -> Tenant:
        return Tenant(
            tenant_id=self.id,
            plan=self.plan,
            status=TenantStatus(self.status),
            host_id=self.host_id,
            container_name=self.container_name,
            contact=self.contact,
            gateway_token=self.gateway_token,
            provision_retries=self.provision_retries,
            created_at=self.created_at,
            last_active_at=self.last_active_at,
            grace_period_end=self.grace_period_end,
            cancelled_at=self.cancelled_at,
            provision_requested_at=self.provision_requested_at,
        )


class TenantChannelRecord(Base):
    """Always-on messaging channels attached to a tenant"""

    __tablename__ = "tenant_channels"

    tenant_id: Mapped[str] = mapped_column(
        ForeignKey("tenants.id", ondelete="CASCADE"), primary_key=True
    )
    telegram_connected: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    discord_connected: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    slack_connected: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    whatsapp_connected: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)


class ActivityLogRecord(Base):
    __tablename__ = "activity_log"
    __table_args__ = (Index("ix_activity_log_tenant", "tenant_id"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    kind: Mapped[str] = mapped_column(String(50), nullable=False)
    summary: Mapped[str] = mapped_column(Text, nullable=False)
    details: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
