"""
Tenant repository

Status changes go through transition(), a single conditional UPDATE that only
matches while the row is still in one of the expected source statuses. A
caller that loses a race gets None back ("no row changed") and treats it as
success by another caller.
"""
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional
from uuid import uuid4

from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from agentfleet.models.tenant import SweepCandidate, Tenant, TenantStatus
from agentfleet.persistence.models import (
    ActivityLogRecord,
    TenantChannelRecord,
    TenantRecord,
    WorkerHostRecord,
)
from agentfleet.utils.clock import utcnow

logger = logging.getLogger(__name__)

# Columns a transition may write alongside the new status
_TRANSITION_FIELDS = {
    "host_id",
    "container_name",
    "gateway_token",
    "last_active_at",
    "grace_period_end",
    "cancelled_at",
    "provision_requested_at",
    "provision_retries",
}


def _statuses(values: Iterable[TenantStatus]) -> List[str]:
    return [TenantStatus(v).value for v in values]


class TenantRepository:
    """Persistent tenant state backed by the relational store"""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def create(
        self,
        plan: str = "starter",
        contact: Optional[str] = None,
        tenant_id: Optional[str] = None,
        created_at: Optional[datetime] = None,
    ) -> Tenant:
        now = created_at or utcnow()
        record = TenantRecord(
            id=tenant_id or str(uuid4()),
            plan=plan,
            contact=contact,
            status=TenantStatus.PENDING.value,
            created_at=now,
            last_active_at=now,
        )
        async with self._session_factory() as session:
            async with session.begin():
                session.add(record)
                session.add(TenantChannelRecord(tenant_id=record.id))
        return record.to_domain()

    async def get(self, tenant_id: str) -> Optional[Tenant]:
        async with self._session_factory() as session:
            record = await session.get(TenantRecord, tenant_id)
            return record.to_domain() if record else None

    async def transition(
        self,
        tenant_id: str,
        from_statuses: Iterable[TenantStatus],
        to_status: TenantStatus,
        idle_before: Optional[datetime] = None,
        **fields: Any,
    ) -> Optional[Tenant]:
        """
        Atomically move a tenant to to_status if it is currently in one of
        from_statuses, and, with idle_before, only if it has been inactive
        since then. Returns the updated tenant, or None if no row changed.
        """
        async with self._session_factory() as session:
            async with session.begin():
                return await self.transition_in(
                    session, tenant_id, from_statuses, to_status, idle_before=idle_before, **fields
                )

    async def transition_in(
        self,
        session: AsyncSession,
        tenant_id: str,
        from_statuses: Iterable[TenantStatus],
        to_status: TenantStatus,
        idle_before: Optional[datetime] = None,
        **fields: Any,
    ) -> Optional[Tenant]:
        """transition() inside a caller-owned transaction"""
        unknown = set(fields) - _TRANSITION_FIELDS
        if unknown:
            raise ValueError(f"Fields not writable by a transition: {sorted(unknown)}")

        conditions = [TenantRecord.id == tenant_id, TenantRecord.status.in_(_statuses(from_statuses))]
        if idle_before is not None:
            conditions.append(TenantRecord.last_active_at <= idle_before)
        stmt = (
            update(TenantRecord)
            .where(*conditions)
            .values(status=TenantStatus(to_status).value, **fields)
            .returning(TenantRecord)
            .execution_options(synchronize_session=False)
        )
        result = await session.execute(stmt)
        record = result.scalars().first()
        if record is None:
            return None
        logger.debug(f"[tenants] {tenant_id} -> {record.status}")
        return record.to_domain()

    async def touch(self, tenant_id: str, when: Optional[datetime] = None) -> bool:
        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    update(TenantRecord)
                    .where(TenantRecord.id == tenant_id)
                    .values(last_active_at=when or utcnow())
                    .execution_options(synchronize_session=False)
                )
                return result.rowcount > 0

    async def mark_provision_requested(self, tenant_id: str, when: datetime) -> bool:
        """Flag a pending tenant as waiting for a host"""
        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    update(TenantRecord)
                    .where(
                        TenantRecord.id == tenant_id,
                        TenantRecord.status == TenantStatus.PENDING.value,
                    )
                    .values(provision_requested_at=when)
                    .execution_options(synchronize_session=False)
                )
                return result.rowcount > 0

    async def record_provision_failure(self, tenant_id: str) -> None:
        async with self._session_factory() as session:
            async with session.begin():
                await session.execute(
                    update(TenantRecord)
                    .where(TenantRecord.id == tenant_id)
                    .values(provision_retries=TenantRecord.provision_retries + 1)
                    .execution_options(synchronize_session=False)
                )

    async def count_waiting_for_host(self) -> int:
        async with self._session_factory() as session:
            result = await session.execute(
                select(func.count())
                .select_from(TenantRecord)
                .where(
                    TenantRecord.status == TenantStatus.PENDING.value,
                    TenantRecord.provision_requested_at.is_not(None),
                )
            )
            return int(result.scalar_one())

    async def list_by_status(self, *statuses: TenantStatus) -> List[Tenant]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(TenantRecord).where(TenantRecord.status.in_(_statuses(statuses)))
            )
            return [r.to_domain() for r in result.scalars()]

    async def list_sleep_candidates(self) -> List[SweepCandidate]:
        """Active tenants with their host address and always-on channel flag"""
        has_channels = func.coalesce(
            or_(
                TenantChannelRecord.telegram_connected,
                TenantChannelRecord.discord_connected,
                TenantChannelRecord.slack_connected,
                TenantChannelRecord.whatsapp_connected,
            ),
            False,
        )
        stmt = (
            select(TenantRecord, WorkerHostRecord.address, has_channels)
            .join(WorkerHostRecord, WorkerHostRecord.id == TenantRecord.host_id)
            .outerjoin(TenantChannelRecord, TenantChannelRecord.tenant_id == TenantRecord.id)
            .where(TenantRecord.status == TenantStatus.ACTIVE.value)
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [
                SweepCandidate(tenant=record.to_domain(), host_address=address, has_channels=bool(flag))
                for record, address, flag in result.all()
            ]

    async def list_due_for_pause(self, now: datetime, window: timedelta) -> List[Tenant]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(TenantRecord).where(
                    TenantRecord.status == TenantStatus.GRACE_PERIOD.value,
                    TenantRecord.grace_period_end <= now + window,
                    TenantRecord.grace_period_end > now,
                )
            )
            return [r.to_domain() for r in result.scalars()]

    async def list_due_for_cancel(self, now: datetime) -> List[Tenant]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(TenantRecord).where(
                    TenantRecord.status.in_(_statuses([TenantStatus.GRACE_PERIOD, TenantStatus.PAUSED])),
                    TenantRecord.grace_period_end <= now,
                )
            )
            return [r.to_domain() for r in result.scalars()]

    async def list_due_for_purge(self, now: datetime, retention: timedelta) -> List[Tenant]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(TenantRecord).where(
                    TenantRecord.status == TenantStatus.CANCELLED.value,
                    TenantRecord.cancelled_at <= now - retention,
                )
            )
            return [r.to_domain() for r in result.scalars()]

    async def set_channels(self, tenant_id: str, **flags: bool) -> None:
        async with self._session_factory() as session:
            async with session.begin():
                record = await session.get(TenantChannelRecord, tenant_id)
                if record is None:
                    record = TenantChannelRecord(tenant_id=tenant_id)
                    session.add(record)
                for name, value in flags.items():
                    setattr(record, f"{name}_connected", bool(value))

    async def record_activity(
        self,
        tenant_id: str,
        kind: str,
        summary: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Append an audit record"""
        async with self._session_factory() as session:
            async with session.begin():
                session.add(ActivityLogRecord(
                    tenant_id=tenant_id,
                    kind=kind,
                    summary=summary,
                    details=details,
                ))

    async def list_activity(self, tenant_id: str) -> List[ActivityLogRecord]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(ActivityLogRecord)
                .where(ActivityLogRecord.tenant_id == tenant_id)
                .order_by(ActivityLogRecord.created_at)
            )
            return list(result.scalars())
