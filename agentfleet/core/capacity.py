"""
Capacity registry
Source of truth for declared and booked memory on every worker host
"""
import asyncio
import logging
import random
from datetime import datetime
from typing import Any, Iterable, List, Optional, Tuple

from sqlalchemy import case, delete, exists, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from agentfleet.config import settings
from agentfleet.errors import CapacityExhausted, HostInUse, HostNotFound, RemoteExecFailure
from agentfleet.models.host import HostLoad, HostMemoryDiagnostics, HostStatus, WorkerHost
from agentfleet.models.tenant import (
    BOOKED_STATUSES,
    DEFAULT_PLAN_RAM_MB,
    PLAN_LIMITS,
    Tenant,
    TenantStatus,
)
from agentfleet.persistence.models import TenantRecord, WorkerHostRecord
from agentfleet.persistence.tenants import TenantRepository
from agentfleet.services.container_commands import ContainerCommands
from agentfleet.utils.clock import Clock, utcnow
from agentfleet.utils.metrics import record_reservation, remove_host_ram, update_host_ram

logger = logging.getLogger(__name__)

_RESERVE_ATTEMPTS = 5
_RESERVE_BACKOFF_SECONDS = 0.05

# Hosts that may still receive bookings for tenants already placed on them
_BOOKABLE_HOST_STATUSES = [HostStatus.ACTIVE.value, HostStatus.DRAINING.value]


class _LostRace(Exception):
    """Raised inside a transaction to roll it back when the tenant flip matched no row"""


class _NoRoom(Exception):
    """Raised inside a transaction when the host increment matched no row"""


def _booked_ram_expr():
    return case(
        {plan: limits.ram_mb for plan, limits in PLAN_LIMITS.items()},
        value=TenantRecord.plan,
        else_=DEFAULT_PLAN_RAM_MB,
    )


def _booked_ram(host_id: str):
    return select(func.coalesce(func.sum(_booked_ram_expr()), 0)).where(
        TenantRecord.host_id == host_id,
        TenantRecord.status.in_([s.value for s in BOOKED_STATUSES]),
    )


async def _backoff(attempt: int) -> None:
    # Jittered so callers that skipped the same locked row spread out
    await asyncio.sleep(random.uniform(0, _RESERVE_BACKOFF_SECONDS * (attempt + 1)))


class CapacityRegistry:
    """
    Atomic host capacity bookkeeping.

    ram_used is a booking figure: the sum of plan RAM of tenants in the booked
    set. Every write to it is a single conditional statement so concurrent
    callers can never push a host past ram_total.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        tenants: TenantRepository,
        containers: Optional[ContainerCommands] = None,
        control_plane_address: Optional[str] = settings.CONTROL_PLANE_ADDRESS,
        warn_percent: float = settings.CAPACITY_WARN_PERCENT,
        clock: Clock = utcnow,
    ):
        self._session_factory = session_factory
        self.tenants = tenants
        self.containers = containers
        self.control_plane_address = control_plane_address
        self.warn_percent = warn_percent
        self.clock = clock

    def _eligible(self, required_ram: int) -> List[Any]:
        conditions = [
            WorkerHostRecord.status == HostStatus.ACTIVE.value,
            WorkerHostRecord.ram_total - WorkerHostRecord.ram_used >= required_ram,
        ]
        if self.control_plane_address:
            conditions.append(WorkerHostRecord.address != self.control_plane_address)
        return conditions

    def _fullest_candidate(self, required_ram: int):
        # Fullest host first; SKIP LOCKED lets concurrent callers pick other rows
        return (
            select(WorkerHostRecord.id)
            .where(*self._eligible(required_ram))
            .order_by(WorkerHostRecord.ram_used.desc(), WorkerHostRecord.registered_at)
            .limit(1)
            .with_for_update(skip_locked=True)
            .scalar_subquery()
        )

    def _increment(self, target: Any, required_ram: int, *conditions: Any):
        return (
            update(WorkerHostRecord)
            .where(
                WorkerHostRecord.id == target,
                WorkerHostRecord.ram_total - WorkerHostRecord.ram_used >= required_ram,
                *conditions,
            )
            .values(ram_used=WorkerHostRecord.ram_used + required_ram)
            .returning(WorkerHostRecord)
            .execution_options(synchronize_session=False)
        )

    async def _try_reserve(self, required_ram: int) -> Optional[WorkerHost]:
        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(self._increment(self._fullest_candidate(required_ram), required_ram))
                record = result.scalars().first()
                return record.to_domain() if record else None

    async def has_room(self, required_ram: int) -> bool:
        """True if some eligible host currently shows required_ram of headroom"""
        async with self._session_factory() as session:
            result = await session.execute(
                select(func.count()).select_from(WorkerHostRecord).where(*self._eligible(required_ram))
            )
            return int(result.scalar_one()) > 0

    async def reserve(self, required_ram: int) -> WorkerHost:
        """
        Book required_ram on the fullest active host that has room.
        Raises CapacityExhausted when no host has headroom.

        A bare reservation is not tied to any tenant, so the next recompute of
        the host drops it. Placing a tenant goes through book_and_transition.
        """
        for attempt in range(_RESERVE_ATTEMPTS):
            host = await self._try_reserve(required_ram)
            if host is not None:
                logger.info(f"[capacity] reserved {required_ram}MB on {host.address} ({host.ram_used}/{host.ram_total}MB)")
                update_host_ram(host.host_id, host.ram_used, host.ram_total)
                record_reservation("reserved")
                return host
            # Nothing matched; only retry if a row was skipped while locked
            if not await self.has_room(required_ram):
                break
            await _backoff(attempt)

        record_reservation("exhausted")
        raise CapacityExhausted(required_ram)

    async def _book_once(
        self,
        tenant_id: str,
        host_id: Optional[str],
        required_ram: int,
        from_statuses: List[TenantStatus],
        to_status: TenantStatus,
        fields: dict,
    ) -> Tuple[WorkerHost, Tenant]:
        if host_id is None:
            stmt = self._increment(self._fullest_candidate(required_ram), required_ram)
        else:
            stmt = self._increment(host_id, required_ram, WorkerHostRecord.status.in_(_BOOKABLE_HOST_STATUSES))

        async with self._session_factory() as session:
            async with session.begin():
                record = (await session.execute(stmt)).scalars().first()
                if record is None:
                    # A concurrent winner may have taken the room we were racing for
                    current = await session.get(TenantRecord, tenant_id)
                    allowed = {TenantStatus(s).value for s in from_statuses}
                    if current is None or current.status not in allowed:
                        raise _LostRace()
                    raise _NoRoom()
                host = record.to_domain()
                tenant = await self.tenants.transition_in(
                    session, tenant_id, from_statuses, to_status, host_id=host.host_id, **fields
                )
                if tenant is None:
                    raise _LostRace()
        return host, tenant

    async def book_and_transition(
        self,
        tenant_id: str,
        host_id: Optional[str],
        required_ram: int,
        from_statuses: Iterable[TenantStatus],
        to_status: TenantStatus,
        **fields: Any,
    ) -> Optional[Tenant]:
        """
        Book required_ram and flip the tenant's status in one transaction,
        assigning the tenant to the booked host.

        With host_id None the fullest eligible host is chosen, as reserve()
        does. Returns None (and books nothing) if the tenant was not in
        from_statuses. Raises CapacityExhausted if there is no room.
        """
        from_statuses = list(from_statuses)
        for attempt in range(_RESERVE_ATTEMPTS):
            try:
                host, tenant = await self._book_once(
                    tenant_id, host_id, required_ram, from_statuses, to_status, fields
                )
            except _LostRace:
                return None
            except _NoRoom:
                if host_id is not None or not await self.has_room(required_ram):
                    break
                await _backoff(attempt)
                continue
            logger.info(
                f"[capacity] booked {required_ram}MB for {tenant_id} on {host.address} "
                f"({host.ram_used}/{host.ram_total}MB)"
            )
            update_host_ram(host.host_id, host.ram_used, host.ram_total)
            record_reservation("booked")
            return tenant

        record_reservation("exhausted")
        if host_id is not None:
            raise CapacityExhausted(required_ram, f"Host {host_id} has no room for {required_ram}MB")
        raise CapacityExhausted(required_ram)

    async def recompute_ram(self, host_id: Optional[str]) -> Optional[WorkerHost]:
        """Re-derive ram_used from the plans of booked tenants on the host"""
        if not host_id:
            return None
        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    update(WorkerHostRecord)
                    .where(WorkerHostRecord.id == host_id)
                    .values(ram_used=_booked_ram(host_id).scalar_subquery())
                    .returning(WorkerHostRecord)
                    .execution_options(synchronize_session=False)
                )
                record = result.scalars().first()
        if record is None:
            return None
        host = record.to_domain()
        update_host_ram(host.host_id, host.ram_used, host.ram_total)
        if host.ram_used > host.ram_total:
            # Admission stays closed on this host until tenants leave
            logger.error(
                f"[capacity] {host.address} is overcommitted: {host.ram_used}MB booked of {host.ram_total}MB"
            )
        else:
            logger.debug(f"[capacity] {host.address} booked RAM recomputed: {host.ram_used}/{host.ram_total}MB")
        return host

    async def register_host(
        self,
        address: str,
        ram_total: int,
        hostname: Optional[str] = None,
        cloud_id: Optional[str] = None,
    ) -> Tuple[WorkerHost, bool]:
        """
        Insert a host or re-activate a known address.
        Returns (host, created) where created is True only for a new address.

        A known host comes back with its booked RAM recomputed. If its tenants
        no longer fit the declared RAM it is left draining.
        """
        async with self._session_factory() as session:
            async with session.begin():
                existing = (
                    await session.execute(
                        select(WorkerHostRecord.id).where(WorkerHostRecord.address == address).with_for_update()
                    )
                ).scalar_one_or_none()
                record = None
                if existing is not None:
                    booked = int((await session.execute(_booked_ram(existing))).scalar_one())
                    values = {
                        "ram_total": ram_total,
                        "ram_used": booked,
                        "status": HostStatus.ACTIVE.value if booked <= ram_total else HostStatus.DRAINING.value,
                    }
                    if hostname:
                        values["hostname"] = hostname
                    if cloud_id:
                        values["cloud_id"] = cloud_id
                    record = (
                        await session.execute(
                            update(WorkerHostRecord)
                            .where(WorkerHostRecord.id == existing)
                            .values(**values)
                            .returning(WorkerHostRecord)
                            .execution_options(synchronize_session=False)
                        )
                    ).scalars().first()
            if record is not None:
                host = record.to_domain()
                if host.status == HostStatus.DRAINING:
                    logger.warning(
                        f"[capacity] host {address} re-registered with {ram_total}MB but "
                        f"{host.ram_used}MB is booked; left draining"
                    )
                else:
                    logger.info(f"[capacity] host {address} re-registered ({ram_total}MB)")
                update_host_ram(host.host_id, host.ram_used, host.ram_total)
                return host, False

            record = WorkerHostRecord(
                address=address,
                hostname=hostname,
                cloud_id=cloud_id,
                ram_total=ram_total,
                ram_used=0,
                status=HostStatus.ACTIVE.value,
                registered_at=self.clock(),
            )
            try:
                async with session.begin():
                    session.add(record)
            except IntegrityError:
                # Concurrent registration of the same address won the insert
                logger.info(f"[capacity] host {address} registered concurrently")
                host = await self.get_host_by_address(address)
                return host, False

        host = record.to_domain()
        logger.info(f"[capacity] new host registered: {address} ({ram_total}MB)")
        update_host_ram(host.host_id, host.ram_used, host.ram_total)
        return host, True

    async def remove_host(self, host_id: str) -> None:
        """Delete a host row; refuses while any unpurged tenant is assigned"""
        assigned = exists().where(
            TenantRecord.host_id == host_id,
            TenantRecord.status != TenantStatus.PURGED.value,
        )
        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    delete(WorkerHostRecord)
                    .where(WorkerHostRecord.id == host_id, ~assigned)
                    .execution_options(synchronize_session=False)
                )
                removed = result.rowcount > 0
        if not removed:
            if await self.get_host(host_id) is None:
                raise HostNotFound(f"Host {host_id} not found")
            raise HostInUse(f"Host {host_id} still has tenants assigned")
        remove_host_ram(host_id)
        logger.info(f"[capacity] host {host_id} removed")

    async def update_host(self, host_id: str, **values: Any) -> Optional[WorkerHost]:
        """Set status and/or cloud_id on a host"""
        unknown = set(values) - {"status", "cloud_id"}
        if unknown:
            raise ValueError(f"Host fields not writable: {sorted(unknown)}")
        if "status" in values:
            values["status"] = HostStatus(values["status"]).value
        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    update(WorkerHostRecord)
                    .where(WorkerHostRecord.id == host_id)
                    .values(**values)
                    .returning(WorkerHostRecord)
                    .execution_options(synchronize_session=False)
                )
                record = result.scalars().first()
                return record.to_domain() if record else None

    async def count_assigned(self, host_id: str) -> int:
        async with self._session_factory() as session:
            result = await session.execute(
                select(func.count())
                .select_from(TenantRecord)
                .where(TenantRecord.host_id == host_id, TenantRecord.status != TenantStatus.PURGED.value)
            )
            return int(result.scalar_one())

    async def get_host(self, host_id: str) -> Optional[WorkerHost]:
        async with self._session_factory() as session:
            record = await session.get(WorkerHostRecord, host_id)
            return record.to_domain() if record else None

    async def get_host_by_address(self, address: str) -> Optional[WorkerHost]:
        async with self._session_factory() as session:
            result = await session.execute(select(WorkerHostRecord).where(WorkerHostRecord.address == address))
            record = result.scalars().first()
            return record.to_domain() if record else None

    async def list_hosts(self, status: Optional[HostStatus] = None) -> List[WorkerHost]:
        stmt = select(WorkerHostRecord).order_by(WorkerHostRecord.registered_at)
        if status is not None:
            stmt = stmt.where(WorkerHostRecord.status == HostStatus(status).value)
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [r.to_domain() for r in result.scalars()]

    async def host_load(self) -> List[HostLoad]:
        """Hosts with the number of unpurged tenants assigned to each"""
        stmt = (
            select(WorkerHostRecord, func.count(TenantRecord.id))
            .outerjoin(
                TenantRecord,
                (TenantRecord.host_id == WorkerHostRecord.id)
                & (TenantRecord.status != TenantStatus.PURGED.value),
            )
            .group_by(WorkerHostRecord.id)
            .order_by(WorkerHostRecord.registered_at)
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [HostLoad(host=record.to_domain(), tenant_count=count) for record, count in result.all()]

    async def find_host_registered_since(self, since: datetime, required_ram: int) -> Optional[WorkerHost]:
        """An eligible host registered at or after `since` with at least required_ram free"""
        async with self._session_factory() as session:
            result = await session.execute(
                select(WorkerHostRecord)
                .where(*self._eligible(required_ram), WorkerHostRecord.registered_at >= since)
                .order_by(WorkerHostRecord.registered_at.desc())
                .limit(1)
            )
            record = result.scalars().first()
            return record.to_domain() if record else None

    async def check_capacity(self) -> List[WorkerHost]:
        """
        Recompute every active host and warn about ones above the threshold.
        Returns the hosts over the threshold. Never creates hosts.
        """
        hot: List[WorkerHost] = []
        for host in await self.list_hosts(HostStatus.ACTIVE):
            refreshed = await self.recompute_ram(host.host_id)
            if refreshed is None or refreshed.ram_total <= 0:
                continue
            percent = refreshed.ram_used / refreshed.ram_total * 100
            if percent > self.warn_percent:
                logger.warning(
                    f"[capacity] host {refreshed.address} at {percent:.0f}% booked "
                    f"({refreshed.ram_used}/{refreshed.ram_total}MB)"
                )
                hot.append(refreshed)
        return hot

    async def memory_diagnostics(self, host_id: str) -> HostMemoryDiagnostics:
        """Measured per-container memory on a host. Never used for admission."""
        host = await self.get_host(host_id)
        if host is None:
            raise HostNotFound(f"Host {host_id} not found")
        diagnostics = HostMemoryDiagnostics(
            host_id=host.host_id,
            address=host.address,
            ram_total=host.ram_total,
            ram_booked=host.ram_used,
        )
        if self.containers is None:
            diagnostics.error = "remote execution not configured"
            return diagnostics
        try:
            diagnostics.containers = await self.containers.memory_stats(host.address)
        except RemoteExecFailure as e:
            logger.warning(f"[capacity] docker stats failed on {host.address}: {e}")
            diagnostics.error = str(e)
        return diagnostics
