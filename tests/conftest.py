"""Shared fixtures: a file-backed SQLite store and in-memory fakes for Redis, SSH and the cloud API."""

import asyncio
import time
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import pytest
from sqlalchemy import update

from agentfleet.core.fleet import Fleet
from agentfleet.errors import RemoteExecFailure
from agentfleet.models.tenant import TenantStatus
from agentfleet.persistence.database import create_engine, create_session_factory, init_models
from agentfleet.persistence.models import TenantRecord
from agentfleet.services.remote_exec import RemoteResult


class FakeClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class _FakePipeline:
    def __init__(self, client: "_FakeRedisClient"):
        self._client = client
        self._calls: List[Tuple[str, tuple, dict]] = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        self._calls = []
        return False

    def __getattr__(self, name: str):
        def buffer(*args, **kwargs):
            self._calls.append((name, args, kwargs))
            return self

        return buffer

    async def execute(self) -> List[Any]:
        calls, self._calls = self._calls, []
        return [await getattr(self._client, name)(*args, **kwargs) for name, args, kwargs in calls]


class _FakeRedisClient:
    """The subset of redis.asyncio.Redis the fleet uses, with decode_responses semantics."""

    def __init__(self):
        self._data: Dict[str, Any] = {}
        self._expiry: Dict[str, float] = {}

    def _purge(self, key: str) -> None:
        deadline = self._expiry.get(key)
        if deadline is not None and deadline <= time.monotonic():
            self._data.pop(key, None)
            self._expiry.pop(key, None)

    async def get(self, key: str) -> Optional[str]:
        self._purge(key)
        value = self._data.get(key)
        return value if value is None or isinstance(value, str) else None

    async def set(self, key: str, value: Any, nx: bool = False, ex: Optional[int] = None) -> Optional[bool]:
        self._purge(key)
        if nx and key in self._data:
            return None
        self._data[key] = str(value)
        self._expiry.pop(key, None)
        if ex is not None:
            self._expiry[key] = time.monotonic() + ex
        return True

    async def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            self._purge(key)
            if self._data.pop(key, None) is not None:
                removed += 1
            self._expiry.pop(key, None)
        return removed

    async def exists(self, *keys: str) -> int:
        count = 0
        for key in keys:
            self._purge(key)
            count += key in self._data
        return count

    async def expire(self, key: str, seconds: int) -> bool:
        self._purge(key)
        if key not in self._data:
            return False
        self._expiry[key] = time.monotonic() + seconds
        return True

    async def incrby(self, key: str, amount: int) -> int:
        self._purge(key)
        value = int(self._data.get(key) or 0) + amount
        self._data[key] = str(value)
        return value

    async def rpush(self, key: str, *values: Any) -> int:
        self._purge(key)
        items = self._data.setdefault(key, [])
        items.extend(str(v) for v in values)
        return len(items)

    async def lrange(self, key: str, start: int, end: int) -> List[str]:
        self._purge(key)
        items = self._data.get(key) or []
        return list(items[start:] if end == -1 else items[start:end + 1])

    async def eval(self, script: str, numkeys: int, *args: Any) -> int:
        # Only the owner-checked lease release is ever evaluated
        keys, argv = args[:numkeys], args[numkeys:]
        if await self.get(keys[0]) == argv[0]:
            return await self.delete(keys[0])
        return 0

    def pipeline(self, transaction: bool = True) -> _FakePipeline:
        return _FakePipeline(self)

    async def aclose(self) -> None:
        self._data.clear()
        self._expiry.clear()


class FakeRemoteExec:
    """Records every command; containers report healthy unless told otherwise.

    Hooks in before run ahead of any command containing their key.
    """

    def __init__(self):
        self.commands: List[Tuple[str, str]] = []
        self.failures: Dict[str, RemoteResult] = {}
        self.transport_errors: List[str] = []
        self.health_output = "healthy"
        self.image_present = True
        self.before: Dict[str, Callable[[], Awaitable[None]]] = {}

    def fail_on(self, fragment: str, exit_code: int = 1, stderr: str = "boom") -> None:
        self.failures[fragment] = RemoteResult(exit_code=exit_code, stderr=stderr)

    def ran(self, fragment: str) -> List[str]:
        return [command for _, command in self.commands if fragment in command]

    async def run(self, address: str, command: str, timeout: Optional[float] = None) -> RemoteResult:
        await asyncio.sleep(0)
        self.commands.append((address, command))
        for fragment, hook in self.before.items():
            if fragment in command:
                await hook()
        for fragment in self.transport_errors:
            if fragment in command:
                raise RemoteExecFailure(address, command, message=f"SSH to {address} failed")
        for fragment, result in self.failures.items():
            if fragment in command:
                return result
        if "State.Health.Status" in command:
            return RemoteResult(exit_code=0, stdout=self.health_output)
        if "docker image inspect" in command:
            return RemoteResult(exit_code=0, stdout="OK" if self.image_present else "MISSING")
        return RemoteResult(exit_code=0)


class FakeCloud:
    """Creates servers on demand; registers them through on_create when set."""

    def __init__(self):
        self.created: List[str] = []
        self.deleted: List[str] = []
        self.on_create = None
        self.error: Optional[Exception] = None
        self.tasks: List[asyncio.Task] = []

    async def create_host(self) -> str:
        if self.error is not None:
            raise self.error
        cloud_id = str(1000 + len(self.created))
        self.created.append(cloud_id)
        if self.on_create is not None:
            self.tasks.append(asyncio.get_running_loop().create_task(self.on_create(cloud_id)))
        return cloud_id

    async def delete_host(self, cloud_id: str) -> None:
        self.deleted.append(cloud_id)


class RecordingNotifier:
    def __init__(self):
        self.sent: List[Tuple[str, str, Dict[str, Any]]] = []

    async def send(self, contact: str, kind: str, context: Dict[str, Any]) -> None:
        self.sent.append((contact, kind, context))

    def kinds(self) -> List[str]:
        return [kind for _, kind, _ in self.sent]


class RecordingRevoker:
    def __init__(self):
        self.revoked: List[str] = []

    async def revoke(self, tenant_id: str) -> None:
        self.revoked.append(tenant_id)


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 3, 2, 12, 0, 0))


@pytest.fixture
async def engine(tmp_path):
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path}/fleet.db")
    await init_models(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
def redis_client():
    return _FakeRedisClient()


@pytest.fixture
def remote():
    return FakeRemoteExec()


@pytest.fixture
def cloud():
    return FakeCloud()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def revoker():
    return RecordingRevoker()


@pytest.fixture
async def fleet(session_factory, redis_client, remote, cloud, notifier, revoker, clock):
    fleet = Fleet(session_factory, redis_client, remote, cloud, notifier, revoker, clock=clock)
    fleet.containers.health_poll_seconds = 0.01
    fleet.coordinator.timeout = 1.0
    fleet.coordinator.poll_interval = 0.01
    fleet.lifecycle.wake_health_timeout = 0.05
    fleet.lifecycle.provision_health_timeout = 0.05
    yield fleet
    await fleet.scheduler.stop()
    await fleet.runaway.stop_all()
    await fleet.coordinator.close()


async def force_tenant(session_factory, tenant_id: str, **values: Any) -> None:
    """Write tenant columns directly, bypassing transitions"""
    if "status" in values:
        values["status"] = TenantStatus(values["status"]).value
    async with session_factory() as session:
        async with session.begin():
            await session.execute(
                update(TenantRecord)
                .where(TenantRecord.id == tenant_id)
                .values(**values)
                .execution_options(synchronize_session=False)
            )


@pytest.fixture
def place_tenant(fleet, session_factory, clock):
    """Create a tenant already sitting on a host in the given status"""

    async def _place(
        tenant_id: str,
        host,
        status: TenantStatus = TenantStatus.ACTIVE,
        plan: str = "starter",
        contact: Optional[str] = None,
        created_ago: timedelta = timedelta(days=2),
        idle_for: timedelta = timedelta(0),
    ):
        await fleet.tenants.create(plan=plan, contact=contact, tenant_id=tenant_id, created_at=clock() - created_ago)
        await force_tenant(
            session_factory,
            tenant_id,
            status=status,
            host_id=host.host_id,
            container_name=f"agent-{tenant_id[:12]}",
            gateway_token="tok-" + tenant_id,
            last_active_at=clock() - idle_for,
        )
        await fleet.registry.recompute_ram(host.host_id)
        return await fleet.tenants.get(tenant_id)

    return _place


@pytest.fixture
def set_tenant(session_factory):
    async def _set(tenant_id: str, **values: Any) -> None:
        await force_tenant(session_factory, tenant_id, **values)

    return _set
