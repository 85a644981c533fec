"""
Container operations on worker hosts

Every value interpolated into a shell command is either validated against a
strict pattern or passed through shlex.quote.
"""
import asyncio
import logging
import re
import shlex
import time
from typing import List

from agentfleet.config import settings
from agentfleet.errors import HealthCheckTimeout, InvalidIdentifier, RemoteExecFailure
from agentfleet.models.host import ContainerMemStat
from agentfleet.models.tenant import Tenant, plan_cpus, plan_ram_mb
from agentfleet.services.remote_exec import RemoteExecGateway, run_checked

logger = logging.getLogger(__name__)

_TENANT_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]{2,63}$")
_CONTAINER_NAME_RE = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9_.-]+$")


def validate_tenant_id(tenant_id: str) -> str:
    if not _TENANT_ID_RE.match(tenant_id or ""):
        raise InvalidIdentifier(f"Invalid tenant id: {tenant_id!r}")
    return tenant_id


def validate_container_name(name: str) -> str:
    if not _CONTAINER_NAME_RE.match(name or ""):
        raise InvalidIdentifier(f"Invalid container name: {name!r}")
    return name


def container_name_for(tenant: Tenant) -> str:
    return validate_container_name(tenant.container_name or f"agent-{tenant.tenant_id[:12]}")


def instance_dir(tenant_id: str) -> str:
    return f"{settings.INSTANCE_ROOT}/{validate_tenant_id(tenant_id)}"


class ContainerCommands:
    """Container start/stop/health/config operations over a RemoteExecGateway"""

    def __init__(
        self,
        remote: RemoteExecGateway,
        image: str = settings.AGENT_IMAGE,
        network: str = settings.AGENT_NETWORK,
        gateway_port: int = settings.GATEWAY_PORT,
        health_poll_seconds: float = settings.HEALTH_POLL_SECONDS,
    ):
        self.remote = remote
        self.image = image
        self.network = network
        self.gateway_port = gateway_port
        self.health_poll_seconds = health_poll_seconds

    async def stop(self, address: str, container_name: str) -> None:
        """Stop a container; stopping an already-stopped container succeeds"""
        name = validate_container_name(container_name)
        await run_checked(self.remote, address, f"docker stop {name}")

    async def start(self, address: str, container_name: str) -> None:
        name = validate_container_name(container_name)
        await run_checked(self.remote, address, f"docker start {name}")

    async def clear_session_locks(self, address: str, tenant_id: str) -> None:
        """Remove .lock files a crashed session left behind (best effort)"""
        path = instance_dir(tenant_id)
        try:
            await self.remote.run(address, f"rm -f {path}/agents/*/sessions/*.lock 2>/dev/null || true")
        except RemoteExecFailure as e:
            logger.warning(f"[containers] could not clear session locks for {tenant_id}: {e}")

    async def run(self, address: str, tenant: Tenant) -> None:
        """Create and start a tenant container with its plan's resource limits"""
        name = container_name_for(tenant)
        ram = plan_ram_mb(tenant.plan)
        path = instance_dir(tenant.tenant_id)
        setup = " && ".join([
            f"docker rm -f {name} 2>/dev/null || true",
            f"docker network create {self.network} 2>/dev/null || true",
            f"mkdir -p {path} && chmod 700 {path}",
        ])
        await run_checked(self.remote, address, setup)

        cmd = " ".join([
            "docker run -d",
            f"--name {name}",
            "--restart unless-stopped",
            f"--network {self.network}",
            "--cap-drop ALL",
            "--cap-add NET_BIND_SERVICE",
            "--pids-limit 256",
            f"--memory {ram}m",
            f"--memory-swap {ram}m",
            f"--cpus {plan_cpus(tenant.plan)}",
            f"-e TENANT_ID={shlex.quote(tenant.tenant_id)}",
            f"-e GATEWAY_TOKEN={shlex.quote(tenant.gateway_token or '')}",
            f"-e GATEWAY_PORT={int(self.gateway_port)}",
            f"-v {path}:/data",
            shlex.quote(self.image),
        ])
        await run_checked(self.remote, address, cmd, timeout=120)

    async def is_healthy(self, address: str, container_name: str) -> bool:
        name = validate_container_name(container_name)
        try:
            result = await self.remote.run(
                address, f"docker inspect --format='{{{{.State.Health.Status}}}}' {name} 2>/dev/null"
            )
            if "healthy" in result.stdout and "unhealthy" not in result.stdout:
                return True
            if result.ok and "unhealthy" not in result.stdout:
                exec_check = await self.remote.run(address, f"docker exec {name} agent health 2>/dev/null")
                return exec_check.ok
        except RemoteExecFailure as e:
            logger.debug(f"[containers] health check failed for {name}: {e}")
        return False

    async def wait_for_ready(self, address: str, container_name: str, timeout: float) -> float:
        """Poll the health signal; returns elapsed seconds or raises HealthCheckTimeout"""
        start = time.monotonic()
        while True:
            if await self.is_healthy(address, container_name):
                return time.monotonic() - start
            if time.monotonic() - start >= timeout:
                raise HealthCheckTimeout(
                    f"Container {container_name} did not become ready within {timeout:.0f}s"
                )
            await asyncio.sleep(self.health_poll_seconds)

    async def reapply_gateway_config(self, address: str, tenant: Tenant) -> None:
        """
        Re-write auth-relevant gateway keys into a running container.

        The agent's startup routine strips these keys, so this runs after
        every start, not only when the config looks wrong.
        """
        name = container_name_for(tenant)
        if not tenant.gateway_token:
            logger.warning(f"[containers] {name} has no gateway token to reapply")
            return
        token = shlex.quote(tenant.gateway_token)
        inner = "; ".join([
            "agent config set gateway.auth.mode token 2>/dev/null",
            "agent config set browser.headless true 2>/dev/null",
            f"agent devices approve --latest --token {token} 2>/dev/null",
        ])
        await run_checked(self.remote, address, f"docker exec {name} sh -c {shlex.quote(inner)}")

    async def ensure_base_image(self, address: str) -> None:
        """Pull the agent image unless it is already present (idempotent)"""
        image = shlex.quote(self.image)
        check = await self.remote.run(address, f"docker image inspect {image} > /dev/null 2>&1 && echo OK || echo MISSING")
        if "MISSING" not in check.stdout:
            return
        logger.info(f"[containers] pulling {self.image} on {address}")
        await run_checked(self.remote, address, f"docker pull {image}", timeout=600)

    async def remove(self, address: str, tenant: Tenant) -> None:
        """Delete a tenant's container and its on-host storage"""
        name = container_name_for(tenant)
        path = instance_dir(tenant.tenant_id)
        await run_checked(
            self.remote,
            address,
            f"(docker stop {name} 2>/dev/null || true) && (docker rm -f {name} 2>/dev/null || true) && rm -rf {path}",
        )

    async def memory_stats(self, address: str) -> List[ContainerMemStat]:
        result = await run_checked(
            self.remote,
            address,
            "docker stats --no-stream --format '{{.Name}}\t{{.MemUsage}}\t{{.MemPerc}}' 2>/dev/null || true",
        )
        stats: List[ContainerMemStat] = []
        for line in (result.stdout or "").splitlines():
            parts = line.split("\t")
            if len(parts) >= 3:
                stats.append(ContainerMemStat(name=parts[0], mem_usage=parts[1], mem_percent=parts[2]))
        return stats
