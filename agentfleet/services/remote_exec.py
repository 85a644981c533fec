"""
Remote command execution on worker hosts

RemoteExecGateway is the boundary every component uses to touch a worker.
SSHRemoteExec runs commands through the system ssh client with key-based
auth only, a bounded per-attempt timeout and a small retry budget for
transport errors.
"""
import asyncio
import logging
from typing import List, Optional, Protocol

from pydantic import BaseModel

from agentfleet.config import settings
from agentfleet.errors import RemoteExecFailure

logger = logging.getLogger(__name__)


class RemoteResult(BaseModel):
    exit_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class RemoteExecGateway(Protocol):
    async def run(self, address: str, command: str, timeout: Optional[float] = None) -> RemoteResult:
        """Run a shell command on a worker; raises RemoteExecFailure on transport errors"""
        ...


async def run_checked(
    gateway: RemoteExecGateway,
    address: str,
    command: str,
    timeout: Optional[float] = None,
) -> RemoteResult:
    """Run a command and raise RemoteExecFailure on a non-zero exit code"""
    result = await gateway.run(address, command, timeout=timeout)
    if not result.ok:
        raise RemoteExecFailure(address, command, exit_code=result.exit_code, stderr=result.stderr)
    return result


class SSHRemoteExec:
    """RemoteExecGateway over the OpenSSH client"""

    def __init__(
        self,
        user: str = settings.SSH_USER,
        key_path: Optional[str] = settings.SSH_KEY_PATH,
        connect_timeout: int = settings.SSH_CONNECT_TIMEOUT,
        default_timeout: float = settings.REMOTE_COMMAND_TIMEOUT,
        retries: int = settings.REMOTE_RETRIES,
        control_plane_address: Optional[str] = settings.CONTROL_PLANE_ADDRESS,
    ):
        self.user = user
        self.key_path = key_path
        self.connect_timeout = connect_timeout
        self.default_timeout = default_timeout
        self.retries = max(1, retries)
        self.control_plane_address = control_plane_address

    def _ssh_args(self, address: str, command: str) -> List[str]:
        # The control plane reaches itself over loopback
        host = "127.0.0.1" if address == self.control_plane_address else address
        args = ["ssh"]
        if self.key_path:
            args += ["-i", self.key_path]
        args += [
            "-o", "StrictHostKeyChecking=accept-new",
            "-o", "PasswordAuthentication=no",
            "-o", "KbdInteractiveAuthentication=no",
            "-o", "BatchMode=yes",
            "-o", f"ConnectTimeout={self.connect_timeout}",
            "-o", "ServerAliveInterval=10",
            "-o", "ServerAliveCountMax=3",
            f"{self.user}@{host}",
            command,
        ]
        return args

    async def _run_once(self, address: str, command: str, timeout: float) -> RemoteResult:
        proc = await asyncio.create_subprocess_exec(
            *self._ssh_args(address, command),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise RemoteExecFailure(address, command, message=f"Timed out after {timeout:.0f}s on {address}")

        # 255 is ssh's own failure code (connection refused, auth, ...)
        if proc.returncode == 255:
            raise RemoteExecFailure(
                address, command, exit_code=255, stderr=stderr.decode(errors="replace").strip()
            )
        return RemoteResult(
            exit_code=proc.returncode,
            stdout=stdout.decode(errors="replace").strip(),
            stderr=stderr.decode(errors="replace").strip(),
        )

    async def run(self, address: str, command: str, timeout: Optional[float] = None) -> RemoteResult:
        timeout = timeout or self.default_timeout
        for attempt in range(1, self.retries + 1):
            try:
                return await self._run_once(address, command, timeout)
            except (RemoteExecFailure, OSError) as e:
                if attempt == self.retries:
                    if isinstance(e, RemoteExecFailure):
                        raise
                    raise RemoteExecFailure(address, command, message=f"SSH to {address} failed: {e}") from e
                logger.warning(f"[ssh] attempt {attempt} failed for {address}, retrying: {e}")
                await asyncio.sleep(attempt)
        raise RemoteExecFailure(address, command, message="SSH exec failed after retries")
