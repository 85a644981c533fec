"""
Cloud provisioning API client (Hetzner-compatible REST)
"""
import logging
import shlex
import time
from typing import Optional, Protocol

import httpx

from agentfleet.config import settings
from agentfleet.errors import FleetError

logger = logging.getLogger(__name__)


class CloudProviderError(FleetError):
    status_code = 502
    code = "CLOUD_PROVIDER_ERROR"


class CloudProvider(Protocol):
    async def create_host(self) -> str:
        """Order a new worker; returns the provider's server id"""
        ...

    async def delete_host(self, cloud_id: str) -> None:
        ...


def build_user_data(api_url: str, internal_secret: str, image: str) -> str:
    """
    Startup script for a new worker. It installs the container runtime and
    calls back to the control plane to self-register.
    """
    register_url = shlex.quote(f"{api_url.rstrip('/')}/internal/hosts/register")
    secret_header = shlex.quote(f"x-internal-secret: {internal_secret}")
    return f"""#!/bin/bash
set -euo pipefail
exec > /var/log/agentfleet-setup.log 2>&1
export DEBIAN_FRONTEND=noninteractive

curl -fsSL https://get.docker.com | sh
systemctl enable docker && systemctl start docker
mkdir -p {shlex.quote(settings.INSTANCE_ROOT)}
docker network create {shlex.quote(settings.AGENT_NETWORK)} 2>/dev/null || true
docker pull {shlex.quote(image)} || true

ADDRESS=$(curl -4 -sf ifconfig.me || curl -4 -sf icanhazip.com)
TOTAL_RAM=$(free -m | awk '/^Mem:/{{print $2}}')

for i in 1 2 3 4 5; do
  curl -sf -X POST {register_url} \\
    -H "Content-Type: application/json" \\
    -H {secret_header} \\
    -d "{{\\"address\\": \\"$ADDRESS\\", \\"ram_total\\": $TOTAL_RAM, \\"hostname\\": \\"$(hostname)\\"}}" && break
  sleep 10
done
"""


class HetznerCloudProvider:
    """Creates and deletes worker servers through the provider's REST API"""

    def __init__(
        self,
        token: Optional[str] = settings.CLOUD_API_TOKEN,
        base_url: str = settings.CLOUD_API_URL,
        server_type: str = settings.CLOUD_SERVER_TYPE,
        image: str = settings.CLOUD_IMAGE,
        location: str = settings.CLOUD_LOCATION,
        ssh_key_name: Optional[str] = settings.CLOUD_SSH_KEY_NAME,
        timeout: float = settings.HTTP_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.token = token
        self.base_url = base_url
        self.server_type = server_type
        self.image = image
        self.location = location
        self.ssh_key_name = ssh_key_name
        self.timeout = timeout
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        if not self.token:
            raise CloudProviderError(
                "CLOUD_API_TOKEN is not set, so new worker hosts cannot be created automatically. "
                "Set the token, or start a worker by hand and have it POST "
                "{address, ram_total, hostname} to /internal/hosts/register."
            )
        return httpx.AsyncClient(
            base_url=self.base_url,
            headers={"Authorization": f"Bearer {self.token}"},
            timeout=self.timeout,
            transport=self._transport,
        )

    async def create_host(self) -> str:
        if not settings.INTERNAL_SECRET:
            raise CloudProviderError("INTERNAL_SECRET is required so new workers can register")

        name = f"agentfleet-worker-{int(time.time() * 1000)}"
        payload = {
            "name": name,
            "server_type": self.server_type,
            "image": self.image,
            "location": self.location,
            "user_data": build_user_data(settings.PUBLIC_API_URL, settings.INTERNAL_SECRET, settings.AGENT_IMAGE),
            "labels": {"managed": "agentfleet", "role": "worker"},
        }
        if self.ssh_key_name:
            payload["ssh_keys"] = [self.ssh_key_name]

        logger.info(f"[cloud] creating {name} ({self.server_type} in {self.location})")
        async with self._client() as client:
            try:
                response = await client.post("/servers", json=payload)
                response.raise_for_status()
            except httpx.HTTPStatusError as e:
                raise CloudProviderError(
                    f"Cloud provider rejected server creation ({e.response.status_code}): {e.response.text[:200]}"
                ) from e
            except httpx.HTTPError as e:
                raise CloudProviderError(f"Cloud provider request failed: {e}") from e

        server_id = str(response.json()["server"]["id"])
        logger.info(f"[cloud] server {server_id} created; waiting for it to register")
        return server_id

    async def delete_host(self, cloud_id: str) -> None:
        async with self._client() as client:
            try:
                response = await client.delete(f"/servers/{cloud_id}")
                if response.status_code != 404:
                    response.raise_for_status()
            except httpx.HTTPError as e:
                raise CloudProviderError(f"Failed to delete server {cloud_id}: {e}") from e
        logger.info(f"[cloud] server {cloud_id} deleted")
