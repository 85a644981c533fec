"""
Revocation of per-tenant model API credentials on purge
"""
import logging
from typing import Optional, Protocol

import httpx

from agentfleet.config import settings

logger = logging.getLogger(__name__)


class CredentialRevoker(Protocol):
    async def revoke(self, tenant_id: str) -> None:
        ...


class ApiKeyRevoker:
    def __init__(
        self,
        base_url: Optional[str] = settings.API_KEY_SERVICE_URL,
        token: Optional[str] = settings.API_KEY_SERVICE_TOKEN,
        timeout: float = settings.HTTP_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url
        self.token = token
        self.timeout = timeout
        self._transport = transport

    async def revoke(self, tenant_id: str) -> None:
        """Delete the tenant's key; an already-deleted key counts as revoked"""
        if not self.base_url:
            logger.info(f"[credentials] no key service configured, nothing to revoke for {tenant_id}")
            return

        headers = {"Authorization": f"Bearer {self.token}"} if self.token else {}
        async with httpx.AsyncClient(
            base_url=self.base_url, headers=headers, timeout=self.timeout, transport=self._transport
        ) as client:
            response = await client.delete(f"/keys/{tenant_id}")
            if response.status_code != 404:
                response.raise_for_status()
        logger.info(f"[credentials] revoked API key for {tenant_id}")
