"""
Shared dependencies for internal API routes
"""
import secrets
from typing import Optional

from fastapi import Header, HTTPException, Request

from agentfleet.core.fleet import Fleet


def get_fleet(request: Request) -> Fleet:
    """Get the fleet from app state"""
    return request.app.state.fleet


def verify_internal_secret(
    request: Request,
    x_internal_secret: Optional[str] = Header(None, alias="X-Internal-Secret"),
) -> None:
    """Reject callers without the shared internal secret (when one is configured)"""
    expected = request.app.state.internal_secret
    if not expected:
        return
    if not x_internal_secret or not secrets.compare_digest(x_internal_secret, expected):
        raise HTTPException(status_code=401, detail="Invalid internal secret")
