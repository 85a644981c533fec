"""
Error types surfaced by the fleet core
"""
from typing import Optional


class FleetError(Exception):
    """Base error carrying an HTTP status and a machine-readable code"""

    status_code: int = 500
    code: str = "FLEET_ERROR"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class CapacityExhausted(FleetError):
    """No host has headroom and creation was disallowed or failed"""

    status_code = 409
    code = "CAPACITY_EXHAUSTED"

    def __init__(self, required_ram: int, message: Optional[str] = None):
        super().__init__(message or f"No worker host has {required_ram}MB of free RAM")
        self.required_ram = required_ram


class RemoteExecFailure(FleetError):
    """A remote command failed or the transport errored"""

    status_code = 502
    code = "REMOTE_EXEC_FAILED"

    def __init__(
        self,
        address: str,
        command: str,
        exit_code: Optional[int] = None,
        stderr: str = "",
        message: Optional[str] = None,
    ):
        summary = command if len(command) <= 80 else command[:77] + "..."
        detail = message or f"Command on {address} failed (exit={exit_code}): {summary}"
        if stderr and not message:
            detail = f"{detail}: {stderr[:200]}"
        super().__init__(detail)
        self.address = address
        self.command = command
        self.exit_code = exit_code
        self.stderr = stderr


class HealthCheckTimeout(FleetError):
    """A container did not report healthy within its window (non-fatal)"""

    status_code = 504
    code = "HEALTH_CHECK_TIMEOUT"


class ProvisioningTimeout(FleetError):
    """A newly created host never self-registered in time"""

    status_code = 504
    code = "PROVISIONING_TIMEOUT"


class ProvisioningHalted(FleetError):
    """A tenant has failed provisioning too many times"""

    status_code = 409
    code = "PROVISIONING_HALTED"


class TenantNotFound(FleetError):
    status_code = 404
    code = "TENANT_NOT_FOUND"


class HostNotFound(FleetError):
    status_code = 404
    code = "HOST_NOT_FOUND"


class HostInUse(FleetError):
    status_code = 409
    code = "HOST_IN_USE"


class InvalidIdentifier(FleetError):
    status_code = 400
    code = "INVALID_IDENTIFIER"
