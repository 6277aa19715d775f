"""Error taxonomy for provisioning and reconciliation."""

from typing import Optional


class FleetError(Exception):
    """Base class for all apfleet errors."""


class DeviceConnectionError(FleetError):
    """Device could not be reached at all."""


class DeviceTimeoutError(DeviceConnectionError):
    """Device did not answer within the request timeout."""


class DeviceUnreachableError(DeviceConnectionError):
    """Connection refused, reset, or host not found."""


class AuthenticationError(FleetError):
    """Device rejected the credentials."""


class ProtocolError(FleetError):
    """Device answered with a non-2xx status or an unreadable body."""

    def __init__(self, status: int, detail: str = ""):
        self.status = status
        self.detail = detail
        super().__init__(f"HTTP {status}: {detail}" if detail else f"HTTP {status}")


class StepError(FleetError):
    """A single configuration step failed."""

    def __init__(self, step: str, message: str):
        self.step = step
        self.message = message
        super().__init__(f"{step}: {message}")


class DriftError(FleetError):
    """Reconciliation found recreated or missing resources."""

    def __init__(self, message: str, drifts: Optional[list] = None):
        self.drifts = drifts or []
        super().__init__(message)


class PartialSuccess(FleetError):
    """Some steps failed while others completed."""

    def __init__(self, completed: list[str], failed: list[str]):
        self.completed = completed
        self.failed = failed
        super().__init__(
            f"{len(completed)}/{len(completed) + len(failed)} steps configured, "
            f"failed: {', '.join(failed)}"
        )


class InvalidRequestError(FleetError, ValueError):
    """Caller input cannot be acted on."""


class DeviceBusyError(FleetError):
    """Another operation is already running against the device."""


class DeviceNotFoundError(FleetError, LookupError):
    """No device record with the given identifier."""
