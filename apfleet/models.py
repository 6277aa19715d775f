"""Device records, deployed-configuration descriptors and run results."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from .errors import DriftError, PartialSuccess, StepError
from .resources import ResourceType


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DeviceStatus(str, Enum):
    """Reachability status of a managed device."""
    ONLINE = "online"
    OFFLINE = "offline"
    WARNING = "warning"
    ERROR = "error"


class DescriptorStatus(str, Enum):
    """Reconciliation status of one deployed resource."""
    ACTIVE = "active"
    DRIFT = "drift"
    ERROR = "error"


class ConnectionInfo(BaseModel):
    """Network paths and credentials for one device."""
    local_address: Optional[str] = None
    overlay_address: Optional[str] = None
    overlay_ready: bool = False  # Set by the tunnel bootstrap once the overlay is usable
    prefer_overlay: bool = False
    port: int = Field(default=80, ge=1, le=65535)
    scheme: str = "http"
    username: str = "admin"
    secret: str = ""  # Encrypted token, see secrets.SecretCodec


class Capabilities(BaseModel):
    """Services the device hardware and licence support."""
    hotspot: bool = True
    pppoe: bool = True
    wireless: bool = True


class ServiceOptions(BaseModel):
    """Requested service set the plan builder turns into steps."""
    wan_interface: str = "ether1"
    hotspot_enabled: bool = False
    pppoe_enabled: bool = False
    ssid: Optional[str] = None
    wifi_passphrase: Optional[str] = None
    wlan_interface: str = "wlan1"
    bridge_name: str = "hotspot-bridge"
    bridge_ports: List[str] = Field(default_factory=lambda: ["wlan1", "ether2"])
    pppoe_interface: str = "ether3"


class Device(BaseModel):
    """One managed access point."""
    id: str
    name: str = ""
    vendor: str = "mikrotik"
    model: Optional[str] = None
    connection: ConnectionInfo = Field(default_factory=ConnectionInfo)
    capabilities: Capabilities = Field(default_factory=Capabilities)
    services: ServiceOptions = Field(default_factory=ServiceOptions)
    status: DeviceStatus = DeviceStatus.OFFLINE
    health: Dict[str, Any] = Field(default_factory=dict)
    configuration_status: Dict[str, Any] = Field(default_factory=dict)
    last_plan: List[Dict[str, Any]] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)


class DeployedConfig(BaseModel):
    """Record of one resource the platform created on a device."""
    device_id: str
    resource_type: ResourceType
    name: str
    object_id: str
    status: DescriptorStatus = DescriptorStatus.ACTIVE
    attributes: Dict[str, str] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
    last_checked: datetime = Field(default_factory=utcnow)


@dataclass
class FailedStep:
    step: str
    error: str
    timestamp: datetime = field(default_factory=utcnow)

    def to_record(self) -> Dict[str, Any]:
        return {"step": self.step, "error": self.error, "timestamp": self.timestamp.isoformat()}

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "FailedStep":
        timestamp = record.get("timestamp")
        return cls(
            step=record["step"],
            error=record.get("error", ""),
            timestamp=datetime.fromisoformat(timestamp) if timestamp else utcnow(),
        )


@dataclass
class ProvisioningResult:
    """Outcome of one provisioning (or retry) run."""
    success: bool
    device_id: str
    completed_steps: List[str] = field(default_factory=list)
    failed_steps: List[FailedStep] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    configured_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def failed_step_names(self) -> List[str]:
        return [failure.step for failure in self.failed_steps]

    @property
    def partial(self) -> bool:
        return bool(self.completed_steps) and bool(self.failed_steps)

    def summary(self) -> str:
        total = len(self.completed_steps) + len(self.failed_steps)
        return (
            f"{len(self.completed_steps)}/{total} steps configured, "
            f"{len(self.warnings)} warning(s)"
        )

    def to_status(self) -> Dict[str, Any]:
        """Subset persisted on the device record as configuration_status."""
        return {
            "configured": self.success,
            "completed_steps": list(self.completed_steps),
            "failed_steps": [failure.to_record() for failure in self.failed_steps],
            "warnings": list(self.warnings),
            "configured_at": self.configured_at.isoformat() if self.configured_at else None,
            "last_attempt": (self.completed_at or utcnow()).isoformat(),
        }

    def raise_for_status(self) -> None:
        """Raise if any step failed."""
        if not self.failed_steps:
            return
        if self.completed_steps:
            raise PartialSuccess(self.completed_steps, self.failed_step_names)
        first = self.failed_steps[0]
        raise StepError(first.step, first.error)


@dataclass
class HealthSnapshot:
    """Read-only view of device health from one sync round."""
    device_id: str
    version: Optional[str] = None
    board_name: Optional[str] = None
    cpu_load: int = 0
    memory_usage: int = 0  # percent
    uptime: int = 0  # seconds
    interfaces: List[Dict[str, Any]] = field(default_factory=list)
    hotspot_sessions: Optional[int] = None
    ppp_sessions: Optional[int] = None
    wan: Optional[Dict[str, Any]] = None
    dhcp_leases: Optional[Dict[str, int]] = None
    pool_usage: Dict[str, Dict[str, int]] = field(default_factory=dict)
    errors: List[str] = field(default_factory=list)
    checked_at: datetime = field(default_factory=utcnow)

    @property
    def connected_users(self) -> int:
        return (self.hotspot_sessions or 0) + (self.ppp_sessions or 0)

    def to_record(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "board_name": self.board_name,
            "cpu_load": self.cpu_load,
            "memory_usage": self.memory_usage,
            "uptime": self.uptime,
            "interfaces": self.interfaces,
            "hotspot_sessions": self.hotspot_sessions,
            "ppp_sessions": self.ppp_sessions,
            "connected_users": self.connected_users,
            "wan": self.wan,
            "dhcp_leases": self.dhcp_leases,
            "pool_usage": self.pool_usage,
            "errors": self.errors,
            "last_seen": self.checked_at.isoformat(),
        }


class DriftKind(str, Enum):
    RECREATED = "recreated"
    MISSING = "missing"


@dataclass
class DriftRecord:
    """A tracked resource whose device identity changed or disappeared."""
    resource_type: ResourceType
    name: str
    kind: DriftKind
    previous_id: str
    current_id: Optional[str] = None

    @property
    def status(self) -> DescriptorStatus:
        return DescriptorStatus.DRIFT if self.kind == DriftKind.RECREATED else DescriptorStatus.ERROR


@dataclass
class UnmanagedResource:
    """A device object of a tracked type that no descriptor claims."""
    resource_type: ResourceType
    object_id: str
    name: str
    can_adopt: bool = True


@dataclass
class ReconciliationReport:
    device_id: str
    drifts: List[DriftRecord] = field(default_factory=list)
    unmanaged_resources: List[UnmanagedResource] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    checked_at: datetime = field(default_factory=utcnow)

    @property
    def missing(self) -> List[DriftRecord]:
        return [d for d in self.drifts if d.kind == DriftKind.MISSING]

    @property
    def recreated(self) -> List[DriftRecord]:
        return [d for d in self.drifts if d.kind == DriftKind.RECREATED]

    @property
    def has_drift(self) -> bool:
        return bool(self.drifts)

    def raise_for_drift(self) -> None:
        if self.drifts:
            names = ", ".join(f"{d.resource_type.value}/{d.name} ({d.kind.value})" for d in self.drifts)
            raise DriftError(f"Configuration drift on {self.device_id}: {names}", self.drifts)


@dataclass
class DeployedSummary:
    """Counts over the descriptors tracked for one device."""
    device_id: str
    total: int = 0
    by_type: Dict[str, int] = field(default_factory=dict)
    by_status: Dict[str, int] = field(default_factory=dict)
    oldest_check: Optional[datetime] = None
    newest_check: Optional[datetime] = None

    @classmethod
    def from_descriptors(cls, device_id: str, descriptors: List[DeployedConfig]) -> "DeployedSummary":
        summary = cls(device_id=device_id, total=len(descriptors))
        for descriptor in descriptors:
            kind = descriptor.resource_type.value
            status = descriptor.status.value
            summary.by_type[kind] = summary.by_type.get(kind, 0) + 1
            summary.by_status[status] = summary.by_status.get(status, 0) + 1
            checked = descriptor.last_checked
            if summary.oldest_check is None or checked < summary.oldest_check:
                summary.oldest_check = checked
            if summary.newest_check is None or checked > summary.newest_check:
                summary.newest_check = checked
        return summary
