"""Reconciliation engine: compare what we deployed with what the device has."""

import ipaddress
import logging
import re
from collections import defaultdict
from typing import Any, Dict, List, Optional, Tuple

from .client import DeviceClient
from .connection import ConnectionMode, ConnectionResolver, ConnectionTarget
from .errors import (
    AuthenticationError,
    DeviceConnectionError,
    FleetError,
    InvalidRequestError,
    ProtocolError,
)
from .locks import DeviceLockRegistry
from .models import (
    DeployedConfig,
    DeployedSummary,
    DescriptorStatus,
    Device,
    DeviceStatus,
    DriftKind,
    DriftRecord,
    HealthSnapshot,
    ReconciliationReport,
    UnmanagedResource,
    utcnow,
)
from .plan import EXECUTION_ORDER
from .resources import RemoteObject, ResourceType, parse_bool, resource_class
from .store import DeviceStore

logger = logging.getLogger(__name__)

DEFAULT_MAX_OBJECTS_PER_TYPE = 5000

_UPTIME_PART = re.compile(r"(\d+)([wdhms])")
_UPTIME_UNITS = {"w": 604800, "d": 86400, "h": 3600, "m": 60, "s": 1}


def parse_uptime(value: Any) -> int:
    """Convert RouterOS uptime ("1w2d3h4m5s") to seconds."""
    if value is None:
        return 0
    text = str(value)
    if text.isdigit():
        return int(text)
    return sum(int(amount) * _UPTIME_UNITS[unit] for amount, unit in _UPTIME_PART.findall(text))


def _to_int(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def pool_size(ranges: str) -> int:
    """Number of addresses in a pool ranges string ("a-b,c-d" or single addresses)."""
    total = 0
    for part in (ranges or "").split(","):
        part = part.strip()
        if not part:
            continue
        start, _, end = part.partition("-")
        try:
            first = int(ipaddress.ip_address(start.strip()))
            last = int(ipaddress.ip_address(end.strip())) if end else first
        except ValueError:
            continue
        if last >= first:
            total += last - first + 1
    return total


class ReconciliationEngine:
    """Health sync and drift detection for deployed configuration.

    Descriptors are the source of truth for what the platform deployed.
    Nothing on the device is ever created or deleted from here; findings are
    recorded on the descriptors and reported to the caller.
    """

    def __init__(
        self,
        client: DeviceClient,
        resolver: ConnectionResolver,
        store: DeviceStore,
        locks: DeviceLockRegistry,
        connection_mode: ConnectionMode = ConnectionMode.DEFAULT,
        max_objects_per_type: int = DEFAULT_MAX_OBJECTS_PER_TYPE,
    ):
        self.client = client
        self.resolver = resolver
        self.store = store
        self.locks = locks
        self.connection_mode = connection_mode
        self.max_objects_per_type = max_objects_per_type

    async def _connect(self, device: Device) -> Tuple[ConnectionTarget, Dict[str, Any]]:
        try:
            target = self.resolver.resolve(device, self.connection_mode)
            system = await self.client.get_system_resource(target)
        except DeviceConnectionError as exc:
            logger.warning(f"[{device.id}] Device offline: {exc}")
            await self.store.update_device_fields(device.id, {
                "status": DeviceStatus.OFFLINE,
                "health.last_error": str(exc),
            })
            raise
        except (AuthenticationError, ProtocolError) as exc:
            logger.error(f"[{device.id}] Connectivity check failed: {exc}")
            await self.store.update_device_fields(device.id, {
                "status": DeviceStatus.ERROR,
                "health.last_error": str(exc),
            })
            raise
        return target, system

    # Health

    async def sync_health(self, device: Device) -> HealthSnapshot:
        """Collect one health snapshot. Optional sub-fetches are best-effort."""
        async with self.locks.hold(device.id, "sync_health"):
            target, system = await self._connect(device)

            total_memory = _to_int(system.get("total-memory"))
            free_memory = _to_int(system.get("free-memory"))
            snapshot = HealthSnapshot(
                device_id=device.id,
                version=system.get("version"),
                board_name=system.get("board-name"),
                cpu_load=_to_int(system.get("cpu-load")),
                memory_usage=round((total_memory - free_memory) * 100 / total_memory) if total_memory else 0,
                uptime=parse_uptime(system.get("uptime")),
            )

            capabilities = device.capabilities
            fetches = [
                ("interfaces", self._fetch_interfaces, True),
                ("hotspot_sessions", self._fetch_hotspot_sessions, capabilities.hotspot),
                ("ppp_sessions", self._fetch_ppp_sessions, capabilities.pppoe),
                ("wan", self._fetch_wan, True),
                ("dhcp_leases", self._fetch_dhcp_leases, True),
                ("pool_usage", self._fetch_pool_usage, True),
            ]
            for name, fetch, enabled in fetches:
                if not enabled:
                    continue
                try:
                    await fetch(device, target, snapshot)
                except FleetError as exc:
                    logger.warning(f"[{device.id}] Health fetch {name} failed: {exc}")
                    snapshot.errors.append(name)

            # A warning stays until validation or provisioning clears it
            fields: Dict[str, Any] = {"health": snapshot.to_record()}
            current = await self.store.get_device(device.id)
            if current.status != DeviceStatus.WARNING:
                fields["status"] = DeviceStatus.ONLINE
            await self.store.update_device_fields(device.id, fields)

        logger.debug(
            f"[{device.id}] Health: cpu {snapshot.cpu_load}%, mem {snapshot.memory_usage}%, "
            f"{snapshot.connected_users} users"
        )
        return snapshot

    async def _fetch_interfaces(self, device: Device, target: ConnectionTarget, snapshot: HealthSnapshot) -> None:
        items = await self.client.fetch_list(target, "/interface")
        snapshot.interfaces = [
            {
                "name": item.get("name"),
                "type": item.get("type"),
                "running": parse_bool(item.get("running", False)),
                "disabled": parse_bool(item.get("disabled", False)),
            }
            for item in items
        ]

    async def _fetch_hotspot_sessions(self, device: Device, target: ConnectionTarget, snapshot: HealthSnapshot) -> None:
        snapshot.hotspot_sessions = len(await self.client.fetch_list(target, "/ip/hotspot/active"))

    async def _fetch_ppp_sessions(self, device: Device, target: ConnectionTarget, snapshot: HealthSnapshot) -> None:
        snapshot.ppp_sessions = len(await self.client.fetch_list(target, "/ppp/active"))

    async def _fetch_wan(self, device: Device, target: ConnectionTarget, snapshot: HealthSnapshot) -> None:
        clients = await self.client.fetch_list(target, "/ip/dhcp-client")
        if not clients:
            return
        wan_interface = device.services.wan_interface
        lease = next((c for c in clients if c.get("interface") == wan_interface), clients[0])
        snapshot.wan = {
            "interface": lease.get("interface"),
            "status": lease.get("status"),
            "address": lease.get("address"),
            "gateway": lease.get("gateway"),
        }

    async def _fetch_dhcp_leases(self, device: Device, target: ConnectionTarget, snapshot: HealthSnapshot) -> None:
        leases = await self.client.fetch_list(target, "/ip/dhcp-server/lease")
        snapshot.dhcp_leases = {
            "total": len(leases),
            "bound": sum(1 for lease in leases if lease.get("status") == "bound"),
        }

    async def _fetch_pool_usage(self, device: Device, target: ConnectionTarget, snapshot: HealthSnapshot) -> None:
        pools = await self.client.fetch_list(target, "/ip/pool")
        used = await self.client.fetch_list(target, "/ip/pool/used")
        used_by_pool: Dict[str, int] = defaultdict(int)
        for entry in used:
            used_by_pool[entry.get("pool", "")] += 1
        snapshot.pool_usage = {
            pool.get("name", ""): {
                "size": pool_size(pool.get("ranges", "")),
                "used": used_by_pool.get(pool.get("name", ""), 0),
            }
            for pool in pools
        }

    # Configuration drift

    async def validate_configuration(self, device: Device) -> ReconciliationReport:
        """Classify every tracked resource and list unmanaged device objects.

        Resource types are processed one at a time and only types with
        descriptors are fetched, so at most one type's object list is held
        in memory.
        """
        async with self.locks.hold(device.id, "validate_configuration"):
            target, _ = await self._connect(device)
            report = ReconciliationReport(device_id=device.id)

            by_type: Dict[ResourceType, List[DeployedConfig]] = defaultdict(list)
            for descriptor in await self.store.list_descriptors(device.id):
                by_type[descriptor.resource_type].append(descriptor)

            for resource_type in EXECUTION_ORDER:
                tracked = by_type.get(resource_type)
                if not tracked:
                    continue
                try:
                    objects = await self.client.list_objects(target, resource_class(resource_type))
                except FleetError as exc:
                    logger.warning(f"[{device.id}] Could not list {resource_type.value}: {exc}")
                    report.errors.append(f"{resource_type.value}: {exc}")
                    continue
                if len(objects) > self.max_objects_per_type:
                    logger.warning(
                        f"[{device.id}] {len(objects)} {resource_type.value} objects on device, "
                        f"above the expected maximum of {self.max_objects_per_type}"
                    )
                await self._reconcile_type(device.id, resource_type, tracked, objects, report)

            await self.store.update_device_fields(device.id, {
                "status": DeviceStatus.WARNING if report.has_drift else DeviceStatus.ONLINE,
                "configuration_status.last_validated": report.checked_at,
                "configuration_status.drift_count": len(report.drifts),
            })
            if report.has_drift:
                await self.store.add_audit_entry(device.id, "drift", {
                    "drifts": [
                        {
                            "resource_type": drift.resource_type.value,
                            "name": drift.name,
                            "kind": drift.kind.value,
                            "previous_id": drift.previous_id,
                            "current_id": drift.current_id,
                        }
                        for drift in report.drifts
                    ],
                })

        logger.info(
            f"[{device.id}] Validation: {len(report.recreated)} recreated, {len(report.missing)} missing, "
            f"{len(report.unmanaged_resources)} unmanaged"
        )
        return report

    async def _reconcile_type(
        self,
        device_id: str,
        resource_type: ResourceType,
        tracked: List[DeployedConfig],
        objects: List[RemoteObject],
        report: ReconciliationReport,
    ) -> None:
        now = utcnow()
        by_id = {obj.id: obj for obj in objects}
        claimed = set()
        unresolved: List[DeployedConfig] = []

        # Identifier matches for every descriptor first, so a name fallback
        # can never take an object another descriptor owns by identifier.
        for descriptor in tracked:
            if descriptor.object_id in by_id:
                claimed.add(descriptor.object_id)
                await self.store.update_descriptor(
                    device_id, resource_type, descriptor.name,
                    status=DescriptorStatus.ACTIVE, last_checked=now,
                )
            else:
                unresolved.append(descriptor)

        for descriptor in unresolved:
            match = next(
                (obj for obj in objects if obj.id not in claimed and obj.name == descriptor.name),
                None,
            )
            if match is not None:
                claimed.add(match.id)
                drift = DriftRecord(resource_type, descriptor.name, DriftKind.RECREATED, descriptor.object_id, match.id)
                logger.warning(
                    f"[{device_id}] {resource_type.value}/{descriptor.name} recreated on device: "
                    f"{descriptor.object_id} -> {match.id}"
                )
                await self.store.update_descriptor(
                    device_id, resource_type, descriptor.name,
                    object_id=match.id, status=DescriptorStatus.DRIFT, last_checked=now,
                )
            else:
                drift = DriftRecord(resource_type, descriptor.name, DriftKind.MISSING, descriptor.object_id)
                logger.warning(f"[{device_id}] {resource_type.value}/{descriptor.name} missing from device")
                await self.store.update_descriptor(
                    device_id, resource_type, descriptor.name,
                    status=DescriptorStatus.ERROR, last_checked=now,
                )
            report.drifts.append(drift)

        for obj in objects:
            if obj.id in claimed or obj.dynamic:
                continue
            report.unmanaged_resources.append(
                UnmanagedResource(resource_type, obj.id, obj.name, can_adopt=not obj.builtin)
            )

    async def deployed_summary(self, device: Device) -> DeployedSummary:
        """Summarize tracked descriptors without contacting the device."""
        descriptors = await self.store.list_descriptors(device.id)
        return DeployedSummary.from_descriptors(device.id, descriptors)

    async def adopt(self, device: Device, resource_type: ResourceType, object_id: str) -> DeployedConfig:
        """Start tracking an unmanaged device object."""
        resource_type = ResourceType(resource_type)
        async with self.locks.hold(device.id, "adopt"):
            target, _ = await self._connect(device)
            objects = await self.client.list_objects(target, resource_class(resource_type))
            obj: Optional[RemoteObject] = next((o for o in objects if o.id == object_id), None)
            if obj is None:
                raise InvalidRequestError(f"No {resource_type.value} object {object_id} on device {device.id}")
            if obj.dynamic or obj.builtin:
                raise InvalidRequestError(f"{resource_type.value} {obj.name} is managed by the device itself")

            tracked = await self.store.list_descriptors(device.id, resource_type)
            if any(d.object_id == object_id or d.name == obj.name for d in tracked):
                raise InvalidRequestError(f"{resource_type.value} {obj.name} is already tracked")

            descriptor = DeployedConfig(
                device_id=device.id,
                resource_type=resource_type,
                name=obj.name,
                object_id=obj.id,
                attributes=obj.resource.to_wire(redact=True),
            )
            await self.store.record_descriptor(descriptor, replace=False)
            await self.store.add_audit_entry(device.id, "adopt", {
                "resource_type": resource_type.value,
                "name": obj.name,
                "object_id": obj.id,
            })

        logger.info(f"[{device.id}] Adopted {resource_type.value}/{obj.name} ({obj.id})")
        return descriptor
