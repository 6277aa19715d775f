"""Device Record Store: devices, deployed-configuration descriptors and audit trail."""

import asyncio
import json
import logging
import re
from abc import ABC, abstractmethod
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

import aiosqlite
from pydantic import BaseModel

from .errors import DeviceNotFoundError, InvalidRequestError
from .models import DeployedConfig, Device, DescriptorStatus, utcnow
from .resources import ResourceType

logger = logging.getLogger(__name__)

_FIELD_PATH = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z0-9_-]+)*$")
_DESCRIPTOR_COLUMNS = {"object_id", "status", "attributes", "last_checked"}


def _json_default(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    raise TypeError(f"Cannot serialize {type(value).__name__}")


def _to_json(value: Any) -> str:
    return json.dumps(value, default=_json_default)


class DeviceStore(ABC):
    """Persistence boundary used by the provisioner and reconciliation engine.

    Implementations must make `update_device_fields` atomic per call and must
    not overwrite fields that are not named in it.
    """

    @abstractmethod
    async def get_device(self, device_id: str) -> Device:
        """Return the device or raise DeviceNotFoundError."""

    @abstractmethod
    async def list_devices(self) -> List[Device]:
        ...

    @abstractmethod
    async def save_device(self, device: Device) -> None:
        """Insert or fully replace a device record."""

    @abstractmethod
    async def update_device_fields(self, device_id: str, fields: Dict[str, Any]) -> None:
        """Set named fields, e.g. {"health": {...}, "configuration_status.configured": True}."""

    @abstractmethod
    async def list_descriptors(
        self, device_id: str, resource_type: Optional[ResourceType] = None
    ) -> List[DeployedConfig]:
        ...

    @abstractmethod
    async def record_descriptor(self, descriptor: DeployedConfig, replace: bool = True) -> bool:
        """Store a descriptor; with replace=False an existing one is kept. Returns True if written."""

    @abstractmethod
    async def update_descriptor(
        self, device_id: str, resource_type: ResourceType, name: str, /, **changes: Any
    ) -> None:
        ...

    @abstractmethod
    async def add_audit_entry(self, device_id: str, action: str, detail: Dict[str, Any]) -> None:
        ...


class SqliteDeviceStore(DeviceStore):
    """Async SQLite store. Devices are JSON documents updated with json_set."""

    def __init__(self, db_path: str):
        self.db_path = db_path
        self._connection: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()

    async def __aenter__(self) -> "SqliteDeviceStore":
        await self.connect()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def connect(self) -> None:
        """Connect to the database and create tables if needed."""
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        self._connection = await aiosqlite.connect(self.db_path)
        self._connection.row_factory = aiosqlite.Row

        await self._create_tables()

    async def close(self) -> None:
        """Close the database connection."""
        if self._connection:
            await self._connection.close()
            self._connection = None

    @property
    def connection(self) -> aiosqlite.Connection:
        if self._connection is None:
            raise RuntimeError("Store not connected. Call connect() first.")
        return self._connection

    async def _create_tables(self) -> None:
        async with self._lock:
            await self.connection.execute("""
                CREATE TABLE IF NOT EXISTS devices (
                    id TEXT PRIMARY KEY,
                    document TEXT NOT NULL,
                    updated_at TIMESTAMP NOT NULL
                )
            """)

            await self.connection.execute("""
                CREATE TABLE IF NOT EXISTS deployed_configs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    device_id TEXT NOT NULL,
                    resource_type TEXT NOT NULL,
                    name TEXT NOT NULL,
                    object_id TEXT NOT NULL,
                    status TEXT NOT NULL,
                    attributes TEXT NOT NULL DEFAULT '{}',
                    created_at TIMESTAMP NOT NULL,
                    last_checked TIMESTAMP NOT NULL,
                    UNIQUE (device_id, resource_type, name)
                )
            """)

            await self.connection.execute("""
                CREATE TABLE IF NOT EXISTS audit_log (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    device_id TEXT NOT NULL,
                    action TEXT NOT NULL,
                    detail TEXT NOT NULL,
                    created_at TIMESTAMP NOT NULL
                )
            """)

            await self.connection.execute("""
                CREATE INDEX IF NOT EXISTS idx_audit_device
                ON audit_log(device_id, created_at)
            """)

            await self.connection.commit()

    # Devices

    async def get_device(self, device_id: str) -> Device:
        async with self._lock:
            cursor = await self.connection.execute(
                "SELECT document FROM devices WHERE id = ?", (device_id,)
            )
            row = await cursor.fetchone()
        if row is None:
            raise DeviceNotFoundError(f"Unknown device: {device_id}")
        return Device.model_validate_json(row["document"])

    async def list_devices(self) -> List[Device]:
        async with self._lock:
            cursor = await self.connection.execute("SELECT document FROM devices ORDER BY id")
            rows = await cursor.fetchall()
        return [Device.model_validate_json(row["document"]) for row in rows]

    async def save_device(self, device: Device) -> None:
        async with self._lock:
            await self.connection.execute("""
                INSERT INTO devices (id, document, updated_at) VALUES (?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    document = excluded.document,
                    updated_at = excluded.updated_at
            """, (device.id, device.model_dump_json(), utcnow().isoformat()))
            await self.connection.commit()

    async def update_device_fields(self, device_id: str, fields: Dict[str, Any]) -> None:
        if not fields:
            return

        # One json_set call with several path/value pairs keeps the update atomic
        args: List[Any] = []
        for field_path, value in fields.items():
            if not _FIELD_PATH.match(field_path):
                raise InvalidRequestError(f"Invalid device field path: {field_path}")
            args.extend([f"$.{field_path}", _to_json(value)])
        pairs = ", ".join("?, json(?)" for _ in fields)

        async with self._lock:
            cursor = await self.connection.execute(
                f"UPDATE devices SET document = json_set(document, {pairs}), updated_at = ? WHERE id = ?",
                args + [utcnow().isoformat(), device_id],
            )
            await self.connection.commit()
        if cursor.rowcount == 0:
            raise DeviceNotFoundError(f"Unknown device: {device_id}")

    # Descriptors

    async def list_descriptors(
        self, device_id: str, resource_type: Optional[ResourceType] = None
    ) -> List[DeployedConfig]:
        query = "SELECT * FROM deployed_configs WHERE device_id = ?"
        params: List[Any] = [device_id]
        if resource_type is not None:
            query += " AND resource_type = ?"
            params.append(ResourceType(resource_type).value)
        query += " ORDER BY resource_type, name"

        async with self._lock:
            cursor = await self.connection.execute(query, params)
            rows = await cursor.fetchall()
        return [self._row_to_descriptor(row) for row in rows]

    async def record_descriptor(self, descriptor: DeployedConfig, replace: bool = True) -> bool:
        values = (
            descriptor.device_id,
            descriptor.resource_type.value,
            descriptor.name,
            descriptor.object_id,
            descriptor.status.value,
            _to_json(descriptor.attributes),
            descriptor.created_at.isoformat(),
            descriptor.last_checked.isoformat(),
        )
        if replace:
            sql = """
                INSERT INTO deployed_configs
                (device_id, resource_type, name, object_id, status, attributes, created_at, last_checked)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(device_id, resource_type, name) DO UPDATE SET
                    object_id = excluded.object_id,
                    status = excluded.status,
                    attributes = excluded.attributes,
                    last_checked = excluded.last_checked
            """
        else:
            sql = """
                INSERT OR IGNORE INTO deployed_configs
                (device_id, resource_type, name, object_id, status, attributes, created_at, last_checked)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """

        async with self._lock:
            cursor = await self.connection.execute(sql, values)
            await self.connection.commit()
        return cursor.rowcount > 0

    async def update_descriptor(
        self, device_id: str, resource_type: ResourceType, name: str, /, **changes: Any
    ) -> None:
        """Update descriptor columns (object_id, status, attributes, last_checked)."""
        if not changes:
            return

        unknown = set(changes) - _DESCRIPTOR_COLUMNS
        if unknown:
            raise InvalidRequestError(f"Cannot update descriptor columns: {', '.join(sorted(unknown))}")

        if isinstance(changes.get("status"), DescriptorStatus):
            changes["status"] = changes["status"].value
        if isinstance(changes.get("last_checked"), datetime):
            changes["last_checked"] = changes["last_checked"].isoformat()
        if "attributes" in changes:
            changes["attributes"] = _to_json(changes["attributes"])

        set_clause = ", ".join(f"{k} = ?" for k in changes.keys())
        values = list(changes.values()) + [device_id, ResourceType(resource_type).value, name]

        async with self._lock:
            await self.connection.execute(
                f"UPDATE deployed_configs SET {set_clause} "
                "WHERE device_id = ? AND resource_type = ? AND name = ?",
                values,
            )
            await self.connection.commit()

    # Audit trail

    async def add_audit_entry(self, device_id: str, action: str, detail: Dict[str, Any]) -> None:
        async with self._lock:
            await self.connection.execute(
                "INSERT INTO audit_log (device_id, action, detail, created_at) VALUES (?, ?, ?, ?)",
                (device_id, action, _to_json(detail), utcnow().isoformat()),
            )
            await self.connection.commit()

    async def list_audit_entries(self, device_id: str, limit: int = 50) -> List[Dict[str, Any]]:
        """Most recent audit entries for a device, newest first."""
        async with self._lock:
            cursor = await self.connection.execute(
                "SELECT * FROM audit_log WHERE device_id = ? ORDER BY id DESC LIMIT ?",
                (device_id, limit),
            )
            rows = await cursor.fetchall()
        return [
            {
                "action": row["action"],
                "detail": json.loads(row["detail"]),
                "created_at": datetime.fromisoformat(row["created_at"]),
            }
            for row in rows
        ]

    def _row_to_descriptor(self, row: aiosqlite.Row) -> DeployedConfig:
        return DeployedConfig(
            device_id=row["device_id"],
            resource_type=ResourceType(row["resource_type"]),
            name=row["name"],
            object_id=row["object_id"],
            status=DescriptorStatus(row["status"]),
            attributes=json.loads(row["attributes"] or "{}"),
            created_at=datetime.fromisoformat(row["created_at"]),
            last_checked=datetime.fromisoformat(row["last_checked"]),
        )
