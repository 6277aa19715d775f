"""Shared fixtures and an in-memory RouterOS test double."""

import asyncio
from collections import Counter, defaultdict
from typing import Any, Dict, List, Optional, Tuple

import pytest
import pytest_asyncio

from apfleet.client import DeviceClient
from apfleet.connection import ConnectionResolver, ConnectionTarget
from apfleet.errors import DeviceUnreachableError, ProtocolError
from apfleet.locks import DeviceLockRegistry
from apfleet.models import ConnectionInfo, Device, ServiceOptions
from apfleet.orchestrator import Provisioner
from apfleet.reconcile import ReconciliationEngine
from apfleet.secrets import SecretCodec
from apfleet.store import SqliteDeviceStore


class FakeRouterOS(DeviceClient):
    """DeviceClient whose transport is a set of in-memory RouterOS tables.

    Supports failure injection per (method, path), an artificial delay on
    every call, and counters for creates and concurrently running calls.
    """

    def __init__(self, delay: float = 0.0):
        super().__init__()
        self.delay = delay
        self.offline = False
        self.system: Dict[str, Any] = {
            "version": "7.14.3 (stable)",
            "board-name": "hAP ac2",
            "cpu-load": "7",
            "total-memory": "134217728",
            "free-memory": "67108864",
            "uptime": "1d2h3m4s",
        }
        self.tables: Dict[str, List[Dict[str, Any]]] = defaultdict(list)
        self.failures: Dict[Tuple[str, str], Exception] = {}
        self.calls: List[Tuple[str, str]] = []
        self.create_counts: Counter = Counter()
        self.in_flight = 0
        self.max_in_flight = 0
        self._next_id = 1

        self.add_object("/interface/wireless", name="wlan1", ssid="MikroTik", mode="ap-bridge", disabled="true")
        self.add_object("/ip/hotspot/profile", name="default", default="true")

    def _new_id(self) -> str:
        object_id = f"*{self._next_id:X}"
        self._next_id += 1
        return object_id

    def add_object(self, path: str, object_id: Optional[str] = None, **attributes: Any) -> str:
        obj = {key.replace("_", "-"): value for key, value in attributes.items()}
        obj[".id"] = object_id or self._new_id()
        self.tables[path].append(obj)
        return obj[".id"]

    def remove_object(self, path: str, object_id: str) -> None:
        self.tables[path] = [obj for obj in self.tables[path] if obj[".id"] != object_id]

    def objects(self, path: str) -> List[Dict[str, Any]]:
        return self.tables[path]

    def fail(self, method: str, path: str, exc: Exception) -> None:
        self.failures[(method, path)] = exc

    def clear_failures(self) -> None:
        self.failures.clear()

    async def call(self, target: ConnectionTarget, method: str, path: str, body: Optional[Dict[str, Any]] = None) -> Any:
        self.calls.append((method, path))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if self.offline:
                raise DeviceUnreachableError(f"{target.host} unreachable: connection refused")
            failure = self.failures.get((method, path))
            if failure is not None:
                raise failure

            if method == "GET":
                if path == "/system/resource":
                    return dict(self.system)
                return [dict(obj) for obj in self.tables.get(path, [])]
            if method == "PUT":
                obj = dict(body or {})
                obj[".id"] = self._new_id()
                self.tables[path].append(obj)
                self.create_counts[path] += 1
                return dict(obj)
            if method == "PATCH":
                table_path, _, object_id = path.rpartition("/")
                for obj in self.tables.get(table_path, []):
                    if obj[".id"] == object_id:
                        obj.update(body or {})
                        return dict(obj)
                raise ProtocolError(404, "no such item")
            raise ProtocolError(400, f"unsupported method {method}")
        finally:
            self.in_flight -= 1

    @property
    def created(self) -> int:
        return sum(self.create_counts.values())


@pytest.fixture(scope="session")
def codec():
    return SecretCodec("test-master-key")


@pytest.fixture
def fake():
    return FakeRouterOS()


@pytest.fixture
def device(codec):
    return Device(
        id="ap-01",
        name="Cafe AP",
        model="RBD52G-5HacD2HnD",
        connection=ConnectionInfo(local_address="192.168.88.1", secret=codec.encrypt("routerpass")),
        services=ServiceOptions(
            hotspot_enabled=True,
            pppoe_enabled=True,
            ssid="Cafe WiFi",
            wifi_passphrase="supersecret",
        ),
    )


@pytest_asyncio.fixture
async def store(tmp_path, device):
    db = SqliteDeviceStore(str(tmp_path / "fleet.db"))
    await db.connect()
    await db.save_device(device)
    yield db
    await db.close()


@pytest.fixture
def resolver(codec):
    return ConnectionResolver(codec)


@pytest.fixture
def locks():
    return DeviceLockRegistry()


@pytest.fixture
def provisioner(fake, resolver, store, locks):
    return Provisioner(client=fake, resolver=resolver, store=store, locks=locks)


@pytest.fixture
def engine(fake, resolver, store, locks):
    return ReconciliationEngine(client=fake, resolver=resolver, store=store, locks=locks)
