"""RouterOS REST control-plane client.

API surface used (RouterOS v7 REST, all under /rest):
- GET    /rest/<menu>          - list objects, array of {".id": "*1", ...}
- PUT    /rest/<menu>          - create object, returns the new object
- PATCH  /rest/<menu>/<.id>    - update attributes of one object
- GET    /rest/system/resource - connectivity check and system counters

Every transport failure is classified here into the apfleet error taxonomy;
callers never see raw aiohttp exceptions. The client does not retry.
"""

import asyncio
import json
import logging
from typing import Any, Dict, List, Optional, Type

import aiohttp

from .connection import ConnectionTarget
from .errors import (
    AuthenticationError,
    DeviceTimeoutError,
    DeviceUnreachableError,
    ProtocolError,
)
from .resources import RemoteObject, Resource

logger = logging.getLogger(__name__)


class DeviceClient:
    """Authenticated request/response wrapper around the device REST API."""

    API_PREFIX = "/rest"
    DEFAULT_TIMEOUT = 30

    def __init__(self, timeout: float = DEFAULT_TIMEOUT, verify_ssl: bool = False):
        self.timeout = timeout
        self.verify_ssl = verify_ssl
        self._session: Optional[aiohttp.ClientSession] = None

    async def __aenter__(self) -> "DeviceClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            connector = aiohttp.TCPConnector(ssl=self.verify_ssl)
            self._session = aiohttp.ClientSession(
                connector=connector,
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            )
        return self._session

    async def close(self) -> None:
        """Close the shared HTTP session."""
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def call(
        self,
        target: ConnectionTarget,
        method: str,
        path: str,
        body: Optional[Dict[str, Any]] = None,
    ) -> Any:
        """Issue one request and return the parsed JSON body.

        Returns None when the device answers 2xx with an empty body.
        """
        url = f"{target.base_url}{self.API_PREFIX}{path}"
        auth = aiohttp.BasicAuth(target.username, target.password)
        session = self._get_session()

        try:
            async with session.request(method, url, json=body, auth=auth) as resp:
                text = await resp.text()
                status = resp.status
        except asyncio.TimeoutError as exc:
            raise DeviceTimeoutError(
                f"{target.host} did not respond within {self.timeout}s"
            ) from exc
        except (aiohttp.ClientConnectionError, OSError) as exc:
            raise DeviceUnreachableError(f"{target.host} unreachable: {exc}") from exc
        except aiohttp.ClientError as exc:
            raise ProtocolError(0, str(exc)) from exc

        if status in (401, 403):
            raise AuthenticationError(f"{target.host} rejected credentials for {target.username}")
        if status >= 300:
            raise ProtocolError(status, self._error_detail(text))
        if not text.strip():
            return None
        try:
            return json.loads(text)
        except json.JSONDecodeError as exc:
            raise ProtocolError(status, f"Invalid JSON from {method} {path}") from exc

    @staticmethod
    def _error_detail(text: str) -> str:
        """Extract the message RouterOS puts in error bodies."""
        try:
            payload = json.loads(text)
        except (json.JSONDecodeError, TypeError):
            return text.strip()
        if isinstance(payload, dict):
            return str(payload.get("detail") or payload.get("message") or payload)
        return str(payload)

    @staticmethod
    def _as_list(payload: Any) -> List[Dict[str, Any]]:
        """Normalize "object, array or nothing" responses into a list of maps."""
        if payload is None:
            return []
        if isinstance(payload, dict):
            return [payload]
        if isinstance(payload, list):
            return [item for item in payload if isinstance(item, dict)]
        raise ProtocolError(200, f"Unexpected response type {type(payload).__name__}")

    async def get_system_resource(self, target: ConnectionTarget) -> Dict[str, Any]:
        """Basic connectivity check; returns /system/resource counters."""
        payload = await self.call(target, "GET", "/system/resource")
        items = self._as_list(payload)
        return items[0] if items else {}

    async def fetch_list(self, target: ConnectionTarget, path: str) -> List[Dict[str, Any]]:
        """Read a status table (leases, active sessions, ...) as a list."""
        return self._as_list(await self.call(target, "GET", path))

    async def list_objects(
        self,
        target: ConnectionTarget,
        resource_cls: Type[Resource],
    ) -> List[RemoteObject]:
        """List device objects of one resource type."""
        items = await self.fetch_list(target, resource_cls.path)
        return [RemoteObject.from_wire(resource_cls, item) for item in items]

    async def create(self, target: ConnectionTarget, resource: Resource) -> str:
        """Create a device object and return its device-assigned identifier."""
        payload = await self.call(target, "PUT", resource.path, resource.to_wire())
        items = self._as_list(payload)
        object_id = items[0].get(".id") if items else None
        if not object_id:
            # Older firmware answers PUT with an empty body; look the object up instead.
            for obj in await self.list_objects(target, type(resource)):
                if obj.resource.match_key() == resource.match_key():
                    return obj.id
            raise ProtocolError(200, f"Created {resource.kind.value} '{resource.canonical_name}' has no .id")
        return str(object_id)

    async def update(
        self,
        target: ConnectionTarget,
        resource_cls: Type[Resource],
        object_id: str,
        attributes: Dict[str, str],
    ) -> None:
        """Patch attributes of an existing device object."""
        await self.call(target, "PATCH", f"{resource_cls.path}/{object_id}", attributes)
