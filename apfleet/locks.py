"""Per-device serialization of provisioning and reconciliation runs.

The check-then-create steps and identifier matching are only safe when no
two operations against the same device interleave. Both the provisioner and
the reconciliation engine take the device's lock from one shared registry
for the whole run. Different devices never contend.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Optional

from .errors import DeviceBusyError

logger = logging.getLogger(__name__)


class DeviceLockRegistry:
    """Hands out one asyncio.Lock per device identifier."""

    def __init__(self, reject_when_busy: bool = False):
        self.reject_when_busy = reject_when_busy
        self._locks: Dict[str, asyncio.Lock] = {}
        self._holders: Dict[str, str] = {}

    def _lock_for(self, device_id: str) -> asyncio.Lock:
        lock = self._locks.get(device_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[device_id] = lock
        return lock

    def is_busy(self, device_id: str) -> bool:
        lock = self._locks.get(device_id)
        return bool(lock and lock.locked())

    def holder(self, device_id: str) -> Optional[str]:
        """Name of the operation currently holding the device, if any."""
        return self._holders.get(device_id)

    @asynccontextmanager
    async def hold(self, device_id: str, operation: str) -> AsyncIterator[None]:
        """Run the enclosed block as the only operation on the device."""
        lock = self._lock_for(device_id)
        if lock.locked():
            if self.reject_when_busy:
                raise DeviceBusyError(
                    f"Device {device_id} is busy with {self._holders.get(device_id, 'another operation')}"
                )
            logger.info(f"[{device_id}] {operation} waiting for {self._holders.get(device_id)} to finish")

        async with lock:
            self._holders[device_id] = operation
            try:
                yield
            finally:
                self._holders.pop(device_id, None)
