"""Choosing the network path used to reach a device."""

import logging
from dataclasses import dataclass
from enum import Enum

from .errors import DeviceUnreachableError
from .models import Device
from .secrets import SecretCodec

logger = logging.getLogger(__name__)


class ConnectionMode(str, Enum):
    """Which path an operation would like to use."""
    DEFAULT = "default"  # Follow the device's recorded preference
    PREFER_LOCAL = "prefer_local"
    PREFER_OVERLAY = "prefer_overlay"


@dataclass
class ConnectionTarget:
    """Concrete endpoint and plaintext credentials for one call sequence."""
    host: str
    port: int
    username: str
    password: str
    scheme: str = "http"
    via_overlay: bool = False

    @property
    def base_url(self) -> str:
        return f"{self.scheme}://{self.host}:{self.port}"

    def __repr__(self) -> str:
        # Keep the password out of logs and tracebacks
        return (
            f"ConnectionTarget(host={self.host!r}, port={self.port}, "
            f"username={self.username!r}, via_overlay={self.via_overlay})"
        )


class ConnectionResolver:
    """Resolves a device record into a ConnectionTarget.

    The overlay (VPN) address is only used once the tunnel bootstrap has
    marked it ready; this class never sets up tunnels itself.
    """

    def __init__(self, codec: SecretCodec):
        self.codec = codec

    def resolve(self, device: Device, mode: ConnectionMode = ConnectionMode.DEFAULT) -> ConnectionTarget:
        conn = device.connection
        overlay = conn.overlay_address if conn.overlay_ready else None
        local = conn.local_address

        if mode == ConnectionMode.PREFER_LOCAL:
            candidates = [(local, False), (overlay, True)]
        elif mode == ConnectionMode.PREFER_OVERLAY:
            candidates = [(overlay, True), (local, False)]
        elif conn.prefer_overlay:
            candidates = [(overlay, True), (local, False)]
        else:
            candidates = [(local, False)]

        for host, via_overlay in candidates:
            if host:
                logger.debug(f"[{device.id}] Using {'overlay' if via_overlay else 'local'} address {host}")
                return ConnectionTarget(
                    host=host,
                    port=conn.port,
                    username=conn.username,
                    password=self.codec.decrypt(conn.secret),
                    scheme=conn.scheme,
                    via_overlay=via_overlay,
                )

        raise DeviceUnreachableError(f"No usable address recorded for device {device.id}")
