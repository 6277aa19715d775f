"""Typed RouterOS resources and their conversion to and from the REST wire format.

Step and reconciliation logic only ever handle these dataclasses. The
key/value maps the device speaks are produced and parsed here, at the edge,
and passed through by the control-plane client.
"""

import dataclasses
from dataclasses import dataclass
from enum import Enum
from typing import Any, ClassVar, Dict, Optional, Tuple, Type


class ResourceType(str, Enum):
    """Kinds of device objects the platform deploys and tracks."""
    WAN = "wan"
    IP_ADDRESS = "ip-address"
    BRIDGE = "bridge"
    BRIDGE_PORT = "bridge-port"
    WIRELESS_SECURITY = "wireless-security"
    WIRELESS = "wireless"
    IP_POOL = "ip-pool"
    DHCP_NETWORK = "dhcp-network"
    DHCP_SERVER = "dhcp-server"
    NAT_RULE = "nat-rule"
    PPP_PROFILE = "ppp-profile"
    PPPOE_SERVER = "pppoe-server"
    HOTSPOT_PROFILE = "hotspot-profile"
    HOTSPOT_SERVER = "hotspot-server"
    HOTSPOT_USER_PROFILE = "hotspot-user-profile"


_TRUE_VALUES = {"true", "yes", "1", "on"}


def parse_bool(value: Any) -> bool:
    """Parse RouterOS boolean spellings ("true", "yes", ...)."""
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in _TRUE_VALUES


def _is_bool_field(field_type: Any) -> bool:
    return field_type is bool or field_type == Optional[bool]


def _format_value(value: Any) -> str:
    if isinstance(value, bool):
        return "yes" if value else "no"
    return str(value)


@dataclass
class Resource:
    """Base class for a typed device object."""

    kind: ClassVar[ResourceType]
    path: ClassVar[str]
    # Fields that identify "the same object" when checking before create
    key_fields: ClassVar[Tuple[str, ...]] = ("name",)
    # Patch-only resources exist on the device already and are never created
    creatable: ClassVar[bool] = True
    # Overrides for attributes whose wire key is not the hyphenated name
    WIRE_NAMES: ClassVar[Dict[str, str]] = {}
    # Attributes left out of anything persisted for display (descriptors, audit)
    SECRET_FIELDS: ClassVar[Tuple[str, ...]] = ()

    @property
    def canonical_name(self) -> str:
        return getattr(self, "name")

    def match_key(self) -> Tuple[Any, ...]:
        return tuple(getattr(self, name) for name in self.key_fields)

    @classmethod
    def wire_name(cls, attr: str) -> str:
        return cls.WIRE_NAMES.get(attr, attr.replace("_", "-"))

    def to_wire(self, redact: bool = False) -> Dict[str, str]:
        """Render set attributes as the vendor key/value map."""
        wire: Dict[str, str] = {}
        for f in dataclasses.fields(self):
            value = getattr(self, f.name)
            if value is None or (redact and f.name in self.SECRET_FIELDS):
                continue
            wire[self.wire_name(f.name)] = _format_value(value)
        return wire

    @classmethod
    def from_wire(cls, data: Dict[str, Any], use_defaults: bool = False) -> "Resource":
        """Build a typed resource from a vendor key/value map.

        For device objects (the default) attributes the device does not
        report stay unset and missing required attributes become empty
        strings. With `use_defaults`, absent attributes take the class
        defaults and a missing required attribute raises ValueError.
        """
        kwargs: Dict[str, Any] = {}
        for f in dataclasses.fields(cls):
            key = cls.wire_name(f.name)
            if key in data:
                raw = data[key]
                kwargs[f.name] = parse_bool(raw) if _is_bool_field(f.type) else str(raw)
                continue
            required = (
                f.default is dataclasses.MISSING
                and f.default_factory is dataclasses.MISSING  # type: ignore[misc]
            )
            if required and use_defaults:
                raise ValueError(f"{cls.kind.value}: missing required attribute '{key}'")
            if required:
                kwargs[f.name] = ""
            elif not use_defaults:
                kwargs[f.name] = None
        return cls(**kwargs)

    def differences(self, current: "Resource") -> Dict[str, str]:
        """Wire attributes of this (desired) resource that differ on `current`."""
        diff: Dict[str, str] = {}
        for f in dataclasses.fields(self):
            desired = getattr(self, f.name)
            if desired is None:
                continue
            actual = getattr(current, f.name, None)
            if actual is None or _format_value(actual) != _format_value(desired):
                diff[self.wire_name(f.name)] = _format_value(desired)
        return diff


@dataclass
class DhcpClient(Resource):
    """WAN binding: DHCP client on the upstream port."""
    kind: ClassVar[ResourceType] = ResourceType.WAN
    path: ClassVar[str] = "/ip/dhcp-client"
    key_fields: ClassVar[Tuple[str, ...]] = ("interface",)

    interface: str
    add_default_route: Optional[bool] = True
    use_peer_dns: Optional[bool] = True
    disabled: Optional[bool] = False

    @property
    def canonical_name(self) -> str:
        return self.interface


@dataclass
class IpAddress(Resource):
    """Address bound to a LAN interface or bridge."""
    kind: ClassVar[ResourceType] = ResourceType.IP_ADDRESS
    path: ClassVar[str] = "/ip/address"
    key_fields: ClassVar[Tuple[str, ...]] = ("interface", "address")

    address: str
    interface: str
    comment: Optional[str] = None

    @property
    def canonical_name(self) -> str:
        return f"{self.interface}:{self.address}"


@dataclass
class Bridge(Resource):
    kind: ClassVar[ResourceType] = ResourceType.BRIDGE
    path: ClassVar[str] = "/interface/bridge"

    name: str
    comment: Optional[str] = None


@dataclass
class BridgePort(Resource):
    kind: ClassVar[ResourceType] = ResourceType.BRIDGE_PORT
    path: ClassVar[str] = "/interface/bridge/port"
    key_fields: ClassVar[Tuple[str, ...]] = ("bridge", "interface")

    bridge: str
    interface: str

    @property
    def canonical_name(self) -> str:
        return f"{self.bridge}-{self.interface}"


@dataclass
class WirelessSecurityProfile(Resource):
    kind: ClassVar[ResourceType] = ResourceType.WIRELESS_SECURITY
    path: ClassVar[str] = "/interface/wireless/security-profiles"
    SECRET_FIELDS: ClassVar[Tuple[str, ...]] = ("wpa2_pre_shared_key",)

    name: str
    wpa2_pre_shared_key: Optional[str] = None
    mode: Optional[str] = "dynamic-keys"
    authentication_types: Optional[str] = "wpa2-psk"
    unicast_ciphers: Optional[str] = "aes-ccm"
    group_ciphers: Optional[str] = "aes-ccm"


@dataclass
class WirelessInterface(Resource):
    """Radio settings; the radio itself is hardware and cannot be created."""
    kind: ClassVar[ResourceType] = ResourceType.WIRELESS
    path: ClassVar[str] = "/interface/wireless"
    creatable: ClassVar[bool] = False

    name: str
    ssid: Optional[str] = None
    mode: Optional[str] = "ap-bridge"
    security_profile: Optional[str] = None
    disabled: Optional[bool] = False


@dataclass
class IpPool(Resource):
    kind: ClassVar[ResourceType] = ResourceType.IP_POOL
    path: ClassVar[str] = "/ip/pool"

    name: str
    ranges: str


@dataclass
class DhcpNetwork(Resource):
    kind: ClassVar[ResourceType] = ResourceType.DHCP_NETWORK
    path: ClassVar[str] = "/ip/dhcp-server/network"
    key_fields: ClassVar[Tuple[str, ...]] = ("address",)

    address: str
    gateway: Optional[str] = None
    dns_server: Optional[str] = None

    @property
    def canonical_name(self) -> str:
        return self.address


@dataclass
class DhcpServer(Resource):
    kind: ClassVar[ResourceType] = ResourceType.DHCP_SERVER
    path: ClassVar[str] = "/ip/dhcp-server"

    name: str
    interface: str
    address_pool: Optional[str] = None
    disabled: Optional[bool] = False


@dataclass
class NatRule(Resource):
    kind: ClassVar[ResourceType] = ResourceType.NAT_RULE
    path: ClassVar[str] = "/ip/firewall/nat"
    key_fields: ClassVar[Tuple[str, ...]] = ("chain", "src_address", "out_interface")

    chain: str
    action: str
    src_address: Optional[str] = None
    out_interface: Optional[str] = None
    comment: Optional[str] = None

    @property
    def canonical_name(self) -> str:
        return "-".join(part or "any" for part in (self.chain, self.src_address, self.out_interface))


@dataclass
class PppProfile(Resource):
    kind: ClassVar[ResourceType] = ResourceType.PPP_PROFILE
    path: ClassVar[str] = "/ppp/profile"

    name: str
    local_address: Optional[str] = None
    remote_address: Optional[str] = None
    dns_server: Optional[str] = None
    rate_limit: Optional[str] = None
    session_timeout: Optional[str] = None
    idle_timeout: Optional[str] = None


@dataclass
class PppoeServer(Resource):
    kind: ClassVar[ResourceType] = ResourceType.PPPOE_SERVER
    path: ClassVar[str] = "/interface/pppoe-server/server"
    key_fields: ClassVar[Tuple[str, ...]] = ("service_name",)

    service_name: str
    interface: str
    default_profile: Optional[str] = None
    disabled: Optional[bool] = False

    @property
    def canonical_name(self) -> str:
        return self.service_name


@dataclass
class HotspotProfile(Resource):
    kind: ClassVar[ResourceType] = ResourceType.HOTSPOT_PROFILE
    path: ClassVar[str] = "/ip/hotspot/profile"

    name: str
    hotspot_address: Optional[str] = None
    dns_name: Optional[str] = None
    html_directory: Optional[str] = None
    login_by: Optional[str] = None
    shared_users: Optional[str] = None
    transparent_proxy: Optional[bool] = None
    rate_limit: Optional[str] = None


@dataclass
class HotspotServer(Resource):
    kind: ClassVar[ResourceType] = ResourceType.HOTSPOT_SERVER
    path: ClassVar[str] = "/ip/hotspot"

    name: str
    interface: str
    address_pool: Optional[str] = None
    profile: Optional[str] = None
    disabled: Optional[bool] = False


@dataclass
class HotspotUserProfile(Resource):
    """User-class profile: a billing tier or a special (trial/admin) class."""
    kind: ClassVar[ResourceType] = ResourceType.HOTSPOT_USER_PROFILE
    path: ClassVar[str] = "/ip/hotspot/user/profile"

    name: str
    session_timeout: Optional[str] = None
    idle_timeout: Optional[str] = None
    keepalive_timeout: Optional[str] = None
    status_autorefresh: Optional[str] = None
    shared_users: Optional[str] = None
    rate_limit: Optional[str] = None
    transparent_proxy: Optional[bool] = None


RESOURCE_CLASSES: Dict[ResourceType, Type[Resource]] = {
    cls.kind: cls
    for cls in (
        DhcpClient,
        IpAddress,
        Bridge,
        BridgePort,
        WirelessSecurityProfile,
        WirelessInterface,
        IpPool,
        DhcpNetwork,
        DhcpServer,
        NatRule,
        PppProfile,
        PppoeServer,
        HotspotProfile,
        HotspotServer,
        HotspotUserProfile,
    )
}


def resource_class(kind: "ResourceType | str") -> Type[Resource]:
    """Look up the resource class for a type name."""
    try:
        return RESOURCE_CLASSES[ResourceType(kind)]
    except ValueError:
        raise ValueError(f"Unknown resource type: {kind}") from None


def build_resource(kind: "ResourceType | str", attributes: Dict[str, Any]) -> Resource:
    """Build a resource from wire-style attributes (used by plan files)."""
    return resource_class(kind).from_wire(attributes, use_defaults=True)


@dataclass
class RemoteObject:
    """A device-side object together with its device-assigned identifier."""
    id: str
    resource: Resource
    dynamic: bool = False
    builtin: bool = False

    @property
    def name(self) -> str:
        return self.resource.canonical_name

    @classmethod
    def from_wire(cls, resource_cls: Type[Resource], data: Dict[str, Any]) -> "RemoteObject":
        return cls(
            id=str(data.get(".id", "")),
            resource=resource_cls.from_wire(data),
            dynamic=parse_bool(data.get("dynamic", False)),
            builtin=parse_bool(data.get("default", False)) or parse_bool(data.get("builtin", False)),
        )
