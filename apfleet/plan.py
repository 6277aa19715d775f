"""Desired configuration plans and their execution order."""

import dataclasses
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from .errors import InvalidRequestError
from .models import Capabilities, ServiceOptions
from .resources import (
    Bridge,
    BridgePort,
    DhcpClient,
    DhcpNetwork,
    DhcpServer,
    HotspotProfile,
    HotspotServer,
    HotspotUserProfile,
    IpAddress,
    IpPool,
    NatRule,
    PppoeServer,
    PppProfile,
    Resource,
    ResourceType,
    WirelessInterface,
    WirelessSecurityProfile,
    build_resource,
)

# Later resource types reference earlier ones by name (a DHCP server names
# its pool, a hotspot server names its profile), so this order is fixed.
EXECUTION_ORDER: Sequence[ResourceType] = (
    ResourceType.WAN,
    ResourceType.BRIDGE,
    ResourceType.BRIDGE_PORT,
    ResourceType.IP_ADDRESS,
    ResourceType.WIRELESS_SECURITY,
    ResourceType.WIRELESS,
    ResourceType.IP_POOL,
    ResourceType.DHCP_NETWORK,
    ResourceType.DHCP_SERVER,
    ResourceType.NAT_RULE,
    ResourceType.PPP_PROFILE,
    ResourceType.PPPOE_SERVER,
    ResourceType.HOTSPOT_PROFILE,
    ResourceType.HOTSPOT_SERVER,
    ResourceType.HOTSPOT_USER_PROFILE,
)
_RANK = {kind: index for index, kind in enumerate(EXECUTION_ORDER)}

DEFAULT_MAX_PLAN_STEPS = 256


@dataclass(frozen=True)
class ConfigurationStep:
    """One idempotent unit of work: make `resource` exist as described."""
    resource: Resource
    name: str = ""
    special: bool = False  # Fixed special user classes run after the regular tiers

    def __post_init__(self):
        if not self.name:
            object.__setattr__(self, "name", f"{self.resource.kind.value}:{self.resource.canonical_name}")

    @property
    def resource_type(self) -> ResourceType:
        return self.resource.kind

    def sort_key(self):
        return (_RANK[self.resource.kind], 1 if self.special else 0, self.name)

    def to_record(self, seal: Optional[Callable[[str], str]] = None) -> Dict[str, Any]:
        """Serialize the step. `seal` encrypts secret attributes such as passphrases."""
        attributes = self.resource.to_wire()
        if seal is not None:
            for attr in self.resource.SECRET_FIELDS:
                key = self.resource.wire_name(attr)
                if attributes.get(key):
                    attributes[key] = seal(attributes[key])
        return {
            "name": self.name,
            "type": self.resource.kind.value,
            "special": self.special,
            "attributes": attributes,
        }

    @classmethod
    def from_record(cls, record: Dict[str, Any], unseal: Optional[Callable[[str], str]] = None) -> "ConfigurationStep":
        try:
            resource = build_resource(record["type"], record.get("attributes") or {})
        except (KeyError, ValueError) as exc:
            raise InvalidRequestError(f"Invalid plan step {record.get('name', '?')}: {exc}") from exc
        if unseal is not None:
            for attr in resource.SECRET_FIELDS:
                value = getattr(resource, attr)
                if value:
                    resource = dataclasses.replace(resource, **{attr: unseal(value)})
        return cls(resource=resource, name=record.get("name", ""), special=bool(record.get("special", False)))


class Plan:
    """Immutable set of configuration steps for one provisioning run."""

    def __init__(self, steps: Iterable[ConfigurationStep], max_steps: int = DEFAULT_MAX_PLAN_STEPS):
        self.steps: List[ConfigurationStep] = list(steps)
        self.max_steps = max_steps
        if len(self.steps) > max_steps:
            raise InvalidRequestError(
                f"Plan has {len(self.steps)} steps, more than the allowed {max_steps}"
            )
        seen = set()
        for step in self.steps:
            if step.name in seen:
                raise InvalidRequestError(f"Duplicate step name in plan: {step.name}")
            seen.add(step.name)

    def __len__(self) -> int:
        return len(self.steps)

    def __iter__(self):
        return iter(self.ordered())

    @property
    def step_names(self) -> List[str]:
        return [step.name for step in self.ordered()]

    def ordered(self) -> List[ConfigurationStep]:
        """Steps in dependency order, independent of input order."""
        return sorted(self.steps, key=ConfigurationStep.sort_key)

    def subset(self, names: Iterable[str]) -> "Plan":
        wanted = set(names)
        return Plan((step for step in self.steps if step.name in wanted), max_steps=self.max_steps)

    def to_records(self, seal: Optional[Callable[[str], str]] = None) -> List[Dict[str, Any]]:
        return [step.to_record(seal) for step in self.ordered()]

    @classmethod
    def from_records(
        cls,
        records: List[Dict[str, Any]],
        max_steps: int = DEFAULT_MAX_PLAN_STEPS,
        unseal: Optional[Callable[[str], str]] = None,
    ) -> "Plan":
        return cls((ConfigurationStep.from_record(record, unseal) for record in records), max_steps=max_steps)


# Hotspot user classes: (name, session timeout, idle timeout, shared users, rate limit)
HOTSPOT_TIERS = [
    ("1hour-10ksh", "1h", "10m", "1", "2M/5M"),
    ("3hours-25ksh", "3h", "15m", "1", "3M/6M"),
    ("5hours-40ksh", "5h", "20m", "1", "4M/8M"),
    ("12hours-70ksh", "12h", "30m", "1", "5M/10M"),
    ("1day-100ksh", "1d", "1h", "1", "6M/12M"),
    ("3days-250ksh", "3d", "2h", "1", "8M/15M"),
    ("1week-400ksh", "1w", "4h", "1", "10M/20M"),
    ("1month-1200ksh", "30d", "12h", "1", "15M/25M"),
]

# PPPoE service tiers: (name, rate limit)
PPP_TIERS = [
    ("home-basic-5mbps", "5M/5M"),
    ("home-standard-10mbps", "10M/10M"),
    ("home-premium-20mbps", "20M/20M"),
    ("business-50mbps", "50M/50M"),
]

SPECIAL_PROFILES = [
    HotspotUserProfile(
        name="trial-15min",
        session_timeout="15m",
        idle_timeout="5m",
        keepalive_timeout="1m",
        status_autorefresh="30s",
        shared_users="1",
        rate_limit="1M/2M",
        transparent_proxy=True,
    ),
    HotspotUserProfile(
        name="admin-unlimited",
        session_timeout="0",
        idle_timeout="0",
        keepalive_timeout="2m",
        status_autorefresh="1m",
        shared_users="1",
        rate_limit="50M/50M",
        transparent_proxy=False,
    ),
]

DNS_SERVERS = "8.8.8.8,8.8.4.4"
HOTSPOT_GATEWAY = "192.168.10.1"
HOTSPOT_SUBNET = "192.168.10.0/24"
PPPOE_GATEWAY = "192.168.100.1"
PPPOE_SUBNET = "192.168.100.0/24"


def build_plan(
    services: ServiceOptions,
    capabilities: Optional[Capabilities] = None,
    max_steps: int = DEFAULT_MAX_PLAN_STEPS,
    tiers: Optional[Sequence[Tuple[str, str, str, str, str]]] = None,
    special_profiles: Optional[Sequence[HotspotUserProfile]] = None,
) -> Plan:
    """Default plan builder: turn a requested service set into steps.

    ``tiers`` rows are (name, session timeout, idle timeout, shared users, rate
    limit); both tier lists fall back to the built-in billing tiers.
    """
    capabilities = capabilities or Capabilities()
    tiers = HOTSPOT_TIERS if tiers is None else tiers
    special_profiles = SPECIAL_PROFILES if special_profiles is None else special_profiles
    wan = services.wan_interface
    steps: List[ConfigurationStep] = [ConfigurationStep(DhcpClient(interface=wan))]

    hotspot = services.hotspot_enabled and capabilities.hotspot
    pppoe = services.pppoe_enabled and capabilities.pppoe

    if hotspot:
        bridge = services.bridge_name
        steps.append(ConfigurationStep(Bridge(name=bridge)))
        for port in services.bridge_ports:
            if port == services.wlan_interface and not capabilities.wireless:
                continue
            steps.append(ConfigurationStep(BridgePort(bridge=bridge, interface=port)))
        steps.append(ConfigurationStep(IpAddress(address=f"{HOTSPOT_GATEWAY}/24", interface=bridge)))

        if services.ssid and capabilities.wireless:
            steps.append(ConfigurationStep(WirelessSecurityProfile(
                name="secure-wifi",
                wpa2_pre_shared_key=services.wifi_passphrase or "",
            )))
            steps.append(ConfigurationStep(WirelessInterface(
                name=services.wlan_interface,
                ssid=services.ssid,
                security_profile="secure-wifi",
            )))

        steps.append(ConfigurationStep(IpPool(name="hotspot-pool", ranges="192.168.10.10-192.168.10.254")))
        steps.append(ConfigurationStep(DhcpNetwork(
            address=HOTSPOT_SUBNET, gateway=HOTSPOT_GATEWAY, dns_server=DNS_SERVERS,
        )))
        steps.append(ConfigurationStep(DhcpServer(
            name="hotspot-dhcp", interface=bridge, address_pool="hotspot-pool",
        )))
        steps.append(ConfigurationStep(NatRule(
            chain="srcnat", action="masquerade", src_address=HOTSPOT_SUBNET, out_interface=wan,
        )))
        steps.append(ConfigurationStep(HotspotProfile(
            name="hotspot-profile", hotspot_address=HOTSPOT_GATEWAY, dns_name="hotspot.local",
            html_directory="hotspot",
        )))
        steps.append(ConfigurationStep(HotspotServer(
            name="hotspot1", interface=bridge, address_pool="hotspot-pool", profile="hotspot-profile",
        )))
        for name, session, idle, shared, rate in tiers:
            steps.append(ConfigurationStep(HotspotUserProfile(
                name=name,
                session_timeout=session,
                idle_timeout=idle,
                keepalive_timeout="2m",
                status_autorefresh="1m",
                shared_users=shared,
                rate_limit=rate,
                transparent_proxy=True,
            )))
        for profile in special_profiles:
            steps.append(ConfigurationStep(profile, special=True))

    if pppoe:
        steps.append(ConfigurationStep(IpPool(name="pppoe-pool", ranges="192.168.100.10-192.168.100.254")))
        steps.append(ConfigurationStep(NatRule(
            chain="srcnat", action="masquerade", src_address=PPPOE_SUBNET, out_interface=wan,
        )))
        for name, rate in PPP_TIERS:
            steps.append(ConfigurationStep(PppProfile(
                name=name,
                local_address=PPPOE_GATEWAY,
                remote_address="pppoe-pool",
                dns_server=DNS_SERVERS,
                rate_limit=rate,
                session_timeout="0",
                idle_timeout="0",
            )))
        steps.append(ConfigurationStep(PppoeServer(
            service_name="pppoe-service",
            interface=services.pppoe_interface,
            default_profile="home-standard-10mbps",
        )))

    return Plan(steps, max_steps=max_steps)
