"""Tests for plan ordering, validation and the default plan builder."""

import random

import pytest

from apfleet.errors import InvalidRequestError
from apfleet.models import Capabilities, ServiceOptions
from apfleet.plan import (
    HOTSPOT_TIERS,
    PPP_TIERS,
    ConfigurationStep,
    Plan,
    build_plan,
)
from apfleet.resources import (
    Bridge,
    DhcpClient,
    DhcpServer,
    HotspotUserProfile,
    IpPool,
    NatRule,
    ResourceType,
)


class TestOrdering:
    """Execution order is fixed by resource type."""

    def test_pool_runs_before_dhcp_server(self):
        server = ConfigurationStep(DhcpServer(name="dhcp1", interface="bridge1", address_pool="pool1"))
        pool = ConfigurationStep(IpPool(name="pool1", ranges="10.0.0.2-10.0.0.9"))
        plan = Plan([server, pool])
        assert [step.name for step in plan.ordered()] == ["ip-pool:pool1", "dhcp-server:dhcp1"]

    def test_input_order_does_not_matter(self):
        steps = list(build_plan(ServiceOptions(hotspot_enabled=True, pppoe_enabled=True, ssid="x",
                                               wifi_passphrase="12345678")).steps)
        expected = Plan(steps).step_names
        shuffled = steps[:]
        random.Random(7).shuffle(shuffled)
        assert Plan(shuffled).step_names == expected

    def test_special_profiles_run_after_tiers(self):
        plan = Plan([
            ConfigurationStep(HotspotUserProfile(name="admin"), special=True),
            ConfigurationStep(HotspotUserProfile(name="zz-tier")),
            ConfigurationStep(HotspotUserProfile(name="aa-tier")),
        ])
        assert plan.step_names == [
            "hotspot-user-profile:aa-tier",
            "hotspot-user-profile:zz-tier",
            "hotspot-user-profile:admin",
        ]

    def test_wan_runs_first(self):
        plan = Plan([
            ConfigurationStep(NatRule(chain="srcnat", action="masquerade", out_interface="ether1")),
            ConfigurationStep(Bridge(name="br")),
            ConfigurationStep(DhcpClient(interface="ether1")),
        ])
        assert [step.resource_type for step in plan] == [
            ResourceType.WAN, ResourceType.BRIDGE, ResourceType.NAT_RULE,
        ]


class TestValidation:
    """Plans reject duplicates and oversized input."""

    def test_duplicate_step_names(self):
        with pytest.raises(InvalidRequestError, match="Duplicate"):
            Plan([
                ConfigurationStep(IpPool(name="p", ranges="a")),
                ConfigurationStep(IpPool(name="p", ranges="b")),
            ])

    def test_max_steps(self):
        steps = [ConfigurationStep(IpPool(name=f"p{i}", ranges="a")) for i in range(5)]
        Plan(steps, max_steps=5)
        with pytest.raises(InvalidRequestError):
            Plan(steps, max_steps=4)

    def test_explicit_step_name(self):
        step = ConfigurationStep(IpPool(name="p", ranges="a"), name="step3")
        assert step.name == "step3"

    def test_subset_keeps_the_plan_limit(self):
        steps = [ConfigurationStep(IpPool(name=f"p{i}", ranges="a")) for i in range(300)]
        plan = Plan(steps, max_steps=400)
        subset = plan.subset(step.name for step in steps)
        assert len(subset) == 300
        assert subset.max_steps == 400


class TestRecords:
    """Plans persist as plain records."""

    def test_records_restore_the_same_plan(self):
        plan = build_plan(ServiceOptions(hotspot_enabled=True, ssid="Cafe", wifi_passphrase="supersecret"))
        restored = Plan.from_records(plan.to_records())
        assert restored.step_names == plan.step_names
        assert [s.resource for s in restored.ordered()] == [s.resource for s in plan.ordered()]

    def test_secret_attributes_are_sealed(self):
        plan = build_plan(ServiceOptions(hotspot_enabled=True, ssid="Cafe", wifi_passphrase="supersecret"))
        records = plan.to_records(seal=lambda value: f"sealed:{value}")

        wireless = [r for r in records if r["type"] == "wireless-security"]
        assert wireless[0]["attributes"]["wpa2-pre-shared-key"] == "sealed:supersecret"
        assert "sealed:" not in str([r for r in records if r["type"] != "wireless-security"])

        restored = Plan.from_records(records, unseal=lambda value: value[len("sealed:"):])
        profile = next(s.resource for s in restored if s.resource_type == ResourceType.WIRELESS_SECURITY)
        assert profile.wpa2_pre_shared_key == "supersecret"

    def test_unknown_type_in_record(self):
        with pytest.raises(InvalidRequestError):
            Plan.from_records([{"name": "x", "type": "vlan", "attributes": {"name": "x"}}])

    def test_missing_required_attribute_in_record(self):
        with pytest.raises(InvalidRequestError):
            Plan.from_records([{"type": "ip-pool", "attributes": {"name": "p"}}])


class TestBuildPlan:
    """The default plan builder."""

    def test_wan_only(self):
        plan = build_plan(ServiceOptions())
        assert plan.step_names == ["wan:ether1"]

    def test_hotspot_plan(self):
        plan = build_plan(ServiceOptions(hotspot_enabled=True, ssid="Cafe", wifi_passphrase="supersecret"))
        names = plan.step_names
        assert "ip-pool:hotspot-pool" in names
        assert "hotspot-server:hotspot1" in names
        assert "wireless:wlan1" in names
        user_profiles = [s for s in plan.ordered() if s.resource_type == ResourceType.HOTSPOT_USER_PROFILE]
        assert len(user_profiles) == len(HOTSPOT_TIERS) + 2
        assert [s.resource.name for s in user_profiles[-2:]] == ["admin-unlimited", "trial-15min"]

    def test_pppoe_plan(self):
        plan = build_plan(ServiceOptions(pppoe_enabled=True))
        ppp_profiles = [s for s in plan.ordered() if s.resource_type == ResourceType.PPP_PROFILE]
        assert len(ppp_profiles) == len(PPP_TIERS)
        assert "pppoe-server:pppoe-service" in plan.step_names
        assert "hotspot-server:hotspot1" not in plan.step_names

    def test_capabilities_limit_services(self):
        services = ServiceOptions(hotspot_enabled=True, pppoe_enabled=True, ssid="Cafe", wifi_passphrase="supersecret")
        plan = build_plan(services, Capabilities(pppoe=False, wireless=False))
        names = plan.step_names
        assert "pppoe-server:pppoe-service" not in names
        assert "wireless:wlan1" not in names
        assert "bridge-port:hotspot-bridge-wlan1" not in names
        assert "bridge-port:hotspot-bridge-ether2" in names

    def test_custom_tiers(self):
        tiers = [("day-pass", "1d", "30m", "1", "5M/10M")]
        plan = build_plan(ServiceOptions(hotspot_enabled=True), tiers=tiers, special_profiles=[])
        user_profiles = [s for s in plan.ordered() if s.resource_type == ResourceType.HOTSPOT_USER_PROFILE]
        assert [s.resource.name for s in user_profiles] == ["day-pass"]
        assert user_profiles[0].resource.rate_limit == "5M/10M"

    def test_every_tier_allows_one_session(self):
        plan = build_plan(ServiceOptions(hotspot_enabled=True))
        user_profiles = [s.resource for s in plan if s.resource_type == ResourceType.HOTSPOT_USER_PROFILE]
        assert {profile.shared_users for profile in user_profiles} == {"1"}
