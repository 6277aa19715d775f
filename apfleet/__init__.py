"""
AP Fleet Provisioner

Desired-state provisioning and drift reconciliation for RouterOS access
points managed over the REST API:
- Ordered, idempotent configuration plans (WAN, bridge, wireless, DHCP,
  NAT, PPPoE, hotspot and user-class profiles)
- Per-device serialization of provisioning and reconciliation runs
- Identifier-first drift detection against deployed-configuration records
"""

__version__ = "0.1.0"
