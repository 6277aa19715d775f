"""Execution of a single idempotent configuration step."""

import dataclasses
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .client import DeviceClient
from .connection import ConnectionTarget
from .errors import StepError
from .plan import ConfigurationStep
from .resources import HotspotProfile, HotspotUserProfile, Resource, WirelessSecurityProfile

logger = logging.getLogger(__name__)

MIN_PASSPHRASE_LENGTH = 8


class StepAction(str, Enum):
    CREATED = "created"
    PATCHED = "patched"
    UNCHANGED = "unchanged"


@dataclass
class StepOutcome:
    """What a step did on the device."""
    step: str
    action: StepAction
    object_id: str
    resource: Resource

    @property
    def created(self) -> bool:
        return self.action == StepAction.CREATED


def enforce_security_policy(step: ConfigurationStep) -> Resource:
    """Return the step's resource with the non-negotiable security settings applied.

    Whatever the plan requested, hotspot and user-class profiles allow one
    session per credential, and hotspot logins are CHAP only behind the
    transparent proxy. Wireless security profiles are WPA2-PSK/AES with a
    passphrase of at least eight characters.
    """
    resource = step.resource
    if isinstance(resource, HotspotProfile):
        return dataclasses.replace(
            resource,
            login_by="http-chap",
            shared_users="1",
            transparent_proxy=True,
        )
    if isinstance(resource, HotspotUserProfile):
        return dataclasses.replace(resource, shared_users="1")
    if isinstance(resource, WirelessSecurityProfile):
        passphrase = resource.wpa2_pre_shared_key or ""
        if len(passphrase) < MIN_PASSPHRASE_LENGTH:
            raise StepError(
                step.name,
                f"WPA2 passphrase must be at least {MIN_PASSPHRASE_LENGTH} characters",
            )
        return dataclasses.replace(
            resource,
            mode="dynamic-keys",
            authentication_types="wpa2-psk",
            unicast_ciphers="aes-ccm",
            group_ciphers="aes-ccm",
        )
    return resource


class StepExecutor:
    """Check-then-act application of one step.

    Not atomic on the device side: callers must hold the device lock.
    """

    async def apply(
        self,
        client: DeviceClient,
        target: ConnectionTarget,
        step: ConfigurationStep,
        device_id: Optional[str] = None,
    ) -> StepOutcome:
        prefix = f"[{device_id}] " if device_id else ""
        resource = enforce_security_policy(step)
        resource_cls = type(resource)

        existing = None
        for obj in await client.list_objects(target, resource_cls):
            if obj.resource.match_key() == resource.match_key():
                existing = obj
                break

        if existing is not None:
            diff = resource.differences(existing.resource)
            if not diff:
                logger.debug(f"{prefix}{step.name} already satisfied by {existing.id}")
                return StepOutcome(step.name, StepAction.UNCHANGED, existing.id, resource)
            logger.info(f"{prefix}{step.name}: patching {', '.join(sorted(diff))} on {existing.id}")
            await client.update(target, resource_cls, existing.id, diff)
            return StepOutcome(step.name, StepAction.PATCHED, existing.id, resource)

        if not resource_cls.creatable:
            raise StepError(
                step.name,
                f"{resource.kind.value} '{resource.canonical_name}' does not exist on the device",
            )

        object_id = await client.create(target, resource)
        logger.info(f"{prefix}{step.name}: created {object_id}")
        return StepOutcome(step.name, StepAction.CREATED, object_id, resource)
