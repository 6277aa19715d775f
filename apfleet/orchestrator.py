"""Provisioning orchestrator: push a plan of idempotent steps to one device."""

import logging
from typing import Any, Dict, List, Optional

from .client import DeviceClient
from .connection import ConnectionMode, ConnectionResolver, ConnectionTarget
from .errors import (
    AuthenticationError,
    DeviceConnectionError,
    FleetError,
    InvalidRequestError,
    ProtocolError,
    StepError,
)
from .locks import DeviceLockRegistry
from .models import (
    DeployedConfig,
    Device,
    DeviceStatus,
    FailedStep,
    ProvisioningResult,
    utcnow,
)
from .plan import DEFAULT_MAX_PLAN_STEPS, Plan
from .steps import StepAction, StepExecutor, StepOutcome
from .store import DeviceStore

logger = logging.getLogger(__name__)

SKIPPED_AFTER_AUTH_FAILURE = "skipped: device rejected credentials earlier in this run"


def _describe(exc: Exception) -> str:
    if isinstance(exc, StepError):
        return exc.message
    return str(exc) or type(exc).__name__


class Provisioner:
    """Executes configuration plans against devices.

    Steps run sequentially in dependency order. A failing step is recorded
    and the run continues; only losing the device at the initial
    connectivity check, rejected credentials at that check, or invalid input
    abort the whole operation.
    """

    def __init__(
        self,
        client: DeviceClient,
        resolver: ConnectionResolver,
        store: DeviceStore,
        locks: DeviceLockRegistry,
        executor: Optional[StepExecutor] = None,
        connection_mode: ConnectionMode = ConnectionMode.DEFAULT,
        max_plan_steps: int = DEFAULT_MAX_PLAN_STEPS,
    ):
        self.client = client
        self.resolver = resolver
        self.store = store
        self.locks = locks
        self.executor = executor or StepExecutor()
        self.connection_mode = connection_mode
        self.max_plan_steps = max_plan_steps

    async def provision(self, device: Device, plan: Plan) -> ProvisioningResult:
        """Apply every step of `plan` to the device and persist the outcome."""
        if len(plan) > self.max_plan_steps:
            raise InvalidRequestError(
                f"Plan has {len(plan)} steps, more than the allowed {self.max_plan_steps}"
            )

        async with self.locks.hold(device.id, "provision"):
            logger.info(f"[{device.id}] Provisioning {len(plan)} steps")
            result = await self._run(device, plan)
            await self._persist(device.id, result, plan=plan)

        self._log_result(result)
        return result

    async def retry_failed_steps(self, device: Device) -> ProvisioningResult:
        """Re-run only the steps that failed last time, against the stored plan.

        Returns the merged view of the whole plan: steps completed earlier
        stay completed, and the failed list holds only what still fails.
        """
        async with self.locks.hold(device.id, "retry"):
            current = await self.store.get_device(device.id)
            status = current.configuration_status or {}
            failed_names = [record["step"] for record in status.get("failed_steps", [])]
            if not failed_names:
                raise InvalidRequestError(f"Device {device.id} has no failed steps to retry")
            if not current.last_plan:
                raise InvalidRequestError(f"Device {device.id} has no stored plan to retry against")

            plan = Plan.from_records(
                current.last_plan,
                max_steps=self.max_plan_steps,
                unseal=self.resolver.codec.decrypt,
            )
            known = set(plan.step_names)
            unknown = [name for name in failed_names if name not in known]
            retry_plan = plan.subset(name for name in failed_names if name in known)
            if not len(retry_plan):
                raise InvalidRequestError(
                    f"None of the failed steps of {device.id} are in the stored plan"
                )

            logger.info(f"[{device.id}] Retrying {len(retry_plan)} failed steps")
            run = await self._run(current, retry_plan)
            for name in unknown:
                run.warnings.append(f"{name} is no longer part of the stored plan and was not retried")

            result = self._merge(status, run)
            await self._persist(device.id, result)

        self._log_result(result)
        return result

    async def _connect(self, device: Device) -> ConnectionTarget:
        """Resolve the device and run the connectivity check.

        Failures here are fatal to the run and update the device status.
        """
        try:
            target = self.resolver.resolve(device, self.connection_mode)
            system = await self.client.get_system_resource(target)
        except DeviceConnectionError as exc:
            logger.error(f"[{device.id}] Device unreachable: {exc}")
            await self.store.update_device_fields(device.id, {
                "status": DeviceStatus.OFFLINE,
                "health.last_error": str(exc),
            })
            raise
        except (AuthenticationError, ProtocolError) as exc:
            logger.error(f"[{device.id}] Connectivity check failed: {exc}")
            await self.store.update_device_fields(device.id, {
                "status": DeviceStatus.ERROR,
                "health.last_error": str(exc),
            })
            raise

        await self.store.update_device_fields(device.id, {
            "health.version": system.get("version"),
            "health.board_name": system.get("board-name"),
            "health.last_seen": utcnow(),
        })
        return target

    async def _run(self, device: Device, plan: Plan) -> ProvisioningResult:
        result = ProvisioningResult(success=False, device_id=device.id, started_at=utcnow())
        target = await self._connect(device)

        steps = plan.ordered()
        for index, step in enumerate(steps):
            try:
                outcome = await self.executor.apply(self.client, target, step, device.id)
            except AuthenticationError as exc:
                logger.error(f"[{device.id}] {step.name} failed: {exc}; skipping remaining steps")
                result.failed_steps.append(FailedStep(step.name, _describe(exc)))
                result.failed_steps.extend(
                    FailedStep(remaining.name, SKIPPED_AFTER_AUTH_FAILURE)
                    for remaining in steps[index + 1:]
                )
                break
            except FleetError as exc:
                logger.error(f"[{device.id}] {step.name} failed: {_describe(exc)}")
                result.failed_steps.append(FailedStep(step.name, _describe(exc)))
                continue

            result.completed_steps.append(step.name)
            if outcome.action == StepAction.PATCHED:
                result.warnings.append(f"{step.name}: existing object {outcome.object_id} was updated")
            await self._record_descriptor(device.id, outcome)

        result.completed_at = utcnow()
        result.success = not result.failed_steps
        if result.success:
            result.configured_at = result.completed_at
        return result

    async def _record_descriptor(self, device_id: str, outcome: StepOutcome) -> None:
        """Track the object a step produced.

        A created object replaces any previous descriptor of the same name.
        An object that already satisfied the step is only tracked when
        nothing tracks it yet.
        """
        descriptor = DeployedConfig(
            device_id=device_id,
            resource_type=outcome.resource.kind,
            name=outcome.resource.canonical_name,
            object_id=outcome.object_id,
            attributes=outcome.resource.to_wire(redact=True),
        )
        written = await self.store.record_descriptor(descriptor, replace=outcome.created)
        if written and not outcome.created:
            logger.debug(f"[{device_id}] Tracking existing {descriptor.resource_type.value}/{descriptor.name}")

    def _merge(self, previous: Dict[str, Any], run: ProvisioningResult) -> ProvisioningResult:
        completed: List[str] = list(previous.get("completed_steps", []))
        completed.extend(name for name in run.completed_steps if name not in completed)
        success = not run.failed_steps
        return ProvisioningResult(
            success=success,
            device_id=run.device_id,
            completed_steps=completed,
            failed_steps=list(run.failed_steps),
            warnings=list(run.warnings),
            configured_at=run.completed_at if success else None,
            started_at=run.started_at,
            completed_at=run.completed_at,
        )

    async def _persist(self, device_id: str, result: ProvisioningResult, plan: Optional[Plan] = None) -> None:
        fields: Dict[str, Any] = {
            "configuration_status": result.to_status(),
            "status": DeviceStatus.ONLINE if result.success else DeviceStatus.WARNING,
        }
        if plan is not None:
            fields["last_plan"] = plan.to_records(seal=self.resolver.codec.encrypt)
        await self.store.update_device_fields(device_id, fields)
        await self.store.add_audit_entry(device_id, "provision" if plan is not None else "retry", {
            "completed_steps": len(result.completed_steps),
            "failed_steps": result.failed_step_names,
            "warnings": len(result.warnings),
        })

    @staticmethod
    def _log_result(result: ProvisioningResult) -> None:
        if result.success:
            logger.info(f"[{result.device_id}] Provisioning complete: {result.summary()}")
        else:
            logger.warning(
                f"[{result.device_id}] Provisioning incomplete: {result.summary()}; "
                f"failed: {', '.join(result.failed_step_names)}"
            )
