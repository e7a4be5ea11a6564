"""Reconciliation of AzureMachine resources.

Each call to ``MachineReconciler.reconcile``:
1. Fetches the AzureMachine and the Machine, Cluster and AzureCluster it
   belongs to
2. Gets (or creates) the provider session for the AzureCluster
3. Runs the delete path or the normal path of the machine lifecycle
4. Always patches finalizers and status back to the store, guarded by the
   resource version read in step 1

Reconciles are level-triggered and idempotent: nothing is carried over from
a previous reconcile except what is stored in the AzureMachine itself.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

import yaml
from azure.core.exceptions import AzureError

from .context import ControllerContext, MachineContext
from .errors import (
    InvalidNativeIDError,
    NetworkCountMismatchError,
    NoMachineIPAddrError,
    PatchError,
    ProviderError,
)
from .models import (
    CLUSTER_API_GROUP,
    CLUSTER_NAME_LABEL,
    DEBUG_ANNOTATION,
    MACHINE_FINALIZER,
    AzureCluster,
    AzureMachine,
    Cluster,
    Machine,
    MachineAddress,
    MachineAddressType,
    ObjectKey,
    Resource,
    VirtualMachine,
    VirtualMachineState,
)
from .patch import PatchHelper
from .providerid import convert_uuid_to_provider_id
from .store import NotFoundError, ResourceStore, StoreError
from .util import compare_objects, get_azure_machine, get_machine_preferred_ip_address
from .vmservice import VirtualMachineService, get_vm_service

logger = logging.getLogger(__name__)


@dataclass
class ReconcileResult:
    """Outcome of a successful reconcile.

    ``requeue_after`` asks the controller to reconcile the key again after
    the given number of seconds. Errors are raised, not returned.
    """

    requeue_after: float | None = None


def has_debug_annotation(obj: Resource) -> bool:
    return DEBUG_ANNOTATION in obj.metadata.annotations


def debug_dump(title: str, obj: Resource) -> None:
    """Log a YAML dump of an object carrying the debug annotation."""
    if not has_debug_annotation(obj):
        return
    logger.info(
        title,
        extra={
            "object": str(obj),
            "dump": yaml.safe_dump(obj.model_dump(by_alias=True, mode="json", exclude_none=True)),
        },
    )


class MachineReconciler:
    """Reconciles AzureMachines against Azure VMs."""

    def __init__(
        self,
        controller: ControllerContext,
        vm_service: VirtualMachineService | None = None,
    ) -> None:
        self.controller = controller
        self.vm_service = vm_service or get_vm_service(controller.config.provider)

    @property
    def store(self) -> ResourceStore:
        return self.controller.store

    async def reconcile(self, key: ObjectKey) -> ReconcileResult:
        """Reconcile one AzureMachine.

        Raises:
            MachineOperatorError: On configuration or provider errors and when
                the status patch fails; the controller retries with backoff.
            StoreError: If the store fails for a reason other than not found.
        """
        try:
            azure_machine = await get_azure_machine(self.store, key.namespace, key.name)
        except NotFoundError:
            logger.info("AzureMachine not found, won't reconcile", extra={"key": str(key)})
            return ReconcileResult()
        debug_dump("AzureMachine on entry", azure_machine)

        machine = await self._get_owner_machine(azure_machine)
        if machine is None:
            logger.info(
                "Waiting for Machine controller to set owner reference",
                extra={"key": str(key)},
            )
            return ReconcileResult()

        cluster = await self._get_cluster(machine)
        if cluster is None:
            logger.info(
                "Machine is missing cluster label or cluster does not exist",
                extra={"key": str(key), "machine": machine.metadata.name},
            )
            return ReconcileResult()

        azure_cluster = await self._get_azure_cluster(azure_machine, cluster)
        if azure_cluster is None:
            logger.info("Waiting for AzureCluster", extra={"key": str(key)})
            return ReconcileResult()

        try:
            session = await self.controller.session_cache.get_or_create(
                azure_cluster.spec.endpoint,
                azure_cluster.spec.subscription_id,
                self.controller.config.azure_client_id,
            )
        except AzureError as e:
            raise ProviderError("create provider session", str(azure_machine), e) from e

        ctx = MachineContext(
            controller=self.controller,
            cluster=cluster,
            azure_cluster=azure_cluster,
            machine=machine,
            azure_machine=azure_machine,
            session=session,
            patch_helper=PatchHelper(azure_machine, self.store),
        )

        logger.debug(
            "Task ref on entry",
            extra={**ctx.log_fields, "task_ref": azure_machine.status.task_ref},
        )

        failed = True
        try:
            if azure_machine.is_deleting:
                result = await self.reconcile_delete(ctx)
            else:
                result = await self.reconcile_normal(ctx)
            failed = False
            return result
        finally:
            logger.debug(
                "Task ref on exit",
                extra={**ctx.log_fields, "task_ref": ctx.azure_machine.status.task_ref},
            )
            await self._patch(ctx, raise_errors=not failed)

    async def _get_owner_machine(self, azure_machine: AzureMachine) -> Machine | None:
        for ref in azure_machine.metadata.owner_references:
            if ref.kind != Machine.KIND or ref.api_version.split("/")[0] != CLUSTER_API_GROUP:
                continue
            try:
                return await self.store.get(
                    Machine, ObjectKey(azure_machine.metadata.namespace, ref.name)
                )
            except NotFoundError:
                return None
        return None

    async def _get_cluster(self, machine: Machine) -> Cluster | None:
        cluster_name = machine.metadata.labels.get(CLUSTER_NAME_LABEL)
        if not cluster_name:
            return None
        try:
            return await self.store.get(Cluster, ObjectKey(machine.metadata.namespace, cluster_name))
        except NotFoundError:
            return None

    async def _get_azure_cluster(
        self, azure_machine: AzureMachine, cluster: Cluster
    ) -> AzureCluster | None:
        ref = cluster.spec.infrastructure_ref
        if ref is None or not ref.name:
            return None
        try:
            return await self.store.get(
                AzureCluster, ObjectKey(azure_machine.metadata.namespace, ref.name)
            )
        except NotFoundError:
            return None

    async def _patch(self, ctx: MachineContext, *, raise_errors: bool) -> None:
        """Patch the AzureMachine and verify the patch landed.

        A patch failure is raised only when the reconcile itself succeeded;
        otherwise it is logged and the reconcile's own error wins.
        """
        try:
            patched = await ctx.patch()
        except StoreError as e:
            logger.error(
                "Patch failed",
                extra={**ctx.log_fields, "error": str(e), "error_type": type(e).__name__},
            )
            if raise_errors:
                raise PatchError(f"failed to patch {ctx}: {e}") from e
            return

        debug_dump("AzureMachine on exit", ctx.azure_machine)
        if patched is not None:
            await self._verify_patch(ctx)

    async def _verify_patch(self, ctx: MachineContext) -> None:
        """Poll the store until it returns a version newer than the snapshot.

        Diagnostic only: running out of attempts is logged, never raised.
        """
        config = self.controller.config
        local = ctx.azure_machine
        local_version = ctx.patch_helper.resource_version

        for attempt in range(1, config.patch_verify_attempts + 1):
            try:
                remote = await self.store.get(AzureMachine, local.key)
            except NotFoundError:
                return
            except StoreError as e:
                logger.warning(
                    "Failed to get AzureMachine while verifying patch",
                    extra={**ctx.log_fields, "attempt": attempt, "error": str(e)},
                )
                await asyncio.sleep(config.patch_verify_interval_seconds)
                continue

            fields = {
                **ctx.log_fields,
                "local_resource_version": local_version,
                "remote_resource_version": remote.metadata.resource_version,
            }
            if remote.metadata.resource_version != local_version:
                logger.debug("Resource is patched", extra=fields)
                debug_dump("AzureMachine in store on exit", remote)
                return

            logger.info("Resource is not patched", extra={**fields, "attempt": attempt})
            if has_debug_annotation(local):
                diff = compare_objects(local, remote, status_only=True)
                if diff:
                    logger.info("Status drift", extra={**ctx.log_fields, "diff": diff})
            await asyncio.sleep(config.patch_verify_interval_seconds)

        if config.patch_verify_attempts:
            logger.warning(
                "Patch not observed in store",
                extra={**ctx.log_fields, "attempts": config.patch_verify_attempts},
            )

    async def reconcile_delete(self, ctx: MachineContext) -> ReconcileResult:
        """Destroy the VM, then release the finalizer once it is gone."""
        logger.info("Handling deleted AzureMachine", extra=ctx.log_fields)

        vm = await self.vm_service.destroy_vm(ctx)
        if vm.state != VirtualMachineState.NOT_FOUND:
            logger.info(
                "VM state is not reconciled",
                extra={
                    **ctx.log_fields,
                    "expected_vm_state": VirtualMachineState.NOT_FOUND.value,
                    "actual_vm_state": vm.state.value,
                },
            )
            return ReconcileResult()

        ctx.azure_machine.metadata.finalizers = [
            f for f in ctx.azure_machine.metadata.finalizers if f != MACHINE_FINALIZER
        ]
        logger.info("VM deleted, finalizer removed", extra=ctx.log_fields)
        return ReconcileResult()

    async def reconcile_normal(self, ctx: MachineContext) -> ReconcileResult:
        """Drive the VM towards ready and mirror what was observed into status."""
        azure_machine = ctx.azure_machine

        if azure_machine.has_error:
            logger.info(
                "Error state detected, skipping reconciliation",
                extra={
                    **ctx.log_fields,
                    "error_reason": azure_machine.status.error_reason,
                    "error_message": azure_machine.status.error_message,
                },
            )
            return ReconcileResult()

        if MACHINE_FINALIZER not in azure_machine.metadata.finalizers:
            azure_machine.metadata.finalizers.append(MACHINE_FINALIZER)

        if not ctx.cluster.status.infrastructure_ready:
            logger.info("Cluster infrastructure is not ready yet", extra=ctx.log_fields)
            return ReconcileResult()

        if ctx.machine.spec.bootstrap.data is None:
            logger.info("Waiting for bootstrap data to be available", extra=ctx.log_fields)
            return ReconcileResult()

        vm = await self.vm_service.reconcile_vm(ctx)

        if vm.state != VirtualMachineState.READY:
            extra = {
                **ctx.log_fields,
                "expected_vm_state": VirtualMachineState.READY.value,
                "actual_vm_state": vm.state.value,
            }
            if vm.state == VirtualMachineState.ERROR:
                logger.warning(
                    "VM state is not reconciled",
                    extra={**extra, "error_message": vm.error_message},
                )
            else:
                logger.info("VM state is not reconciled", extra=extra)
            return ReconcileResult()

        if not self.reconcile_network(ctx, vm):
            logger.info("Waiting on VM networking", extra=ctx.log_fields)
            return ReconcileResult()

        self.reconcile_provider_id(ctx, vm)

        azure_machine.status.ready = True
        try:
            preferred_ip = get_machine_preferred_ip_address(azure_machine)
        except (NoMachineIPAddrError, ValueError) as e:
            logger.warning(
                "No preferred IP address for machine",
                extra={**ctx.log_fields, "error": str(e)},
            )
            preferred_ip = ""
        logger.info(
            "AzureMachine is infrastructure-ready",
            extra={**ctx.log_fields, "preferred_ip": preferred_ip},
        )
        return ReconcileResult()

    def reconcile_network(self, ctx: MachineContext, vm: VirtualMachine) -> bool:
        """Copy the VM's network into status.

        Returns:
            True once at least one IP address is known.

        Raises:
            NetworkCountMismatchError: If the VM does not have one NIC per
                configured device.
        """
        expected = len(ctx.azure_machine.spec.network.devices)
        actual = len(vm.network)
        if expected != actual:
            raise NetworkCountMismatchError(str(ctx), expected, actual)

        ctx.azure_machine.status.network = [n.model_copy(deep=True) for n in vm.network]

        addresses = [
            MachineAddress(type=MachineAddressType.INTERNAL_IP, address=ip)
            for net in ctx.azure_machine.status.network
            for ip in net.ip_addrs
        ]
        if not addresses:
            logger.info("Waiting on IP addresses", extra=ctx.log_fields)
            return False

        ctx.azure_machine.status.addresses = addresses
        return True

    def reconcile_provider_id(self, ctx: MachineContext, vm: VirtualMachine) -> None:
        """Record the provider ID derived from the VM's ID.

        Raises:
            InvalidNativeIDError: If the VM ID is not a UUID.
        """
        provider_id = convert_uuid_to_provider_id(vm.native_id)
        if not provider_id:
            raise InvalidNativeIDError(f"invalid VM ID {vm.native_id!r} for {ctx}")
        if ctx.azure_machine.status.provider_id != provider_id:
            ctx.azure_machine.status.provider_id = provider_id
            logger.info("Updated provider ID", extra={**ctx.log_fields, "provider_id": provider_id})
