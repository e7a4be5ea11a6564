"""Azure Compute implementation of the VM service.

VMs are created in the resource group of the AzureMachine (or of its
AzureCluster) and named after the AzureMachine. Each VM is tagged with the
UID of the owning Machine so it can be found again before its provider ID
has been recorded.

Every provider call that can take longer than a request round-trip is
started as a long-running operation, registered with the session as a task
and recorded in ``status.task_ref``. The reconcile returns immediately; the
completion notifier triggers the next reconcile when the task is done.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from azure.core.exceptions import AzureError, ResourceNotFoundError
from azure.mgmt.compute.models import (
    DiskCreateOptionTypes,
    HardwareProfile,
    ImageReference,
    LinuxConfiguration,
    NetworkInterfaceReference,
    NetworkProfile,
    OSDisk,
    OSProfile,
    SshConfiguration,
    SshPublicKey,
    StorageProfile,
)
from azure.mgmt.compute.models import VirtualMachine as ComputeVirtualMachine
from azure.mgmt.network.models import (
    NetworkInterface,
    NetworkInterfaceIPConfiguration,
    Subnet,
)

from .context import MachineContext
from .errors import InvalidProviderIDError, MachineConfigurationError, ProviderError
from .models import VirtualMachine, VirtualMachineState
from .notifier import reconcile_machine_on_task_completion, reconcile_machine_when_network_is_ready
from .providerid import convert_provider_id_to_uuid
from .tasks import reconcile_in_flight_task

logger = logging.getLogger(__name__)

MACHINE_UID_TAG = "machine-uid"
CLUSTER_NAME_TAG = "cluster-name"

_POWER_STATE_PREFIX = "PowerState/"
_POWER_STATE_RUNNING = "running"
_POWER_STATES_TRANSITIONING = frozenset({"starting", "stopping", "deallocating"})
_PROVISIONING_STATES_PENDING = frozenset({"creating", "updating", "deleting", "migrating"})


def nic_name(vm_name: str, index: int) -> str:
    return f"{vm_name}-nic-{index}"


def os_disk_name(vm_name: str) -> str:
    return f"{vm_name}-osdisk"


def power_state(instance_view: Any) -> str:
    """Extract the power state ("running", "deallocated", ...) from an instance view."""
    for status in getattr(instance_view, "statuses", None) or []:
        code = status.code or ""
        if code.startswith(_POWER_STATE_PREFIX):
            return code[len(_POWER_STATE_PREFIX) :]
    return ""


def provisioning_error(instance_view: Any) -> str:
    """Return the message of the first failed provisioning status, if any."""
    for status in getattr(instance_view, "statuses", None) or []:
        if (status.code or "").lower() == "provisioningstate/failed":
            return status.message or status.display_status or "provisioning failed"
    return ""


class AzureVMService:
    """Creates, powers on and destroys Azure VMs for AzureMachines."""

    async def _call(self, ctx: MachineContext, operation: str, fn: Any) -> Any:
        loop = asyncio.get_event_loop()
        try:
            return await loop.run_in_executor(None, fn)
        except AzureError as e:
            raise ProviderError(operation, str(ctx), e) from e

    async def reconcile_vm(self, ctx: MachineContext) -> VirtualMachine:
        """Drive the VM towards running and return what was observed.

        Returns a pending view while any task is in flight or was just
        started, an error view if Azure failed to provision the VM, and a
        ready view once the VM is running.
        """
        vm = VirtualMachine(name=ctx.azure_machine.metadata.name)

        if await reconcile_in_flight_task(ctx):
            return vm

        try:
            sdk_vm = await self.find_vm(ctx)
            if sdk_vm is None:
                await self.create_vm(ctx)
                return vm

            instance_view = await self._call(
                ctx,
                "get instance view",
                lambda: ctx.session.compute.virtual_machines.instance_view(
                    ctx.resource_group, sdk_vm.name
                ),
            )

            error = provisioning_error(instance_view)
            if error or (sdk_vm.provisioning_state or "").lower() == "failed":
                return vm.model_copy(
                    update={
                        "state": VirtualMachineState.ERROR,
                        "native_id": sdk_vm.vm_id or "",
                        "error_message": error or "provisioning failed",
                    }
                )

            if (sdk_vm.provisioning_state or "").lower() in _PROVISIONING_STATES_PENDING:
                logger.debug(
                    "VM is still provisioning",
                    extra={**ctx.log_fields, "provisioning_state": sdk_vm.provisioning_state},
                )
                return vm

            state = power_state(instance_view)
            if state in _POWER_STATES_TRANSITIONING:
                logger.debug("VM power state is changing", extra={**ctx.log_fields, "power_state": state})
                return vm
            if state != _POWER_STATE_RUNNING:
                await self.power_on_vm(ctx, sdk_vm.name)
                return vm

            network = await self._call(
                ctx, "get network status", lambda: ctx.session.get_network_status(sdk_vm)
            )
            return vm.model_copy(
                update={
                    "state": VirtualMachineState.READY,
                    "native_id": sdk_vm.vm_id or "",
                    "network": network,
                }
            )
        finally:
            await reconcile_machine_on_task_completion(ctx)

    async def destroy_vm(self, ctx: MachineContext) -> VirtualMachine:
        """Start deleting the VM; report notfound once it is gone."""
        vm = VirtualMachine(name=ctx.azure_machine.metadata.name)

        if await reconcile_in_flight_task(ctx):
            return vm

        try:
            sdk_vm = await self.find_vm(ctx)
            if sdk_vm is None:
                await self.delete_leftovers(ctx)
                return vm.model_copy(update={"state": VirtualMachineState.NOT_FOUND})

            await self.delete_vm(ctx, sdk_vm.name)
            return vm
        finally:
            await reconcile_machine_on_task_completion(ctx)

    async def find_vm(self, ctx: MachineContext) -> ComputeVirtualMachine | None:
        """Find the machine's VM by provider ID, or by Machine UID tag.

        Raises:
            InvalidProviderIDError: If a recorded provider ID is malformed.
        """
        provider_id = ctx.azure_machine.status.provider_id or ctx.azure_machine.spec.provider_id
        vm_id = ""
        if provider_id:
            vm_id = convert_provider_id_to_uuid(provider_id)
            if not vm_id:
                raise InvalidProviderIDError(f"invalid provider ID {provider_id!r} for {ctx}")

        resource_group = ctx.resource_group
        compute = ctx.session.compute

        def find() -> ComputeVirtualMachine | None:
            try:
                vms = list(compute.virtual_machines.list(resource_group))
            except ResourceNotFoundError:
                return None
            for candidate in vms:
                if vm_id:
                    if (candidate.vm_id or "").lower() == vm_id.lower():
                        return candidate
                elif (candidate.tags or {}).get(MACHINE_UID_TAG) == ctx.machine.metadata.uid:
                    return candidate
            return None

        found = await self._call(ctx, "find vm", find)
        if found is None:
            logger.debug(
                "VM not found",
                extra={**ctx.log_fields, "resource_group": resource_group, "vm_id": vm_id},
            )
        return found

    def _nic_parameters(self, ctx: MachineContext, tags: dict[str, str]) -> list[NetworkInterface]:
        devices = ctx.azure_machine.spec.network.devices
        if not devices:
            raise MachineConfigurationError(f"no network devices configured for {ctx}")

        nics = []
        for device in devices:
            static = not device.dhcp4 and bool(device.ip_addrs)
            ip_config = NetworkInterfaceIPConfiguration(
                name="ipconfig1",
                primary=True,
                subnet=Subnet(id=device.subnet_id),
                private_ip_allocation_method="Static" if static else "Dynamic",
                private_ip_address=device.ip_addrs[0] if static else None,
            )
            nics.append(
                NetworkInterface(location=ctx.location, ip_configurations=[ip_config], tags=tags)
            )
        return nics

    def _vm_parameters(
        self, ctx: MachineContext, nic_ids: list[str], tags: dict[str, str]
    ) -> ComputeVirtualMachine:
        spec = ctx.azure_machine.spec
        vm_name = ctx.azure_machine.metadata.name

        if spec.image.id:
            image = ImageReference(id=spec.image.id)
        else:
            image = ImageReference(
                publisher=spec.image.publisher,
                offer=spec.image.offer,
                sku=spec.image.sku,
                version=spec.image.version,
            )

        linux_configuration = None
        if spec.ssh_public_key:
            linux_configuration = LinuxConfiguration(
                disable_password_authentication=True,
                ssh=SshConfiguration(
                    public_keys=[
                        SshPublicKey(
                            path=f"/home/{spec.admin_username}/.ssh/authorized_keys",
                            key_data=spec.ssh_public_key,
                        )
                    ]
                ),
            )

        return ComputeVirtualMachine(
            location=ctx.location,
            tags=tags,
            hardware_profile=HardwareProfile(vm_size=spec.vm_size),
            storage_profile=StorageProfile(
                image_reference=image,
                os_disk=OSDisk(
                    name=os_disk_name(vm_name),
                    create_option=DiskCreateOptionTypes.FROM_IMAGE,
                    disk_size_gb=spec.os_disk_size_gb,
                    delete_option="Delete",
                ),
            ),
            os_profile=OSProfile(
                computer_name=vm_name,
                admin_username=spec.admin_username,
                # Bootstrap data is already base64 encoded
                custom_data=ctx.machine.spec.bootstrap.data,
                linux_configuration=linux_configuration,
            ),
            network_profile=NetworkProfile(
                network_interfaces=[
                    NetworkInterfaceReference(id=nic_id, primary=i == 0, delete_option="Delete")
                    for i, nic_id in enumerate(nic_ids)
                ]
            ),
        )

    async def create_vm(self, ctx: MachineContext) -> str:
        """Create the VM's NICs, then start creating the VM.

        Returns:
            The task reference recorded in the machine's status.
        """
        vm_name = ctx.azure_machine.metadata.name
        resource_group = ctx.resource_group
        tags = {
            MACHINE_UID_TAG: ctx.machine.metadata.uid,
            CLUSTER_NAME_TAG: ctx.cluster.metadata.name,
        }
        nic_params = self._nic_parameters(ctx, tags)
        network = ctx.session.network

        def create_nics() -> list[str]:
            nic_ids = []
            for i, params in enumerate(nic_params):
                poller = network.network_interfaces.begin_create_or_update(
                    resource_group, nic_name(vm_name, i), params
                )
                nic_ids.append(poller.result().id)
            return nic_ids

        nic_ids = await self._call(ctx, "create network interfaces", create_nics)
        vm_params = self._vm_parameters(ctx, nic_ids, tags)

        logger.info(
            "Creating VM",
            extra={**ctx.log_fields, "resource_group": resource_group, "vm_size": vm_params.hardware_profile.vm_size},
        )
        poller = await self._call(
            ctx,
            "create vm",
            lambda: ctx.session.compute.virtual_machines.begin_create_or_update(
                resource_group, vm_name, vm_params
            ),
        )
        return self._record_task(ctx, poller, "CreateVM", vm_name)

    async def power_on_vm(self, ctx: MachineContext, vm_name: str) -> str:
        """Start powering on the VM and wait in the background for its network."""
        logger.info("Powering on VM", extra=ctx.log_fields)
        poller = await self._call(
            ctx,
            "power on vm",
            lambda: ctx.session.compute.virtual_machines.begin_start(ctx.resource_group, vm_name),
        )
        task_ref = self._record_task(ctx, poller, "PowerOnVM", vm_name)
        reconcile_machine_when_network_is_ready(ctx, vm_name, task_ref)
        return task_ref

    async def delete_vm(self, ctx: MachineContext, vm_name: str) -> str:
        """Start deleting the VM. Its NICs and OS disk are deleted with it."""
        logger.info("Deleting VM", extra=ctx.log_fields)
        poller = await self._call(
            ctx,
            "delete vm",
            lambda: ctx.session.compute.virtual_machines.begin_delete(ctx.resource_group, vm_name),
        )
        return self._record_task(ctx, poller, "DeleteVM", vm_name)

    async def delete_leftovers(self, ctx: MachineContext) -> None:
        """Delete NICs left behind by a create that never produced a VM."""
        vm_name = ctx.azure_machine.metadata.name
        resource_group = ctx.resource_group
        network = ctx.session.network
        count = len(ctx.azure_machine.spec.network.devices)

        def delete_nics() -> None:
            for i in range(count):
                network.network_interfaces.begin_delete(resource_group, nic_name(vm_name, i)).result()

        await self._call(ctx, "delete network interfaces", delete_nics)

    def _record_task(self, ctx: MachineContext, poller: Any, name: str, vm_name: str) -> str:
        task_ref = ctx.session.track(
            poller,
            name=name,
            entity_name=vm_name,
            description_id=f"VirtualMachine.{name}",
        )
        ctx.azure_machine.status.task_ref = task_ref
        logger.info("Started task", extra={**ctx.log_fields, "task_ref": task_ref, "task_name": name})
        return task_ref
