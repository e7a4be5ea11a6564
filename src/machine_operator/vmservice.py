"""VM service interface and the registry of provider variants.

A VM service is selected by a provider descriptor (``PROVIDER``), not by
subclassing. New variants register a factory under their descriptor.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Protocol

from .azure_vm import AzureVMService
from .context import MachineContext
from .models import VirtualMachine


class VirtualMachineService(Protocol):
    """Provider operations used by the machine lifecycle."""

    async def reconcile_vm(self, ctx: MachineContext) -> VirtualMachine:
        """Create or power on the machine's VM and return its current view."""
        ...

    async def destroy_vm(self, ctx: MachineContext) -> VirtualMachine:
        """Delete the machine's VM; the view is notfound once it is gone."""
        ...


VM_SERVICES: dict[str, Callable[[], VirtualMachineService]] = {
    "azure": AzureVMService,
}


def register_vm_service(descriptor: str, factory: Callable[[], VirtualMachineService]) -> None:
    VM_SERVICES[descriptor] = factory


def get_vm_service(descriptor: str) -> VirtualMachineService:
    """Build the VM service registered for a provider descriptor.

    Raises:
        ValueError: If no service is registered for the descriptor.
    """
    factory = VM_SERVICES.get(descriptor)
    if factory is None:
        raise ValueError(
            f"unknown provider {descriptor!r}; registered providers: {sorted(VM_SERVICES)}"
        )
    return factory()
