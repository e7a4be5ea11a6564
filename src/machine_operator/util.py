"""Helpers for looking up machines and reading their addresses."""

from __future__ import annotations

import difflib
import ipaddress
import logging
from typing import TYPE_CHECKING

import yaml

from .errors import NoMachineIPAddrError
from .models import (
    CLUSTER_NAME_LABEL,
    CONTROL_PLANE_LABEL,
    AzureMachine,
    Machine,
    MachineAddressType,
    ObjectKey,
    Resource,
)

if TYPE_CHECKING:
    from .store import ResourceStore

logger = logging.getLogger(__name__)


async def get_machines_in_cluster(
    store: ResourceStore, namespace: str, cluster_name: str
) -> list[Machine]:
    """List the Machines labelled as members of a cluster."""
    return await store.list(Machine, namespace, {CLUSTER_NAME_LABEL: cluster_name})


async def get_azure_machines_in_cluster(
    store: ResourceStore, namespace: str, cluster_name: str
) -> list[AzureMachine]:
    """List the AzureMachines labelled as members of a cluster."""
    return await store.list(AzureMachine, namespace, {CLUSTER_NAME_LABEL: cluster_name})


async def get_azure_machine(store: ResourceStore, namespace: str, name: str) -> AzureMachine:
    return await store.get(AzureMachine, ObjectKey(namespace, name))


def is_control_plane_machine(obj: Resource) -> bool:
    """Whether an object carries a non-empty control-plane label."""
    return bool(obj.metadata.labels.get(CONTROL_PLANE_LABEL))


def get_machine_preferred_ip_address(machine: AzureMachine) -> str:
    """Return the address other components should use to reach a machine.

    Without a preferred CIDR this is the first InternalIP address. With one,
    it is the first InternalIP address inside that CIDR.

    Raises:
        NoMachineIPAddrError: If no suitable address is reported.
        ValueError: If the preferred CIDR is malformed.
    """
    cidr = machine.spec.network.preferred_api_server_cidr
    network = None
    if cidr:
        try:
            network = ipaddress.ip_network(cidr, strict=False)
        except ValueError as e:
            raise ValueError(f"error parsing preferred API server CIDR {cidr!r}: {e}") from e

    for addr in machine.status.addresses:
        if addr.type != MachineAddressType.INTERNAL_IP:
            continue
        if network is None:
            return addr.address
        try:
            if ipaddress.ip_address(addr.address) in network:
                return addr.address
        except ValueError:
            logger.debug("Skipping unparseable address", extra={"address": addr.address})

    raise NoMachineIPAddrError(f"no IP addresses found for {machine}")


def sanitize_ip_addrs(addrs: list[str]) -> list[str]:
    """Drop loopback, link-local, unspecified and unparseable addresses."""
    valid: list[str] = []
    for addr in addrs:
        try:
            ip = ipaddress.ip_address(addr)
        except ValueError:
            logger.debug("Ignoring invalid IP address", extra={"address": addr})
            continue
        if ip.is_loopback or ip.is_link_local or ip.is_unspecified:
            continue
        valid.append(addr)
    return valid


def compare_objects(a: Resource, b: Resource, status_only: bool = False) -> str:
    """Return a unified diff of two objects' YAML dumps, or "" if equal."""

    def dump(obj: Resource) -> list[str]:
        data = obj.model_dump(by_alias=True, mode="json", exclude_none=True)
        if status_only:
            data = data.get("status", {})
        return yaml.safe_dump(data, sort_keys=True).splitlines(keepends=True)

    return "".join(difflib.unified_diff(dump(a), dump(b), fromfile="before", tofile="after"))
