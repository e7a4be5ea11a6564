"""Tests for machine lookup and address helpers."""

from __future__ import annotations

import pytest

from factories import CLUSTER_NAME, NAMESPACE, make_azure_machine, make_machine, seed
from machine_operator.errors import NoMachineIPAddrError
from machine_operator.models import (
    CONTROL_PLANE_LABEL,
    AzureMachine,
    MachineAddress,
    MachineAddressType,
)
from machine_operator.store import MemoryResourceStore
from machine_operator.util import (
    compare_objects,
    get_azure_machine,
    get_azure_machines_in_cluster,
    get_machine_preferred_ip_address,
    get_machines_in_cluster,
    is_control_plane_machine,
    sanitize_ip_addrs,
)


def with_addresses(*addresses: tuple[MachineAddressType, str], cidr: str = "") -> AzureMachine:
    machine = make_azure_machine()
    machine.spec.network.preferred_api_server_cidr = cidr
    machine.status.addresses = [MachineAddress(type=t, address=a) for t, a in addresses]
    return machine


class TestLookups:
    """Tests for store lookups by cluster."""

    @pytest.mark.asyncio
    async def test_machines_in_cluster(self) -> None:
        """Test that only members of the cluster are listed."""
        store = MemoryResourceStore()
        await seed(store)
        other = make_azure_machine("other")
        other.metadata.labels = {}
        await store.create(other)

        machines = await get_machines_in_cluster(store, NAMESPACE, CLUSTER_NAME)
        azure_machines = await get_azure_machines_in_cluster(store, NAMESPACE, CLUSTER_NAME)

        assert [m.metadata.name for m in machines] == ["machine-0"]
        assert [m.metadata.name for m in azure_machines] == ["machine-0"]

    @pytest.mark.asyncio
    async def test_get_azure_machine(self) -> None:
        """Test fetching one AzureMachine by name."""
        store = MemoryResourceStore()
        await seed(store)

        machine = await get_azure_machine(store, NAMESPACE, "machine-0")

        assert machine.metadata.name == "machine-0"


class TestIsControlPlaneMachine:
    """Tests for control-plane detection."""

    def test_labelled(self) -> None:
        """Test that a non-empty control-plane label marks the machine."""
        assert is_control_plane_machine(make_machine(labels={CONTROL_PLANE_LABEL: "true"}))

    def test_unlabelled(self) -> None:
        """Test that machines without the label are workers."""
        assert not is_control_plane_machine(make_machine())
        assert not is_control_plane_machine(make_machine(labels={CONTROL_PLANE_LABEL: ""}))


class TestPreferredIPAddress:
    """Tests for choosing a machine's preferred address."""

    def test_first_internal_ip(self) -> None:
        """Test that without a CIDR the first internal IP wins."""
        machine = with_addresses(
            (MachineAddressType.HOSTNAME, "machine-0"),
            (MachineAddressType.INTERNAL_IP, "10.0.0.4"),
            (MachineAddressType.INTERNAL_IP, "192.168.1.4"),
        )

        assert get_machine_preferred_ip_address(machine) == "10.0.0.4"

    def test_address_in_cidr(self) -> None:
        """Test that the first internal IP inside the CIDR wins."""
        machine = with_addresses(
            (MachineAddressType.INTERNAL_IP, "10.0.0.4"),
            (MachineAddressType.INTERNAL_IP, "192.168.1.4"),
            cidr="192.168.0.0/16",
        )

        assert get_machine_preferred_ip_address(machine) == "192.168.1.4"

    def test_no_address_in_cidr(self) -> None:
        """Test that no matching address raises."""
        machine = with_addresses((MachineAddressType.INTERNAL_IP, "10.0.0.4"), cidr="192.168.0.0/16")

        with pytest.raises(NoMachineIPAddrError):
            get_machine_preferred_ip_address(machine)

    def test_no_addresses(self) -> None:
        """Test that a machine without addresses raises."""
        with pytest.raises(NoMachineIPAddrError):
            get_machine_preferred_ip_address(with_addresses())

    def test_invalid_cidr(self) -> None:
        """Test that a malformed CIDR is reported."""
        machine = with_addresses((MachineAddressType.INTERNAL_IP, "10.0.0.4"), cidr="10.0.0/abc")

        with pytest.raises(ValueError, match="preferred API server CIDR"):
            get_machine_preferred_ip_address(machine)


class TestSanitizeIPAddrs:
    """Tests for filtering unusable addresses."""

    def test_filters_unusable(self) -> None:
        """Test that loopback, link-local, unspecified and invalid addresses are dropped."""
        addrs = ["10.0.0.4", "127.0.0.1", "169.254.1.1", "fe80::1", "0.0.0.0", "bogus", "fd00::4"]

        assert sanitize_ip_addrs(addrs) == ["10.0.0.4", "fd00::4"]


class TestCompareObjects:
    """Tests for object diffs."""

    def test_equal(self) -> None:
        """Test that equal objects have no diff."""
        assert compare_objects(make_azure_machine(), make_azure_machine()) == ""

    def test_status_only(self) -> None:
        """Test that a status diff names the changed field and ignores spec."""
        before = make_azure_machine()
        after = make_azure_machine()
        after.status.ready = True
        after.spec.vm_size = "Standard_B2s"

        diff = compare_objects(before, after, status_only=True)

        assert "-ready: false" in diff
        assert "+ready: true" in diff
        assert "vmSize" not in diff
