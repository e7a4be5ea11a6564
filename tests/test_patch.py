"""Tests for the patch helper."""

from __future__ import annotations

import pytest

from factories import make_azure_machine
from machine_operator.models import MACHINE_FINALIZER, AzureMachine
from machine_operator.patch import PatchHelper
from machine_operator.store import ConflictError, MemoryResourceStore


class TestCalculatePatch:
    """Tests for computing the patch body."""

    def test_unchanged_object(self) -> None:
        """Test that an untouched object yields an empty patch."""
        machine = make_azure_machine()
        helper = PatchHelper(machine, MemoryResourceStore())

        assert helper.calculate_patch(machine) == {}

    def test_status_and_finalizers(self) -> None:
        """Test that only finalizers and status are included."""
        machine = make_azure_machine()
        helper = PatchHelper(machine, MemoryResourceStore())
        machine.metadata.finalizers.append(MACHINE_FINALIZER)
        machine.status.ready = True
        machine.spec.vm_size = "Standard_B2s"

        body = helper.calculate_patch(machine)

        assert set(body) == {"metadata", "status"}
        assert body["metadata"] == {"finalizers": [MACHINE_FINALIZER]}
        assert body["status"]["ready"] is True

    def test_snapshot_is_independent(self) -> None:
        """Test that mutating the object does not change the snapshot."""
        machine = make_azure_machine()
        helper = PatchHelper(machine, MemoryResourceStore())

        machine.status.task_ref = "task-1"

        assert helper.before.status.task_ref == ""  # type: ignore[attr-defined]


class TestPatch:
    """Tests for applying patches through the store."""

    @pytest.mark.asyncio
    async def test_noop_returns_none(self) -> None:
        """Test that nothing is written when nothing changed."""
        store = MemoryResourceStore()
        machine = await store.create(make_azure_machine())
        helper = PatchHelper(machine, store)

        assert await helper.patch(machine) is None
        stored = await store.get(AzureMachine, machine.key)
        assert stored.metadata.resource_version == machine.metadata.resource_version

    @pytest.mark.asyncio
    async def test_patch_writes_changes(self) -> None:
        """Test that changed status is stored."""
        store = MemoryResourceStore()
        machine = await store.create(make_azure_machine())
        helper = PatchHelper(machine, store)
        machine.status.ready = True

        patched = await helper.patch(machine)

        assert patched is not None
        assert (await store.get(AzureMachine, machine.key)).status.ready is True

    @pytest.mark.asyncio
    async def test_concurrent_write_conflicts(self) -> None:
        """Test that a write after the snapshot makes the patch fail."""
        store = MemoryResourceStore()
        machine = await store.create(make_azure_machine())
        helper = PatchHelper(machine, store)
        await store.patch(machine, {"status": {"taskRef": "task-other"}})
        machine.status.ready = True

        with pytest.raises(ConflictError):
            await helper.patch(machine)

        stored = await store.get(AzureMachine, machine.key)
        assert stored.status.ready is False
        assert stored.status.task_ref == "task-other"
