"""Tests for the in-memory resource store and merge patches."""

from __future__ import annotations

import asyncio

import pytest

from factories import CLUSTER_NAME, NAMESPACE, make_azure_machine, make_cluster
from machine_operator.models import (
    CLUSTER_NAME_LABEL,
    MACHINE_FINALIZER,
    AzureMachine,
    Cluster,
    ObjectKey,
)
from machine_operator.store import (
    ConflictError,
    MemoryResourceStore,
    NotFoundError,
    WatchEventType,
    matches_labels,
    merge_patch,
)


class TestMergePatch:
    """Tests for RFC 7386 JSON merge patches."""

    def test_nested_merge(self) -> None:
        """Test that nested objects are merged key by key."""
        target = {"status": {"ready": False, "taskRef": "task-1"}, "spec": {"vmSize": "a"}}

        result = merge_patch(target, {"status": {"ready": True}})

        assert result == {"status": {"ready": True, "taskRef": "task-1"}, "spec": {"vmSize": "a"}}

    def test_null_deletes(self) -> None:
        """Test that null values remove keys."""
        assert merge_patch({"a": 1, "b": 2}, {"a": None}) == {"b": 2}

    def test_lists_are_replaced(self) -> None:
        """Test that lists are replaced, not merged."""
        assert merge_patch({"f": ["a", "b"]}, {"f": ["c"]}) == {"f": ["c"]}

    def test_target_is_not_mutated(self) -> None:
        """Test that the input is left untouched."""
        target = {"status": {"ready": False}}

        merge_patch(target, {"status": {"ready": True}})

        assert target == {"status": {"ready": False}}


class TestMatchesLabels:
    """Tests for equality label selectors."""

    def test_empty_selector_matches(self) -> None:
        """Test that no selector matches everything."""
        assert matches_labels(make_cluster(), None)

    def test_requires_every_label(self) -> None:
        """Test that every selector label must match."""
        machine = make_azure_machine()
        assert matches_labels(machine, {CLUSTER_NAME_LABEL: CLUSTER_NAME})
        assert not matches_labels(machine, {CLUSTER_NAME_LABEL: "other"})
        assert not matches_labels(machine, {CLUSTER_NAME_LABEL: CLUSTER_NAME, "role": "x"})


class TestMemoryResourceStore:
    """Tests for the versioned in-memory store."""

    @pytest.mark.asyncio
    async def test_create_assigns_identity(self) -> None:
        """Test that create sets uid, version and creation time."""
        store = MemoryResourceStore()

        created = await store.create(make_azure_machine())

        assert created.metadata.uid
        assert created.metadata.resource_version
        assert created.metadata.creation_timestamp is not None

    @pytest.mark.asyncio
    async def test_create_twice_conflicts(self) -> None:
        """Test that creating an existing object fails."""
        store = MemoryResourceStore()
        await store.create(make_azure_machine())

        with pytest.raises(ConflictError):
            await store.create(make_azure_machine())

    @pytest.mark.asyncio
    async def test_get_missing(self) -> None:
        """Test that a missing object raises NotFoundError."""
        store = MemoryResourceStore()

        with pytest.raises(NotFoundError):
            await store.get(AzureMachine, ObjectKey(NAMESPACE, "missing"))

    @pytest.mark.asyncio
    async def test_get_returns_copy(self) -> None:
        """Test that callers cannot mutate stored objects."""
        store = MemoryResourceStore()
        created = await store.create(make_azure_machine())

        fetched = await store.get(AzureMachine, created.key)
        fetched.status.ready = True

        assert (await store.get(AzureMachine, created.key)).status.ready is False

    @pytest.mark.asyncio
    async def test_list_filters(self) -> None:
        """Test filtering by kind, namespace and labels."""
        store = MemoryResourceStore()
        await store.create(make_azure_machine("a"))
        await store.create(make_azure_machine("b"))
        await store.create(make_cluster())

        assert [m.metadata.name for m in await store.list(AzureMachine)] == ["a", "b"]
        assert await store.list(AzureMachine, "other") == []
        assert len(await store.list(AzureMachine, NAMESPACE, {CLUSTER_NAME_LABEL: CLUSTER_NAME})) == 2
        assert len(await store.list(Cluster)) == 1

    @pytest.mark.asyncio
    async def test_patch_bumps_version(self) -> None:
        """Test that a patch is applied and changes the version."""
        store = MemoryResourceStore()
        created = await store.create(make_azure_machine())

        patched = await store.patch(
            created, {"status": {"ready": True}}, precondition_version=created.metadata.resource_version
        )

        assert patched.status.ready is True
        assert patched.metadata.resource_version != created.metadata.resource_version

    @pytest.mark.asyncio
    async def test_stale_precondition_conflicts(self) -> None:
        """Test that a patch with an outdated version is rejected."""
        store = MemoryResourceStore()
        created = await store.create(make_azure_machine())
        await store.patch(created, {"status": {"taskRef": "task-1"}})

        with pytest.raises(ConflictError):
            await store.patch(
                created,
                {"status": {"ready": True}},
                precondition_version=created.metadata.resource_version,
            )

        assert (await store.get(AzureMachine, created.key)).status.ready is False

    @pytest.mark.asyncio
    async def test_concurrent_patches_exactly_one_wins(self) -> None:
        """Test that two writers holding the same version get one success and one conflict."""
        store = MemoryResourceStore()
        created = await store.create(make_azure_machine())
        version = created.metadata.resource_version

        results = await asyncio.gather(
            store.patch(created, {"status": {"taskRef": "task-a"}}, precondition_version=version),
            store.patch(created, {"status": {"taskRef": "task-b"}}, precondition_version=version),
            return_exceptions=True,
        )

        conflicts = [r for r in results if isinstance(r, ConflictError)]
        successes = [r for r in results if isinstance(r, AzureMachine)]
        assert len(conflicts) == 1
        assert len(successes) == 1
        stored = await store.get(AzureMachine, created.key)
        assert stored.status.task_ref == successes[0].status.task_ref

    @pytest.mark.asyncio
    async def test_delete_without_finalizers_removes(self) -> None:
        """Test that an object without finalizers is removed at once."""
        store = MemoryResourceStore()
        created = await store.create(make_azure_machine())

        await store.delete(AzureMachine, created.key)

        with pytest.raises(NotFoundError):
            await store.get(AzureMachine, created.key)

    @pytest.mark.asyncio
    async def test_delete_waits_for_finalizers(self) -> None:
        """Test two-phase deletion with a finalizer."""
        store = MemoryResourceStore()
        machine = make_azure_machine()
        machine.metadata.finalizers = [MACHINE_FINALIZER]
        created = await store.create(machine)

        await store.delete(AzureMachine, created.key)
        deleting = await store.get(AzureMachine, created.key)
        assert deleting.is_deleting

        await store.patch(deleting, {"metadata": {"finalizers": []}})

        with pytest.raises(NotFoundError):
            await store.get(AzureMachine, created.key)

    @pytest.mark.asyncio
    async def test_watch_replays_then_streams(self) -> None:
        """Test that a watch yields existing objects, then changes."""
        store = MemoryResourceStore()
        created = await store.create(make_azure_machine("a"))
        events = store.watch(AzureMachine)

        first = await asyncio.wait_for(anext(events), 1)
        assert first.type == WatchEventType.ADDED
        assert first.obj.metadata.name == "a"

        await store.patch(created, {"status": {"ready": True}})
        second = await asyncio.wait_for(anext(events), 1)
        assert second.type == WatchEventType.MODIFIED
        assert second.obj.status.ready is True

        await events.aclose()

    @pytest.mark.asyncio
    async def test_watch_ignores_other_kinds(self) -> None:
        """Test that watches only see their own kind."""
        store = MemoryResourceStore()
        events = store.watch(AzureMachine)
        pending = asyncio.ensure_future(anext(events))
        await asyncio.sleep(0)

        await store.create(make_cluster())
        await store.create(make_azure_machine())

        event = await asyncio.wait_for(pending, 1)
        assert event.obj.KIND == AzureMachine.KIND
        await events.aclose()
