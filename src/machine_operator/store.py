"""Resource store interface and an in-memory implementation.

The store holds versioned objects. Every write bumps the object's
``resource_version``; a patch carrying a precondition version is accepted
only if it still matches the stored one (optimistic concurrency).

Deletion is two-phase: deleting an object that still has finalizers only
sets its deletion timestamp. The object disappears once a patch removes the
last finalizer.
"""

from __future__ import annotations

import asyncio
import copy
import logging
from collections import defaultdict
from collections.abc import AsyncIterator
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Protocol, TypeVar

from .models import ObjectKey, Resource

logger = logging.getLogger(__name__)

R = TypeVar("R", bound=Resource)


class StoreError(Exception):
    """Raised when a store operation fails."""

    pass


class NotFoundError(StoreError):
    """Raised when an object does not exist."""

    pass


class ConflictError(StoreError):
    """Raised when a write's precondition version is stale."""

    pass


class WatchEventType(str, Enum):
    """Kinds of watch notifications."""

    ADDED = "ADDED"
    MODIFIED = "MODIFIED"
    DELETED = "DELETED"


@dataclass(frozen=True)
class WatchEvent:
    """A change to a stored object."""

    type: WatchEventType
    obj: Resource


class ResourceStore(Protocol):
    """Versioned object store consumed by the controller."""

    async def get(self, cls: type[R], key: ObjectKey) -> R:
        """Return the object, or raise NotFoundError."""
        ...

    async def list(
        self, cls: type[R], namespace: str = "", labels: dict[str, str] | None = None
    ) -> list[R]:
        """Return objects of a kind, filtered by namespace and labels."""
        ...

    async def patch(
        self, obj: Resource, body: dict[str, Any], precondition_version: str | None = None
    ) -> Resource:
        """Merge-patch an object, raising ConflictError on a stale version."""
        ...

    def watch(self, cls: type[R], namespace: str = "") -> AsyncIterator[WatchEvent]:
        """Stream changes to objects of a kind."""
        ...


def merge_patch(target: Any, patch: Any) -> Any:
    """Apply an RFC 7386 JSON merge patch and return the result.

    ``None`` values delete keys; lists are replaced wholesale.
    """
    if not isinstance(patch, dict):
        return copy.deepcopy(patch)
    result = copy.deepcopy(target) if isinstance(target, dict) else {}
    for name, value in patch.items():
        if value is None:
            result.pop(name, None)
        else:
            result[name] = merge_patch(result.get(name), value)
    return result


def matches_labels(obj: Resource, labels: dict[str, str] | None) -> bool:
    """Check that an object carries every label in the selector."""
    if not labels:
        return True
    return all(obj.metadata.labels.get(k) == v for k, v in labels.items())


class MemoryResourceStore:
    """In-memory ResourceStore.

    Used by tests and by local runs (``STORE_BACKEND=memory``). All methods
    run on the event loop and never await while mutating state, so every
    operation is atomic with respect to other coroutines.
    """

    def __init__(self) -> None:
        self._objects: dict[tuple[str, str, str], Resource] = {}
        self._watchers: dict[str, list[asyncio.Queue[WatchEvent]]] = defaultdict(list)
        self._version = 0
        self._uid = 0

    def _next_version(self) -> str:
        self._version += 1
        return str(self._version)

    @staticmethod
    def _index(cls: type[Resource], key: ObjectKey) -> tuple[str, str, str]:
        return (cls.KIND, key.namespace, key.name)

    def _notify(self, event_type: WatchEventType, obj: Resource) -> None:
        for queue in self._watchers[obj.KIND]:
            queue.put_nowait(WatchEvent(type=event_type, obj=obj.model_copy(deep=True)))

    async def create(self, obj: R) -> R:
        """Store a new object, assigning its uid and resource version."""
        index = self._index(type(obj), obj.key)
        if index in self._objects:
            raise ConflictError(f"{obj} already exists")
        stored = obj.model_copy(deep=True)
        if not stored.metadata.uid:
            self._uid += 1
            stored.metadata.uid = f"00000000-0000-4000-8000-{self._uid:012d}"
        stored.metadata.resource_version = self._next_version()
        stored.metadata.creation_timestamp = datetime.now(UTC)
        self._objects[index] = stored
        self._notify(WatchEventType.ADDED, stored)
        return stored.model_copy(deep=True)

    async def get(self, cls: type[R], key: ObjectKey) -> R:
        stored = self._objects.get(self._index(cls, key))
        if stored is None:
            raise NotFoundError(f"{cls.KIND} {key} not found")
        return stored.model_copy(deep=True)  # type: ignore[return-value]

    async def list(
        self, cls: type[R], namespace: str = "", labels: dict[str, str] | None = None
    ) -> list[R]:
        return [
            obj.model_copy(deep=True)  # type: ignore[misc]
            for (kind, ns, _), obj in sorted(self._objects.items())
            if kind == cls.KIND and (not namespace or ns == namespace) and matches_labels(obj, labels)
        ]

    async def patch(
        self, obj: Resource, body: dict[str, Any], precondition_version: str | None = None
    ) -> Resource:
        cls = type(obj)
        index = self._index(cls, obj.key)
        stored = self._objects.get(index)
        if stored is None:
            raise NotFoundError(f"{obj} not found")
        if precondition_version is not None and stored.metadata.resource_version != precondition_version:
            raise ConflictError(
                f"the object {obj} has been modified; "
                f"expected version {precondition_version}, "
                f"stored version {stored.metadata.resource_version}"
            )

        data = stored.model_dump(by_alias=True, mode="json")
        patched = cls.model_validate(merge_patch(data, body))
        patched.metadata.resource_version = self._next_version()

        if patched.is_deleting and not patched.metadata.finalizers:
            del self._objects[index]
            self._notify(WatchEventType.DELETED, patched)
            logger.debug("Object removed after last finalizer", extra={"object": str(obj)})
        else:
            self._objects[index] = patched
            self._notify(WatchEventType.MODIFIED, patched)
        return patched.model_copy(deep=True)

    async def delete(self, cls: type[Resource], key: ObjectKey) -> None:
        """Delete an object, deferring removal while finalizers remain."""
        index = self._index(cls, key)
        stored = self._objects.get(index)
        if stored is None:
            raise NotFoundError(f"{cls.KIND} {key} not found")
        if not stored.metadata.finalizers:
            del self._objects[index]
            self._notify(WatchEventType.DELETED, stored)
            return
        if stored.metadata.deletion_timestamp is None:
            stored.metadata.deletion_timestamp = datetime.now(UTC)
            stored.metadata.resource_version = self._next_version()
            self._notify(WatchEventType.MODIFIED, stored)

    async def watch(self, cls: type[R], namespace: str = "") -> AsyncIterator[WatchEvent]:
        """Yield ADDED events for existing objects, then live changes."""
        queue: asyncio.Queue[WatchEvent] = asyncio.Queue()
        self._watchers[cls.KIND].append(queue)
        try:
            for obj in await self.list(cls, namespace):
                yield WatchEvent(type=WatchEventType.ADDED, obj=obj)
            while True:
                event = await queue.get()
                if namespace and event.obj.metadata.namespace != namespace:
                    continue
                yield event
        finally:
            self._watchers[cls.KIND].remove(queue)
