"""Patch helper bound to the version of an object read at reconcile start."""

from __future__ import annotations

import logging
from typing import Any

from .models import Resource
from .store import ResourceStore

logger = logging.getLogger(__name__)


class PatchHelper:
    """Computes and applies the changes made to an object during a reconcile.

    The helper snapshots the object and its resource version when it is
    created. ``patch`` sends only the finalizers and status, and only if
    they changed, with the snapshot version as the precondition; a
    concurrent writer therefore makes the patch fail with ConflictError
    instead of being silently overwritten.
    """

    def __init__(self, obj: Resource, store: ResourceStore) -> None:
        self._store = store
        self._before = obj.model_copy(deep=True)

    @property
    def resource_version(self) -> str:
        """Resource version of the object when the helper was created."""
        return self._before.metadata.resource_version

    @property
    def before(self) -> Resource:
        """Copy of the object as it was read."""
        return self._before

    def calculate_patch(self, obj: Resource) -> dict[str, Any]:
        """Return the merge patch turning the snapshot into ``obj``."""
        body: dict[str, Any] = {}

        if obj.metadata.finalizers != self._before.metadata.finalizers:
            body["metadata"] = {"finalizers": list(obj.metadata.finalizers)}

        before_status = _dump_status(self._before)
        after_status = _dump_status(obj)
        if before_status != after_status:
            body["status"] = after_status

        return body

    async def patch(self, obj: Resource) -> Resource | None:
        """Write changed finalizers and status back to the store.

        Returns:
            The stored object after the patch, or None if nothing changed.

        Raises:
            ConflictError: If the object changed since it was read.
            NotFoundError: If the object no longer exists.
        """
        body = self.calculate_patch(obj)
        if not body:
            logger.debug("Nothing to patch", extra={"object": str(obj)})
            return None

        logger.debug(
            "Patching object",
            extra={
                "object": str(obj),
                "fields": sorted(body),
                "precondition_version": self.resource_version,
            },
        )
        return await self._store.patch(obj, body, precondition_version=self.resource_version)


def _dump_status(obj: Resource) -> Any:
    status = getattr(obj, "status", None)
    if status is None:
        return None
    return status.model_dump(by_alias=True, mode="json")
