"""Controller-wide and request-scoped contexts.

``ControllerContext`` is built once per process and passed explicitly to
everything that needs shared state: the resource store, the provider
session cache and the per-kind generic event channels.

``MachineContext`` is rebuilt for every reconcile and discarded afterwards.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Coroutine
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, TypeVar

from .config import Config
from .models import (
    AzureCluster,
    AzureMachine,
    Cluster,
    GroupVersionKind,
    Machine,
    Resource,
)
from .patch import PatchHelper
from .session import Session, SessionCache
from .store import ResourceStore
from .util import is_control_plane_machine

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class GenericEvent:
    """A request to reconcile an object, raised outside of the store's watch."""

    obj: Resource


@dataclass
class ControllerContext:
    """Shared state of one running controller."""

    config: Config
    store: ResourceStore
    session_cache: SessionCache
    name: str = "azuremachine-controller"
    _channels: dict[GroupVersionKind, asyncio.Queue[GenericEvent]] = field(
        default_factory=dict, init=False, repr=False
    )
    _background: set[asyncio.Task[Any]] = field(default_factory=set, init=False, repr=False)
    _wait_executor: ThreadPoolExecutor = field(init=False, repr=False)

    def __post_init__(self) -> None:
        # Kept apart from the loop's default executor, which serves the short
        # store and provider calls of every reconcile
        self._wait_executor = ThreadPoolExecutor(
            max_workers=self.config.max_concurrent_waits,
            thread_name_prefix=f"{self.name}-wait",
        )

    def get_generic_event_channel_for(self, gvk: GroupVersionKind) -> asyncio.Queue[GenericEvent]:
        """Return the channel carrying generic events for a kind."""
        channel = self._channels.get(gvk)
        if channel is None:
            channel = asyncio.Queue()
            self._channels[gvk] = channel
        return channel

    def spawn(self, coro: Coroutine[Any, Any, Any], *, name: str | None = None) -> asyncio.Task[Any]:
        """Run a coroutine detached from the caller.

        The task is referenced until it finishes so it cannot be garbage
        collected mid-flight.
        """
        task = asyncio.create_task(coro, name=name)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def run_wait(self, fn: Callable[[], T]) -> T:
        """Run a blocking wait on the wait executor."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._wait_executor, fn)

    @property
    def background_tasks(self) -> frozenset[asyncio.Task[Any]]:
        """Detached tasks that have not finished yet."""
        return frozenset(self._background)

    async def cancel_background_tasks(self) -> None:
        """Cancel detached tasks and stop the wait executor. Called at shutdown.

        Waits already blocked in a thread are abandoned; their results are
        discarded.
        """
        tasks = list(self._background)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._wait_executor.shutdown(wait=False, cancel_futures=True)


@dataclass
class MachineContext:
    """Everything one reconcile of an AzureMachine needs."""

    controller: ControllerContext
    cluster: Cluster
    azure_cluster: AzureCluster
    machine: Machine
    azure_machine: AzureMachine
    session: Session
    patch_helper: PatchHelper

    def __str__(self) -> str:
        return f"{self.azure_machine.KIND} {self.azure_machine.key}"

    @property
    def config(self) -> Config:
        return self.controller.config

    @property
    def log_fields(self) -> dict[str, Any]:
        """Structured fields identifying this machine in log records."""
        return {
            "namespace": self.azure_machine.metadata.namespace,
            "azure_machine": self.azure_machine.metadata.name,
            "machine": self.machine.metadata.name,
            "cluster": self.cluster.metadata.name,
            "control_plane": is_control_plane_machine(self.machine),
        }

    @property
    def resource_group(self) -> str:
        """Resource group of the VM; the machine's own setting wins."""
        return self.azure_machine.spec.resource_group or self.azure_cluster.spec.resource_group

    @property
    def location(self) -> str:
        """Azure region of the VM; the machine's own setting wins."""
        return self.azure_machine.spec.location or self.azure_cluster.spec.location

    async def patch(self) -> Resource | None:
        """Patch the AzureMachine's finalizers and status back to the store."""
        return await self.patch_helper.patch(self.azure_machine)
