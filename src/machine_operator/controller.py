"""Controller runtime: work queue, watches and worker pool.

Keys of AzureMachines to reconcile reach the work queue from five sources:
1. Watch events on AzureMachines
2. Watch events on Machines, mapped to the AzureMachine they reference
3. Watch events on Clusters, mapped to the AzureMachines of the cluster
4. Generic events raised by the completion notifier
5. A periodic full resync

The work queue hands a key to at most one worker at a time. A key added
while it is being processed is queued again once its worker is done, so
reconciles of one AzureMachine never overlap.
"""

from __future__ import annotations

import asyncio
import functools
import inspect
import logging
import random
from collections import deque
from collections.abc import Awaitable, Callable
from typing import Any

from .context import ControllerContext
from .errors import MachineOperatorError
from .models import INFRASTRUCTURE_GROUP, AzureMachine, Cluster, Machine, ObjectKey, Resource
from .reconciler import MachineReconciler
from .store import ResourceStore, StoreError
from .util import get_azure_machines_in_cluster, get_machines_in_cluster

logger = logging.getLogger(__name__)

# Fraction of the backoff delay added as random jitter
BACKOFF_JITTER_FRACTION = 0.2

# Delay before a failed watch is restarted
WATCH_RESTART_DELAY_SECONDS = 1.0


class WorkQueue:
    """Deduplicating queue of keys, serialized per key."""

    def __init__(self) -> None:
        self._queue: deque[ObjectKey] = deque()
        self._dirty: set[ObjectKey] = set()
        self._processing: set[ObjectKey] = set()
        self._ready = asyncio.Event()
        self._timers: set[asyncio.TimerHandle] = set()
        self._shutting_down = False

    def __len__(self) -> int:
        return len(self._queue)

    @property
    def shutting_down(self) -> bool:
        return self._shutting_down

    def add(self, key: ObjectKey) -> None:
        """Queue a key unless it is already waiting."""
        if self._shutting_down or key in self._dirty:
            return
        self._dirty.add(key)
        if key in self._processing:
            # Re-queued by done()
            return
        self._queue.append(key)
        self._ready.set()

    def add_after(self, key: ObjectKey, delay: float) -> None:
        """Queue a key once ``delay`` seconds have passed."""
        if self._shutting_down:
            return
        if delay <= 0:
            self.add(key)
            return

        loop = asyncio.get_running_loop()

        def fire() -> None:
            self._timers.discard(handle)
            self.add(key)

        handle = loop.call_later(delay, fire)
        self._timers.add(handle)

    async def get(self) -> ObjectKey | None:
        """Wait for the next key; None once the queue is shut down."""
        while not self._queue:
            if self._shutting_down:
                return None
            self._ready.clear()
            await self._ready.wait()
        if self._shutting_down:
            return None

        key = self._queue.popleft()
        self._processing.add(key)
        self._dirty.discard(key)
        return key

    def done(self, key: ObjectKey) -> None:
        """Mark a key as processed, re-queuing it if it was added meanwhile."""
        self._processing.discard(key)
        if key in self._dirty:
            self._queue.append(key)
            self._ready.set()

    def shut_down(self) -> None:
        """Stop handing out keys and drop pending delayed adds."""
        self._shutting_down = True
        for handle in self._timers:
            handle.cancel()
        self._timers.clear()
        self._ready.set()


class ExponentialBackoff:
    """Per-key exponential backoff with jitter."""

    def __init__(self, base_seconds: float, max_seconds: float) -> None:
        self.base_seconds = base_seconds
        self.max_seconds = max_seconds
        self._failures: dict[ObjectKey, int] = {}

    def when(self, key: ObjectKey) -> float:
        """Record a failure of ``key`` and return how long to wait before retrying."""
        failures = self._failures.get(key, 0)
        self._failures[key] = failures + 1
        backoff = min(self.base_seconds * (2**failures), self.max_seconds)
        jitter = random.uniform(0, backoff * BACKOFF_JITTER_FRACTION)
        return min(backoff + jitter, self.max_seconds)

    def num_requeues(self, key: ObjectKey) -> int:
        return self._failures.get(key, 0)

    def forget(self, key: ObjectKey) -> None:
        self._failures.pop(key, None)


def azure_machine_keys(obj: Resource) -> list[ObjectKey]:
    return [obj.key]


def machine_to_azure_machine_keys(obj: Resource) -> list[ObjectKey]:
    """Map a Machine to the AzureMachine named by its infrastructure reference."""
    if not isinstance(obj, Machine):
        return []
    ref = obj.spec.infrastructure_ref
    if ref.kind != AzureMachine.KIND or ref.api_version.split("/")[0] != INFRASTRUCTURE_GROUP:
        return []
    if not ref.name:
        return []
    return [ObjectKey(ref.namespace or obj.metadata.namespace, ref.name)]


async def cluster_to_azure_machine_keys(store: ResourceStore, obj: Resource) -> list[ObjectKey]:
    """Map a Cluster to its AzureMachines.

    AzureMachines labelled with the cluster name are included, as are those
    referenced by the cluster's Machines.
    """
    if not isinstance(obj, Cluster):
        return []
    namespace = obj.metadata.namespace
    name = obj.metadata.name
    keys = [m.key for m in await get_azure_machines_in_cluster(store, namespace, name)]
    for machine in await get_machines_in_cluster(store, namespace, name):
        keys.extend(machine_to_azure_machine_keys(machine))
    return list(dict.fromkeys(keys))


class Controller:
    """Runs workers that reconcile AzureMachines until shutdown."""

    def __init__(self, ctx: ControllerContext, reconciler: MachineReconciler) -> None:
        self.ctx = ctx
        self.reconciler = reconciler
        self.queue = WorkQueue()
        self.backoff = ExponentialBackoff(
            ctx.config.requeue_backoff_base_seconds,
            ctx.config.requeue_backoff_max_seconds,
        )
        self._shutdown_event = asyncio.Event()

    async def process_next_item(self) -> bool:
        """Reconcile the next queued key.

        Returns:
            False once the queue has been shut down.
        """
        key = await self.queue.get()
        if key is None:
            return False

        try:
            result = await self.reconciler.reconcile(key)
        except (MachineOperatorError, StoreError) as e:
            delay = self.backoff.when(key)
            logger.error(
                "Reconciler error",
                extra={
                    "key": str(key),
                    "error": str(e),
                    "error_type": type(e).__name__,
                    "requeue_after_seconds": round(delay, 3),
                    "requeues": self.backoff.num_requeues(key),
                },
            )
            self.queue.add_after(key, delay)
        except Exception as e:
            delay = self.backoff.when(key)
            logger.exception(
                "Unexpected error during reconciliation",
                extra={"key": str(key), "error": str(e), "requeue_after_seconds": round(delay, 3)},
            )
            self.queue.add_after(key, delay)
        else:
            self.backoff.forget(key)
            if result.requeue_after:
                self.queue.add_after(key, result.requeue_after)
        finally:
            self.queue.done(key)
        return True

    async def _worker(self) -> None:
        while await self.process_next_item():
            pass

    async def _watch(
        self,
        cls: type[Resource],
        mapper: Callable[[Resource], list[ObjectKey] | Awaitable[list[ObjectKey]]],
    ) -> None:
        """Enqueue keys for every change to objects of ``cls``; restart on failure."""
        namespace = self.ctx.config.watch_namespace
        while not self._shutdown_event.is_set():
            try:
                async for event in self.ctx.store.watch(cls, namespace):
                    keys = mapper(event.obj)
                    if inspect.isawaitable(keys):
                        keys = await keys
                    for key in keys:
                        logger.debug(
                            "Watch event",
                            extra={"kind": cls.KIND, "event": event.type.value, "key": str(key)},
                        )
                        self.queue.add(key)
            except StoreError as e:
                logger.warning(
                    "Watch failed, restarting",
                    extra={"kind": cls.KIND, "error": str(e)},
                )
                await self._wait_for_shutdown(WATCH_RESTART_DELAY_SECONDS)

    async def _drain_generic_events(self) -> None:
        channel = self.ctx.get_generic_event_channel_for(AzureMachine.gvk())
        while True:
            event = await channel.get()
            logger.debug("Generic event", extra={"key": str(event.obj.key)})
            self.queue.add(event.obj.key)

    async def _resync(self) -> None:
        """Periodically enqueue every AzureMachine."""
        interval = self.ctx.config.resync_interval_seconds
        while not await self._wait_for_shutdown(interval):
            try:
                machines = await self.ctx.store.list(AzureMachine, self.ctx.config.watch_namespace)
            except StoreError as e:
                logger.warning("Resync failed", extra={"error": str(e)})
                continue
            logger.debug("Resync", extra={"count": len(machines)})
            for machine in machines:
                self.queue.add(machine.key)

    async def _wait_for_shutdown(self, timeout: float) -> bool:
        """Sleep up to ``timeout`` seconds; True if shutdown was requested."""
        try:
            await asyncio.wait_for(self._shutdown_event.wait(), timeout=timeout)
        except TimeoutError:
            pass
        return self._shutdown_event.is_set()

    async def run(self) -> None:
        """Run until ``shutdown`` is called."""
        config = self.ctx.config
        logger.info(
            "Starting controller",
            extra={
                "controller": self.ctx.name,
                "namespace": config.watch_namespace or "*",
                "workers": config.max_concurrent_reconciles,
                "resync_interval_seconds": config.resync_interval_seconds,
            },
        )

        workers = [
            asyncio.create_task(self._worker(), name=f"worker-{i}")
            for i in range(config.max_concurrent_reconciles)
        ]
        sources: list[asyncio.Task[Any]] = [
            asyncio.create_task(self._watch(AzureMachine, azure_machine_keys), name="watch-azuremachines"),
            asyncio.create_task(
                self._watch(Machine, machine_to_azure_machine_keys), name="watch-machines"
            ),
            asyncio.create_task(
                self._watch(Cluster, functools.partial(cluster_to_azure_machine_keys, self.ctx.store)),
                name="watch-clusters",
            ),
            asyncio.create_task(self._drain_generic_events(), name="generic-events"),
            asyncio.create_task(self._resync(), name="resync"),
        ]

        try:
            await self._shutdown_event.wait()
        finally:
            self.queue.shut_down()
            for task in sources:
                task.cancel()
            await asyncio.gather(*sources, return_exceptions=True)
            # Workers finish their current reconcile, then see the shut down queue
            await asyncio.gather(*workers, return_exceptions=True)
            await self.ctx.cancel_background_tasks()
            logger.info("Controller stopped", extra={"controller": self.ctx.name})

    def shutdown(self) -> None:
        """Signal the controller to stop."""
        logger.info("Shutdown requested", extra={"controller": self.ctx.name})
        self._shutdown_event.set()
