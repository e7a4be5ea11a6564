"""Re-reconcile machines when slow provider operations complete.

A reconcile never blocks on a long-running provider operation. Instead it
hands a blocking wait function to ``reconcile_object_on_func_completion``,
which runs it on the controller's wait executor in a detached task. When
the wait returns, a GenericEvent for the object is put on the controller's
channel for the object's kind and the controller reconciles the object
again.

The detached task never touches the object. Duplicate events are harmless
because every reconcile step is idempotent.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from typing import Any

from .context import GenericEvent, MachineContext
from .models import Resource, TaskState
from .tasks import get_task

logger = logging.getLogger(__name__)

# Returns log fields describing what was waited on
WaitFunc = Callable[[], dict[str, Any]]


def reconcile_object_on_func_completion(
    ctx: MachineContext,
    obj: Resource,
    wait_fn: WaitFunc,
) -> asyncio.Task[None]:
    """Trigger a reconcile of ``obj`` once ``wait_fn`` returns.

    If ``wait_fn`` raises, the error is logged and no event is sent; the
    object then waits for its next watch event or periodic resync.

    Returns:
        The detached task, already scheduled.
    """
    obj = obj.model_copy(deep=True)
    controller = ctx.controller
    fields = ctx.log_fields

    async def wait_and_notify() -> None:
        try:
            wait_fields = await controller.run_wait(wait_fn)
        except Exception as e:  # noqa: BLE001 - detached; nothing above us to raise to
            logger.error(
                "Failed to wait on func",
                extra={**fields, "error": str(e), "error_type": type(e).__name__},
            )
            return

        logger.info("Triggering generic event", extra={**fields, **wait_fields})
        channel = controller.get_generic_event_channel_for(obj.gvk())
        await channel.put(GenericEvent(obj=obj))

    return controller.spawn(wait_and_notify(), name=f"wait-{obj.key}")


def reconcile_object_on_task_completion(
    ctx: MachineContext,
    obj: Resource,
    task_ref: str,
) -> asyncio.Task[None]:
    """Trigger a reconcile of ``obj`` once a provider task is terminal.

    Success and failure both trigger the reconcile.
    """
    session = ctx.session
    timeout = ctx.config.task_wait_timeout_seconds

    def wait_fn() -> dict[str, Any]:
        info = session.wait_for_task(task_ref, timeout=timeout)
        return {
            "reason": "task",
            "task_ref": info.ref,
            "task_name": info.name,
            "task_entity_name": info.entity_name,
            "task_state": info.state,
            "task_description_id": info.description_id,
        }

    return reconcile_object_on_func_completion(ctx, obj, wait_fn)


async def reconcile_machine_on_task_completion(ctx: MachineContext) -> None:
    """Reconcile the AzureMachine again when its recorded task completes."""
    task = await get_task(ctx)
    if task is None:
        logger.debug(
            "Skipping reconcile on task completion",
            extra={**ctx.log_fields, "reason": "no-task"},
        )
        return

    logger.info(
        "Enqueuing reconcile request on task completion",
        extra={
            **ctx.log_fields,
            "task_ref": task.ref,
            "task_name": task.name,
            "task_entity_name": task.entity_name,
            "task_description_id": task.description_id,
        },
    )
    reconcile_object_on_task_completion(ctx, ctx.azure_machine, task.ref)


def reconcile_machine_when_network_is_ready(
    ctx: MachineContext,
    vm_name: str,
    power_on_task_ref: str,
) -> asyncio.Task[None]:
    """Reconcile the AzureMachine again once it is powered on and networked.

    Waits for the power-on task; anything but success aborts the wait.
    Then waits for the VM to report an IP address.
    """
    session = ctx.session
    resource_group = ctx.resource_group
    timeout = ctx.config.task_wait_timeout_seconds
    poll_interval = ctx.config.network_poll_interval_seconds
    machine = str(ctx)

    def wait_fn() -> dict[str, Any]:
        started = time.monotonic()
        info = session.wait_for_task(power_on_task_ref, timeout=timeout)
        if info.state != TaskState.SUCCESS.value:
            raise RuntimeError(
                f"unexpected task state {info.state} for power on op for vm {machine}"
            )
        remaining = max(timeout - (time.monotonic() - started), poll_interval)
        addrs = session.wait_for_network(
            resource_group,
            vm_name,
            timeout=remaining,
            poll_interval=poll_interval,
        )
        return {"reason": "network", "ip_addrs": addrs}

    return reconcile_object_on_func_completion(ctx, ctx.azure_machine, wait_fn)
