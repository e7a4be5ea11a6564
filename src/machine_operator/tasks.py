"""Tracking of in-flight provider tasks.

An AzureMachine stores at most one task reference in ``status.task_ref``.
These functions only observe the referenced task; they never start one.
"""

from __future__ import annotations

import asyncio
import logging

from .context import MachineContext
from .errors import UnknownTaskStateError
from .models import TaskInfo, TaskState

logger = logging.getLogger(__name__)


async def get_task(ctx: MachineContext) -> TaskInfo | None:
    """Look up the machine's in-flight task.

    Returns None without calling the provider when no task is recorded.
    Lookup failures also return None: a provider hiccup must not wedge the
    machine behind a task nobody can observe.
    """
    ref = ctx.azure_machine.status.task_ref
    if not ref:
        return None

    loop = asyncio.get_event_loop()
    try:
        return await loop.run_in_executor(None, ctx.session.get_task, ref)
    except Exception as e:  # noqa: BLE001 - any lookup failure means "no task"
        logger.debug(
            "Task lookup failed, treating task as absent",
            extra={**ctx.log_fields, "task_ref": ref, "error": str(e)},
        )
        return None


async def reconcile_in_flight_task(ctx: MachineContext) -> bool:
    """Reconcile the machine's task reference with the task's state.

    Returns:
        True while the task is queued or running, False otherwise. The
        task reference is cleared when the task is missing or terminal.

    Raises:
        UnknownTaskStateError: If the task reports an unrecognized state.
    """
    task = await get_task(ctx)

    if task is None:
        ctx.azure_machine.status.task_ref = ""
        return False

    fields = {
        **ctx.log_fields,
        "task_ref": task.ref,
        "task_state": task.state,
        "task_description_id": task.description_id,
    }
    logger.debug("Task found", extra=fields)

    match task.state:
        case TaskState.QUEUED.value:
            logger.debug("Task is still pending", extra=fields)
            return True
        case TaskState.RUNNING.value:
            logger.debug("Task is still running", extra=fields)
            return True
        case TaskState.SUCCESS.value:
            logger.debug("Task is a success", extra=fields)
            ctx.azure_machine.status.task_ref = ""
            return False
        case TaskState.ERROR.value:
            logger.info("Task failed", extra=fields)
            ctx.azure_machine.status.task_ref = ""
            return False
        case _:
            raise UnknownTaskStateError(f"unknown task state {task.state!r} for {ctx}")
