"""Tests for in-flight task tracking."""

from __future__ import annotations

from unittest import mock

import pytest

from factories import make_controller_context, make_machine_context
from machine_operator.errors import TaskNotFoundError, UnknownTaskStateError
from machine_operator.models import TaskInfo
from machine_operator.tasks import get_task, reconcile_in_flight_task

TASK_REF = "task-0123456789abcdef"


def context_with_task(state: str | None, *, task_ref: str = TASK_REF) -> tuple[object, mock.Mock]:
    session = mock.Mock()
    if state is None:
        session.get_task.side_effect = TaskNotFoundError(f"task {task_ref} not found")
    else:
        session.get_task.return_value = TaskInfo(ref=task_ref, state=state, name="CreateVM")
    ctx = make_machine_context(make_controller_context(), session)
    ctx.azure_machine.status.task_ref = task_ref
    return ctx, session


class TestGetTask:
    """Tests for looking up the recorded task."""

    @pytest.mark.asyncio
    async def test_no_task_ref_skips_provider(self) -> None:
        """Test that no provider call is made without a task reference."""
        ctx, session = context_with_task("running", task_ref="")

        assert await get_task(ctx) is None
        session.get_task.assert_not_called()

    @pytest.mark.asyncio
    async def test_returns_task(self) -> None:
        """Test that a known task is returned."""
        ctx, session = context_with_task("running")

        task = await get_task(ctx)

        assert task is not None
        assert task.ref == TASK_REF
        session.get_task.assert_called_once_with(TASK_REF)

    @pytest.mark.asyncio
    async def test_lookup_failure_is_absent(self) -> None:
        """Test that a lookup failure is treated as no task."""
        ctx, _ = context_with_task(None)

        assert await get_task(ctx) is None

    @pytest.mark.asyncio
    async def test_unexpected_error_is_absent(self) -> None:
        """Test that any provider error is treated as no task."""
        ctx, session = context_with_task("running")
        session.get_task.side_effect = ConnectionError("connection reset")

        assert await get_task(ctx) is None


class TestReconcileInFlightTask:
    """Tests for reconciling the task reference with the task state."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("state", ["queued", "running"])
    async def test_active_task_is_in_flight(self, state: str) -> None:
        """Test that queued and running tasks keep the reference."""
        ctx, _ = context_with_task(state)

        assert await reconcile_in_flight_task(ctx) is True
        assert ctx.azure_machine.status.task_ref == TASK_REF

    @pytest.mark.asyncio
    @pytest.mark.parametrize("state", ["success", "error"])
    async def test_terminal_task_clears_reference(self, state: str) -> None:
        """Test that success and error both clear the reference."""
        ctx, _ = context_with_task(state)

        assert await reconcile_in_flight_task(ctx) is False
        assert ctx.azure_machine.status.task_ref == ""

    @pytest.mark.asyncio
    async def test_missing_task_clears_reference(self) -> None:
        """Test that an unknown reference is cleared."""
        ctx, _ = context_with_task(None)

        assert await reconcile_in_flight_task(ctx) is False
        assert ctx.azure_machine.status.task_ref == ""

    @pytest.mark.asyncio
    async def test_no_reference(self) -> None:
        """Test that a machine without a task is not in flight."""
        ctx, _ = context_with_task("running", task_ref="")

        assert await reconcile_in_flight_task(ctx) is False
        assert ctx.azure_machine.status.task_ref == ""

    @pytest.mark.asyncio
    async def test_unknown_state_raises(self) -> None:
        """Test that an unrecognized state is an error and keeps the reference."""
        ctx, _ = context_with_task("Paused")

        with pytest.raises(UnknownTaskStateError) as exc_info:
            await reconcile_in_flight_task(ctx)

        assert "Paused" in str(exc_info.value)
        assert ctx.azure_machine.status.task_ref == TASK_REF

    @pytest.mark.asyncio
    async def test_idempotent(self) -> None:
        """Test that repeated calls give the same answer without side effects."""
        ctx, session = context_with_task("running")

        assert await reconcile_in_flight_task(ctx) is True
        assert await reconcile_in_flight_task(ctx) is True
        assert session.get_task.call_count == 2
        session.track.assert_not_called()
