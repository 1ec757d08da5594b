"""Repository abstraction for step state persistence."""

from __future__ import annotations

from typing import Any, Protocol

from ..models import StepStatus, StepType
from .models import ActivityEntry, WorkflowStep


class StepRepository(Protocol):
    """Protocol for workflow step and activity log persistence backends."""

    async def create_step(
        self,
        workflow_id: int,
        step_type: StepType,
        *,
        agent_id: int | None = None,
        input_text: str | None = None,
        status: StepStatus = StepStatus.PENDING,
    ) -> WorkflowStep:
        """Persist a new step and return it with its assigned id."""

    async def get_step(self, step_id: int) -> WorkflowStep | None:
        """Retrieve a step by id."""

    async def list_steps(self, workflow_id: int) -> list[WorkflowStep]:
        """Return the steps of a workflow ordered by id."""

    async def create_or_update_step(
        self, step_id: int, patch: dict[str, Any]
    ) -> WorkflowStep:
        """Apply ``patch`` to a step, creating it when it does not exist.

        Creating requires ``workflow_id`` and ``step_type`` in the patch.
        """

    async def append_activity(
        self, step_id: int, entry: ActivityEntry
    ) -> ActivityEntry:
        """Append an entry to the step's activity log and return it as stored."""

    async def list_activity(self, step_id: int) -> list[ActivityEntry]:
        """Return the step's activity log in insertion order."""

    async def mark_skipped(self, step_id: int) -> WorkflowStep:
        """Mark the step skipped."""
